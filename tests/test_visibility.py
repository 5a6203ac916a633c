import asyncio
import unittest

from chatsync.models import UserProfile
from chatsync.visibility import VisibilityController, VisibilityPhase, chat_should_be_offered

from tests.chat_helpers import wait_until

ME = UserProfile(id="p-u1", user_id="u1", display_name="Ana")
OTHER = UserProfile(id="p-u2", user_id="u2", display_name="Bo")


class ChatOfferTests(unittest.TestCase):
    def test_offer_rules(self):
        self.assertFalse(chat_should_be_offered([OTHER], None))
        self.assertTrue(chat_should_be_offered([ME, OTHER], ME))
        self.assertFalse(chat_should_be_offered([ME], ME))
        # presence may lag behind a known profile
        self.assertTrue(chat_should_be_offered([], ME))


class VisibilityControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.controller = VisibilityController(timeout_s=0.05)
        self.changes = []
        self.controller.add_listener(self.changes.append)

    async def asyncTearDown(self):
        await self.controller.stop()

    async def test_someone_else_online_is_visible_without_waiting(self):
        self.controller.start()
        visible = self.controller.update([ME, OTHER], ME, loading=False)

        self.assertTrue(visible)
        self.assertEqual(self.controller.phase, VisibilityPhase.RESOLVED)
        self.assertEqual(self.changes, [True])

    async def test_timeout_forces_visibility_when_presence_never_answers(self):
        self.controller.start()
        self.controller.update([], None, loading=True)
        self.assertFalse(self.controller.visible)
        self.assertEqual(self.controller.phase, VisibilityPhase.LOADING)

        await wait_until(lambda: self.controller.visible)

        self.assertEqual(self.controller.phase, VisibilityPhase.TIMED_OUT)
        self.assertEqual(self.changes, [True])

    async def test_timeout_stays_in_force_after_later_updates(self):
        self.controller.start()
        await wait_until(lambda: self.controller.timed_out)

        self.controller.update([ME], ME, loading=False)

        self.assertTrue(self.controller.visible)

    async def test_stop_cancels_the_timer(self):
        self.controller.start()
        await self.controller.stop()
        await asyncio.sleep(0.1)

        self.assertFalse(self.controller.visible)
        self.assertEqual(self.changes, [])


if __name__ == "__main__":
    unittest.main()
