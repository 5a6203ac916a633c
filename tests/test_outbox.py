import unittest

from chatsync.models import Scope
from chatsync.outbox import Outbox

from tests.chat_helpers import FakeClock

DM = Scope.direct("u1_u2")


class OutboxTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.outbox = Outbox(max_retries=2, now_func=self.clock.now)
        self.sent = []

    async def _send(self, queued):
        self.sent.append(queued.text)

    async def _fail(self, queued):
        raise ConnectionError("offline")

    async def test_flush_sends_in_order_and_only_for_the_scope(self):
        self.outbox.enqueue(DM, "one")
        self.outbox.enqueue(Scope.group("g1"), "elsewhere")
        self.outbox.enqueue(DM, "two")

        self.assertEqual(await self.outbox.flush(DM, self._send), (2, 0))

        self.assertEqual(self.sent, ["one", "two"])
        self.assertEqual(self.outbox.pending(DM), [])
        self.assertEqual([q.text for q in self.outbox.pending()], ["elsewhere"])

    async def test_failure_keeps_the_queue_until_retries_run_out(self):
        queued = self.outbox.enqueue(DM, "stuck")
        self.assertEqual(queued.queued_at_ms, self.clock.now())

        self.assertEqual(await self.outbox.flush(DM, self._fail), (0, 0))
        self.assertEqual(await self.outbox.flush(DM, self._fail), (0, 0))
        self.assertEqual(queued.retry_count, 2)

        with self.assertLogs("chatsync.outbox", level="WARNING"):
            self.assertEqual(await self.outbox.flush(DM, self._fail), (0, 1))
        self.assertEqual(self.outbox.pending(), [])


if __name__ == "__main__":
    unittest.main()
