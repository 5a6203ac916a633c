import asyncio
import unittest

from chatsync.memory_service import InMemoryRealtimeService
from chatsync.models import USER_PROFILES, Identity, UserProfile
from chatsync.presence import PRESENCE_RPC, PresenceTracker, apply_sync

from tests.chat_helpers import FakeClock, wait_until


def _ids(users):
    return sorted(user.user_id for user in users)


class ApplySyncTests(unittest.TestCase):
    def test_snapshot_replaces_previous_online_set(self):
        old = [UserProfile(id="u9", user_id="u9")]
        snapshot = {
            "u1": [{"user_id": "u1", "display_name": "Ana"}],
            "u2": [{"user_id": "u2", "display_name": "Old"}, {"user_id": "u2", "display_name": "New"}],
        }

        online = apply_sync(old, snapshot, now_ms=5_000)

        self.assertEqual(_ids(online), ["u1", "u2"])
        by_id = {user.user_id: user for user in online}
        self.assertEqual(by_id["u2"].display_name, "New")
        self.assertTrue(by_id["u1"].is_online)
        self.assertEqual(by_id["u1"].last_seen_ms, 5_000)

    def test_user_missing_from_consecutive_syncs_never_appears(self):
        online = apply_sync([], {"u1": [{"user_id": "u1"}]}, now_ms=1)
        online = apply_sync(online, {"u1": [{"user_id": "u1"}]}, now_ms=2)
        self.assertEqual(_ids(online), ["u1"])

    def test_key_is_used_when_payload_has_no_user_id(self):
        online = apply_sync([], {"u3": [{"display_name": "Cy"}], "empty": []}, now_ms=1)
        self.assertEqual(_ids(online), ["u3"])


class PresenceTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.service = InMemoryRealtimeService(now_func=self.clock.now)
        self.trackers = []

    async def asyncTearDown(self):
        for tracker in self.trackers:
            await tracker.stop()

    def _tracker(self) -> PresenceTracker:
        tracker = PresenceTracker(self.service, now_func=self.clock.now)
        self.trackers.append(tracker)
        return tracker

    async def test_start_marks_user_online_and_tracks_self(self):
        tracker = self._tracker()
        await tracker.start(Identity(id="u1", metadata={"display_name": "Ana"}))

        self.assertTrue(tracker.synced)
        self.assertEqual(_ids(tracker.online_users), ["u1"])
        self.assertEqual(tracker.online_users[0].display_name, "Ana")
        self.assertEqual(self.service.rpc_calls, [(PRESENCE_RPC, {"user_id": "u1", "status": "online"})])
        profiles = await self.service.select(USER_PROFILES, {"user_id": "u1"})
        self.assertTrue(profiles[0]["is_online"])

    async def test_two_clients_see_each_other_and_leave_is_reflected(self):
        first = self._tracker()
        second = self._tracker()
        seen = []
        first.add_listener(lambda users: seen.append(_ids(users)))

        await first.start(Identity(id="u1"))
        await second.start(Identity(id="u2"))
        self.assertEqual(_ids(first.online_users), ["u1", "u2"])
        self.assertEqual(_ids(second.online_users), ["u1", "u2"])

        await second.stop()
        self.assertEqual(_ids(first.online_users), ["u1"])
        self.assertEqual(seen[-1], ["u1"])

    async def test_channel_failure_is_swallowed(self):
        self.service.presence_failure = True
        tracker = self._tracker()

        with self.assertLogs("chatsync.presence", level="WARNING"):
            await tracker.start(Identity(id="u1"))

        self.assertTrue(tracker.failed)
        self.assertTrue(tracker.resolved)
        self.assertEqual(tracker.online_users, [])

    async def test_rpc_failure_still_joins_the_channel(self):
        self.service.rpc_failure = True
        tracker = self._tracker()

        await tracker.start(Identity(id="u1"))

        self.assertFalse(tracker.failed)
        self.assertEqual(_ids(tracker.online_users), ["u1"])

    async def test_acquire_is_reference_counted(self):
        tracker = self._tracker()
        observer = self._tracker()
        await observer.start(Identity(id="u2"))

        tracker.acquire(Identity(id="u1"))
        tracker.acquire(Identity(id="u1"))
        await wait_until(lambda: _ids(observer.online_users) == ["u1", "u2"])

        await tracker.release()
        await asyncio.sleep(0)
        self.assertEqual(_ids(observer.online_users), ["u1", "u2"])

        await tracker.release()
        self.assertEqual(_ids(observer.online_users), ["u2"])
        self.assertFalse(tracker.synced)

    async def test_removed_listener_is_not_called(self):
        tracker = self._tracker()
        calls = []
        remove = tracker.add_listener(calls.append)
        remove()

        await tracker.start(Identity(id="u1"))

        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
