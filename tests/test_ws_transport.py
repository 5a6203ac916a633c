import unittest

from aiohttp.test_utils import TestClient, TestServer

from chatsync.config import ReconnectPolicy
from chatsync.memory_service import InMemoryRealtimeService
from chatsync.models import DIRECT_MESSAGES, USER_PROFILES, ConnectionState, Identity, Scope
from chatsync.presence import PresenceTracker
from chatsync.service import ChangeKind, ChannelStatus, NotAuthenticated, QueryFailed, WriteFailed
from chatsync.session import ChatSessionManager
from chatsync.ws_client import RemoteRealtimeService
from chatsync.ws_transport import create_app

from tests.chat_helpers import fast_config, wait_until

DM = Scope.direct("u1_u2")


class WsTransportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.service = InMemoryRealtimeService()
        self.app = create_app(self.service, ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.remotes = []

    async def asyncTearDown(self):
        for remote in self.remotes:
            await remote.close()
        await self.client.close()
        await self.server.close()

    async def _remote(self, auth_token: str = "u1") -> RemoteRealtimeService:
        remote = RemoteRealtimeService(
            str(self.server.make_url("/v1/ws")), auth_token, session=self.client.session, request_timeout_s=2.0
        )
        self.remotes.append(remote)
        await remote.connect()
        return remote

    async def _start_session(self, auth_token: str = "u1"):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "session.start", "id": "start1", "body": {"auth_token": auth_token}})
        return ws, await ws.receive_json()

    async def test_healthz(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_session_ready_reports_the_user(self):
        ws, ready = await self._start_session("u7")

        self.assertEqual(ready["t"], "session.ready")
        self.assertEqual(ready["id"], "start1")
        self.assertEqual(ready["body"]["user"]["id"], "u7")
        await ws.close()

    async def test_first_frame_must_start_a_session(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": 1, "t": "rows.select", "id": "r1", "body": {"table": DIRECT_MESSAGES}})

        frame = await ws.receive_json()

        self.assertEqual(frame["t"], "error")
        self.assertEqual(frame["body"]["code"], "invalid_request")
        await ws.close()

    async def test_empty_token_is_rejected(self):
        ws, frame = await self._start_session("")
        self.assertEqual(frame["body"]["code"], "unauthorized")
        await ws.close()

        with self.assertRaises(NotAuthenticated):
            await self._remote("")

    async def test_unknown_and_malformed_requests_get_errors(self):
        ws, _ = await self._start_session()

        await ws.send_json({"v": 1, "t": "rows.explode", "id": "r1", "body": {}})
        unknown = await ws.receive_json()
        await ws.send_json({"v": 1, "t": "rows.insert", "id": "r2", "body": {}})
        malformed = await ws.receive_json()

        self.assertEqual((unknown["id"], unknown["body"]["code"]), ("r1", "invalid_request"))
        self.assertEqual((malformed["id"], malformed["body"]["code"]), ("r2", "invalid_request"))
        await ws.close()

    async def test_row_operations_round_trip(self):
        remote = await self._remote()
        self.assertEqual((await remote.current_user()).id, "u1")

        row = await remote.insert(DIRECT_MESSAGES, {"conversation_id": "u1_u2", "message_text": "hi"})
        updated = await remote.update(DIRECT_MESSAGES, row["id"], {"message_text": "hey"})
        receipt = await remote.upsert(
            "message_read_receipts", {"message_id": row["id"], "user_id": "u2"}, ["message_id", "user_id"]
        )

        self.assertEqual(updated["message_text"], "hey")
        self.assertEqual(receipt["message_id"], row["id"])
        rows = await remote.select(DIRECT_MESSAGES, {"conversation_id": "u1_u2"}, ascending=False, limit=5)
        self.assertEqual([r["id"] for r in rows], [row["id"]])

        await remote.delete(DIRECT_MESSAGES, row["id"])
        self.assertEqual(await remote.select(DIRECT_MESSAGES), [])

    async def test_service_errors_map_to_exceptions(self):
        remote = await self._remote()
        self.service.failing_tables.add(DIRECT_MESSAGES)

        with self.assertRaises(QueryFailed):
            await remote.select(DIRECT_MESSAGES)
        with self.assertRaises(WriteFailed):
            await remote.insert(DIRECT_MESSAGES, {"message_text": "x"})

    async def test_change_feed_delivers_filtered_events(self):
        remote = await self._remote()
        events = []
        statuses = []

        feed = await remote.subscribe_changes(DIRECT_MESSAGES, DM.filters(), events.append, statuses.append)
        await self.service.insert(DIRECT_MESSAGES, {"id": "other", "conversation_id": "u1_u9"})
        await self.service.insert(DIRECT_MESSAGES, {"id": "m1", "conversation_id": "u1_u2"})

        await wait_until(lambda: len(events) == 1)
        self.assertEqual(statuses, [ChannelStatus.SUBSCRIBED])
        self.assertEqual((events[0].kind, events[0].new["id"]), (ChangeKind.INSERT, "m1"))

        await feed.close()
        await remote.select(DIRECT_MESSAGES)
        self.assertEqual(self.service.live_feed_count(), 0)

    async def test_broadcast_reaches_other_clients(self):
        sender = await self._remote("u1")
        listener = await self._remote("u2")
        payloads = []
        await listener.subscribe_broadcast(DM.channel_name, "new_message", payloads.append)

        await sender.broadcast(DM.channel_name, "new_message", {"message": {"id": "m1"}})

        await wait_until(lambda: payloads == [{"message": {"id": "m1"}}])

    async def test_presence_is_shared_between_connections(self):
        first = PresenceTracker(await self._remote("u1"))
        second = PresenceTracker(await self._remote("u2"))

        await first.start(Identity(id="u1", metadata={"display_name": "Ana"}))
        await second.start(Identity(id="u2"))

        await wait_until(lambda: sorted(u.user_id for u in first.online_users) == ["u1", "u2"])
        self.assertEqual(sorted(u.user_id for u in second.online_users), ["u1", "u2"])

        await second.stop()
        await wait_until(lambda: [u.user_id for u in first.online_users] == ["u1"])
        await first.stop()

    async def test_chat_session_over_the_gateway(self):
        await self.service.insert(USER_PROFILES, {"id": "p-u1", "user_id": "u1", "display_name": "Ana"})
        remote = await self._remote("u1")
        config = fast_config(reconnect=ReconnectPolicy(initial_delay_s=0.01, max_attempts=1))
        manager = ChatSessionManager(remote, remote, config=config)

        try:
            state = await manager.open(DM)
            self.assertIs(state.connection_state, ConnectionState.CONNECTED)
            self.assertEqual(state.current_user.display_name, "Ana")

            message = await manager.send_message("over the wire")
            await wait_until(lambda: [m.id for m in state.messages] == [message.id])

            await remote.close()
            await wait_until(lambda: state.connection_state is ConnectionState.DEGRADED)
            self.assertEqual(state.error, "Connection closed")
            self.assertEqual([m.id for m in state.messages], [message.id])
        finally:
            await manager.close()


if __name__ == "__main__":
    unittest.main()
