import asyncio
import unittest

from consult_relay.errors import ConnectionLost, InvalidTransition, TransportLoss, Unauthorized
from consult_relay.events import LIFECYCLE_NAMESPACE as LIFECYCLE
from consult_relay.events import MESSAGES_NAMESPACE as MESSAGES
from consult_relay.store.sqlite_store import SqliteRecordStore
from consult_relay.transport.channel import BackoffPolicy, ConnectionManager
from consult_relay.transport.local import LocalLink, LocalTransport
from relay_testkit import HubHarness, make_hub, seed_session, settle, wait_for

FAST = BackoffPolicy(base_seconds=0.001, cap_seconds=0.01, max_attempts=5)


class ChannelTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = SqliteRecordStore(":memory:")
        seed_session(self._store)

    def tearDown(self) -> None:
        self._store.close()

    def test_rejected_credentials_fail_connect_without_retry(self) -> None:
        async def scenario() -> int:
            hub = make_hub(self._store)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=FAST)
            try:
                await manager.connect(LIFECYCLE, {"token": "forged"})
            finally:
                await hub.close()
            return len(link.transports)

        with self.assertRaises(Unauthorized):
            asyncio.run(scenario())

    def test_send_unwraps_acks_and_raises_rejections(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            manager = ConnectionManager(LocalLink(hub), backoff=FAST)
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            joined = await channel.send("join", {"sessionId": "s1"})
            try:
                await channel.send("start", {"sessionId": "s1"})
            finally:
                await manager.close()
                await hub.close()
            return joined

        with self.assertRaises(InvalidTransition):
            asyncio.run(scenario())

    def test_subscribe_and_unsubscribe(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            harness = HubHarness(hub)
            manager = ConnectionManager(LocalLink(hub), backoff=FAST)
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            await channel.send("join", {"sessionId": "s1"})
            seen: list[str] = []
            everything: list[str] = []
            unsubscribe = channel.subscribe("participant-joined", lambda event, payload: seen.append(payload["userId"]))
            channel.subscribe("*", lambda event, payload: everything.append(event))
            first = await harness.joined("tok-clinician", LIFECYCLE)
            await settle()
            unsubscribe()
            await hub.disconnect(first)
            await harness.joined("tok-clinician", LIFECYCLE)
            await settle()
            await manager.close()
            await hub.close()
            return seen, everything

        seen, everything = asyncio.run(scenario())
        self.assertEqual(["dr-ada"], seen)
        self.assertEqual(["participant-joined", "participant-left", "participant-joined"], everything)

    def test_reconnect_replays_sticky_joins(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=FAST)
            channel = await manager.connect(MESSAGES, {"token": "tok-patient"})
            replayed: list[dict] = []
            events: list[str] = []
            channel.subscribe("*", lambda event, payload: events.append(event))

            async def on_ack(result: dict) -> None:
                replayed.append(result)

            first = await channel.send_sticky("join:s1", "join", lambda: {"sessionId": "s1"}, on_ack)
            old_connection = channel.connection_id

            await link.sever_all(refusals=2)
            with self.assertRaises(TransportLoss):
                await channel.send("typing", {"sessionId": "s1"})
            await wait_for(lambda: channel.is_ready)
            typing = await channel.send("typing", {"sessionId": "s1"})
            new_connection = channel.connection_id
            live = len(link.transports)
            await manager.close()
            await hub.close()
            return first, replayed, events, typing, old_connection, new_connection, (link.dials, live)

        first, replayed, events, typing, old_connection, new_connection, dialled = asyncio.run(scenario())
        self.assertEqual("PATIENT", first["you"]["role"])
        self.assertEqual(1, len(replayed))
        self.assertIn("messages", replayed[0])
        self.assertIn("reconnected", events)
        self.assertTrue(typing["leadingEdge"])
        self.assertNotEqual(old_connection, new_connection)
        self.assertEqual((4, 1), dialled)

    def test_sticky_join_queued_while_down_goes_out_on_reconnect(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            harness = HubHarness(hub)
            clinician = await harness.joined("tok-clinician", LIFECYCLE)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=BackoffPolicy(base_seconds=0.05, cap_seconds=0.05, max_attempts=5))
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            await link.sever_all(refusals=1)
            queued = await channel.send_sticky("join:s1", "join", lambda: {"sessionId": "s1"})
            await wait_for(lambda: channel.is_ready)
            await settle()
            await manager.close()
            await hub.close()
            return queued, harness.sinks[clinician].named("participant-joined")

        queued, joined = asyncio.run(scenario())
        self.assertIsNone(queued)
        self.assertEqual(["pat-bo"], [p["userId"] for p in joined])

    def test_exhausted_reconnects_surface_connection_lost(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=BackoffPolicy(base_seconds=0.001, cap_seconds=0.002, max_attempts=3))
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            lost: list[dict] = []
            channel.subscribe("connection-lost", lambda event, payload: lost.append(payload))
            await link.sever_all(refusals=100)
            await wait_for(lambda: bool(lost))
            try:
                await channel.send("join", {"sessionId": "s1"})
            finally:
                await manager.close()
                await hub.close()
            return lost

        with self.assertRaises(ConnectionLost):
            asyncio.run(scenario())

    def test_exhausted_reconnect_payload_names_the_error(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=BackoffPolicy(base_seconds=0.001, cap_seconds=0.002, max_attempts=2))
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            lost: list[dict] = []
            channel.subscribe("connection-lost", lambda event, payload: lost.append(payload))
            await link.sever_all(refusals=100)
            await wait_for(lambda: bool(lost))
            await manager.close()
            await hub.close()
            return lost, (link.dials, len(link.transports))

        lost, dialled = asyncio.run(scenario())
        self.assertEqual("connection_lost", lost[0]["error"]["code"])
        self.assertEqual(1, len(lost))
        self.assertEqual((3, 0), dialled)


class _DroppedAckTransport(LocalTransport):
    async def call(self, event: str, payload: dict, *, timeout: float) -> dict:
        if event == "join" and self._link.dropped_joins > 0:
            self._link.dropped_joins -= 1
            raise TransportLoss(f"no ack for {event} within {timeout:.1f}s")
        return await super().call(event, payload, timeout=timeout)


class _DroppedAckLink(LocalLink):
    """Loses the ack of the next ``dropped_joins`` join commands."""

    def __init__(self, hub) -> None:
        super().__init__(hub)
        self.dropped_joins = 0

    def __call__(self) -> LocalTransport:
        transport = _DroppedAckTransport(self._hub, self)
        self.transports.append(transport)
        self.dials += 1
        return transport


class ReplayRecoveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = SqliteRecordStore(":memory:")
        seed_session(self._store)

    def tearDown(self) -> None:
        self._store.close()

    def test_lost_replay_ack_dials_again(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            harness = HubHarness(hub)
            clinician = await harness.joined("tok-clinician", LIFECYCLE)
            link = _DroppedAckLink(hub)
            manager = ConnectionManager(link, backoff=FAST)
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            replayed: list[dict] = []
            events: list[str] = []
            channel.subscribe("*", lambda event, payload: events.append(event))

            async def on_ack(result: dict) -> None:
                replayed.append(result)

            await channel.send_sticky("join:s1", "join", lambda: {"sessionId": "s1"}, on_ack)
            link.dropped_joins = 1
            await link.sever_all()
            await wait_for(lambda: channel.is_ready)
            ended = await channel.send("leave", {"sessionId": "s1"})
            await settle()
            live = len(link.transports)
            await manager.close()
            await hub.close()
            return harness.sinks[clinician], replayed, events, ended, (link.dials, live)

        sink, replayed, events, ended, dialled = asyncio.run(scenario())
        self.assertEqual(1, len(replayed))
        self.assertEqual(1, events.count("reconnected"))
        self.assertEqual({}, ended)
        self.assertEqual((3, 1), dialled)
        self.assertEqual(
            ["participant-joined", "participant-left", "participant-joined", "participant-left"],
            [name for name in sink.names() if name.startswith("participant-")],
        )

    def test_replay_that_never_acks_ends_in_connection_lost(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            link = _DroppedAckLink(hub)
            manager = ConnectionManager(link, backoff=BackoffPolicy(base_seconds=0.001, cap_seconds=0.002, max_attempts=3))
            channel = await manager.connect(LIFECYCLE, {"token": "tok-patient"})
            lost: list[dict] = []
            channel.subscribe("connection-lost", lambda event, payload: lost.append(payload))
            await channel.send_sticky("join:s1", "join", lambda: {"sessionId": "s1"})
            link.dropped_joins = 100
            await link.sever_all()
            await wait_for(lambda: bool(lost))
            error = None
            try:
                await channel.wait_ready()
            except ConnectionLost as ex:
                error = ex
            live = len(link.transports)
            await manager.close()
            await hub.close()
            return lost, error, (link.dials, live)

        lost, error, dialled = asyncio.run(scenario())
        self.assertIsInstance(error, ConnectionLost)
        self.assertEqual(["connection_lost"], [payload["error"]["code"] for payload in lost])
        self.assertEqual((4, 0), dialled)

    def test_failing_ack_handler_does_not_stall_reconnect(self) -> None:
        async def scenario():
            hub = make_hub(self._store)
            link = LocalLink(hub)
            manager = ConnectionManager(link, backoff=FAST)
            channel = await manager.connect(MESSAGES, {"token": "tok-patient"})
            events: list[str] = []
            channel.subscribe("reconnected", lambda event, payload: events.append(event))
            calls: list[int] = []

            async def on_ack(result: dict) -> None:
                calls.append(1)
                raise ValueError("bad snapshot")

            await channel.send_sticky("join:s1", "join", lambda: {"sessionId": "s1"}, on_ack)
            await link.sever_all()
            await wait_for(lambda: channel.is_ready)
            typing = await channel.send("typing", {"sessionId": "s1"})
            await settle()
            await manager.close()
            await hub.close()
            return events, calls, typing

        events, calls, typing = asyncio.run(scenario())
        self.assertEqual(["reconnected"], events)
        self.assertEqual(1, len(calls))
        self.assertTrue(typing["leadingEdge"])


if __name__ == "__main__":
    unittest.main()
