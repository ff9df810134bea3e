import asyncio
import unittest

from consult_relay.events import LIFECYCLE_NAMESPACE as LIFECYCLE
from consult_relay.events import MESSAGES_NAMESPACE as MESSAGES
from consult_relay.store.sqlite_store import SqliteRecordStore
from relay_testkit import CLINICIAN, PATIENT, HubHarness, make_hub, seed_session, settle, wait_for


class _FlakyAppendStore:
    """Fails the durable write for any message whose body is ``boom``."""

    def __init__(self, inner: SqliteRecordStore) -> None:
        self._inner = inner

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    async def append_message(self, session_id, message):
        if message.body == "boom":
            raise OSError("disk full")
        return await self._inner.append_message(session_id, message)


class MessageRelayTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = SqliteRecordStore(":memory:")
        seed_session(self._store)

    def tearDown(self) -> None:
        self._store.close()

    def test_send_fans_out_then_confirms(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)
            ack = await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="  hi  ")
            await settle()
            await harness.hub.close()
            return harness, clinician, patient, ack

        harness, clinician, patient, ack = asyncio.run(scenario())
        self.assertEqual({"ok": True, "correlationId": "c1", "serverId": None, "liveRecipients": 1}, ack)
        self.assertEqual(["new-message", "message-confirmed"], harness.sinks[clinician].names())
        new_message = harness.sinks[clinician].named("new-message")[0]
        self.assertEqual("hi", new_message["body"])
        self.assertEqual(PATIENT, new_message["senderId"])
        self.assertEqual(["message-confirmed"], harness.sinks[patient].names())
        confirmed = harness.sinks[patient].named("message-confirmed")[0]
        self.assertEqual("c1", confirmed["correlationId"])
        self.assertEqual(1, confirmed["seqInStore"])
        self.assertIsNotNone(confirmed["serverId"])

    def test_per_sender_order_survives_interleaving(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            watcher = await harness.joined("tok-clinician", MESSAGES)
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)

            async def burst(connection_id: str, prefix: str) -> None:
                for n in range(6):
                    await harness.call(
                        connection_id, "send-message", sessionId="s1", correlationId=f"{prefix}{n}", body=f"{prefix}{n}"
                    )

            await asyncio.gather(burst(clinician, "c"), burst(patient, "p"))
            await settle()
            await harness.hub.close()
            return harness, watcher, patient

        harness, watcher, patient = asyncio.run(scenario())
        seen_by_patient = [p["body"] for p in harness.sinks[patient].named("new-message")]
        self.assertEqual([f"c{n}" for n in range(6)], seen_by_patient)
        stored = asyncio.run(self._store.backfill_messages("s1"))
        self.assertEqual([f"p{n}" for n in range(6)], [m.body for m in stored if m.sender_id == PATIENT])
        self.assertEqual([f"c{n}" for n in range(6)], [m.body for m in stored if m.sender_id == CLINICIAN])
        seqs = [p["seq"] for _, p in harness.sinks[watcher].events]
        self.assertEqual(list(range(1, len(seqs) + 1)), seqs)

    def test_failed_write_reaches_sender_only(self) -> None:
        flaky = _FlakyAppendStore(self._store)

        async def scenario():
            harness = HubHarness(make_hub(flaky))
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)
            await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="boom")
            await settle()
            await harness.hub.close()
            return harness, clinician, patient

        harness, clinician, patient = asyncio.run(scenario())
        failed = harness.sinks[patient].named("message-failed")
        self.assertEqual(1, len(failed))
        self.assertEqual("c1", failed[0]["correlationId"])
        self.assertEqual("delivery_failed", failed[0]["error"]["code"])
        self.assertNotIn("message-failed", harness.sinks[clinician].names())
        self.assertNotIn("message-confirmed", harness.sinks[clinician].names())

    def test_duplicate_correlation_id_is_relayed_once(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)
            first = await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="hi")
            await settle()
            again = await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="hi")
            await settle()
            await harness.hub.close()
            return harness, clinician, first, again

        harness, clinician, first, again = asyncio.run(scenario())
        self.assertNotIn("duplicate", first)
        self.assertTrue(again["duplicate"])
        self.assertIsNotNone(again["serverId"])
        self.assertEqual(1, len(harness.sinks[clinician].named("new-message")))
        self.assertEqual(1, len(asyncio.run(self._store.backfill_messages("s1"))))

    def test_offline_recipient_gets_message_once_via_backfill(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician_life = await harness.joined("tok-clinician", LIFECYCLE)
            await harness.call(clinician_life, "start", sessionId="s1")
            await harness.hub.disconnect(clinician_life)

            patient = await harness.joined("tok-patient", MESSAGES)
            sent = await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="hello")
            await settle()

            clinician = await harness.connect("tok-clinician", MESSAGES)
            joined = await harness.call(clinician, "join", sessionId="s1", sinceSeq=0)
            await settle()
            await harness.hub.close()
            return harness, clinician, sent, joined

        harness, clinician, sent, joined = asyncio.run(scenario())
        self.assertEqual(0, sent["liveRecipients"])
        self.assertEqual(["hello"], [m["body"] for m in joined["messages"]])
        self.assertEqual("DELIVERED", joined["messages"][0]["deliveryState"])
        self.assertEqual([], harness.sinks[clinician].named("new-message"))
        self.assertEqual([], harness.sinks[clinician].named("message-confirmed"))

    def test_backfill_since_seq(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            patient = await harness.joined("tok-patient", MESSAGES)
            for n in range(3):
                await harness.call(patient, "send-message", sessionId="s1", correlationId=f"c{n}", body=f"m{n}")
            await settle()
            page = await harness.call(patient, "backfill", sessionId="s1", sinceSeq=1)
            await harness.hub.close()
            return page

        page = asyncio.run(scenario())
        self.assertEqual(["m1", "m2"], [m["body"] for m in page["messages"]])

    def test_validation_and_terminal_sessions(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician_life = await harness.joined("tok-clinician", LIFECYCLE)
            patient = await harness.joined("tok-patient", MESSAGES)
            empty = await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="   ")
            image = await harness.call(patient, "send-message", sessionId="s1", correlationId="c2", kind="IMAGE")
            no_id = await harness.call(patient, "send-message", sessionId="s1", body="hi")
            too_long = await harness.call(patient, "send-message", sessionId="s1", correlationId="c3", body="x" * 2001)
            await harness.call(clinician_life, "cancel", sessionId="s1")
            closed = await harness.call(patient, "send-message", sessionId="s1", correlationId="c4", body="late")
            await harness.hub.close()
            return empty, image, no_id, too_long, closed

        empty, image, no_id, too_long, closed = asyncio.run(scenario())
        for ack in (empty, image, no_id, too_long):
            self.assertEqual("bad_request", ack["error"]["code"])
        self.assertEqual("invalid_transition", closed["error"]["code"])

    def test_reply_to_must_name_an_earlier_message_of_the_session(self) -> None:
        seed_session(self._store, "s2")

        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)
            elsewhere = await harness.joined("tok-patient", MESSAGES, session_id="s2")
            await harness.call(elsewhere, "send-message", sessionId="s2", correlationId="x1", body="other room")
            await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="first")
            await settle()
            foreign_id = harness.sinks[elsewhere].named("message-confirmed")[0]["serverId"]
            local_id = harness.sinks[clinician].named("message-confirmed")[0]["serverId"]
            crossed = await harness.call(
                patient, "send-message", sessionId="s1", correlationId="c2", body="re", replyTo=foreign_id
            )
            missing = await harness.call(
                patient, "send-message", sessionId="s1", correlationId="c3", body="re", replyTo="nope"
            )
            blank = await harness.call(
                patient, "send-message", sessionId="s1", correlationId="c4", body="re", replyTo=" "
            )
            threaded = await harness.call(
                clinician, "send-message", sessionId="s1", correlationId="c5", body="answer", replyTo=local_id
            )
            await settle()
            await harness.hub.close()
            return harness, clinician, patient, local_id, crossed, missing, blank, threaded

        harness, clinician, patient, local_id, crossed, missing, blank, threaded = asyncio.run(scenario())
        for ack in (crossed, missing, blank):
            self.assertEqual("bad_request", ack["error"]["code"])
        self.assertTrue(threaded["ok"])
        self.assertEqual(["first"], [m["body"] for m in harness.sinks[clinician].named("new-message")])
        self.assertEqual([local_id], [m["replyTo"] for m in harness.sinks[patient].named("new-message")])
        stored = asyncio.run(self._store.backfill_messages("s1"))
        self.assertEqual(["first", "answer"], [m.body for m in stored])
        self.assertEqual(local_id, stored[1].reply_to)

    def test_idle_session_releases_its_actor_and_writer(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician_life = await harness.joined("tok-clinician", LIFECYCLE)
            patient = await harness.joined("tok-patient", MESSAGES)
            await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="hello")
            await settle()
            first_id = harness.sinks[patient].named("message-confirmed")[0]["serverId"]
            busy = (harness.hub.active_sessions, harness.hub._relay.writer_sessions)

            await harness.call(clinician_life, "leave", sessionId="s1")
            await harness.hub.disconnect(patient)
            await wait_for(lambda: not harness.hub.active_sessions)
            released = harness.hub._relay.writer_sessions

            clinician = await harness.connect("tok-clinician", MESSAGES)
            rejoined = await harness.call(clinician, "join", sessionId="s1", sinceSeq=1)
            reply = await harness.call(
                clinician, "send-message", sessionId="s1", correlationId="c2", body="hi back", replyTo=first_id
            )
            await settle()
            page = await harness.call(clinician, "backfill", sessionId="s1", sinceSeq=0)
            await harness.hub.close()
            return busy, released, rejoined, reply, page

        busy, released, rejoined, reply, page = asyncio.run(scenario())
        self.assertEqual((["s1"], ["s1"]), busy)
        self.assertEqual([], released)
        self.assertEqual([], rejoined["messages"])
        self.assertTrue(reply["ok"])
        self.assertEqual(["hello", "hi back"], [m["body"] for m in page["messages"]])
        self.assertEqual(page["messages"][0]["serverId"], page["messages"][1]["replyTo"])


class MessageDeletionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = SqliteRecordStore(":memory:")
        seed_session(self._store)

    def tearDown(self) -> None:
        self._store.close()

    def test_sender_deletes_once_and_others_cannot(self) -> None:
        async def scenario():
            harness = HubHarness(make_hub(self._store))
            clinician = await harness.joined("tok-clinician", MESSAGES)
            patient = await harness.joined("tok-patient", MESSAGES)
            await harness.call(patient, "send-message", sessionId="s1", correlationId="c1", body="oops")
            await settle()
            server_id = harness.sinks[clinician].named("message-confirmed")[0]["serverId"]
            by_other = await harness.call(clinician, "delete-message", sessionId="s1", messageId=server_id)
            first = await harness.call(patient, "delete-message", sessionId="s1", messageId=server_id)
            second = await harness.call(patient, "delete-message", sessionId="s1", messageId=server_id)
            missing = await harness.call(patient, "delete-message", sessionId="s1", messageId="nope")
            await settle()
            await harness.hub.close()
            return harness, clinician, by_other, first, second, missing

        harness, clinician, by_other, first, second, missing = asyncio.run(scenario())
        self.assertEqual("invalid_transition", by_other["error"]["code"])
        self.assertFalse(first["alreadyDeleted"])
        self.assertTrue(second["alreadyDeleted"])
        self.assertEqual("not_found", missing["error"]["code"])
        self.assertEqual(1, len(harness.sinks[clinician].named("message-deleted")))
        self.assertEqual([], asyncio.run(self._store.backfill_messages("s1")))


if __name__ == "__main__":
    unittest.main()
