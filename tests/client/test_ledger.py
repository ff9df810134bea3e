import unittest

from consult_relay.client.ledger import MessageLedger
from consult_relay.models import DeliveryState, Message, MessageKind


def _message(cid: str, *, server_id: str | None = None, seq: int | None = None, sender: str = "pat-bo") -> Message:
    return Message(
        correlation_id=cid,
        session_id="s1",
        sender_id=sender,
        kind=MessageKind.TEXT,
        body=f"body {cid}",
        sent_at="2026-01-01T00:00:00.000+00:00",
        server_id=server_id,
        store_seq=seq,
    )


class MessageLedgerTests(unittest.TestCase):
    def test_local_echo_then_confirm_is_one_message(self) -> None:
        ledger = MessageLedger("s1")
        ledger.add_local(_message("c1"))
        confirmed = ledger.confirm("c1", "m-1", 1)

        self.assertIsNotNone(confirmed)
        self.assertEqual(DeliveryState.DELIVERED, confirmed.delivery_state)
        self.assertIs(confirmed, ledger.get("m-1"))
        self.assertIs(confirmed, ledger.get("c1"))
        self.assertEqual(1, len(ledger))

    def test_live_event_and_backfill_copy_are_deduplicated(self) -> None:
        ledger = MessageLedger("s1")
        self.assertTrue(ledger.receive(_message("c1")))
        fresh = ledger.merge_backfill([_message("c1", server_id="m-1", seq=1), _message("c2", server_id="m-2", seq=2)])

        self.assertEqual(["c2"], [m.correlation_id for m in fresh])
        self.assertEqual(2, len(ledger))
        upgraded = ledger.get("c1")
        self.assertEqual("m-1", upgraded.server_id)
        self.assertEqual(DeliveryState.DELIVERED, upgraded.delivery_state)

    def test_duplicate_merges_read_receipts(self) -> None:
        ledger = MessageLedger("s1")
        ledger.receive(_message("c1", server_id="m-1", seq=1))
        again = _message("c1", server_id="m-1", seq=1)
        again.read_by["dr-ada"] = "2026-01-01T00:01:00.000+00:00"

        self.assertFalse(ledger.receive(again))
        self.assertIn("dr-ada", ledger.get("m-1").read_by)

    def test_fail_leaves_delivered_messages_alone(self) -> None:
        ledger = MessageLedger("s1")
        ledger.add_local(_message("c1"))
        ledger.add_local(_message("c2"))
        ledger.confirm("c1", "m-1", 1)

        self.assertIsNone(ledger.fail("c1"))
        self.assertIsNone(ledger.fail("unknown"))
        failed = ledger.fail("c2")
        self.assertEqual(DeliveryState.FAILED, failed.delivery_state)
        self.assertEqual([], ledger.pending())

    def test_timeline_orders_confirmed_by_store_then_pending_by_arrival(self) -> None:
        ledger = MessageLedger("s1")
        ledger.add_local(_message("local-a", sender="dr-ada"))
        ledger.receive(_message("c3", server_id="m-3", seq=3))
        ledger.add_local(_message("local-b", sender="dr-ada"))
        ledger.receive(_message("c1", server_id="m-1", seq=1))

        self.assertEqual(
            ["c1", "c3", "local-a", "local-b"],
            [m.correlation_id for m in ledger.timeline()],
        )
        self.assertEqual(3, ledger.last_store_seq)

    def test_mark_read_is_idempotent(self) -> None:
        ledger = MessageLedger("s1")
        ledger.receive(_message("c1", server_id="m-1", seq=1))

        self.assertTrue(ledger.mark_read("m-1", "dr-ada", "t1"))
        self.assertFalse(ledger.mark_read("m-1", "dr-ada", "t2"))
        self.assertFalse(ledger.mark_read("m-404", "dr-ada", "t1"))
        self.assertEqual({"dr-ada": "t1"}, ledger.get("m-1").read_by)

    def test_remove_drops_both_keys(self) -> None:
        ledger = MessageLedger("s1")
        ledger.receive(_message("c1", server_id="m-1", seq=1))
        removed = ledger.remove("m-1")

        self.assertTrue(removed.deleted)
        self.assertIsNone(ledger.get("m-1"))
        self.assertIsNone(ledger.get("c1"))
        self.assertIsNone(ledger.remove("m-1"))
        self.assertEqual(0, len(ledger))


if __name__ == "__main__":
    unittest.main()
