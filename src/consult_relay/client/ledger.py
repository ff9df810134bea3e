from __future__ import annotations

import itertools

from consult_relay.models import DeliveryState, Message


class MessageLedger:
    """Client-side view of one session's messages.

    A message is known by its correlation id until the store assigns a
    server id; after that either key finds it. Live events and backfill
    pages both land here, so a message seen twice is stored once.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._by_correlation: dict[str, Message] = {}
        self._by_server: dict[str, Message] = {}
        self._arrival: dict[str, int] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._by_correlation)

    def get(self, key: str) -> Message | None:
        return self._by_server.get(key) or self._by_correlation.get(key)

    def add_local(self, message: Message) -> Message:
        message.delivery_state = DeliveryState.PENDING
        self._track(message)
        return message

    def confirm(self, correlation_id: str, server_id: str, store_seq: int | None) -> Message | None:
        message = self._by_correlation.get(correlation_id)
        if message is None:
            return None
        message.server_id = server_id
        message.store_seq = store_seq
        message.delivery_state = DeliveryState.DELIVERED
        self._by_server[server_id] = message
        return message

    def fail(self, correlation_id: str) -> Message | None:
        message = self._by_correlation.get(correlation_id)
        if message is None or message.delivery_state == DeliveryState.DELIVERED:
            return None
        message.delivery_state = DeliveryState.FAILED
        return message

    def receive(self, message: Message) -> bool:
        """Insert a message from the wire. Returns False if it was already known."""
        existing = None
        if message.server_id:
            existing = self._by_server.get(message.server_id)
        existing = existing or self._by_correlation.get(message.correlation_id)
        if existing is None:
            if message.server_id:
                message.delivery_state = DeliveryState.DELIVERED
            self._track(message)
            return True

        if message.server_id and not existing.server_id:
            existing.server_id = message.server_id
            existing.store_seq = message.store_seq
            existing.delivery_state = DeliveryState.DELIVERED
            self._by_server[message.server_id] = existing
        if message.store_seq is not None and existing.store_seq is None:
            existing.store_seq = message.store_seq
        for reader_id, at in message.read_by.items():
            existing.read_by.setdefault(reader_id, at)
        return False

    def merge_backfill(self, messages: list[Message]) -> list[Message]:
        return [message for message in messages if self.receive(message)]

    def mark_read(self, message_id: str, reader_id: str, at: str) -> bool:
        message = self.get(message_id)
        if message is None or reader_id in message.read_by:
            return False
        message.read_by[reader_id] = at
        return True

    def unread_count(self, reader_id: str) -> int:
        return sum(
            1
            for message in self._by_correlation.values()
            if message.sender_id != reader_id and reader_id not in message.read_by
        )

    def remove(self, message_id: str) -> Message | None:
        message = self.get(message_id)
        if message is None:
            return None
        message.deleted = True
        self._by_correlation.pop(message.correlation_id, None)
        self._arrival.pop(message.correlation_id, None)
        if message.server_id:
            self._by_server.pop(message.server_id, None)
        return message

    def pending(self) -> list[Message]:
        return [m for m in self.timeline() if m.delivery_state == DeliveryState.PENDING]

    def timeline(self) -> list[Message]:
        """Confirmed messages in store order, then unconfirmed ones in arrival order."""

        def order(message: Message) -> tuple[int, int]:
            if message.store_seq is not None:
                return (0, message.store_seq)
            return (1, self._arrival[message.correlation_id])

        return sorted(self._by_correlation.values(), key=order)

    @property
    def last_store_seq(self) -> int:
        return max((m.store_seq or 0 for m in self._by_correlation.values()), default=0)

    def _track(self, message: Message) -> None:
        self._by_correlation[message.correlation_id] = message
        self._arrival[message.correlation_id] = next(self._counter)
        if message.server_id:
            self._by_server[message.server_id] = message
