from __future__ import annotations

from typing import Protocol, runtime_checkable

from consult_relay.models import ConsultationSession, Message, SessionStatus


@runtime_checkable
class DurableStore(Protocol):
    """Authoritative record store the relay writes through to."""

    async def read_session(self, session_id: str) -> ConsultationSession | None: ...

    async def compare_and_set_status(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_status: SessionStatus,
        *,
        started_at: str | None = None,
        ended_at: str | None = None,
    ) -> bool:
        """Apply the transition only if the stored status still equals ``expected_status``."""
        ...

    async def append_message(self, session_id: str, message: Message) -> tuple[str, int]:
        """Persist a message and return ``(server_id, seq)``.

        Appending the same correlation id twice returns the first record.
        """
        ...

    async def backfill_messages(
        self,
        session_id: str,
        since_seq: int = 0,
        until_seq: int | None = None,
    ) -> list[Message]: ...

    async def latest_message_seq(self, session_id: str) -> int: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def mark_message_read(self, message_id: str, reader_id: str, read_at: str) -> bool: ...

    async def delete_message(self, message_id: str) -> bool: ...
