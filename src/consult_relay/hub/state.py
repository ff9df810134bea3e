from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from consult_relay.models import ConsultationSession, LiveParticipant


@dataclass
class MessageMeta:
    sender_id: str
    deleted: bool = False


@dataclass
class SessionState:
    """Process-local view of one session. Only its actor touches it."""

    session: ConsultationSession
    post: Callable[[Callable[[], Any]], None]
    message_horizon: int = 0
    participants: dict[str, LiveParticipant] = field(default_factory=dict)
    typing: dict[str, float] = field(default_factory=dict)
    transition_in_flight: bool = False
    correlations: dict[str, str | None] = field(default_factory=dict)
    messages: dict[str, MessageMeta] = field(default_factory=dict)
    reads: set[tuple[str, str]] = field(default_factory=set)
    reads_in_flight: set[tuple[str, str]] = field(default_factory=set)
    deletes_in_flight: set[str] = field(default_factory=set)
    lookups_in_flight: int = 0

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def is_idle(self) -> bool:
        """No one joined and no store round-trip still owed a continuation."""
        return not (
            self.participants
            or self.transition_in_flight
            or self.reads_in_flight
            or self.deletes_in_flight
            or self.lookups_in_flight
            or None in self.correlations.values()
        )
