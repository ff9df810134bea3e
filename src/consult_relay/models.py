from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum

from consult_relay.errors import BadRequest

MAX_BODY_CHARS = 2000


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class SessionKind(str, Enum):
    AUDIO_VIDEO = "AUDIO_VIDEO"
    TEXT = "TEXT"


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


class Role(str, Enum):
    CLINICIAN = "CLINICIAN"
    PATIENT = "PATIENT"


class MessageKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"


class DeliveryState(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role


@dataclass(frozen=True)
class ConsultationSession:
    id: str
    kind: SessionKind
    status: SessionStatus
    scheduled_at: str
    participant_roles: dict[str, Role]
    started_at: str | None = None
    ended_at: str | None = None
    rating_unlocked: bool = False

    def role_of(self, user_id: str) -> Role | None:
        return self.participant_roles.get(user_id)

    def with_status(
        self,
        status: SessionStatus,
        *,
        started_at: str | None = None,
        ended_at: str | None = None,
    ) -> ConsultationSession:
        keeps_start = status in (SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED)
        return replace(
            self,
            status=status,
            started_at=(started_at or self.started_at) if keeps_start else None,
            ended_at=ended_at if ended_at is not None else self.ended_at,
            rating_unlocked=self.rating_unlocked or status == SessionStatus.COMPLETED,
        )

    def to_payload(self) -> dict:
        return {
            "sessionId": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "scheduledAt": self.scheduled_at,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "ratingUnlocked": self.rating_unlocked,
            "participantRoles": {uid: role.value for uid, role in self.participant_roles.items()},
        }

    @classmethod
    def from_payload(cls, payload: dict) -> ConsultationSession:
        return cls(
            id=str(payload["sessionId"]),
            kind=SessionKind(payload["kind"]),
            status=SessionStatus(payload["status"]),
            scheduled_at=str(payload["scheduledAt"]),
            participant_roles={
                str(uid): Role(role) for uid, role in (payload.get("participantRoles") or {}).items()
            },
            started_at=payload.get("startedAt"),
            ended_at=payload.get("endedAt"),
            rating_unlocked=bool(payload.get("ratingUnlocked", False)),
        )


@dataclass
class LiveParticipant:
    user_id: str
    role: Role
    connection_ids: set[str] = field(default_factory=set)


@dataclass
class Message:
    correlation_id: str
    session_id: str
    sender_id: str
    kind: MessageKind
    body: str
    sent_at: str
    attachment_ref: str | None = None
    reply_to: str | None = None
    server_id: str | None = None
    store_seq: int | None = None
    delivery_state: DeliveryState = DeliveryState.PENDING
    read_by: dict[str, str] = field(default_factory=dict)
    deleted: bool = False

    @property
    def dedupe_key(self) -> str:
        return self.server_id or self.correlation_id

    def to_payload(self) -> dict:
        return {
            "sessionId": self.session_id,
            "correlationId": self.correlation_id,
            "serverId": self.server_id,
            "seqInStore": self.store_seq,
            "senderId": self.sender_id,
            "kind": self.kind.value,
            "body": self.body,
            "attachmentRef": self.attachment_ref,
            "replyTo": self.reply_to,
            "sentAt": self.sent_at,
            "deliveryState": self.delivery_state.value,
            "readBy": dict(self.read_by),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> Message:
        return cls(
            correlation_id=str(payload["correlationId"]),
            session_id=str(payload["sessionId"]),
            sender_id=str(payload["senderId"]),
            kind=MessageKind(payload.get("kind", MessageKind.TEXT.value)),
            body=str(payload.get("body", "")),
            sent_at=str(payload.get("sentAt", "")),
            attachment_ref=payload.get("attachmentRef"),
            reply_to=payload.get("replyTo"),
            server_id=payload.get("serverId"),
            store_seq=payload.get("seqInStore"),
            delivery_state=DeliveryState(payload.get("deliveryState", DeliveryState.PENDING.value)),
            read_by=dict(payload.get("readBy") or {}),
        )


def validate_outgoing(kind: MessageKind, body: str, attachment_ref: str | None) -> str:
    """Normalize a message body, raising BadRequest for anything the store would refuse."""
    text = (body or "").strip()
    if len(text) > MAX_BODY_CHARS:
        raise BadRequest(f"message body exceeds {MAX_BODY_CHARS} characters")
    if kind == MessageKind.TEXT and not text:
        raise BadRequest("text message body is empty")
    if kind in (MessageKind.IMAGE, MessageKind.FILE) and not (attachment_ref or "").strip():
        raise BadRequest(f"{kind.value} message requires an attachment reference")
    return text

