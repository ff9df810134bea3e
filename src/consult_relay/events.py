from __future__ import annotations

from collections import defaultdict

LIFECYCLE_NAMESPACE = "/consultation"
MESSAGES_NAMESPACE = "/messages"
NAMESPACES = (LIFECYCLE_NAMESPACE, MESSAGES_NAMESPACE)

# Hub -> client events
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"
SESSION_CANCELLED = "session-cancelled"
SESSION_CONFLICT = "session-conflict"
RATING_UNLOCKED = "rating-unlocked"
TYPING_STARTED = "typing-started"
TYPING_STOPPED = "typing-stopped"
NEW_MESSAGE = "new-message"
MESSAGE_CONFIRMED = "message-confirmed"
MESSAGE_FAILED = "message-failed"
MESSAGE_READ = "message-read"
MESSAGE_DELETED = "message-deleted"

# Client-side only, raised by the channel itself
CONNECTION_LOST = "connection-lost"
RECONNECTED = "reconnected"

# Client -> hub commands
CMD_JOIN = "join"
CMD_LEAVE = "leave"
CMD_START = "start"
CMD_END = "end"
CMD_CANCEL = "cancel"
CMD_SEND_MESSAGE = "send-message"
CMD_TYPING = "typing"
CMD_MARK_READ = "mark-read"
CMD_MARK_ALL_READ = "mark-all-read"
CMD_DELETE_MESSAGE = "delete-message"
CMD_BACKFILL = "backfill"

LIFECYCLE_COMMANDS = frozenset({CMD_JOIN, CMD_LEAVE, CMD_START, CMD_END, CMD_CANCEL})
MESSAGE_COMMANDS = frozenset(
    {
        CMD_JOIN,
        CMD_LEAVE,
        CMD_SEND_MESSAGE,
        CMD_TYPING,
        CMD_MARK_READ,
        CMD_MARK_ALL_READ,
        CMD_DELETE_MESSAGE,
        CMD_BACKFILL,
    }
)

EVENT_NAMESPACE = {
    PARTICIPANT_JOINED: LIFECYCLE_NAMESPACE,
    PARTICIPANT_LEFT: LIFECYCLE_NAMESPACE,
    SESSION_STARTED: LIFECYCLE_NAMESPACE,
    SESSION_ENDED: LIFECYCLE_NAMESPACE,
    SESSION_CANCELLED: LIFECYCLE_NAMESPACE,
    SESSION_CONFLICT: LIFECYCLE_NAMESPACE,
    RATING_UNLOCKED: LIFECYCLE_NAMESPACE,
    TYPING_STARTED: MESSAGES_NAMESPACE,
    TYPING_STOPPED: MESSAGES_NAMESPACE,
    NEW_MESSAGE: MESSAGES_NAMESPACE,
    MESSAGE_CONFIRMED: MESSAGES_NAMESPACE,
    MESSAGE_FAILED: MESSAGES_NAMESPACE,
    MESSAGE_READ: MESSAGES_NAMESPACE,
    MESSAGE_DELETED: MESSAGES_NAMESPACE,
}


def commands_for(namespace: str) -> frozenset[str]:
    if namespace == LIFECYCLE_NAMESPACE:
        return LIFECYCLE_COMMANDS
    if namespace == MESSAGES_NAMESPACE:
        return MESSAGE_COMMANDS
    return frozenset()


def ok(**result) -> dict:
    return {"ok": True, **result}


def failed(error: dict) -> dict:
    return {"ok": False, "error": error}


class DeliverySequencer:
    """Per-session sequence numbers for one recipient connection."""

    def __init__(self):
        self._next: dict[str, int] = defaultdict(int)

    def next(self, session_id: str) -> int:
        self._next[session_id] += 1
        return self._next[session_id]


def stamp(event_payload: dict, session_id: str, seq: int) -> dict:
    return {**event_payload, "sessionId": session_id, "seq": seq}
