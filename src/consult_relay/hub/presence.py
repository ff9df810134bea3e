from __future__ import annotations

from loguru import logger

from consult_relay.errors import Unauthorized
from consult_relay.events import PARTICIPANT_JOINED, PARTICIPANT_LEFT
from consult_relay.hub.fanout import Fanout, HubConnection
from consult_relay.hub.state import SessionState
from consult_relay.models import LiveParticipant, utc_now


class PresenceTracker:
    def __init__(self, fanout: Fanout):
        self._fanout = fanout

    def join(self, state: SessionState, connection: HubConnection) -> list[dict]:
        user_id = connection.user_id
        role = state.session.role_of(user_id)
        if role is None:
            raise Unauthorized(f"user {user_id} is not a participant of session {state.session_id}")

        participant = state.participants.get(user_id)
        first_connection = participant is None
        if participant is None:
            participant = LiveParticipant(user_id=user_id, role=role)
            state.participants[user_id] = participant
        participant.connection_ids.add(connection.connection_id)
        connection.sessions.add(state.session_id)

        if first_connection:
            logger.info(f"Session {state.session_id}: {role.value} {user_id} joined")
            self._fanout.broadcast(
                state,
                PARTICIPANT_JOINED,
                {"userId": user_id, "role": role.value, "at": utc_now()},
                exclude_user=user_id,
            )
        return self.snapshot(state)

    def leave(self, state: SessionState, connection: HubConnection) -> bool:
        """Drop one connection. Returns True when the user's last connection is gone."""
        connection.sessions.discard(state.session_id)
        participant = state.participants.get(connection.user_id)
        if participant is None or connection.connection_id not in participant.connection_ids:
            return False

        participant.connection_ids.discard(connection.connection_id)
        if participant.connection_ids:
            return False

        del state.participants[participant.user_id]
        logger.info(f"Session {state.session_id}: {participant.role.value} {participant.user_id} left")
        self._fanout.broadcast(
            state,
            PARTICIPANT_LEFT,
            {"userId": participant.user_id, "role": participant.role.value, "at": utc_now()},
            exclude_user=participant.user_id,
        )
        return True

    def is_joined(self, state: SessionState, connection: HubConnection) -> bool:
        participant = state.participants.get(connection.user_id)
        return participant is not None and connection.connection_id in participant.connection_ids

    def snapshot(self, state: SessionState) -> list[dict]:
        return [
            {
                "userId": p.user_id,
                "role": p.role.value,
                "connections": len(p.connection_ids),
            }
            for p in sorted(state.participants.values(), key=lambda p: p.user_id)
        ]
