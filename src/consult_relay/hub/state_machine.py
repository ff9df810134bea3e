from __future__ import annotations

import asyncio

from loguru import logger

from consult_relay.errors import Conflict, InvalidTransition, RelayError, ServerError, TransitionTimeout
from consult_relay.events import (
    RATING_UNLOCKED,
    SESSION_CANCELLED,
    SESSION_CONFLICT,
    SESSION_ENDED,
    SESSION_STARTED,
)
from consult_relay.hub.fanout import Fanout
from consult_relay.hub.state import SessionState
from consult_relay.models import ConsultationSession, Role, SessionStatus, utc_now
from consult_relay.store.base import DurableStore

START = "start"
END = "end"
CANCEL = "cancel"

_TRANSITIONS: dict[tuple[SessionStatus, str], SessionStatus] = {
    (SessionStatus.SCHEDULED, START): SessionStatus.IN_PROGRESS,
    (SessionStatus.SCHEDULED, CANCEL): SessionStatus.CANCELLED,
    (SessionStatus.IN_PROGRESS, END): SessionStatus.COMPLETED,
    (SessionStatus.IN_PROGRESS, CANCEL): SessionStatus.CANCELLED,
}

_EVENT_FOR_STATUS = {
    SessionStatus.IN_PROGRESS: SESSION_STARTED,
    SessionStatus.COMPLETED: SESSION_ENDED,
    SessionStatus.CANCELLED: SESSION_CANCELLED,
}

ACTIONS = frozenset({START, END, CANCEL})


def require_clinician(session: ConsultationSession, action: str, actor_id: str) -> None:
    if session.role_of(actor_id) != Role.CLINICIAN:
        raise InvalidTransition(f"{action} requires the clinician of session {session.id}")


def resolve_transition(session: ConsultationSession, action: str, actor_id: str) -> SessionStatus:
    require_clinician(session, action, actor_id)
    target = _TRANSITIONS.get((session.status, action))
    if target is None:
        raise InvalidTransition(f"cannot {action} a session in {session.status.value}")
    return target


def apply_transition(session: ConsultationSession, target: SessionStatus, at: str) -> ConsultationSession:
    if target == SessionStatus.IN_PROGRESS:
        return session.with_status(target, started_at=at)
    return session.with_status(target, ended_at=at)


class SessionStateMachine:
    """Optimistic transitions on the cached read model, confirmed by compare-and-set.

    Transitions are never retried here; a lost race or a timeout rolls the
    cache back and the caller decides what to do next.
    """

    def __init__(self, store: DurableStore, fanout: Fanout, *, timeout_seconds: float = 10.0):
        self._store = store
        self._fanout = fanout
        self._timeout_seconds = timeout_seconds

    def request(
        self,
        state: SessionState,
        action: str,
        actor_id: str,
        *,
        expected_status: SessionStatus | None = None,
    ) -> asyncio.Future:
        require_clinician(state.session, action, actor_id)
        if expected_status is not None and expected_status != state.session.status:
            raise Conflict(
                f"session {state.session_id} is {state.session.status.value}, not {expected_status.value}",
                details={"session": state.session.to_payload()},
            )
        if state.transition_in_flight:
            raise Conflict(
                f"session {state.session_id} has a transition awaiting confirmation",
                details={"session": state.session.to_payload()},
            )

        target = resolve_transition(state.session, action, actor_id)
        previous = state.session
        optimistic = apply_transition(previous, target, utc_now())
        state.session = optimistic
        state.transition_in_flight = True
        logger.info(
            f"Session {state.session_id}: {actor_id} requested {action} "
            f"({previous.status.value} -> {target.value})"
        )

        result: asyncio.Future = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._confirm(previous, optimistic))
        task.add_done_callback(
            lambda done: state.post(lambda: self._settle(state, previous, optimistic, done, result))
        )
        return result

    async def _confirm(
        self,
        previous: ConsultationSession,
        optimistic: ConsultationSession,
    ) -> ConsultationSession | None:
        """Returns None when the write applied, else the store's authoritative session."""
        try:
            applied = await asyncio.wait_for(
                self._store.compare_and_set_status(
                    previous.id,
                    previous.status,
                    optimistic.status,
                    started_at=optimistic.started_at,
                    ended_at=optimistic.ended_at,
                ),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as ex:
            raise TransitionTimeout(
                f"no confirmation for session {previous.id} within {self._timeout_seconds:.0f}s"
            ) from ex
        if applied:
            return None
        return await self._store.read_session(previous.id) or previous

    def _settle(
        self,
        state: SessionState,
        previous: ConsultationSession,
        optimistic: ConsultationSession,
        done: asyncio.Task,
        result: asyncio.Future,
    ) -> None:
        state.transition_in_flight = False
        error = done.exception() if not done.cancelled() else TransitionTimeout("confirmation cancelled")

        if error is not None:
            state.session = previous
            logger.warning(f"Session {state.session_id}: rolled back to {previous.status.value}: {error}")
            if not isinstance(error, RelayError):
                error = ServerError(f"store rejected transition: {error}")
            if not result.done():
                result.set_exception(error)
            return

        authoritative = done.result()
        if authoritative is not None:
            state.session = authoritative
            logger.warning(
                f"Session {state.session_id}: lost compare-and-set, store says {authoritative.status.value}"
            )
            self._fanout.broadcast(
                state,
                SESSION_CONFLICT,
                {"session": authoritative.to_payload(), "rejected": optimistic.status.value},
            )
            if not result.done():
                result.set_exception(
                    Conflict(
                        f"session {state.session_id} changed concurrently",
                        details={"session": authoritative.to_payload()},
                    )
                )
            return

        logger.info(f"Session {state.session_id}: confirmed {optimistic.status.value}")
        payload = {"session": optimistic.to_payload()}
        self._fanout.broadcast(state, _EVENT_FOR_STATUS[optimistic.status], payload)
        if optimistic.status == SessionStatus.COMPLETED:
            patients = [uid for uid, role in optimistic.participant_roles.items() if role == Role.PATIENT]
            self._fanout.broadcast(state, RATING_UNLOCKED, {"userIds": patients}, only_users=patients)
        if not result.done():
            result.set_result({"session": optimistic.to_payload()})
