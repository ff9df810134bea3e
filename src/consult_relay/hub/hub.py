from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from loguru import logger

from consult_relay.auth import AuthProvider
from consult_relay.errors import BadRequest, NotFound, RelayError, ServerError, Unauthorized
from consult_relay.events import (
    CMD_BACKFILL,
    CMD_DELETE_MESSAGE,
    CMD_JOIN,
    CMD_LEAVE,
    CMD_MARK_ALL_READ,
    CMD_MARK_READ,
    CMD_SEND_MESSAGE,
    CMD_TYPING,
    LIFECYCLE_NAMESPACE,
    MESSAGES_NAMESPACE,
    NAMESPACES,
    commands_for,
    failed,
    ok,
)
from consult_relay.hub.actor import SessionActor
from consult_relay.hub.fanout import EventSink, Fanout, HubConnection
from consult_relay.hub.message_relay import MessageRelay
from consult_relay.hub.presence import PresenceTracker
from consult_relay.hub.read_receipts import ReadReceiptPropagator
from consult_relay.hub.state import SessionState
from consult_relay.hub.state_machine import ACTIONS, SessionStateMachine
from consult_relay.hub.typing_coordinator import TypingCoordinator
from consult_relay.models import SessionStatus
from consult_relay.store.base import DurableStore


class ConsultationHub:
    def __init__(
        self,
        store: DurableStore,
        auth: AuthProvider,
        *,
        typing_window_seconds: float = 3.0,
        transition_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._auth = auth
        self._fanout = Fanout()
        self._presence = PresenceTracker(self._fanout)
        self._typing = TypingCoordinator(self._fanout, window_seconds=typing_window_seconds, clock=clock)
        self._state_machine = SessionStateMachine(
            store, self._fanout, timeout_seconds=transition_timeout_seconds
        )
        self._relay = MessageRelay(store, self._fanout)
        self._receipts = ReadReceiptPropagator(store, self._fanout)
        self._actors: dict[str, SessionActor] = {}
        self._sweeper: asyncio.Task | None = None

    @property
    def active_sessions(self) -> list[str]:
        return sorted(self._actors)

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="typing-sweeper")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self._relay.close()
        for actor in list(self._actors.values()):
            await actor.close()
        self._actors.clear()
        for connection in self._fanout.all():
            self._fanout.unregister(connection.connection_id)
            await connection.close()

    async def connect(self, namespace: str, credentials: dict[str, Any], sink: EventSink) -> HubConnection:
        if namespace not in NAMESPACES:
            raise BadRequest(f"unknown namespace {namespace!r}")
        identity = await self._auth.authenticate(credentials)
        connection = HubConnection(uuid4().hex, identity, namespace, sink)
        connection.start()
        self._fanout.register(connection)
        logger.info(f"Connected {identity.role.value} {identity.user_id} on {namespace} ({connection.connection_id})")
        return connection

    async def disconnect(self, connection_id: str) -> None:
        connection = self._fanout.unregister(connection_id)
        if connection is None:
            return
        for session_id in sorted(connection.sessions):
            actor = self._actors.get(session_id)
            if actor is None:
                continue
            with contextlib.suppress(RelayError):
                await actor.submit(lambda a=actor, c=connection: self._drop(a.state, c))
        await connection.close()
        logger.info(f"Disconnected {connection.user_id} from {connection.namespace} ({connection_id})")

    async def dispatch(self, connection_id: str, event: str, payload: dict | None) -> dict:
        """Run one client command and return its ack."""
        connection = self._fanout.get(connection_id)
        if connection is None:
            return failed(Unauthorized("connection is not authenticated").to_payload())
        payload = payload if isinstance(payload, dict) else {}
        try:
            if event not in commands_for(connection.namespace):
                raise BadRequest(f"{event!r} is not accepted on {connection.namespace}")
            session_id = str(payload.get("sessionId") or "").strip()
            if not session_id:
                raise BadRequest("sessionId is required")
            actor = self._actor_for(session_id)
            result = await actor.submit(lambda: self._handle(actor, connection, event, payload))
            return ok(**(result or {}))
        except RelayError as ex:
            logger.debug(f"{event} from {connection.user_id} rejected: {ex.code} {ex.message}")
            return failed(ex.to_payload())
        except Exception as ex:
            logger.exception(f"{event} from {connection.user_id} failed: {ex}")
            return failed(ServerError("internal error").to_payload())

    def _actor_for(self, session_id: str) -> SessionActor:
        actor = self._actors.get(session_id)
        if actor is None:
            actor = SessionActor(session_id, on_drained=self._retire_if_idle)
            actor.start()
            self._actors[session_id] = actor
        return actor

    def _retire_if_idle(self, actor: SessionActor) -> None:
        # Runs on the actor between jobs, so nothing can reach it once it is unmapped.
        if actor.state is not None and not actor.state.is_idle:
            return
        if self._actors.get(actor.session_id) is actor:
            del self._actors[actor.session_id]
        self._relay.retire(actor.session_id)
        actor.retire()
        logger.debug(f"Session {actor.session_id}: idle, actor retired")

    async def _load(self, actor: SessionActor) -> SessionState:
        if actor.state is not None:
            return actor.state
        session = await self._store.read_session(actor.session_id)
        if session is None:
            raise NotFound(f"session {actor.session_id} does not exist")
        horizon = await self._store.latest_message_seq(actor.session_id)
        actor.state = SessionState(session=session, post=actor.post, message_horizon=horizon)
        logger.debug(f"Session {actor.session_id}: loaded read model ({session.status.value})")
        return actor.state

    async def _handle(self, actor: SessionActor, connection: HubConnection, event: str, payload: dict) -> Any:
        state = await self._load(actor)
        user_id = connection.user_id

        if event == CMD_JOIN:
            participants = self._presence.join(state, connection)
            you = {"userId": user_id, "role": connection.identity.role.value}
            if connection.namespace == LIFECYCLE_NAMESPACE:
                return {"session": state.session.to_payload(), "participants": participants, "you": you}
            typing_users = [uid for uid in self._typing.typing_users(state) if uid != user_id]
            return self._with_backfill(
                state, int(payload.get("sinceSeq") or 0), participants, typing_users, you
            )

        if event == CMD_LEAVE:
            self._drop(state, connection)
            return {}

        if not self._presence.is_joined(state, connection):
            raise BadRequest(f"join session {state.session_id} before sending {event}")

        if event in ACTIONS:
            expected = payload.get("expectedStatus")
            try:
                expected_status = SessionStatus(expected) if expected else None
            except ValueError as ex:
                raise BadRequest(f"unknown status {expected!r}") from ex
            return self._state_machine.request(state, event, user_id, expected_status=expected_status)
        if event == CMD_SEND_MESSAGE:
            result = self._relay.send(state, user_id, payload)
            self._typing.stop(state, user_id)
            return result
        if event == CMD_TYPING:
            return {"leadingEdge": self._typing.pulse(state, user_id)}
        if event == CMD_MARK_READ:
            return self._receipts.mark_read(state, self._require(payload, "messageId"), user_id)
        if event == CMD_MARK_ALL_READ:
            return self._receipts.mark_all_read(state, user_id)
        if event == CMD_DELETE_MESSAGE:
            return self._relay.delete(state, self._require(payload, "messageId"), user_id)
        if event == CMD_BACKFILL:
            return self._with_backfill(state, int(payload.get("sinceSeq") or 0))
        raise BadRequest(f"unsupported command {event!r}")

    def _with_backfill(
        self,
        state: SessionState,
        since_seq: int,
        participants: list[dict] | None = None,
        typing_users: list[str] | None = None,
        you: dict | None = None,
    ) -> asyncio.Future:
        pending = self._relay.backfill(state, since_seq)
        result: asyncio.Future = asyncio.get_running_loop().create_future()

        def _done(done: asyncio.Future) -> None:
            if result.done():
                return
            if done.cancelled():
                result.cancel()
            elif done.exception() is not None:
                result.set_exception(done.exception())
            else:
                body: dict[str, Any] = {"messages": done.result()}
                if participants is not None:
                    body["participants"] = participants
                if typing_users is not None:
                    body["typing"] = typing_users
                if you is not None:
                    body["you"] = you
                result.set_result(body)

        pending.add_done_callback(_done)
        return result

    def _drop(self, state: SessionState | None, connection: HubConnection) -> None:
        if state is None:
            return
        self._presence.leave(state, connection)
        if connection.namespace == MESSAGES_NAMESPACE and not self._can_type(state, connection.user_id):
            self._typing.stop(state, connection.user_id)

    def _can_type(self, state: SessionState, user_id: str) -> bool:
        participant = state.participants.get(user_id)
        if participant is None:
            return False
        for connection_id in participant.connection_ids:
            other = self._fanout.get(connection_id)
            if other is not None and other.namespace == MESSAGES_NAMESPACE:
                return True
        return False

    def _require(self, payload: dict, key: str) -> str:
        value = str(payload.get(key) or "").strip()
        if not value:
            raise BadRequest(f"{key} is required")
        return value

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._typing.window_seconds)
            for actor in list(self._actors.values()):
                actor.post(lambda a=actor: a.state is not None and self._typing.sweep(a.state))
