from __future__ import annotations

import time
from collections.abc import Callable

from consult_relay.events import TYPING_STARTED, TYPING_STOPPED
from consult_relay.hub.fanout import Fanout
from consult_relay.hub.state import SessionState


class TypingCoordinator:
    """Coalesces keystroke pulses into leading-edge start and expiry stop signals."""

    def __init__(
        self,
        fanout: Fanout,
        *,
        window_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fanout = fanout
        self._window_seconds = max(0.05, window_seconds)
        self._clock = clock

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def pulse(self, state: SessionState, user_id: str) -> bool:
        leading_edge = user_id not in state.typing
        state.typing[user_id] = self._clock() + self._window_seconds
        if leading_edge:
            self._fanout.broadcast(state, TYPING_STARTED, {"userId": user_id}, exclude_user=user_id)
        return leading_edge

    def stop(self, state: SessionState, user_id: str) -> None:
        if state.typing.pop(user_id, None) is not None:
            self._fanout.broadcast(state, TYPING_STOPPED, {"userId": user_id}, exclude_user=user_id)

    def sweep(self, state: SessionState) -> list[str]:
        now = self._clock()
        expired = [user_id for user_id, expires_at in state.typing.items() if expires_at <= now]
        for user_id in expired:
            self.stop(state, user_id)
        return expired

    def typing_users(self, state: SessionState) -> list[str]:
        return sorted(state.typing)
