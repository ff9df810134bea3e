from __future__ import annotations


class RelayError(Exception):
    code = "relay_error"

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthorized(RelayError):
    code = "unauthorized"


class InvalidTransition(RelayError):
    code = "invalid_transition"


class Conflict(RelayError):
    """Lost a compare-and-set race; the caller must re-read state."""

    code = "conflict"


class NotFound(RelayError):
    code = "not_found"


class BadRequest(RelayError):
    code = "bad_request"


class TransportLoss(RelayError):
    """Recoverable; the channel reconnects on its own."""

    code = "transport_loss"


class ConnectionLost(RelayError):
    """Reconnect attempts exhausted the configured ceiling."""

    code = "connection_lost"


class DeliveryFailed(RelayError):
    code = "delivery_failed"


class TransitionTimeout(RelayError):
    code = "transition_timeout"


class ServerError(RelayError):
    code = "server_error"


_BY_CODE: dict[str, type[RelayError]] = {
    cls.code: cls
    for cls in (
        Unauthorized,
        InvalidTransition,
        Conflict,
        NotFound,
        BadRequest,
        TransportLoss,
        ConnectionLost,
        DeliveryFailed,
        TransitionTimeout,
        ServerError,
    )
}


def error_from_payload(payload: dict | None) -> RelayError:
    payload = payload or {}
    cls = _BY_CODE.get(str(payload.get("code", "")), RelayError)
    return cls(str(payload.get("message", "")), details=payload.get("details"))
