from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

from consult_relay.errors import Unauthorized
from consult_relay.models import Identity, Role


@runtime_checkable
class AuthProvider(Protocol):
    async def authenticate(self, credentials: dict[str, Any]) -> Identity: ...


def extract_token(credentials: dict[str, Any] | None) -> str | None:
    if not isinstance(credentials, dict):
        return None
    token = credentials.get("token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def _parse_identity(payload: dict[str, Any]) -> Identity:
    user_id = str(payload.get("userId") or payload.get("user_id") or "").strip()
    role_value = str(payload.get("role", "")).strip().upper()
    if not user_id or role_value not in Role.__members__:
        raise Unauthorized("identity payload missing userId or role")
    return Identity(user_id=user_id, role=Role(role_value))


class StaticTokenAuthProvider:
    """Token table from configuration, e.g. ``{"tok-1": {"userId": "dr-1", "role": "CLINICIAN"}}``."""

    def __init__(self, tokens: dict[str, dict[str, Any]]):
        self._tokens = dict(tokens)

    async def authenticate(self, credentials: dict[str, Any]) -> Identity:
        token = extract_token(credentials)
        if token is None or token not in self._tokens:
            raise Unauthorized("unknown or missing token")
        return _parse_identity(self._tokens[token])


class HttpAuthProvider:
    def __init__(
        self,
        base_url: str,
        *,
        service_key: str | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if service_key:
            headers["X-Service-Key"] = service_key
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def authenticate(self, credentials: dict[str, Any]) -> Identity:
        token = extract_token(credentials)
        if token is None:
            raise Unauthorized("missing token")

        response = await self._client.get("/me", headers={"Authorization": f"Bearer {token}"})
        if response.status_code in (401, 403):
            message = "jwt_expired" if "expired" in response.text.lower() else "unauthorized"
            raise Unauthorized(message)
        response.raise_for_status()
        identity = _parse_identity(response.json())
        logger.debug(f"Authenticated user {identity.user_id} ({identity.role.value})")
        return identity

    async def close(self) -> None:
        await self._client.aclose()
