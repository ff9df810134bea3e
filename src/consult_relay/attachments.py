from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from consult_relay.errors import DeliveryFailed


@runtime_checkable
class AttachmentStore(Protocol):
    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        """Store the bytes and return a stable reference URL."""
        ...


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"Attachment upload {reason}. Retrying in {wait:.1f}s (attempt {attempt}/3)...")


class HttpAttachmentStore:
    def __init__(
        self,
        base_url: str,
        *,
        service_key: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"X-Service-Key": service_key} if service_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ReadTimeout)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        before_sleep=_on_retry,
        reraise=True,
    )
    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        response = await self._client.post(
            "/attachments",
            files={"file": (filename, data, content_type)},
        )
        if response.status_code >= 400:
            raise DeliveryFailed(f"attachment upload failed with HTTP {response.status_code}")
        url = str(response.json().get("url", "")).strip()
        if not url:
            raise DeliveryFailed("attachment store response missing url")
        logger.debug(f"Uploaded attachment {filename} ({len(data)} bytes)")
        return url

    async def close(self) -> None:
        await self._client.aclose()
