from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class RuntimeEnv:
    relay_token: str | None
    auth_service_key: str | None
    attachment_service_key: str | None


@dataclass
class RelayConfig:
    server_url: str
    socketio_path: str
    host: str
    port: int
    store_db_path: str
    reconnect_base_seconds: float
    reconnect_cap_seconds: float
    reconnect_max_attempts: int
    typing_window_seconds: float
    transition_timeout_seconds: float
    ack_timeout_seconds: float
    auth_mode: str
    auth_url: str | None
    static_tokens: dict[str, dict[str, Any]] = field(default_factory=dict)
    attachment_url: str | None = None
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _positive(value: float, name: str) -> float:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def parse_relay_config(config: dict) -> RelayConfig:
    auth_mode = str(config.get("AuthMode", "static")).strip().lower()
    if auth_mode not in {"static", "http"}:
        raise ValueError(f"AuthMode must be 'static' or 'http', got {auth_mode!r}")
    auth_url = str(config.get("AuthUrl", "")).strip() or None
    if auth_mode == "http" and not auth_url:
        raise ValueError("AuthUrl is required when AuthMode is 'http'")

    base = _positive(float(config.get("ReconnectBaseSeconds", 1.0)), "ReconnectBaseSeconds")
    cap = _positive(float(config.get("ReconnectCapSeconds", 30.0)), "ReconnectCapSeconds")

    return RelayConfig(
        server_url=str(config.get("ServerUrl", "http://127.0.0.1:8080")).rstrip("/"),
        socketio_path=str(config.get("SocketIOPath", "socket.io")).strip("/"),
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 8080)),
        store_db_path=str(config.get("StoreDbPath", ".consult_relay/relay.db")),
        reconnect_base_seconds=base,
        reconnect_cap_seconds=max(base, cap),
        reconnect_max_attempts=max(1, int(config.get("ReconnectMaxAttempts", 10))),
        typing_window_seconds=_positive(float(config.get("TypingWindowSeconds", 3.0)), "TypingWindowSeconds"),
        transition_timeout_seconds=_positive(
            float(config.get("TransitionTimeoutSeconds", 10.0)), "TransitionTimeoutSeconds"
        ),
        ack_timeout_seconds=_positive(float(config.get("AckTimeoutSeconds", 10.0)), "AckTimeoutSeconds"),
        auth_mode=auth_mode,
        auth_url=auth_url,
        static_tokens=dict(config.get("StaticTokens") or {}),
        attachment_url=str(config.get("AttachmentUrl", "")).strip() or None,
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        relay_token=os.environ.get("RELAY_TOKEN") or None,
        auth_service_key=os.environ.get("AUTH_SERVICE_KEY") or None,
        attachment_service_key=os.environ.get("ATTACHMENT_SERVICE_KEY") or None,
    )
