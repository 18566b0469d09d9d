import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Iterable

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class IceServer(BaseModel):
    """Representation of a WebRTC ICE server configuration."""

    urls: list[str] = Field(default_factory=list, description="ICE server URLs")
    username: str | None = Field(default=None, description="Optional TURN username")
    credential: str | None = Field(default=None, description="Optional TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def ensure_list(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple, set)):
            return [str(item) for item in value]
        return [] if value in (None, Ellipsis) else [str(value)]


class Settings(BaseSettings):
    """Client settings loaded from ``CONSULTSYNC_*`` environment variables."""

    log_level: str = Field(default="INFO", description="Root log level")

    socket_url: str = Field(
        default="ws://localhost:8000",
        description="Base URL of the realtime endpoint (ws:// or wss://)",
    )
    socket_path: str = Field(default="/socket", description="Path of the realtime endpoint")
    session_status_url: AnyHttpUrl | None = Field(
        default=None,
        description="Base URL of the session status endpoint consulted after reconnects",
    )
    session_status_timeout_seconds: float = Field(default=10.0, gt=0)

    connect_timeout_seconds: float = Field(
        default=20.0, gt=0, description="Handshake timeout for a single connection attempt"
    )
    reconnect_base_delay_seconds: float = Field(default=3.0, gt=0)
    reconnect_backoff_factor: float = Field(default=1.5, ge=1.0)
    reconnect_max_delay_seconds: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(
        default=10, ge=1, description="Automatic reconnect attempts before the phase becomes failed"
    )
    heartbeat_interval_seconds: float = Field(default=20.0, gt=0)

    join_timeout_seconds: float = Field(default=10.0, gt=0)
    message_ack_timeout_seconds: float = Field(default=5.0, gt=0)
    recovery_timeout_seconds: float = Field(default=10.0, gt=0)
    recovery_min_interval_seconds: float = Field(
        default=5.0, ge=0, description="Minimum gap between two non-forced recovery requests"
    )
    recovery_background_min_interval_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Minimum gap for recoveries triggered by app foreground/background transitions",
    )
    recovery_replay_delay_seconds: float = Field(
        default=1.0, ge=0, description="Delay before a queued recovery trigger is replayed"
    )
    dedup_live_tolerance_seconds: float = Field(
        default=5.0, ge=0, description="Content+sender duplicate window for live events"
    )
    dedup_recovery_tolerance_seconds: float = Field(
        default=30.0, ge=0, description="Content+sender duplicate window for recovered history"
    )
    typing_ttl_seconds: float = Field(default=5.0, gt=0)
    timer_tick_interval_seconds: float = Field(default=1.0, gt=0)
    ice_restart_timeout_seconds: float = Field(default=10.0, gt=0)
    signal_target: str = Field(
        default="counterpart", description="Routing hint attached to outgoing signalling envelopes"
    )

    webrtc_ice_servers: list[IceServer] = Field(
        default_factory=list,
        description="List of ICE (STUN/TURN) servers handed to the media layer.",
    )
    webrtc_stun_servers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Additional STUN endpoints.",
    )
    webrtc_turn_servers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="TURN endpoints.",
    )
    webrtc_turn_username: str | None = Field(default=None, description="Optional TURN username.")
    webrtc_turn_credential: str | None = Field(default=None, description="Optional TURN credential.")

    model_config = SettingsConfigDict(
        env_prefix="CONSULTSYNC_",
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def socket_endpoint(self) -> str:
        return f"{self.socket_url.rstrip('/')}{self.socket_path}"

    @field_validator("socket_url")
    @classmethod
    def validate_socket_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("socket_url must use the ws:// or wss:// scheme")
        return value

    @field_validator("socket_path", mode="before")
    @classmethod
    def ensure_leading_slash(cls, value: Any) -> Any:
        if isinstance(value, str) and value and not value.startswith("/"):
            return f"/{value}"
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator(
        "webrtc_ice_servers",
        "webrtc_stun_servers",
        "webrtc_turn_servers",
        mode="before",
    )
    @classmethod
    def parse_iterable_field(cls, value: Any) -> list[Any] | Any:
        if value in (None, "", Ellipsis):
            return []
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return [item.strip() for item in value.split(",") if item.strip()]
            if isinstance(parsed, (list, tuple, set)):
                return list(parsed)
            return [str(value)]
        if isinstance(value, (list, tuple, set)):
            return list(value)
        return [value]

    def _aggregate_ice_servers(self) -> list[IceServer]:
        def coerce_server(entry: Any) -> IceServer | None:
            if isinstance(entry, IceServer):
                return entry
            if isinstance(entry, dict):
                return IceServer.model_validate(entry)
            if isinstance(entry, str):
                return IceServer(urls=[entry])
            if isinstance(entry, Iterable):
                return IceServer(urls=[str(item) for item in entry])
            return None

        servers: list[IceServer] = []
        for item in self.webrtc_ice_servers:
            server = coerce_server(item)
            if server is not None:
                servers.append(server)

        if self.webrtc_stun_servers:
            servers.append(IceServer(urls=[str(url) for url in self.webrtc_stun_servers]))

        if self.webrtc_turn_servers:
            servers.append(
                IceServer(
                    urls=[str(url) for url in self.webrtc_turn_servers],
                    username=self.webrtc_turn_username,
                    credential=self.webrtc_turn_credential,
                )
            )

        if not servers:
            servers.append(IceServer(urls=["stun:stun.l.google.com:19302"]))

        return servers

    @property
    def webrtc_ice_servers_payload(self) -> list[dict[str, Any]]:
        return [server.model_dump(mode="json") for server in self._aggregate_ice_servers()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
