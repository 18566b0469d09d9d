"""Wiring for a consultation client: logging, connection and session scopes."""

import logging.config
from dataclasses import dataclass

from app.config import Settings, get_settings
from app.models.enums import SessionKind
from app.monitoring.metrics import mark_initial_state
from app.services.session_status import HttpSessionStatusProbe
from consultsync.realtime.connection import ConnectionManager
from consultsync.realtime.credentials import CredentialStore
from consultsync.realtime.transport import WebSocketTransport
from consultsync.session.models import Session
from consultsync.session.scope import ConsultationSession
from consultsync.voice.signaling import MediaCapability


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "consultsync.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        }
    },
}


def configure_logging(level: str | None = None) -> None:
    config = {**LOGGING_CONFIG, "root": {**LOGGING_CONFIG["root"]}}
    if level:
        config["root"]["level"] = level.upper()
    logging.config.dictConfig(config)


@dataclass(slots=True)
class ConsultationClient:
    """One realtime connection plus the settings its sessions are built from."""

    settings: Settings
    credentials: CredentialStore
    connection: ConnectionManager
    status_probe: HttpSessionStatusProbe | None = None

    def open_session(
        self,
        booking_id: str,
        session_id: str,
        *,
        kind: SessionKind = SessionKind.CHAT,
        billing_rate: float | None = None,
        media: MediaCapability | None = None,
    ) -> ConsultationSession:
        session = Session(
            session_id=session_id,
            booking_id=booking_id,
            kind=kind,
            billing_rate=billing_rate,
        )
        return ConsultationSession(
            self.connection,
            session,
            settings=self.settings,
            media=media,
            status_probe=self.status_probe,
        )

    async def close(self) -> None:
        await self.connection.disconnect()


def build_client(
    credentials: CredentialStore,
    settings: Settings | None = None,
) -> ConsultationClient:
    settings = settings or get_settings()
    transport = WebSocketTransport(
        settings.socket_endpoint,
        open_timeout=settings.connect_timeout_seconds,
    )
    connection = ConnectionManager.from_settings(transport, credentials, settings)
    mark_initial_state()
    return ConsultationClient(
        settings=settings,
        credentials=credentials,
        connection=connection,
        status_probe=HttpSessionStatusProbe.from_settings(settings, credentials),
    )


__all__ = ["ConsultationClient", "LOGGING_CONFIG", "build_client", "configure_logging"]
