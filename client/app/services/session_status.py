"""HTTP probe for the authoritative status of a consultation session."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from app.config import Settings
from app.schemas.events import SessionStatusResponse
from consultsync.realtime.credentials import CredentialStore

logger = logging.getLogger(__name__)


class SessionStatusProbe(Protocol):
    async def fetch(self, booking_id: str) -> SessionStatusResponse | None: ...


class HttpSessionStatusProbe:
    """Asks the REST API whether a session is still running.

    Used after a reconnect: if the session ended while the socket was down
    the coordinator can go straight to the terminal state instead of
    re-joining. Any failure yields ``None`` so reconnects are never blocked.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._credentials = credentials
        self._transport = transport
        self._unavailable = False

    @classmethod
    def from_settings(
        cls, settings: Settings, credentials: CredentialStore
    ) -> "HttpSessionStatusProbe | None":
        if settings.session_status_url is None:
            return None
        return cls(
            str(settings.session_status_url),
            credentials,
            timeout=settings.session_status_timeout_seconds,
        )

    async def _get_headers(self) -> dict[str, str]:
        """Get headers for API requests."""
        token = await self._credentials.get_token()
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def fetch(self, booking_id: str) -> SessionStatusResponse | None:
        """
        Fetch the session status for a booking.

        Args:
            booking_id: Booking identifier

        Returns:
            Parsed status, or None when the status could not be determined
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/{booking_id}",
                    headers=await self._get_headers(),
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            if not self._unavailable:
                self._unavailable = True
                logger.warning(
                    "Session status API unavailable; continuing without it",
                    extra={"booking_id": booking_id, "error": str(exc)},
                )
            else:
                logger.debug("Session status API still unavailable", extra={"booking_id": booking_id})
            return None
        except ValueError:
            logger.warning("Session status response is not JSON", extra={"booking_id": booking_id})
            return None

        if self._unavailable:
            self._unavailable = False
            logger.info("Session status API reachable again")

        try:
            return SessionStatusResponse.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Discarded malformed session status",
                extra={"booking_id": booking_id, "errors": exc.error_count()},
            )
            return None


__all__ = ["HttpSessionStatusProbe", "SessionStatusProbe"]
