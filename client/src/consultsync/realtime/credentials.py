"""Credential store interface consumed by the connection manager."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class CredentialStore(Protocol):
    """Supplies the bearer token and identity of the signed-in user."""

    @property
    def user_id(self) -> str: ...

    async def get_token(self) -> str: ...


@dataclass(slots=True)
class StaticCredentials:
    """Credentials known up front, e.g. passed on the command line."""

    user_id: str
    token: str

    async def get_token(self) -> str:
        return self.token


__all__ = ["CredentialStore", "StaticCredentials"]
