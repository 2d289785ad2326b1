"""Explicit per-session context supplied by the identity provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .exceptions import AuthError


class IdentityProvider(Protocol):
    """Source of the signed-in user; owned by the authentication layer."""

    def current_user_id(self) -> str | None: ...

    def access_token(self) -> str | None: ...


@dataclass(frozen=True)
class SessionContext:
    """The signed-in user a lifecycle manager and its adapters act for."""

    user_id: str
    access_token: str | None = None

    @classmethod
    def from_identity(cls, identity: IdentityProvider) -> SessionContext:
        user_id = identity.current_user_id()
        if not user_id:
            raise AuthError("No signed-in user.")
        return cls(user_id=user_id, access_token=identity.access_token())


@dataclass(frozen=True)
class StaticIdentity:
    """Identity provider for a session whose token is already known."""

    user_id: str
    token: str | None = None

    def current_user_id(self) -> str | None:
        return self.user_id

    def access_token(self) -> str | None:
        return self.token
