"""Caller identity for the current invocation.

The core never authenticates anyone itself.  Every public operation
receives an IdentityProvider and asks it, fresh on each call, for the
caller's organizational role and unique id.

Providers:
  StaticIdentity   → fixed role/id (membership service already resolved it)
  TokenIdentity    → role/id read from a signed identity token
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pharmaledger.auth.jwt import decode_token
from pharmaledger.exceptions import AuthorizationError


class IdentityProvider(Protocol):
    def caller_role(self) -> str: ...

    def caller_id(self) -> str: ...


@dataclass(frozen=True)
class StaticIdentity:
    role: str
    id: str

    def caller_role(self) -> str:
        return self.role

    def caller_id(self) -> str:
        return self.id


class TokenIdentity:
    """Identity carried by a JWT issued with ``create_identity_token``.

    The token is decoded once; an invalid, expired or wrong-type token
    fails with AuthorizationError.
    """

    def __init__(self, token: str):
        payload = decode_token(token)
        caller_id: str | None = payload.get("sub")
        if not caller_id or payload.get("type") != "identity":
            raise AuthorizationError("Invalid or expired identity token")
        self._caller_id = caller_id
        self._role = payload.get("role") or ""

    def caller_role(self) -> str:
        return self._role

    def caller_id(self) -> str:
        return self._caller_id
