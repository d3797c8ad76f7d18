"""Bearer-token authentication.

Tokens are resolved against a configured token table; issuing or signing
tokens is the hosted auth provider's job and does not happen here.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import AuthenticationError, PermissionDeniedError

ROLES = ("admin", "teacher", "student", "parent")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class User:
    """Verified identity attached to a request."""

    id: str
    role: str
    email: str = ""
    status: str = "active"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenAuthenticator:
    """Map opaque bearer tokens to users.

    Args:
        tokens: {token: {"id": ..., "role": ..., "email": ..., "status": ...}}
    """

    def __init__(self, tokens: Optional[Dict[str, Dict[str, Any]]] = None):
        self._users: Dict[str, User] = {}
        for token, data in (tokens or {}).items():
            self.register(token, data)

    def register(self, token: str, data: Dict[str, Any]) -> User:
        if not data.get("id"):
            raise ValueError(f"Token entry is missing a user id: {data!r}")
        role = data.get("role", "student")
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r} (expected one of {ROLES})")
        user = User(
            id=str(data["id"]),
            role=role,
            email=data.get("email", ""),
            status=data.get("status", "active"),
        )
        self._users[token] = user
        return user

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a token to an active user.

        Raises:
            AuthenticationError: missing or unknown token
            PermissionDeniedError: account is not active
        """
        if not token:
            raise AuthenticationError("No token provided, authorization denied")
        user = self._users.get(token)
        if user is None:
            raise AuthenticationError("Token is not valid")
        if user.status != "active":
            raise PermissionDeniedError("Account is not active")
        return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """FastAPI dependency: the authenticated user for this request."""
    authenticator: TokenAuthenticator = request.app.state.authenticator
    token = credentials.credentials if credentials else None
    user = authenticator.authenticate(token)
    request.state.user = user
    return user
