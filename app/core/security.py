# app/core/security.py
import hmac
from typing import Optional

from fastapi import Header, Request

from app.core.errors import AuthError


class AuthValidator:
    """Static bearer-token check. Vervang door echte auth (JWT/session) waar nodig."""

    def __init__(self, admin_token: str):
        self._admin_token = admin_token

    def require_auth(self, token: Optional[str]) -> None:
        if not token:
            raise AuthError("missing_token")
        # constant-time compare
        if not hmac.compare_digest(token.encode("utf-8"), self._admin_token.encode("utf-8")):
            raise AuthError("invalid_token")


def _bearer(header: Optional[str]) -> Optional[str]:
    # header: "Bearer <token>"
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_admin(request: Request, authorization: Optional[str] = Header(None)) -> None:
    validator: AuthValidator = request.app.state.auth_validator
    validator.require_auth(_bearer(authorization))
