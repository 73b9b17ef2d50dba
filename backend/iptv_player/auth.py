"""Admin login and JWT bearer authentication."""
from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from typing import Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_settings

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("exp", "iat", "admin")
auth_scheme = HTTPBearer(auto_error=False)


class InvalidPasswordError(Exception):
    """Raised when an admin login uses the wrong password."""


def issue_admin_token(password: str) -> str:
    settings = get_settings()
    if not hmac.compare_digest(password.encode("utf-8"), settings.admin_password.encode("utf-8")):
        raise InvalidPasswordError("Invalid password")

    now = datetime.now(timezone.utc)
    payload = {
        "admin": True,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=settings.jwt_ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def verify_admin_token(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)) -> Dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            get_settings().jwt_secret,
            algorithms=[ALGORITHM],
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except jwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing claim") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if payload.get("admin") is not True:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not an admin token")

    return payload
