from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import hmac

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .exceptions import AuthenticationError
from .models import SecuritySeverity
from .services.security_events import SecurityEventType, log_security_event


@dataclass
class CurrentUser:
    id: str
    email: Optional[str] = None


def create_access_token(sub: str, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    """Mint a token shaped like a Supabase access token (used by scripts and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "email": email,
        "aud": settings.jwt_audience,
        "role": "authenticated",
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Authentication token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid authentication token: {e}")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid authentication token: missing subject")
    return CurrentUser(id=user_id, email=payload.get("email"))


def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> CurrentUser:
    try:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthenticationError("Unauthorized")
        return decode_access_token(authorization.split(" ", 1)[1].strip())
    except AuthenticationError as e:
        log_security_event(
            db, SecurityEventType.INVALID_ACCESS_ATTEMPT, SecuritySeverity.MEDIUM, e.message,
            metadata={"path": request.url.path}, request=request,
        )
        raise


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> None:
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        log_security_event(
            db, SecurityEventType.PRIVILEGE_ESCALATION, SecuritySeverity.HIGH,
            "Admin endpoint called without a valid key",
            metadata={"path": request.url.path, "key_present": bool(x_admin_key)}, request=request,
        )
        raise AuthenticationError("Admin key required")
