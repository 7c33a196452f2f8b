import datetime as dt
from typing import Any, Dict, Optional

import jwt

from app.core.settings import settings


def _utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


def _encode(subject: str, token_type: str, lifetime: dt.timedelta, secret: str, **claims: Any) -> str:
    now = _utc_now()
    payload: Dict[str, Any] = {"sub": subject, "type": token_type, "iat": now, "exp": now + lifetime}
    payload.update({k: v for k, v in claims.items() if v is not None})
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(subject: str, role: Optional[str] = None) -> str:
    return _encode(
        subject,
        "access",
        dt.timedelta(minutes=settings.access_token_expires_minutes),
        settings.access_token_secret,
        role=role,
    )


def create_refresh_token(subject: str) -> str:
    return _encode(
        subject,
        "refresh",
        dt.timedelta(days=settings.refresh_token_expires_days),
        settings.refresh_token_secret,
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.access_token_secret, algorithms=[settings.jwt_algorithm])


def decode_refresh_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.refresh_token_secret, algorithms=[settings.jwt_algorithm])
