from typing import Callable, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.exceptions import Forbidden, Unauthorized
from app.db.session import get_db
from app.models.user import User, ROLE_ADMIN, ROLE_CREATOR
from app.security.jwt_tokens import decode_access_token


_bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if not credentials or not credentials.scheme.lower() == "bearer":
        raise Unauthorized("Not authenticated")
    try:
        payload = decode_access_token(credentials.credentials)
    except Exception:
        raise Unauthorized("Invalid token")
    if payload.get("type") != "access" or "sub" not in payload:
        raise Unauthorized("Invalid token")
    user = db.query(User).filter(User.id == int(payload["sub"])).first()
    if not user:
        raise Unauthorized("User not found")
    return user


def require_roles(*roles: str) -> Callable[..., User]:
    def _dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise Forbidden(f"Forbidden - {' or '.join(r.upper() for r in roles)} role required")
        return user

    return _dependency


require_admin = require_roles(ROLE_ADMIN)
require_creator = require_roles(ROLE_CREATOR, ROLE_ADMIN)


def request_context(request: Request) -> Dict[str, Optional[str]]:
    """Client address and agent, as recorded on audit entries."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = (
        forwarded.split(",")[0].strip()
        if forwarded
        else request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    )
    user_agent = request.headers.get("user-agent")
    return {
        "ip_address": ip_address[:64] if ip_address else None,
        "user_agent": user_agent[:255] if user_agent else None,
    }
