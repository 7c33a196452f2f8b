from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Request, Response, status
from sqlalchemy.orm import Session

from app.core.exceptions import Conflict, Unauthorized, ValidationFailed
from app.core.settings import settings
from app.db.session import get_db
from app.models.user import User
from app.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserOut
from app.security.deps import get_current_user, request_context
from app.security.jwt_tokens import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
)
from app.security.passwords import hash_password, password_strength_error, verify_password
from app.services.audit import record_audit

router = APIRouter()


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    """Set the HTTP-only refresh token cookie with configured attributes."""
    cookie_max_age = settings.refresh_token_expires_days * 24 * 60 * 60
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=cookie_max_age,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        path=settings.refresh_cookie_path,
    )


def _issue_tokens(user: User, response: Response) -> TokenResponse:
    _set_refresh_cookie(response, create_refresh_token(subject=str(user.id)))
    return TokenResponse(access_token=create_access_token(subject=str(user.id), role=user.role))


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest, request: Request, response: Response, db: Session = Depends(get_db)
) -> TokenResponse:
    error = password_strength_error(payload.password)
    if error:
        raise ValidationFailed(error)

    existing = db.query(User).filter(User.email == payload.email).first()
    if existing:
        raise Conflict("Email already registered")

    user = User(email=payload.email, hashed_password=hash_password(payload.password), name=payload.name)
    db.add(user)
    db.commit()
    db.refresh(user)

    record_audit(
        "USER_CREATED",
        user_id=user.id,
        entity_type="user",
        entity_id=user.id,
        metadata={"email": user.email},
        context=request_context(request),
    )
    return _issue_tokens(user, response)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)) -> TokenResponse:
    user: Optional[User] = db.query(User).filter(User.email == payload.email).first()
    if not user or not verify_password(payload.password, user.hashed_password):
        raise Unauthorized("Invalid credentials")

    record_audit("USER_LOGIN", user_id=user.id, entity_type="user", entity_id=user.id, context=request_context(request))
    return _issue_tokens(user, response)


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    response: Response,
    refresh_token: Optional[str] = Cookie(default=None, alias=settings.refresh_cookie_name),
    db: Session = Depends(get_db),
) -> TokenResponse:
    if not refresh_token:
        raise Unauthorized("Missing refresh token")

    try:
        payload = decode_refresh_token(refresh_token)
    except Exception:
        raise Unauthorized("Invalid refresh token")

    if payload.get("type") != "refresh" or "sub" not in payload:
        raise Unauthorized("Invalid refresh token")

    # fetch user to include current role in token
    user: Optional[User] = db.query(User).filter(User.id == int(payload["sub"])).first()
    if not user:
        raise Unauthorized("Invalid refresh token")

    # Rotate refresh token
    return _issue_tokens(user, response)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(response: Response) -> Response:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
    )
    response.status_code = status.HTTP_204_NO_CONTENT
    return response


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> User:
    return user
