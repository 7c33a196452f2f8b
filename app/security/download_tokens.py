"""Opaque download tokens.

The client receives a random hex token; only its keyed digest is persisted,
so a leaked ``download_tokens`` table cannot be replayed against the media
endpoint.
"""
import hashlib
import hmac
import secrets
from typing import Tuple

from app.core.settings import settings


def hash_download_token(token: str) -> str:
    return hmac.new(settings.download_secret.encode(), token.encode(), hashlib.sha256).hexdigest()


def generate_download_token() -> Tuple[str, str]:
    """Return ``(token, digest)`` for a freshly generated token."""
    token = secrets.token_hex(32)
    return token, hash_download_token(token)
