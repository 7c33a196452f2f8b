import re
from typing import Optional

from passlib.context import CryptContext


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 72

_password_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Checked in order; the first failing rule is reported to the client.
_PASSWORD_RULES = (
    (lambda p: len(p) >= PASSWORD_MIN_LENGTH, f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"),
    (lambda p: len(p) <= PASSWORD_MAX_LENGTH, f"Password must be at most {PASSWORD_MAX_LENGTH} characters long"),
    (lambda p: re.search(r"[a-z]", p) is not None, "Password must include at least one lowercase letter"),
    (lambda p: re.search(r"[A-Z]", p) is not None, "Password must include at least one uppercase letter"),
    (lambda p: re.search(r"[0-9]", p) is not None, "Password must include at least one number"),
)


def password_strength_error(plain_password: str) -> Optional[str]:
    """Return the message for the first unmet password rule, or None."""
    for check, message in _PASSWORD_RULES:
        if not check(plain_password):
            return message
    return None


def hash_password(plain_password: str) -> str:
    return _password_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return _password_context.verify(plain_password, hashed_password)
