"""
Password hashing and strength rules.
"""

import re
from typing import Optional

import bcrypt

from ossmanager.api.config import settings


MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt ignores anything past this

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,100}$")

# Compared against when the user does not exist so both paths cost one bcrypt check
_DUMMY_HASH = bcrypt.hashpw(
    b"ossmanager-timing-guard", bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
).decode()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(
        password.encode()[:MAX_PASSWORD_BYTES], bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Check a plain password against a stored bcrypt hash."""
    candidate = password.encode()[:MAX_PASSWORD_BYTES]
    if not password_hash:
        bcrypt.checkpw(candidate, _DUMMY_HASH.encode())
        return False
    try:
        return bcrypt.checkpw(candidate, password_hash.encode())
    except ValueError:
        return False


def password_strength_error(password: str) -> Optional[str]:
    """
    Return a message describing why the password is too weak, or None.

    Character classes are lowercase, uppercase, digits and everything else.
    Accepted when three classes appear in 10+ characters, or all four in 12+.
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes"

    classes = sum(
        [
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        ]
    )
    length = len(password)

    if (classes >= 3 and length >= 10) or (classes == 4 and length >= 12):
        return None
    return (
        "Password must be at least 10 characters using three of: lowercase, "
        "uppercase, digits, symbols"
    )


def username_error(username: str) -> Optional[str]:
    if not USERNAME_PATTERN.match(username):
        return "Username must be 3-100 characters of letters, digits, '_' or '-'"
    return None
