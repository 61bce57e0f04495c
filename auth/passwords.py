"""
auth/passwords.py -- Password hashing and timing-equalized credential checks.

Passwords: bcrypt used directly (no passlib wrapper). Bcrypt is the right
choice for low-entropy secrets because its cost factor makes brute force
expensive. The _DUMMY_HASH constant enables timing equalization in
check_credentials() so response time does not reveal whether an email is
registered [C1].

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    128 characters (Pydantic field), which keeps typical input well below
    that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("spendtracker_timing_dummy")


def lookup_user(store: UserStore, email: str, password: str) -> tuple[User | None, bool]:
    """Find a user by email and check the password with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Known email: bcrypt runs against the stored hash

    Returns (user, password_ok). user is None for unknown emails. The caller
    decides what to do with inactive or locked accounts so each case can be
    audited with its own failure reason.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return user, False
    return user, verify_password(password, user.hashed_password)
