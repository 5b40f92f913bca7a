from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from loanease.logging import get_logger

logger = get_logger(__name__)

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: str) -> bool:
    """Check ``password`` against an argon2id hash; missing hashes never match."""
    if not stored_hash:
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_unreadable")
        return False


def needs_rehash(stored_hash: str) -> bool:
    try:
        return _pwd_hasher.check_needs_rehash(stored_hash)
    except InvalidHash:
        return True
