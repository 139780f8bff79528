"""
Password hashing and password policy helpers.

Usage:
    from app.utils.password_hash import hash_password, verify_password

    hashed = hash_password("Secret123")
    is_valid = verify_password("Secret123", hashed)
"""
import re
import bcrypt
import logging

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

# At least one lower-case letter, one upper-case letter and one digit
_STRONG_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def hash_password(plaintext: str) -> str:
    """
    Hash a user password with bcrypt.

    Args:
        plaintext: Plain text password

    Returns:
        Bcrypt hash as string (60 characters, salt included)
    """
    if not plaintext:
        raise ValueError("Cannot hash empty password")

    hashed_bytes = bcrypt.hashpw(plaintext.encode('utf-8'), bcrypt.gensalt())
    return hashed_bytes.decode('utf-8')


def verify_password(plaintext: str, password_hash: str) -> bool:
    """
    Verify a password against a stored bcrypt hash.

    Returns:
        True if password matches hash, False otherwise (including malformed hashes)
    """
    if not plaintext or not password_hash:
        logger.warning("Attempted to verify with empty password or hash")
        return False

    try:
        return bcrypt.checkpw(plaintext.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError as e:
        logger.error(f"Error verifying password hash: {e}")
        return False


def is_strong_password(plaintext: str) -> bool:
    """Password policy for password changes: 8-128 chars, mixed case and a digit."""
    if not plaintext or not (MIN_PASSWORD_LENGTH <= len(plaintext) <= MAX_PASSWORD_LENGTH):
        return False
    return bool(_STRONG_PASSWORD_RE.match(plaintext))
