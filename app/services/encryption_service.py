"""
Encryption Service - Fernet-based encryption for members' bank account numbers.

Bank accounts (IBAN or local account numbers) are the only sensitive data we
store in clear-text-recoverable form. They are needed by admins when paying
out a tour, so they are encrypted rather than hashed.

SECURITY NOTES:
1. SESSION_SECRET is the master key. Changing it makes every stored bank
   account unreadable; re-encrypt before rotating.
2. A static salt is used for PBKDF2 so the derived key is stable across restarts.
3. Fernet = AES-128-CBC + HMAC-SHA256 (authenticated, tamper-evident).
"""
import base64
import logging
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


class EncryptionService:
    """
    Symmetric encryption/decryption using Fernet.

    Key derivation: PBKDF2-HMAC-SHA256 over SESSION_SECRET.
    """

    def __init__(self, key_material: str, salt: bytes = None):
        if not key_material:
            raise ValueError("Encryption key material cannot be empty")

        self._salt = salt or b'sol-numerique-bank-account-v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte key
            salt=self._salt,
            iterations=100_000,
        )
        key_bytes = kdf.derive(key_material.encode('utf-8'))
        self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Returns:
            Base64 token safe for a TEXT column
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            ValueError: If decryption fails (wrong key, tampered data)
        """
        if not encrypted:
            raise ValueError("Cannot decrypt empty string")
        try:
            return self._fernet.decrypt(encrypted.encode('utf-8')).decode('utf-8')
        except InvalidToken as e:
            raise ValueError("Decryption failed: invalid token or wrong SESSION_SECRET") from e


# Singleton instance (initialized from config.SESSION_SECRET)
_encryption_service_instance: EncryptionService | None = None


def get_encryption_service(session_secret: str = None) -> EncryptionService:
    """
    Get or create singleton encryption service instance.

    Args:
        session_secret: SESSION_SECRET from config (defaults to settings on first call)
    """
    global _encryption_service_instance

    if _encryption_service_instance is None:
        if not session_secret:
            from app.config import settings
            session_secret = settings.session_secret
        _encryption_service_instance = EncryptionService(session_secret)

    return _encryption_service_instance


def encrypt_bank_account(account_number: str) -> str:
    """Normalize (strip spaces) and encrypt a bank account number."""
    normalized = "".join(account_number.split())
    return get_encryption_service().encrypt(normalized)


def decrypt_bank_account(encrypted: str | None) -> str | None:
    """Decrypt a stored bank account; None when nothing is stored."""
    if not encrypted:
        return None
    return get_encryption_service().decrypt(encrypted)


def mask_bank_account(account_number: str | None) -> str | None:
    """Show only the last 4 characters: ****1234"""
    if not account_number:
        return None
    return f"****{account_number[-4:]}"


def masked_bank_account(encrypted: str | None) -> str | None:
    """
    Decrypt-then-mask for API responses.

    A value that no longer decrypts (SESSION_SECRET rotated) is reported as
    "****" instead of failing the whole response.
    """
    try:
        return mask_bank_account(decrypt_bank_account(encrypted))
    except ValueError:
        logger.warning("Stored bank account could not be decrypted (SESSION_SECRET changed?)")
        return "****"
