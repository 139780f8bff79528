"""
Storage Service for payment receipts.

Receipts (uploaded by members) and generated PDF receipts are stored on local
disk under UPLOAD_DIR with unguessable names: <unix-ms>-<16 hex chars><ext>.
The database only stores the bare filename; get_file_path() resolves it and
refuses anything that would escape UPLOAD_DIR.
"""
import os
import time
import secrets
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.config import settings
from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


# Accepted receipt MIME types and the extension we store them with
RECEIPT_MIME_TO_EXT = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "application/pdf": ".pdf",
}

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".pdf"}


@dataclass
class StoredFile:
    """
    Stored file metadata.

    Attributes:
        filename: Name inside UPLOAD_DIR (what payments.receipt_path holds)
        path: Absolute path on disk
        size: Size in bytes
        mime_type: Content type the file was accepted as
    """
    filename: str
    path: Path
    size: int
    mime_type: str


class StorageService:
    """Local disk storage rooted at UPLOAD_DIR"""

    def __init__(self, base_dir: Optional[str] = None, max_size: Optional[int] = None):
        self.base_dir = Path(base_dir or settings.upload_dir)
        self.max_size = max_size or settings.max_receipt_size

    def ensure_directory(self) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir

    @staticmethod
    def generate_filename(original_filename: Optional[str], mime_type: str) -> str:
        """Unique name: timestamp in ms + 8 random bytes as hex, keeping a safe extension."""
        ext = os.path.splitext(original_filename or "")[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = RECEIPT_MIME_TO_EXT.get(mime_type, ".bin")
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}{ext}"

    def validate_receipt(self, content: bytes, mime_type: Optional[str]) -> None:
        """
        Raises:
            ValidationError: wrong content type, empty file, or too large
        """
        if mime_type not in RECEIPT_MIME_TO_EXT:
            raise ValidationError("Invalid file type. Only JPEG, PNG and PDF are allowed.")
        if not content:
            raise ValidationError("Receipt file is empty")
        if len(content) > self.max_size:
            raise ValidationError(
                f"File size exceeds limit ({self.max_size // (1024 * 1024)} MB maximum)"
            )

    def save_receipt(self, original_filename: Optional[str], content: bytes, mime_type: str) -> StoredFile:
        """Validate and write an uploaded receipt."""
        self.validate_receipt(content, mime_type)
        filename = self.generate_filename(original_filename, mime_type)
        return self._write(filename, content, mime_type)

    def save_generated(self, filename_prefix: str, content: bytes, mime_type: str = "application/pdf") -> StoredFile:
        """Write a server-generated file (PDF receipts)."""
        ext = RECEIPT_MIME_TO_EXT.get(mime_type, ".bin")
        filename = f"{filename_prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext}"
        return self._write(filename, content, mime_type)

    def _write(self, filename: str, content: bytes, mime_type: str) -> StoredFile:
        self.ensure_directory()
        path = self.base_dir / filename
        path.write_bytes(content)
        logger.info(f"💾 Stored file {filename} ({len(content)} bytes)")
        return StoredFile(filename=filename, path=path.resolve(), size=len(content), mime_type=mime_type)

    def get_file_path(self, filename: str) -> Path:
        """
        Resolve a stored filename to an absolute path inside UPLOAD_DIR.

        Raises:
            ValidationError: path traversal attempt
        """
        file_path = (self.base_dir / filename).resolve()
        try:
            file_path.relative_to(self.base_dir.resolve())
        except ValueError:
            logger.error(f"Path traversal attempt detected: {filename}")
            raise ValidationError("Invalid file path")
        return file_path

    def file_exists(self, filename: str) -> bool:
        try:
            return self.get_file_path(filename).is_file()
        except ValidationError:
            return False

    def delete_file(self, filename: str) -> bool:
        """Delete a stored file; False when it was already gone."""
        path = self.get_file_path(filename)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"🗑️  Deleted file {filename}")
        return True


def get_storage_service() -> StorageService:
    """FastAPI dependency / factory (reads settings at call time)."""
    return StorageService()
