"""Local file storage for receipt uploads."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from uuid import uuid4

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from packages.reimbursement_common import NotFound, ReimbursementFile, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/jpeg",
        "image/jpg",
        "image/png",
    }
)
MAX_RECEIPT_BYTES = 10 * 1024 * 1024
RECEIPT_FOLDER_PREFIX = "request_"


class ReceiptStorageError(RuntimeError):
    """Raised when a receipt could not be written to storage."""


class ReceiptStorage:
    """Stores receipt payloads below ``base_dir`` and hands back references.

    References are POSIX paths relative to ``base_dir``; the core stores them
    on items without interpreting them.
    """

    def __init__(self, base_dir: Path, max_bytes: int = MAX_RECEIPT_BYTES):
        self.base_dir = Path(base_dir)
        self.max_bytes = max_bytes

    def store(self, request_id: str, item_id: int, receipt: FileStorage) -> ReimbursementFile:
        """Validate and persist ``receipt``; the returned file has no ``id`` yet.

        Raises:
            ValidationError: Missing file, unsupported type, or oversized file.
            ReceiptStorageError: The file system rejected the write.
        """

        if receipt is None or not receipt.filename:
            raise ValidationError("A receipt file is required.")
        mime_type = (receipt.mimetype or "").lower()
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError("Unsupported receipt type. Use PDF, DOC, DOCX, JPG, or PNG.")
        size = _stream_size(receipt)
        if size > self.max_bytes:
            raise ValidationError(
                f"Receipt is too large; the limit is {self.max_bytes // (1024 * 1024)} MB."
            )

        filename = secure_filename(receipt.filename) or f"receipt-{item_id}.bin"
        unique_name = f"{item_id}_{uuid4().hex[:8]}_{filename}"
        relative = Path(f"{RECEIPT_FOLDER_PREFIX}{request_id}") / unique_name
        target = self.base_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            receipt.save(target)
        except OSError as exc:
            logger.warning("Could not store receipt for request %s: %s", request_id, exc)
            raise ReceiptStorageError(str(exc)) from exc
        return ReimbursementFile(
            request_id=request_id,
            item_id=item_id,
            file_name=receipt.filename,
            file_path=relative.as_posix(),
            file_size=size,
            mime_type=mime_type,
        )

    def resolve(self, reference: str) -> Path:
        """Return the absolute path for ``reference`` if it is inside storage."""

        root = self.base_dir.resolve()
        path = (root / reference).resolve()
        if root not in path.parents or not path.is_file():
            raise NotFound("Receipt not found.")
        return path

    def remove(self, reference: str) -> bool:
        """Delete a stored receipt, returning ``False`` if it was already gone."""

        try:
            path = self.resolve(reference)
        except NotFound:
            return False
        try:
            path.unlink()
        except OSError as exc:
            logger.warning("Could not remove receipt %s: %s", reference, exc)
            return False
        return True


def _stream_size(receipt: FileStorage) -> int:
    stream = receipt.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size
