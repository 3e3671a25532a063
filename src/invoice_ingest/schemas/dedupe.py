"""
Dedupe keys (CRITICAL).

- Content hash: SHA256 of the file bytes, unique per tenant.
- Extraction idempotency key: {document_id}:{job_id}, unique per stored
  version, so a redelivered extraction job cannot append a second version.

Email attachments are deduplicated on (tenant, message id, file name), which
are stored columns of the document row and need no derived key.
"""

import hashlib
import mimetypes

# Extensions for the MIME types the channels accept
_KNOWN_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/tiff": "tiff",
    "image/webp": "webp",
}


def compute_file_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def extraction_idempotency_key(document_id: int, job_id: int | str) -> str:
    """Key identifying the version produced by one extraction job."""
    return f"{document_id}:{job_id}"


def file_extension(mime_type: str, file_name: str | None = None) -> str:
    """Storage file extension, preferring the original file name's."""
    if file_name and "." in file_name:
        ext = file_name.rsplit(".", 1)[1].lower()
        if ext.isalnum() and len(ext) <= 5:
            return ext
    if mime_type in _KNOWN_EXTENSIONS:
        return _KNOWN_EXTENSIONS[mime_type]
    guessed = mimetypes.guess_extension(mime_type or "")
    return guessed.lstrip(".") if guessed else "bin"
