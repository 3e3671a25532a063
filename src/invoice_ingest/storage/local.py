"""
Blob storage.

BlobStorage is the interface the pipeline depends on. LocalBlobStorage keeps
objects on the filesystem and issues HMAC-signed, expiring download URLs.
"""

import hashlib
import hmac
import logging
import secrets
import time
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Storage operation failed."""

    pass


class BlobStorage(Protocol):
    """Durable object storage."""

    def put(self, path: str, data: bytes, mime_type: str) -> None: ...

    def get(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...

    def presigned_download_url(self, path: str, expires_in: int | None = None) -> str: ...


class LocalBlobStorage:
    """
    Filesystem-backed blob storage.

    Paths are relative keys such as "tenant-a/inbox/<uuid>.pdf"; they may
    not escape the root directory.
    """

    def __init__(
        self,
        root: Path | str,
        base_url: str = "http://localhost:8000/files",
        signing_key: str | None = None,
        url_ttl_seconds: int = 900,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        if not signing_key:
            logger.warning("No storage signing key configured; download URLs expire on restart")
            signing_key = secrets.token_hex(32)
        self._signing_key = signing_key.encode("utf-8")
        self.url_ttl_seconds = url_ttl_seconds

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes, mime_type: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
        logger.debug(f"Stored {len(data)} bytes ({mime_type}) at {path}")

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}") from None

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}") from None

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def presigned_download_url(self, path: str, expires_in: int | None = None) -> str:
        """URL valid for expires_in seconds (default url_ttl_seconds)."""
        self._resolve(path)
        expires = int(time.time()) + (expires_in or self.url_ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/{quote(path)}?{query}"

    def verify_signature(
        self, path: str, expires: int, signature: str, now: float | None = None
    ) -> bool:
        """Check a download URL's signature and expiry."""
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self._signature(path, expires), signature)
