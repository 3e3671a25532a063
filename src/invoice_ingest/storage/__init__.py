"""
Blob storage for original document files.
"""

from .local import BlobStorage, LocalBlobStorage, StorageError

__all__ = ["BlobStorage", "LocalBlobStorage", "StorageError"]
