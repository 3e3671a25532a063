"""
CLI runner module.

Provides commands:
- init: Default config and database
- ingest: Upload a document file
- worker: Extraction and mailbox workers
- connectors: List / poll email connectors
- revalidate: Re-run validation for a tenant
- status: Document and queue statistics
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
