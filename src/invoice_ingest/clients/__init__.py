"""
External collaborators.

Provides:
- Extraction service client (HTTP, retry/backoff)
- Tax-id registry client (VIES)
- IMAP mailbox client and RFC 822 parser
"""

from .extraction_client import (
    ExtractionAPIError,
    ExtractionClient,
    ExtractionConnectionError,
    ExtractionResponse,
    ExtractionServiceError,
    HttpExtractionClient,
)
from .mail_parser import MailAttachment, ParsedMail, parse_message
from .mailbox import ImapMailboxClient, MailboxClient, MailboxError, MailboxMessage
from .registry_client import RegistryClient, RegistryInfo, ViesRegistryClient, split_tax_id

__all__ = [
    "ExtractionAPIError",
    "ExtractionClient",
    "ExtractionConnectionError",
    "ExtractionResponse",
    "ExtractionServiceError",
    "HttpExtractionClient",
    "ImapMailboxClient",
    "MailAttachment",
    "MailboxClient",
    "MailboxError",
    "MailboxMessage",
    "ParsedMail",
    "RegistryClient",
    "RegistryInfo",
    "ViesRegistryClient",
    "parse_message",
    "split_tax_id",
]
