"""
RFC 822 message parsing for the email channel.
"""

from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses


@dataclass
class MailAttachment:
    """A file-like MIME part."""

    filename: str | None
    content_type: str
    data: bytes
    inline: bool

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ParsedMail:
    """Header fields and file parts of one message."""

    sender: str | None
    subject: str | None
    message_id: str | None
    attachments: list[MailAttachment] = field(default_factory=list)


def parse_message(raw: bytes) -> ParsedMail:
    """
    Parse raw message bytes.

    Attachments are all parts with an attachment/inline disposition or a
    filename. Plain body parts are skipped. No filtering by type happens
    here.
    """
    msg: EmailMessage = BytesParser(policy=policy.default).parsebytes(raw)

    attachments = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        disposition = (part.get_content_disposition() or "").lower()
        filename = part.get_filename()
        if disposition not in ("attachment", "inline") and not filename:
            continue
        payload = part.get_payload(decode=True)
        if payload is None:
            continue
        attachments.append(
            MailAttachment(
                filename=filename,
                content_type=part.get_content_type().lower(),
                data=payload,
                inline=disposition == "inline",
            )
        )

    return ParsedMail(
        sender=_first_address(msg.get("From")),
        subject=_header(msg.get("Subject")),
        message_id=_header(msg.get("Message-ID")),
        attachments=attachments,
    )


def _header(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first_address(value: object) -> str | None:
    if value is None:
        return None
    addresses = [addr for _, addr in getaddresses([str(value)]) if addr]
    return addresses[0] if addresses else None
