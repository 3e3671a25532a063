"""Tests for RFC 822 message parsing."""

from conftest import MINIMAL_PDF, build_email
from invoice_ingest.clients.mail_parser import parse_message


class TestParseMessage:
    def test_headers(self):
        parsed = parse_message(build_email([("invoice.pdf", "application/pdf", MINIMAL_PDF)]))

        assert parsed.sender == "billing@muster.example"
        assert parsed.subject == "Rechnung RE-2024-0042"
        assert parsed.message_id == "<msg-1@example.com>"

    def test_attachments_only(self):
        """The text body is not an attachment."""
        raw = build_email(
            [
                ("invoice.pdf", "application/pdf", MINIMAL_PDF),
                ("scan.png", "image/png", b"\x89PNG\r\n"),
            ]
        )

        attachments = parse_message(raw).attachments

        assert [(a.filename, a.content_type) for a in attachments] == [
            ("invoice.pdf", "application/pdf"),
            ("scan.png", "image/png"),
        ]
        assert attachments[0].data == MINIMAL_PDF
        assert attachments[0].size == len(MINIMAL_PDF)
        assert not attachments[0].inline

    def test_inline_part(self):
        raw = build_email([(None, "image/png", b"\x89PNG\r\n")], inline=True)

        (attachment,) = parse_message(raw).attachments

        assert attachment.inline
        assert attachment.filename is None

    def test_missing_message_id(self):
        parsed = parse_message(build_email([], message_id=None))

        assert parsed.message_id is None
        assert parsed.attachments == []
