"""
Upload / Mailbox → Extraction → Validation → Versioned Document Record

A multi-tenant intake pipeline for accounting documents (incoming and
outgoing invoices). Documents arrive by direct upload or from polled
mailboxes, get gap-free per-tenant sequential numbers, are extracted by an
external service, normalized, validated against compliance rules and kept
as an append-only history of extracted data versions.
"""

__version__ = "0.1.0"
