"""
SSOT (Single Source of Truth) schemas for the pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .amounts import (
    derive_net_vat_gross,
    parse_amount,
    parse_date,
    parse_vat_rate,
    round_cents,
)
from .dedupe import compute_file_hash, extraction_idempotency_key, file_extension
from .extracted_data import (
    Direction,
    ExtractedFields,
    ExtractionSource,
    VatBreakdownEntry,
    apply_delivery_date_fallback,
    derive_amounts,
    normalize_extraction,
    overall_confidence,
    patched_field_names,
)
from .validation import SEVERITY_RANK, Severity, ValidationCheck, aggregate_severity

__all__ = [
    # Amounts
    "derive_net_vat_gross",
    "parse_amount",
    "parse_date",
    "parse_vat_rate",
    "round_cents",
    # Dedupe
    "compute_file_hash",
    "extraction_idempotency_key",
    "file_extension",
    # Extracted data
    "Direction",
    "ExtractedFields",
    "ExtractionSource",
    "VatBreakdownEntry",
    "apply_delivery_date_fallback",
    "derive_amounts",
    "normalize_extraction",
    "overall_confidence",
    "patched_field_names",
    # Validation
    "SEVERITY_RANK",
    "Severity",
    "ValidationCheck",
    "aggregate_severity",
]
