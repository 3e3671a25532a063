"""
Canonical extracted invoice fields (SSOT).

The extraction service returns a loose bag of optional fields. It is turned
into ExtractedFields exactly once, at the pipeline boundary, by
ExtractedFields.from_raw. Every later step (derivation, validation,
persistence, correction) works on this typed record only.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from .amounts import derive_net_vat_gross, parse_amount, parse_date, parse_vat_rate, round_cents

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Whether the document was received or issued by the tenant."""

    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


class ExtractionSource(str, Enum):
    """Origin of an extracted data version."""

    AUTOMATED = "AUTOMATED"
    MANUAL = "MANUAL"


@dataclass
class VatBreakdownEntry:
    """One rate line of a multi-rate invoice."""

    vat_rate: Decimal | None = None
    net_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "VatBreakdownEntry":
        data = _snake_keys(raw)
        return cls(
            vat_rate=_safe(parse_vat_rate, data.get("vat_rate", data.get("rate"))),
            net_amount=_safe(parse_amount, data.get("net_amount", data.get("net"))),
            vat_amount=_safe(parse_amount, data.get("vat_amount", data.get("vat"))),
            gross_amount=_safe(parse_amount, data.get("gross_amount", data.get("gross"))),
        )

    def completed(self) -> "VatBreakdownEntry":
        """Return a copy with missing amounts derived from the others."""
        net, vat, gross = derive_net_vat_gross(
            self.net_amount, self.vat_amount, self.gross_amount, self.vat_rate
        )
        return replace(self, net_amount=net, vat_amount=vat, gross_amount=gross)

    def to_dict(self) -> dict:
        return {
            "vat_rate": _dec_str(self.vat_rate),
            "net_amount": _dec_str(self.net_amount),
            "vat_amount": _dec_str(self.vat_amount),
            "gross_amount": _dec_str(self.gross_amount),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VatBreakdownEntry":
        return cls(
            vat_rate=_decimal(data.get("vat_rate")),
            net_amount=_decimal(data.get("net_amount")),
            vat_amount=_decimal(data.get("vat_amount")),
            gross_amount=_decimal(data.get("gross_amount")),
        )


_AMOUNT_FIELDS = ("net_amount", "vat_amount", "gross_amount")
_DATE_FIELDS = ("invoice_date", "delivery_date", "due_date")
_DECIMAL_FIELDS = (*_AMOUNT_FIELDS, "vat_rate")


@dataclass
class ExtractedFields:
    """
    Typed snapshot of the financial fields of one document.

    All fields are optional; a missing value is None. Amounts are Decimal,
    dates are ISO strings (YYYY-MM-DD), the VAT rate is a percentage.
    """

    issuer_name: str | None = None
    issuer_address: str | None = None
    issuer_tax_id: str | None = None
    recipient_name: str | None = None
    recipient_address: str | None = None
    recipient_tax_id: str | None = None
    invoice_number: str | None = None
    invoice_date: str | None = None
    delivery_date: str | None = None
    due_date: str | None = None
    description: str | None = None
    net_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None
    vat_rate: Decimal | None = None
    vat_breakdown: list[VatBreakdownEntry] = field(default_factory=list)
    currency: str | None = None
    iban: str | None = None
    account: str | None = None
    category: str | None = None

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any] | None) -> "ExtractedFields":
        """
        Validate a loosely-shaped extraction payload.

        camelCase keys are accepted, unknown keys are ignored, and values
        that cannot be parsed are dropped (logged) rather than failing the
        whole document.
        """
        data = _snake_keys(raw or {})
        known = cls.field_names()
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            logger.debug(f"Ignoring unknown extraction fields: {unknown}")
        return cls(**{name: _parse_field(name, data[name]) for name in data if name in known})

    def overlay(self, patch: Mapping[str, Any]) -> "ExtractedFields":
        """
        Build a new snapshot with patch values applied on top of this one.

        Keys absent from the patch keep their current value. An explicit None
        clears a field.

        Raises:
            ValueError: On unknown field names or unparseable values
        """
        data = _snake_keys(patch)
        unknown = sorted(k for k in data if k not in self.field_names())
        if unknown:
            raise ValueError(f"Unknown fields in correction: {', '.join(unknown)}")
        changes = {name: _parse_field(name, value, strict=True) for name, value in data.items()}
        return replace(self, **changes)

    def counterpart(self, direction: Direction) -> tuple[str | None, str | None, str | None]:
        """(name, tax id, address) of the other party for this direction."""
        if Direction(direction) == Direction.INCOMING:
            return self.issuer_name, self.issuer_tax_id, self.issuer_address
        return self.recipient_name, self.recipient_tax_id, self.recipient_address

    def to_dict(self) -> dict:
        """Serialize to a JSON-safe dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "vat_breakdown":
                result[f.name] = [entry.to_dict() for entry in value]
            elif isinstance(value, Decimal):
                result[f.name] = str(value)
            else:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtractedFields":
        """
        Deserialize from to_dict output.

        Stored amounts are plain decimal strings and are read back as such,
        never through the localized parser ("1.234" stays 1.234).
        """
        values: dict[str, Any] = {}
        for name in cls.field_names():
            if name not in data:
                continue
            if name == "vat_breakdown":
                values[name] = [VatBreakdownEntry.from_dict(e) for e in data[name] or []]
            elif name in _DECIMAL_FIELDS:
                values[name] = _decimal(data[name])
            else:
                values[name] = data[name]
        return cls(**values)


def derive_amounts(extracted: ExtractedFields) -> ExtractedFields:
    """
    Complete net / vat / gross.

    A breakdown with more than one entry seeds the aggregate amounts that
    are still missing from the sums of its (completed) lines. A
    single-entry breakdown seeds missing net and vat from that line and
    supplies the rate when none was stated. Whatever is still missing
    afterwards is derived from the single aggregate rate.
    """
    net = extracted.net_amount
    vat = extracted.vat_amount
    gross = extracted.gross_amount
    rate = extracted.vat_rate
    breakdown = [entry.completed() for entry in extracted.vat_breakdown]

    if len(breakdown) > 1:
        net = net if net is not None else _sum_entries(breakdown, "net_amount")
        vat = vat if vat is not None else _sum_entries(breakdown, "vat_amount")
        gross = gross if gross is not None else _sum_entries(breakdown, "gross_amount")
    elif len(breakdown) == 1:
        (entry,) = breakdown
        net = net if net is not None else entry.net_amount
        vat = vat if vat is not None else entry.vat_amount
        rate = rate if rate is not None else entry.vat_rate

    net, vat, gross = derive_net_vat_gross(net, vat, gross, rate)
    return replace(
        extracted,
        net_amount=net,
        vat_amount=vat,
        gross_amount=gross,
        vat_rate=rate,
        vat_breakdown=breakdown,
    )


def apply_delivery_date_fallback(extracted: ExtractedFields) -> ExtractedFields:
    """Without a stated delivery date the invoice date is the delivery date."""
    if extracted.delivery_date is None and extracted.invoice_date is not None:
        return replace(extracted, delivery_date=extracted.invoice_date)
    return extracted


def normalize_extraction(extracted: ExtractedFields) -> ExtractedFields:
    """Derivation steps shared by the automated and manual paths."""
    return apply_delivery_date_fallback(derive_amounts(extracted))


def overall_confidence(scores: Mapping[str, Any] | None) -> float | None:
    """
    Mean of all positive numeric per-field scores.

    Zero, negative, missing and non-numeric scores do not count.
    """
    values = [
        float(v)
        for v in (scores or {}).values()
        if isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0
    ]
    if not values:
        return None
    return sum(values) / len(values)


def patched_field_names(patch: Mapping[str, Any]) -> list[str]:
    """Canonical (snake_case) field names touched by a correction patch."""
    return sorted(_snake_keys(patch))


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {_snake(str(k)): v for k, v in data.items()}


def _snake(key: str) -> str:
    if key.isupper():
        return key.lower()
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _parse_field(name: str, value: Any, strict: bool = False) -> Any:
    if name == "vat_breakdown":
        entries = value or []
        return [
            e if isinstance(e, VatBreakdownEntry) else VatBreakdownEntry.from_raw(e)
            for e in entries
        ]
    if name in _AMOUNT_FIELDS:
        parser = parse_amount
    elif name == "vat_rate":
        parser = parse_vat_rate
    elif name in _DATE_FIELDS:
        parser = parse_date
    else:
        parser = _clean_string
    if strict:
        return parser(value)
    return _safe(parser, value, name)


def _clean_string(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = ", ".join(str(v) for v in value.values() if v)
    text = str(value).strip()
    return text or None


def _safe(parser, value: Any, name: str = "value") -> Any:
    try:
        return parser(value)
    except ValueError as e:
        logger.warning(f"Dropping unparseable {name}: {e}")
        return None


def _sum_entries(entries: list[VatBreakdownEntry], attr: str) -> Decimal | None:
    values = [getattr(e, attr) for e in entries]
    if any(v is None for v in values):
        return None
    return round_cents(sum(values, Decimal(0)))


def _dec_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None
