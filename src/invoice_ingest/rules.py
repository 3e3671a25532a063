"""
Compliance rule catalogue for Austrian invoices (§11 UStG).

The evaluator turns one ExtractedFields snapshot into an ordered list of
ValidationChecks. Which fields are mandatory depends on the amount class:

- SMALL: gross <= 400 EUR (Kleinbetragsrechnung, reduced requirements)
- STANDARD: everything in between
- LARGE: gross > 10,000 EUR (recipient UID required)

A rule that does not apply to the amount class yields a PENDING check,
which never affects the aggregate.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol

from .schemas.extracted_data import Direction, ExtractedFields
from .schemas.validation import Severity, ValidationCheck


class AmountClass(str, Enum):
    """Invoice size class by gross amount."""

    SMALL = "SMALL"
    STANDARD = "STANDARD"
    LARGE = "LARGE"


SMALL_MAX = Decimal("400")
LARGE_MIN = Decimal("10000")

# Tolerance for net + vat == gross
MATH_TOLERANCE = Decimal("0.02")

VALID_VAT_RATES = (Decimal("0"), Decimal("10"), Decimal("13"), Decimal("20"))

_ALL = (AmountClass.SMALL, AmountClass.STANDARD, AmountClass.LARGE)
_NOT_SMALL = (AmountClass.STANDARD, AmountClass.LARGE)


@dataclass(frozen=True)
class Rule:
    """Catalogue entry."""

    id: str
    label: str
    legal_reference: str
    required_for: tuple[AmountClass, ...] = _ALL


RULES = {
    rule.id: rule
    for rule in (
        Rule("ISSUER_NAME", "Issuer name", "§11 Abs 1 Z 1 UStG"),
        Rule("ISSUER_ADDRESS", "Issuer address", "§11 Abs 1 Z 1 UStG", _NOT_SMALL),
        Rule("ISSUER_UID", "Issuer VAT id", "§11 Abs 1 Z 2 UStG", _NOT_SMALL),
        Rule("RECIPIENT_NAME", "Recipient name", "§11 Abs 1 Z 3 UStG", (AmountClass.LARGE,)),
        Rule("RECIPIENT_UID", "Recipient VAT id", "§11 Abs 1 Z 3a UStG", (AmountClass.LARGE,)),
        Rule("INVOICE_NUMBER", "Invoice number", "§11 Abs 1 Z 5 UStG", _NOT_SMALL),
        Rule("INVOICE_DATE", "Invoice date", "§11 Abs 1 Z 4 UStG"),
        Rule("DELIVERY_DATE", "Delivery date", "§11 Abs 1 Z 4 UStG", _NOT_SMALL),
        Rule("DESCRIPTION", "Description of goods or services", "§11 Abs 1 Z 3 UStG"),
        Rule("NET_AMOUNT", "Net amount", "§11 Abs 1 Z 5 UStG", _NOT_SMALL),
        Rule("VAT_RATE", "VAT rate", "§11 Abs 1 Z 5 UStG"),
        Rule("VAT_AMOUNT", "VAT amount", "§11 Abs 1 Z 5 UStG", _NOT_SMALL),
        Rule("GROSS_AMOUNT", "Gross amount", "§11 Abs 1 Z 5 UStG"),
        Rule("MATH_CHECK", "Arithmetic consistency", "§11 UStG"),
        Rule("VAT_RATE_VALID", "Valid VAT rate", "§10 UStG"),
        Rule("UID_SYNTAX", "VAT id syntax", "Art 28 MwStSystRL", _NOT_SMALL),
        Rule("IBAN_SYNTAX", "IBAN syntax", "ISO 13616"),
        Rule("TAX_ID_REGISTRY", "VAT id registry check", "Art 28 MwStSystRL / VO (EU) 904/2010"),
    )
}

# Country-specific VAT id formats
UID_PATTERNS = {
    "AT": re.compile(r"^ATU\d{8}$"),
    "BE": re.compile(r"^BE[01]\d{9}$"),
    "BG": re.compile(r"^BG\d{9,10}$"),
    "CY": re.compile(r"^CY\d{8}[A-Z]$"),
    "CZ": re.compile(r"^CZ\d{8,10}$"),
    "DE": re.compile(r"^DE\d{9}$"),
    "DK": re.compile(r"^DK\d{8}$"),
    "EE": re.compile(r"^EE\d{9}$"),
    "EL": re.compile(r"^EL\d{9}$"),
    "ES": re.compile(r"^ES[A-Z0-9]\d{7}[A-Z0-9]$"),
    "EU": re.compile(r"^EU\d{9}$"),
    "FI": re.compile(r"^FI\d{8}$"),
    "FR": re.compile(r"^FR[A-Z0-9]{2}\d{9}$"),
    "HR": re.compile(r"^HR\d{11}$"),
    "HU": re.compile(r"^HU\d{8}$"),
    "IE": re.compile(r"^IE\d[A-Z0-9+*]\d{5}[A-Z]{1,2}$"),
    "IT": re.compile(r"^IT\d{11}$"),
    "LT": re.compile(r"^LT(\d{9}|\d{12})$"),
    "LU": re.compile(r"^LU\d{8}$"),
    "LV": re.compile(r"^LV\d{11}$"),
    "MT": re.compile(r"^MT\d{8}$"),
    "NL": re.compile(r"^NL\d{9}B\d{2}$"),
    "PL": re.compile(r"^PL\d{10}$"),
    "PT": re.compile(r"^PT\d{9}$"),
    "RO": re.compile(r"^RO\d{2,10}$"),
    "SE": re.compile(r"^SE\d{12}$"),
    "SI": re.compile(r"^SI\d{8}$"),
    "SK": re.compile(r"^SK\d{10}$"),
    "XI": re.compile(r"^XI(\d{9}|\d{12})$"),
}

# ISO 13616 lengths for common countries
IBAN_LENGTHS = {
    "AT": 20, "BE": 16, "BG": 22, "CH": 21, "CZ": 24, "DE": 22, "DK": 18,
    "EE": 20, "ES": 24, "FI": 18, "FR": 27, "GB": 22, "HR": 21, "HU": 28,
    "IE": 22, "IT": 27, "LT": 20, "LU": 20, "LV": 21, "MT": 31, "NL": 18,
    "PL": 28, "PT": 25, "RO": 24, "SE": 24, "SI": 19, "SK": 24,
}  # fmt: skip

_IBAN_SHAPE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{11,30}$")


class RuleEvaluator(Protocol):
    """Turns fields into ordered checks."""

    def evaluate(self, fields: ExtractedFields, direction: Direction) -> list[ValidationCheck]: ...


def compact_tax_id(tax_id: str) -> str:
    """Upper-case tax id without blanks, dots or dashes."""
    return re.sub(r"[\s.-]", "", tax_id).upper()


def is_valid_uid_syntax(tax_id: str) -> bool:
    """True when the tax id matches its country's format."""
    uid = compact_tax_id(tax_id)
    pattern = UID_PATTERNS.get(uid[:2])
    return bool(pattern and pattern.match(uid))


def iban_check_digit_ok(iban: str) -> bool:
    """ISO 13616 mod-97 check."""
    rearranged = iban[4:] + iban[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


def amount_class(gross: Decimal | None) -> AmountClass:
    """Size class; unknown gross counts as STANDARD."""
    if gross is None:
        return AmountClass.STANDARD
    if gross <= SMALL_MAX:
        return AmountClass.SMALL
    if gross > LARGE_MIN:
        return AmountClass.LARGE
    return AmountClass.STANDARD


def make_check(rule_id: str, severity: Severity, message: str) -> ValidationCheck:
    """Check carrying the catalogue's legal reference."""
    return ValidationCheck(
        rule_id=rule_id,
        severity=severity,
        message=message,
        legal_reference=RULES[rule_id].legal_reference,
    )


class ComplianceRuleEvaluator:
    """
    Default rule catalogue.

    Checks are returned in catalogue order: presence checks first, then
    arithmetic, then syntax checks. Registry verification is not done here.
    """

    def evaluate(self, fields: ExtractedFields, direction: Direction) -> list[ValidationCheck]:
        size = amount_class(fields.gross_amount)

        checks = [
            self._presence("ISSUER_NAME", fields.issuer_name, size),
            self._presence("ISSUER_ADDRESS", fields.issuer_address, size),
            self._presence("ISSUER_UID", fields.issuer_tax_id, size),
            self._presence("RECIPIENT_NAME", fields.recipient_name, size),
            self._presence("RECIPIENT_UID", fields.recipient_tax_id, size),
            self._presence("INVOICE_NUMBER", fields.invoice_number, size),
            self._presence("INVOICE_DATE", fields.invoice_date, size),
            self._presence("DELIVERY_DATE", fields.delivery_date, size),
            self._presence("DESCRIPTION", fields.description, size, missing=Severity.WARNING),
            self._presence("NET_AMOUNT", fields.net_amount, size),
            self._presence("VAT_RATE", self._rate_or_breakdown(fields), size),
            self._presence("VAT_AMOUNT", fields.vat_amount, size),
            self._presence("GROSS_AMOUNT", fields.gross_amount, size),
            self._check_math(fields),
            self._check_vat_rate(fields),
            self._check_uid_syntax(fields, direction, size),
            self._check_iban(fields, direction),
        ]
        return checks

    @staticmethod
    def _rate_or_breakdown(fields: ExtractedFields) -> object:
        if fields.vat_rate is not None:
            return fields.vat_rate
        rates = [entry.vat_rate for entry in fields.vat_breakdown if entry.vat_rate is not None]
        return rates or None

    @staticmethod
    def _presence(
        rule_id: str,
        value: object,
        size: AmountClass,
        missing: Severity = Severity.INVALID,
    ) -> ValidationCheck:
        rule = RULES[rule_id]
        if size not in rule.required_for:
            return make_check(
                rule_id, Severity.PENDING, f"{rule.label}: not required for {size.value} invoices"
            )
        if value is None:
            return make_check(rule_id, missing, f"{rule.label} is missing")
        return make_check(rule_id, Severity.VALID, f"{rule.label} present")

    @staticmethod
    def _check_math(fields: ExtractedFields) -> ValidationCheck:
        if len(fields.vat_breakdown) > 1:
            if fields.gross_amount is None:
                return make_check(
                    "MATH_CHECK", Severity.WARNING, "Cannot check arithmetic: gross amount missing"
                )
            for entry in fields.vat_breakdown:
                if None in (entry.net_amount, entry.vat_amount, entry.vat_rate):
                    return make_check(
                        "MATH_CHECK",
                        Severity.WARNING,
                        "Cannot check arithmetic: incomplete VAT line",
                    )
                expected = (entry.net_amount * entry.vat_rate / 100).quantize(Decimal("0.01"))
                if abs(expected - entry.vat_amount) > MATH_TOLERANCE:
                    return make_check(
                        "MATH_CHECK",
                        Severity.INVALID,
                        f"VAT error at {entry.vat_rate}%: {entry.net_amount} x {entry.vat_rate}% "
                        f"= {expected}, but VAT is {entry.vat_amount}",
                    )
            total = sum(
                (entry.net_amount + entry.vat_amount for entry in fields.vat_breakdown), Decimal(0)
            )
            diff = abs(total - fields.gross_amount)
            if diff <= MATH_TOLERANCE:
                return make_check("MATH_CHECK", Severity.VALID, "VAT breakdown adds up to gross")
            return make_check(
                "MATH_CHECK",
                Severity.INVALID,
                f"VAT breakdown sums to {total}, gross is {fields.gross_amount} "
                f"(difference {diff})",
            )

        net, vat, gross = fields.net_amount, fields.vat_amount, fields.gross_amount
        if net is None or vat is None or gross is None:
            return make_check(
                "MATH_CHECK", Severity.WARNING, "Cannot check arithmetic: amounts missing"
            )
        diff = abs(net + vat - gross)
        if diff <= MATH_TOLERANCE:
            return make_check("MATH_CHECK", Severity.VALID, f"{net} + {vat} = {gross}")
        return make_check(
            "MATH_CHECK",
            Severity.INVALID,
            f"Arithmetic error: {net} + {vat} != {gross} (difference {diff})",
        )

    @staticmethod
    def _check_vat_rate(fields: ExtractedFields) -> ValidationCheck:
        if len(fields.vat_breakdown) > 1:
            rates = [entry.vat_rate for entry in fields.vat_breakdown]
        elif fields.vat_rate is not None:
            rates = [fields.vat_rate]
        else:
            return make_check("VAT_RATE_VALID", Severity.PENDING, "No VAT rate to check")

        invalid = [rate for rate in rates if rate is None or rate not in VALID_VAT_RATES]
        if invalid:
            shown = ", ".join(f"{rate}%" for rate in invalid)
            return make_check(
                "VAT_RATE_VALID",
                Severity.WARNING,
                f"Unusual VAT rate {shown} (expected 20%, 13%, 10% or 0%)",
            )
        return make_check("VAT_RATE_VALID", Severity.VALID, "VAT rate valid")

    @staticmethod
    def _check_uid_syntax(
        fields: ExtractedFields, direction: Direction, size: AmountClass
    ) -> ValidationCheck:
        _, tax_id, _ = fields.counterpart(direction)
        if size not in RULES["UID_SYNTAX"].required_for and not tax_id:
            return make_check(
                "UID_SYNTAX", Severity.PENDING, f"VAT id not required for {size.value} invoices"
            )
        if not tax_id:
            return make_check("UID_SYNTAX", Severity.WARNING, "No VAT id present")

        uid = compact_tax_id(tax_id)
        if uid[:2] not in UID_PATTERNS:
            return make_check(
                "UID_SYNTAX", Severity.WARNING, f"VAT id format not recognised: {tax_id}"
            )
        if is_valid_uid_syntax(uid):
            return make_check("UID_SYNTAX", Severity.VALID, f"VAT id syntax correct: {uid}")
        return make_check(
            "UID_SYNTAX", Severity.WARNING, f"VAT id syntax for {uid[:2]} looks invalid: {tax_id}"
        )

    @staticmethod
    def _check_iban(fields: ExtractedFields, direction: Direction) -> ValidationCheck:
        if not fields.iban:
            if Direction(direction) == Direction.OUTGOING:
                return make_check("IBAN_SYNTAX", Severity.PENDING, "No IBAN (optional on outgoing)")
            return make_check("IBAN_SYNTAX", Severity.WARNING, "No IBAN present")

        iban = re.sub(r"\s", "", fields.iban).upper()
        if not _IBAN_SHAPE.match(iban):
            return make_check(
                "IBAN_SYNTAX", Severity.WARNING, f"IBAN looks malformed: {fields.iban}"
            )
        expected = IBAN_LENGTHS.get(iban[:2])
        if expected and len(iban) != expected:
            return make_check(
                "IBAN_SYNTAX",
                Severity.INVALID,
                f"IBAN has {len(iban)} characters, expected {expected} for {iban[:2]}",
            )
        if not iban_check_digit_ok(iban):
            return make_check(
                "IBAN_SYNTAX", Severity.INVALID, f"IBAN check digits wrong: {fields.iban}"
            )
        return make_check("IBAN_SYNTAX", Severity.VALID, "IBAN valid")
