"""
Amount, rate and date normalization.

Extraction output carries amounts either as numbers or as localized strings
("1.234,56", "1234.56", "1,234.56", "€ 12,50"). Everything is parsed into
Decimal here and rounded to the cent with ROUND_HALF_UP whenever a value is
derived from others.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# 1.234,56 / 12,5 / 1.234 (dots are thousands separators)
EUROPEAN_AMOUNT = re.compile(r"^\d{1,3}(\.\d{3})*(,\d{1,2})?$")

_CURRENCY_NOISE = re.compile(r"(EUR|USD|CHF|GBP|€|\$|£|\s)", re.IGNORECASE)

DATE_PATTERNS = [
    # ISO format: 2024-11-18 (optionally followed by a time part)
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$"), "%Y-%m-%d", "iso"),
    # German format: 18.11.2024
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$"), "%d.%m.%Y", "german_dot"),
    # German format: 18.11.24 (2-digit year)
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2})$"), "%d.%m.%y", "german_dot_short"),
    # Slash format: 18/11/2024
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), "%d/%m/%Y", "slash"),
]


def round_cents(value: Decimal) -> Decimal:
    """Round to two decimal places, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: object) -> Decimal | None:
    """
    Parse a numeric or localized amount into a Decimal.

    Args:
        value: int, float, Decimal or string such as "1.234,56" / "1,234.56"

    Returns:
        Decimal value, or None for empty input

    Raises:
        ValueError: If the value is not a recognizable amount
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if not isinstance(value, str):
        raise ValueError(f"Not an amount: {value!r}")

    text = _CURRENCY_NOISE.sub("", value)
    if not text:
        return None

    negative = False
    if text.startswith("-"):
        negative = True
        text = text[1:]
    elif text.endswith("-"):
        negative = True
        text = text[:-1]

    if EUROPEAN_AMOUNT.match(text):
        cleaned = text.replace(".", "").replace(",", ".")
    elif "," in text and "." in text:
        # Whichever separator comes last is the decimal separator
        if text.rfind(".") > text.rfind(","):
            cleaned = text.replace(",", "")
        else:
            cleaned = text.replace(".", "").replace(",", ".")
    else:
        cleaned = text.replace(",", ".")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Not an amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Not an amount: {value!r}")
    return -amount if negative else amount


def parse_vat_rate(value: object) -> Decimal | None:
    """
    Parse a VAT rate as a percentage.

    Accepts 20, "20", "20 %", "20,0" and fractions such as 0.2 (read as 20%).
    """
    if isinstance(value, str):
        value = value.replace("%", "")
    rate = parse_amount(value)
    if rate is None:
        return None
    if Decimal(0) < rate < Decimal(1):
        rate = rate * HUNDRED
    if rate == rate.to_integral_value():
        return rate.to_integral_value()
    return rate


def parse_date(value: object) -> str | None:
    """
    Parse a date into YYYY-MM-DD.

    Raises:
        ValueError: If the value is not a recognizable date
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise ValueError(f"Not a date: {value!r}")

    text = value.strip()
    if not text:
        return None

    for pattern, date_format, pattern_type in DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        candidate = text[:10] if pattern_type == "iso" else text
        try:
            return datetime.strptime(candidate, date_format).strftime("%Y-%m-%d")
        except ValueError:
            break
    raise ValueError(f"Not a date: {value!r}")


def derive_net_vat_gross(
    net: Decimal | None,
    vat: Decimal | None,
    gross: Decimal | None,
    rate: Decimal | None,
) -> tuple[Decimal | None, Decimal | None, Decimal | None]:
    """
    Fill in whichever of net / vat / gross is missing.

    Two known amounts always win over the rate. With only one amount the rate
    is used. Every derived value is rounded to the cent as it is computed.
    """
    if net is not None and vat is not None and gross is None:
        gross = round_cents(net + vat)
    elif net is not None and gross is not None and vat is None:
        vat = round_cents(gross - net)
    elif vat is not None and gross is not None and net is None:
        net = round_cents(gross - vat)

    if rate is None or (net is not None and vat is not None and gross is not None):
        return net, vat, gross

    factor = rate / HUNDRED
    if net is not None:
        vat = round_cents(net * factor)
        gross = round_cents(net + vat)
    elif gross is not None:
        net = round_cents(gross / (1 + factor))
        vat = round_cents(gross - net)
    elif vat is not None and rate != 0:
        net = round_cents(vat / factor)
        gross = round_cents(net + vat)

    return net, vat, gross
