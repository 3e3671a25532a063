"""
Tax-id registry client (EU VIES).

A lookup either yields a checked RegistryInfo (valid or not, with the
registered name and address) or an unchecked one carrying the reason. It
never raises for service problems: registry outages must not block the
pipeline.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..rules import UID_PATTERNS

logger = logging.getLogger(__name__)

# "---" is what VIES returns when it does not disclose a value
_UNDISCLOSED = "---"

TAX_ID_PATTERN = re.compile(r"^([A-Z]{2})([0-9A-Z+*.]{2,12})$")


@dataclass
class RegistryInfo:
    """Outcome of a registry lookup."""

    valid: bool | None
    registered_name: str | None = None
    registered_address: str | None = None
    checked_at: str | None = None
    error: str | None = None

    @property
    def checked(self) -> bool:
        """True when the registry actually answered."""
        return self.checked_at is not None and self.error is None

    @classmethod
    def unchecked(cls, error: str) -> "RegistryInfo":
        return cls(valid=None, error=error)


class RegistryClient(Protocol):
    """Anything that can verify a tax id."""

    def check(self, tax_id: str) -> RegistryInfo: ...


def split_tax_id(tax_id: str) -> tuple[str, str] | None:
    """Split "ATU12345678" / "AT U1234 5678" into (country code, number)."""
    compact = re.sub(r"[\s.-]", "", tax_id).upper()
    match = TAX_ID_PATTERN.match(compact)
    if not match or match.group(1) not in UID_PATTERNS:
        return None
    return match.group(1), match.group(2)


class ViesRegistryClient:
    """Client for the VIES REST API."""

    def __init__(
        self,
        url: str,
        timeout: int = 10,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {"Accept": "application/json", "Content-Type": "application/json"}
        )

        # The last response is returned once retries run out, so a
        # persistent 503 still reads as "HTTP 503"
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def check(self, tax_id: str) -> RegistryInfo:
        """Verify a VAT number."""
        parts = split_tax_id(tax_id)
        if parts is None:
            return RegistryInfo.unchecked(f"Malformed tax id: {tax_id}")
        country_code, number = parts

        try:
            response = self.session.post(
                self.url,
                json={"countryCode": country_code, "vatNumber": number},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"VIES lookup for {tax_id} failed: {e}")
            return RegistryInfo.unchecked(f"Registry unreachable: {e}")

        if not response.ok:
            logger.warning(f"VIES lookup for {tax_id} returned HTTP {response.status_code}")
            return RegistryInfo.unchecked(f"Registry error: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return RegistryInfo.unchecked("Registry returned invalid JSON")

        if "valid" not in body:
            error = body.get("userError") or body.get("errorWrappers") or "unexpected response"
            return RegistryInfo.unchecked(f"Registry error: {error}")

        return RegistryInfo(
            valid=bool(body["valid"]),
            registered_name=_disclosed(body.get("name")),
            registered_address=_disclosed(body.get("address")),
            checked_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )


def _disclosed(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value or value == _UNDISCLOSED:
        return None
    return value
