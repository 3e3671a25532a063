"""
Validation check records and traffic-light aggregation.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class Severity(str, Enum):
    """
    Traffic-light severity of a check or a document.

    VALID: all good (green)
    WARNING: needs a look (yellow)
    INVALID: legally deficient (red)
    PENDING: not decided yet (gray)
    """

    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"
    PENDING = "pending"


# Worst wins: invalid > warning > valid > pending
SEVERITY_RANK = {
    Severity.PENDING: 0,
    Severity.VALID: 1,
    Severity.WARNING: 2,
    Severity.INVALID: 3,
}


@dataclass
class ValidationCheck:
    """Outcome of one rule."""

    rule_id: str
    severity: Severity
    message: str
    legal_reference: str | None = None

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "legal_reference": self.legal_reference,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationCheck":
        return cls(
            rule_id=data["rule_id"],
            severity=Severity(data["severity"]),
            message=data.get("message", ""),
            legal_reference=data.get("legal_reference"),
        )


def aggregate_severity(checks: Iterable[ValidationCheck]) -> Severity:
    """Worst severity of all checks; an empty list is PENDING."""
    worst = Severity.PENDING
    for check in checks:
        if SEVERITY_RANK[check.severity] > SEVERITY_RANK[worst]:
            worst = check.severity
    return worst
