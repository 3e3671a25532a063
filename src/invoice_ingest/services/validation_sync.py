"""
Validation & Sync Engine.

Evaluates a version's fields, aggregates the traffic light and writes the
outcome to the document. Validation status and processing status always
change together, in one transaction (StateStore.save_validation_and_sync).
New versions are stored together with their first validation run
(StateStore.append_version_and_sync).

Used by the extraction worker (version 1), by manual corrections (N+1),
by replacement documents and by the batch re-validation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..clients.registry_client import RegistryClient, RegistryInfo
from ..context import TenantContext
from ..rules import ComplianceRuleEvaluator, RuleEvaluator, is_valid_uid_syntax, make_check
from ..schemas.extracted_data import Direction, ExtractedFields, ExtractionSource
from ..schemas.validation import Severity, ValidationCheck, aggregate_severity
from ..state_store.sqlite_store import DocumentStatus, ExtractedVersionRecord, StateStore

logger = logging.getLogger(__name__)

REVALIDATION_STATUSES = [
    DocumentStatus.PROCESSED,
    DocumentStatus.REVIEW_REQUIRED,
    DocumentStatus.APPROVED,
]


@dataclass
class ValidationOutcome:
    """Result of one validation run."""

    aggregate_severity: Severity
    checks: list[ValidationCheck]
    registry_info: RegistryInfo | None = None
    validation_id: int | None = None


@dataclass
class BatchResult:
    """Summary of a batch operation."""

    total: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class ValidationSyncEngine:
    """Runs rules, optional registry verification and the synced write."""

    def __init__(
        self,
        store: StateStore,
        evaluator: RuleEvaluator | None = None,
        registry_client: RegistryClient | None = None,
    ):
        self.store = store
        self.evaluator = evaluator or ComplianceRuleEvaluator()
        self.registry_client = registry_client

    def evaluate(
        self, fields: ExtractedFields, direction: Direction
    ) -> tuple[list[ValidationCheck], RegistryInfo | None]:
        """Checks for a snapshot, without persisting anything."""
        checks = list(self.evaluator.evaluate(fields, direction))
        registry_info = None

        _, tax_id, _ = fields.counterpart(direction)
        if self.registry_client is not None and tax_id and is_valid_uid_syntax(tax_id):
            registry_info = self.registry_client.check(tax_id)
            checks.append(self._registry_check(tax_id, registry_info))
        return checks, registry_info

    @staticmethod
    def _registry_check(tax_id: str, info: RegistryInfo) -> ValidationCheck:
        if not info.checked:
            return make_check(
                "TAX_ID_REGISTRY",
                Severity.PENDING,
                f"Registry check for {tax_id} not possible: {info.error}",
            )
        if info.valid:
            name = f" ({info.registered_name})" if info.registered_name else ""
            return make_check("TAX_ID_REGISTRY", Severity.VALID, f"{tax_id} is registered{name}")
        return make_check("TAX_ID_REGISTRY", Severity.INVALID, f"{tax_id} is not registered")

    def validate_and_sync(
        self,
        document_id: int,
        tenant_id: str,
        fields: ExtractedFields,
        version: int,
        direction: Direction,
    ) -> ValidationOutcome:
        """
        Validate one version and sync the document.

        Args:
            document_id: Document to update
            tenant_id: Owning tenant
            fields: Snapshot of the version being validated
            version: Version number of the snapshot
            direction: Decides which party is the counterpart

        Returns:
            ValidationOutcome with aggregate severity and checks
        """
        checks, registry_info = self.evaluate(fields, direction)
        severity = aggregate_severity(checks)

        validation_id = self.store.save_validation_and_sync(
            document_id,
            tenant_id,
            version,
            severity,
            checks,
            fields,
            direction,
        )
        logger.info(
            f"Document {document_id} v{version} validated: {severity.value} "
            f"({sum(1 for c in checks if c.severity != Severity.VALID)} findings)"
        )
        return ValidationOutcome(
            aggregate_severity=severity,
            checks=checks,
            registry_info=registry_info,
            validation_id=validation_id,
        )

    def append_and_validate(
        self,
        document_id: int,
        tenant_id: str,
        fields: ExtractedFields,
        source: ExtractionSource,
        direction: Direction,
        evaluated: tuple[list[ValidationCheck], RegistryInfo | None] | None = None,
        **version_info: Any,
    ) -> tuple[ExtractedVersionRecord, ValidationOutcome]:
        """
        Store a new version and its validation as one unit.

        The checks run before anything is written. If they raise, neither
        the version nor a validation row exists afterwards.

        Args:
            evaluated: Result of evaluate() for these fields, when the caller
                had to check them before creating the document row
            version_info: stage_tag, confidence_scores, overall_confidence,
                edited_by, edit_reason, idempotency_key
        """
        checks, registry_info = evaluated or self.evaluate(fields, direction)
        severity = aggregate_severity(checks)

        version, validation_id = self.store.append_version_and_sync(
            document_id,
            tenant_id,
            fields,
            source,
            severity,
            checks,
            direction,
            **version_info,
        )
        logger.info(
            f"Document {document_id} v{version.version} stored and validated: {severity.value}"
        )
        return version, ValidationOutcome(
            aggregate_severity=severity,
            checks=checks,
            registry_info=registry_info,
            validation_id=validation_id,
        )

    def revalidate_all(self, ctx: TenantContext) -> BatchResult:
        """
        Re-run validation for every processed document of the tenant.

        Each document is validated against its latest version. A failure on
        one document is recorded and the batch continues.
        """
        documents = self.store.list_documents(ctx.tenant_id, statuses=REVALIDATION_STATUSES)
        result = BatchResult(total=len(documents))

        for document in documents:
            try:
                latest = self.store.get_latest_version(document.id)
                if latest is None:
                    raise ValueError("no extracted data")
                self.validate_and_sync(
                    document.id,
                    ctx.tenant_id,
                    latest.fields,
                    latest.version,
                    document.direction,
                )
                result.updated += 1
            except Exception as e:
                logger.warning(f"Re-validation of document {document.id} failed: {e}")
                result.errors.append(f"#{document.sequential_number:03d}: {e}")

        logger.info(
            f"Re-validated {result.updated}/{result.total} documents for tenant {ctx.tenant_id}"
        )
        return result
