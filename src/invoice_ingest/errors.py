"""
Error taxonomy for the intake pipeline.

- ConflictError: duplicate content, already-replaced documents, illegal
  status transitions. Surfaced immediately, never retried.
- NotFoundError: missing document / connector / entity.
- RetryExhaustedError: a bounded retry loop ran out of attempts.
- EncryptionNotConfiguredError: secret vault has no key.
- ExtractionError: extraction output could not be turned into fields.
"""


class IngestError(Exception):
    """Base exception for pipeline errors."""

    pass


class ConflictError(IngestError):
    """Operation conflicts with existing state."""

    def __init__(self, message: str, existing_id: int | None = None):
        self.existing_id = existing_id
        super().__init__(message)


class NotFoundError(IngestError):
    """Entity does not exist (or belongs to another tenant)."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id {entity_id} not found")


class RetryExhaustedError(IngestError):
    """A bounded retry loop used all of its attempts."""

    def __init__(self, attempts: int, message: str | None = None):
        self.attempts = attempts
        super().__init__(message or f"Gave up after {attempts} attempts")


class NumberingExhaustedError(RetryExhaustedError):
    """No free sequential number could be claimed."""

    def __init__(self, attempts: int, message: str | None = None):
        super().__init__(
            attempts,
            message or f"Could not assign a sequential number after {attempts} attempts",
        )


class EncryptionNotConfiguredError(IngestError):
    """Secret vault has no usable key."""

    def __init__(self, message: str = "Encryption is not configured (ENCRYPTION_KEY missing)"):
        super().__init__(message)


class ExtractionError(IngestError):
    """Extraction output was unusable."""

    pass
