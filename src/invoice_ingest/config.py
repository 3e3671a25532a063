"""
Configuration management (SSOT).

This module defines ALL configuration for the intake pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Secrets (extraction token, encryption key, URL signing key) come from the
  environment in production; the YAML file may hold them for local setups.
- Numbering, queue and mailbox policies are plain numbers here so the
  services never hard-code retry counts or thresholds.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

VIES_DEFAULT_URL = "https://ec.europa.eu/taxation_customs/vies/rest-api/check-vat-number"

DEFAULT_ATTACHMENT_MIMES = [
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/tiff",
    "image/webp",
]


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class StorageConfig:
    """Blob storage settings."""

    root: Path = field(default_factory=lambda: Path("data/blobs"))
    # Base URL that serves signed download links
    base_url: str = "http://localhost:8000/files"
    # HMAC key for download URLs (generated per process when unset)
    signing_key: str | None = None
    url_ttl_seconds: int = 900


@dataclass
class ExtractionConfig:
    """External extraction service."""

    base_url: str = "http://localhost:9000"
    token: str | None = None
    # No separate cancellation exists; this is the only bound on a hung call
    timeout_seconds: int = 120
    max_retries: int = 2
    backoff_factor: float = 1.0


@dataclass
class RegistryConfig:
    """Tax-id registry (VIES) lookups."""

    enabled: bool = True
    url: str = VIES_DEFAULT_URL
    timeout_seconds: int = 10


@dataclass
class QueueConfig:
    """Job queue and worker pool settings."""

    # Extraction jobs: attempts and exponential backoff base
    extraction_attempts: int = 3
    extraction_backoff_seconds: float = 2.0
    # Mailbox sync jobs are never retried; the next interval is the retry
    email_sync_attempts: int = 1
    worker_concurrency: int = 3
    email_concurrency: int = 2
    # Jobs stuck in PROCESSING longer than this are handed out again
    lock_seconds: int = 120
    email_lock_seconds: int = 300
    # Idle sleep between empty polls
    poll_interval_seconds: float = 1.0


@dataclass
class NumberingConfig:
    """Sequential-number assignment."""

    max_attempts: int = 20
    # Random delay between attempts, upper bound in milliseconds
    jitter_ms: int = 50


@dataclass
class EmailConfig:
    """Mailbox channel settings."""

    max_consecutive_failures: int = 3
    allowed_attachment_mimes: list[str] = field(
        default_factory=lambda: list(DEFAULT_ATTACHMENT_MIMES)
    )
    default_port: int = 993
    default_folder: str = "INBOX"
    default_poll_interval_minutes: int = 5
    subject_max_length: int = 500
    error_max_length: int = 1000


@dataclass
class CorrectionConfig:
    """Manual correction policy."""

    # A gross-only patch keeps net/vat from the previous version unless enabled
    recompute_on_gross_only: bool = False
    default_reason: str = "Manual correction"
    # VAT rate assumed for replacement documents without one
    replacement_default_vat_rate: str = "20"


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    numbering: NumberingConfig = field(default_factory=NumberingConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    corrections: CorrectionConfig = field(default_factory=CorrectionConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # 64 hex chars (AES-256); connectors cannot be created without it
    encryption_key: str | None = None

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.extraction.base_url:
            errors.append("extraction.base_url is required")
        if self.registry.enabled and not self.registry.url:
            errors.append("registry.url is required when the registry is enabled")

        if self.numbering.max_attempts < 1:
            errors.append("numbering.max_attempts must be >= 1")
        if self.numbering.jitter_ms < 0:
            errors.append("numbering.jitter_ms must be >= 0")

        if self.queue.extraction_attempts < 1:
            errors.append("queue.extraction_attempts must be >= 1")
        if self.queue.worker_concurrency < 1:
            errors.append("queue.worker_concurrency must be >= 1")

        if self.email.max_consecutive_failures < 1:
            errors.append("email.max_consecutive_failures must be >= 1")
        if self.email.default_poll_interval_minutes < 1:
            errors.append("email.default_poll_interval_minutes must be >= 1")

        if self.encryption_key:
            try:
                key = bytes.fromhex(self.encryption_key)
            except ValueError:
                errors.append("encryption_key must be hex encoded")
            else:
                if len(key) != 32:
                    errors.append("encryption_key must be 32 bytes (64 hex characters)")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - INGEST_STATE_DB
    - INGEST_STORAGE_ROOT
    - STORAGE_BASE_URL
    - STORAGE_SIGNING_KEY
    - EXTRACTION_URL
    - EXTRACTION_TOKEN
    - EXTRACTION_TIMEOUT (seconds)
    - VIES_ENABLED (true/false)
    - VIES_URL
    - ENCRYPTION_KEY
    - WORKER_CONCURRENCY
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    storage_data = data.get("storage", {})
    storage = StorageConfig(
        root=Path(os.environ.get("INGEST_STORAGE_ROOT", storage_data.get("root", "data/blobs"))),
        base_url=os.environ.get(
            "STORAGE_BASE_URL", storage_data.get("base_url", "http://localhost:8000/files")
        ),
        signing_key=os.environ.get("STORAGE_SIGNING_KEY", storage_data.get("signing_key")),
        url_ttl_seconds=storage_data.get("url_ttl_seconds", 900),
    )

    extraction_data = data.get("extraction", {})
    extraction = ExtractionConfig(
        base_url=os.environ.get(
            "EXTRACTION_URL", extraction_data.get("base_url", "http://localhost:9000")
        ),
        token=os.environ.get("EXTRACTION_TOKEN", extraction_data.get("token")),
        timeout_seconds=int(
            os.environ.get("EXTRACTION_TIMEOUT", extraction_data.get("timeout_seconds", 120))
        ),
        max_retries=extraction_data.get("max_retries", 2),
        backoff_factor=extraction_data.get("backoff_factor", 1.0),
    )

    registry_data = data.get("registry", {})
    registry = RegistryConfig(
        enabled=_env_bool("VIES_ENABLED", registry_data.get("enabled", True)),
        url=os.environ.get("VIES_URL", registry_data.get("url", VIES_DEFAULT_URL)),
        timeout_seconds=registry_data.get("timeout_seconds", 10),
    )

    queue_data = data.get("queue", {})
    queue = QueueConfig(
        extraction_attempts=queue_data.get("extraction_attempts", 3),
        extraction_backoff_seconds=queue_data.get("extraction_backoff_seconds", 2.0),
        email_sync_attempts=queue_data.get("email_sync_attempts", 1),
        worker_concurrency=int(
            os.environ.get("WORKER_CONCURRENCY", queue_data.get("worker_concurrency", 3))
        ),
        email_concurrency=queue_data.get("email_concurrency", 2),
        lock_seconds=queue_data.get("lock_seconds", 120),
        email_lock_seconds=queue_data.get("email_lock_seconds", 300),
        poll_interval_seconds=queue_data.get("poll_interval_seconds", 1.0),
    )

    numbering_data = data.get("numbering", {})
    numbering = NumberingConfig(
        max_attempts=numbering_data.get("max_attempts", 20),
        jitter_ms=numbering_data.get("jitter_ms", 50),
    )

    email_data = data.get("email", {})
    email = EmailConfig(
        max_consecutive_failures=email_data.get("max_consecutive_failures", 3),
        allowed_attachment_mimes=email_data.get(
            "allowed_attachment_mimes", list(DEFAULT_ATTACHMENT_MIMES)
        ),
        default_port=email_data.get("default_port", 993),
        default_folder=email_data.get("default_folder", "INBOX"),
        default_poll_interval_minutes=email_data.get("default_poll_interval_minutes", 5),
        subject_max_length=email_data.get("subject_max_length", 500),
        error_max_length=email_data.get("error_max_length", 1000),
    )

    correction_data = data.get("corrections", {})
    corrections = CorrectionConfig(
        recompute_on_gross_only=correction_data.get("recompute_on_gross_only", False),
        default_reason=correction_data.get("default_reason", "Manual correction"),
        replacement_default_vat_rate=str(
            correction_data.get("replacement_default_vat_rate", "20")
        ),
    )

    return Config(
        storage=storage,
        extraction=extraction,
        registry=registry,
        queue=queue,
        numbering=numbering,
        email=email,
        corrections=corrections,
        state_db_path=Path(
            os.environ.get("INGEST_STATE_DB", data.get("state_db_path", "data/state.db"))
        ),
        encryption_key=os.environ.get("ENCRYPTION_KEY", data.get("encryption_key")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Invoice intake pipeline configuration
#
# Secrets are best supplied through the environment:
#   EXTRACTION_TOKEN, ENCRYPTION_KEY, STORAGE_SIGNING_KEY

state_db_path: "data/state.db"

storage:
  root: "data/blobs"                        # Local blob storage directory
  base_url: "http://localhost:8000/files"   # Prefix of signed download URLs
  url_ttl_seconds: 900

extraction:
  base_url: "http://localhost:9000"         # Extraction service
  token: null
  timeout_seconds: 120
  max_retries: 2

registry:
  enabled: true                             # VIES tax-id verification
  timeout_seconds: 10

queue:
  extraction_attempts: 3                    # Attempts per extraction job
  extraction_backoff_seconds: 2.0           # Exponential backoff base
  worker_concurrency: 3
  lock_seconds: 120                         # Stalled job recovery

numbering:
  max_attempts: 20                          # Sequential number retries
  jitter_ms: 50                             # Random delay between attempts

email:
  max_consecutive_failures: 3               # Auto-deactivate after this many failed runs
  default_poll_interval_minutes: 5
  allowed_attachment_mimes:
    - application/pdf
    - image/jpeg
    - image/png
    - image/tiff
    - image/webp

corrections:
  recompute_on_gross_only: false            # Re-derive net/vat when only gross is corrected
  default_reason: "Manual correction"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
