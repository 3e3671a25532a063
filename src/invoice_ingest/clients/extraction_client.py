"""
Extraction service client.

The extraction service takes the document bytes plus the direction and
returns a loosely-typed bag of fields with per-field confidence scores.
Turning that bag into ExtractedFields is the worker's job, not the client's.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class ExtractionServiceError(Exception):
    """Base exception for extraction client errors."""

    pass


class ExtractionAPIError(ExtractionServiceError):
    """API returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Extraction API error {status_code}: {message}")


class ExtractionConnectionError(ExtractionServiceError):
    """Failed to reach the extraction service."""

    pass


@dataclass
class ExtractionResponse:
    """Raw extraction output."""

    fields: dict[str, Any]
    confidence_scores: dict[str, Any] = field(default_factory=dict)
    stage_tag: str | None = None
    raw_response: str | None = None

    @classmethod
    def from_api_response(cls, data: dict, raw_text: str | None = None) -> "ExtractionResponse":
        """Accept both snake_case and camelCase envelopes."""
        return cls(
            fields=data.get("fields") or {},
            confidence_scores=(
                data.get("confidence_scores") or data.get("confidenceScores") or {}
            ),
            stage_tag=data.get("stage_tag") or data.get("stageTag") or data.get("stage"),
            raw_response=raw_text,
        )


class ExtractionClient(Protocol):
    """Anything that can extract fields from document bytes."""

    def extract(self, data: bytes, mime_type: str, direction: str) -> ExtractionResponse: ...


class HttpExtractionClient:
    """
    Client for the HTTP extraction service.

    Features:
    - Multipart upload of the original file
    - Direction-aware requests (INCOMING / OUTGOING)
    - Automatic retry with backoff for transient failures
    """

    DEFAULT_TIMEOUT = 120

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        backoff_factor: float = 1.0,
    ):
        """
        Initialize extraction client.

        Args:
            base_url: Extraction service URL (e.g., "http://extractor:9000")
            token: Optional bearer token
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def extract(self, data: bytes, mime_type: str, direction: str) -> ExtractionResponse:
        """
        Extract fields from a document.

        Args:
            data: Original file bytes
            mime_type: MIME type of the file
            direction: INCOMING (vendor fields expected) or OUTGOING (customer fields)

        Returns:
            ExtractionResponse with fields, confidence scores and stage tag
        """
        url = f"{self.base_url}/extract"
        try:
            response = self.session.post(
                url,
                files={"file": ("document", data, mime_type)},
                data={"direction": direction, "mime_type": mime_type},
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise ExtractionConnectionError(
                f"Failed to connect to extraction service at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            raise ExtractionConnectionError(f"Extraction request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ExtractionServiceError(f"Extraction request failed: {e}") from e

        if not response.ok:
            raise ExtractionAPIError(
                status_code=response.status_code,
                message=response.reason or "error",
                response_body=response.text,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExtractionServiceError(f"Extraction service returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ExtractionServiceError("Extraction service returned an unexpected payload")

        logger.debug(f"Extraction returned {len(body.get('fields') or {})} fields")
        return ExtractionResponse.from_api_response(body, raw_text=response.text)

    def test_connection(self) -> bool:
        """Check the service health endpoint."""
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=self.timeout)
        except requests.exceptions.RequestException:
            return False
        return response.ok
