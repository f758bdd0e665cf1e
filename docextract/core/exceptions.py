"""
Error taxonomy for the extraction pipeline.

Hard failures derive from ExtractionError and abort a run. Bookkeeping
failures that must not abort a run are recorded as PersistenceWarning.
"""

from typing import Any, Optional


class ExtractionError(Exception):
    """Base for every error the pipeline surfaces to its caller."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidRequest(ExtractionError):
    """Caller supplied insufficient or malformed input."""

    status_code = 400


class Unauthorized(ExtractionError):
    """Missing or invalid caller credentials."""

    status_code = 401


class DocumentNotFound(ExtractionError):
    status_code = 404

    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}", {"document_id": document_id})


class FieldNotFound(ExtractionError):
    status_code = 404

    def __init__(self, document_id: str, field_id: str):
        super().__init__(
            f"Field not found: {field_id}", {"document_id": document_id, "field_id": field_id}
        )


class FieldConflict(ExtractionError):
    """A field with the same name already exists on the document."""

    status_code = 409


class InvalidTransition(ExtractionError):
    """A document status change outside pending/completed/failed → processing → completed/failed."""

    status_code = 409


class PersistenceError(ExtractionError):
    """A relational-store operation failed."""

    status_code = 500


# ── Analysis service ─────────────────────────────────────────────────

class AnalysisError(ExtractionError):
    """Base for failures talking to the document-analysis service."""

    status_code = 502


class ServiceUnavailable(AnalysisError):
    """Submission failed at the HTTP layer."""


class AnalysisNotConfigured(ServiceUnavailable):
    """Endpoint or API key missing from settings."""


class MissingOperationHandle(AnalysisError):
    """Submission succeeded but the response carried no Operation-Location."""


class AnalysisFailed(AnalysisError):
    """The service reported the analysis as failed."""


class AnalysisTimeout(AnalysisError):
    """Poll budget exhausted while the analysis was still running."""

    status_code = 504


# ── Non-fatal channel ────────────────────────────────────────────────

class PersistenceWarning(UserWarning):
    """
    A bookkeeping write that failed without aborting the run.

    Collected on the extraction outcome and logged; never raised to callers.
    """

    def __init__(self, operation: str, detail: str, field_id: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        self.field_id = field_id
        super().__init__(f"{operation}: {detail}")

    def as_dict(self) -> dict[str, Any]:
        return {"operation": self.operation, "detail": self.detail, "field_id": self.field_id}
