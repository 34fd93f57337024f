"""Error taxonomy for reconciliation runs."""

from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base error for reconciliation operations."""

    code = "RECONCILIATION_ERROR"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ValidationError(ReconciliationError):
    """Raised when caller input is malformed; the run never starts."""

    code = "VALIDATION_ERROR"


class AuthenticationError(ReconciliationError):
    """Raised when the portal handshake fails. Fatal for the whole run."""

    code = "AUTH_FAILED"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class FetchError(ReconciliationError):
    """Raised when a document download fails. Local to one group."""

    code = "FETCH_FAILED"

    HTTP_STATUS = "http_status"
    TRANSPORT = "transport_error"
    INVALID_FORMAT = "invalid_format"
    UNAUTHORIZED = "unauthorized"

    def __init__(self, message: str, kind: str, status_code: int = 0):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_unauthorized(self) -> bool:
        return self.kind == self.UNAUTHORIZED

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind
        if self.status_code:
            data["status_code"] = self.status_code
        return data


class ExtractionError(ReconciliationError):
    """Raised when a bundle or its structured invoice cannot be read."""

    code = "EXTRACTION_FAILED"


class PersistenceError(ReconciliationError):
    """Raised when a ledger write fails."""

    code = "PERSISTENCE_FAILED"

    def __init__(self, message: str, document_id: Optional[int] = None):
        super().__init__(message)
        self.document_id = document_id
