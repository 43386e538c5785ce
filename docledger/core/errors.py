"""Error taxonomy shared by services and the HTTP layer.

Every kind is an ``HTTPException`` so services can raise it directly; the
detail payload always carries ``kind``, ``message`` and ``errors`` so the
calling layer can render an actionable message.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


class DomainError(HTTPException):
    kind = "domain_error"
    default_status = 400

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[list[dict[str, Any]]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message
        self.errors = list(errors or [])
        super().__init__(
            status_code=status_code or self.default_status,
            detail={"kind": self.kind, "message": message, "errors": self.errors},
        )


class NotFoundError(DomainError):
    kind = "not_found"
    default_status = 404


class Forbidden(DomainError):
    kind = "forbidden"
    default_status = 403


class ClassificationFailure(DomainError):
    """Service error or sub-floor confidence; recoverable by re-upload."""

    kind = "classification_failure"
    default_status = 422

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or reason, errors=[{"rule": reason}])


class ValidationError(DomainError):
    kind = "validation_error"
    default_status = 422


class InvalidValue(DomainError):
    kind = "invalid_value"
    default_status = 422


class InvalidTransition(DomainError):
    kind = "invalid_transition"
    default_status = 409


class DocumentLocked(DomainError):
    kind = "document_locked"
    default_status = 423


class ConflictError(DomainError):
    kind = "conflict"
    default_status = 409


class ExternalServiceError(DomainError):
    kind = "external_service_error"
    default_status = 502
