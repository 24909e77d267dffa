"""
Error taxonomy for stack deployments.

Every error carries a one-line user-facing message, the underlying cause
(if any) and the HTTP status it maps to. Routes translate these into
JSON responses of the form {"message": ..., "details": ...}.
"""

from typing import List, Optional


class StackError(Exception):
    """Base class for all stack deployment failures."""

    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def details(self) -> str:
        """Underlying cause as text, falling back to the message."""
        return str(self.cause) if self.cause is not None else self.message

    def to_dict(self) -> dict:
        return {"message": self.message, "details": self.details}


class ValidationError(StackError):
    """Malformed or missing payload fields. Raised before any side effect."""
    status_code = 400


class NotFoundError(StackError):
    """Endpoint or stack does not exist."""
    status_code = 404


class AccessDeniedError(StackError):
    """Actor is not allowed to operate on the endpoint or stack."""
    status_code = 403


class ConflictError(StackError):
    """A stack with the same name already exists on the endpoint."""
    status_code = 409


class StorageError(StackError):
    """Filesystem write/read or repository clone failure."""
    status_code = 500


class PolicyViolationError(StackError):
    """Stack file uses directives the endpoint's security settings disallow."""
    status_code = 400

    def __init__(self, message: str, violations: Optional[list] = None):
        super().__init__(message)
        self.violations = violations or []


class DeploymentError(StackError):
    """The container engine control path failed."""
    status_code = 500

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        secondary_errors: Optional[List[str]] = None,
    ):
        super().__init__(message, cause)
        self.secondary_errors = secondary_errors or []

    @property
    def details(self) -> str:
        details = super().details
        if self.secondary_errors:
            details += " (additionally: " + "; ".join(self.secondary_errors) + ")"
        return details


class PersistenceError(StackError):
    """Metadata store write failed after a successful deployment."""
    status_code = 500
