"""
Error taxonomy for the audit and export layers.

Routers never build these into responses themselves; the handlers registered
in app.main map each class to its HTTP status.
"""


class AuditError(Exception):
    """Base class for errors raised by the audit subsystem."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AuditError):
    """Missing identifiers or malformed parameters. Never retried."""

    status_code = 422


class NotFoundError(AuditError):
    """Unknown order, external message id or export job."""

    status_code = 404


class AuthorizationError(AuditError):
    """Cross-organization access by a non-staff caller."""

    status_code = 403


class ExportError(AuditError):
    """Rendering or data access failed while producing an export artifact."""

    status_code = 500
