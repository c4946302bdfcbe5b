"""Reconciliation error taxonomy.

Components raise these at their boundaries; routers translate them into
HTTP responses. Provider-facing routes acknowledge ``RecordNotFound``,
``DuplicateEvent``, ``StaleEvent`` and ``AdapterError`` with a 2xx so the
provider stops retrying; everything else is surfaced.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation engine."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class SignatureInvalid(ReconciliationError):
    """Webhook authenticity could not be established."""


class AdapterError(ReconciliationError):
    """Payload is not an event this adapter understands."""


class RecordNotFound(ReconciliationError):
    """The payment or rental referenced by an event does not exist locally."""


class DuplicateEvent(ReconciliationError):
    """Event was already processed; carries the first acknowledgement."""

    def __init__(self, message: str, response: Optional[dict[str, Any]] = None, **context: Any):
        super().__init__(message, **context)
        self.response = response or {}


class StaleEvent(ReconciliationError):
    """Event is older than the state already recorded."""


class UpstreamUnavailable(ReconciliationError):
    """A provider API call failed transiently."""


class PartialFailure(ReconciliationError):
    """Provider confirmed the money moved but the local write failed."""


class PreconditionViolation(ReconciliationError):
    """Request is not allowed in the current state.

    ``status_code`` is the HTTP status a user-facing route answers with:
    400 for a bad request, 403 for a caller who does not own the rental,
    409 for a conflicting state.
    """

    def __init__(self, message: str, status_code: int = 400, **context: Any):
        super().__init__(message, **context)
        self.status_code = status_code


class ProviderRejected(PreconditionViolation):
    """Provider refused the request (4xx). Nothing was changed locally."""
