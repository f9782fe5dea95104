"""
Reconciliation error taxonomy.
Each error carries the HTTP status it surfaces as and a details dict for admins.
"""
from typing import Any, Optional


class ReconciliationError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ReconciliationError):
    """Bad input shape or content; names the rule that failed."""
    status_code = 400

    def __init__(self, message: str, rule: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        if rule:
            details.setdefault("rule", rule)
        super().__init__(message, details)
        self.rule = rule


class NotFoundError(ReconciliationError):
    status_code = 404


class AmbiguousReferenceError(ReconciliationError):
    """A reference matched more than one order."""
    status_code = 409


class PreconditionFailed(ReconciliationError):
    status_code = 400


class AlreadyShipped(ReconciliationError):
    status_code = 409

    def __init__(self, message: str, shipment: dict[str, Any]):
        super().__init__(message, {"shipment": shipment})
        self.shipment = shipment


class ProviderError(ReconciliationError):
    """The external provider rejected or failed the call."""
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: str,
        transient: bool = False,
        provider_status: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message, {"provider": provider, "providerStatus": provider_status, "response": body})
        self.provider = provider
        self.transient = transient
        self.provider_status = provider_status
        self.body = body


class AuthenticationError(ReconciliationError):
    status_code = 401


class DuplicateEvent(Exception):
    """The effect of an event is already on the order; callers acknowledge it as a successful no-op."""
