"""Exception taxonomy shared by the ledger, the scanner and the HTTP layer."""

from typing import Any, Dict, Optional


class WarungError(Exception):
    """Base exception for warung POS errors"""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self)}


class NotFound(WarungError):
    """A product, transaction or line item reference did not resolve."""

    def __init__(self, kind: str, identifier: Any, message: Optional[str] = None) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(message or f"{kind.capitalize()} {identifier!s} not found")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "kind": self.kind, "identifier": self.identifier}


class InvalidState(WarungError):
    """Mutation attempted on a transaction that is no longer PENDING."""

    def __init__(self, transaction_id: Any, status: str, message: Optional[str] = None) -> None:
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(message or f"Transaction {transaction_id} is {status}; expected PENDING")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self), "transactionId": self.transaction_id, "status": self.status}


class ExternalUnavailable(WarungError):
    """Vision, matcher or commentary collaborator failed or is unconfigured."""

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"{service} unavailable: {reason}")


class ValidationError(WarungError):
    """Bad input: non-positive quantity, missing field, duplicate barcode."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": str(self)}
        if self.field:
            payload["field"] = self.field
        return payload
