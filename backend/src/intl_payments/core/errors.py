"""
Exception hierarchy for the international payments workflow.

Every error carries enough context to be written to the audit log
(who attempted what, on which transaction, and why it was refused).
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict


class FieldError(BaseModel):
    """A single field-level validation failure."""

    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class FieldValidationError(ValueError):
    """Raised by a single-field validator."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.error = FieldError(field=field, message=message)


class PaymentError(Exception):
    """Base exception for all payment workflow errors."""

    def __init__(
        self,
        message: str,
        *,
        transaction_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id
        self.actor_id = actor_id
        self.action = action

    def to_audit_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "reason": self.message,
            "transaction_id": self.transaction_id,
            "actor_id": self.actor_id,
            "action": self.action,
        }


class PaymentValidationError(PaymentError):
    """Raised when one or more request fields fail validation."""

    def __init__(self, errors: Sequence[FieldError], **context: Any):
        self.errors: List[FieldError] = list(errors)
        summary = ", ".join(f"{error.field}: {error.message}" for error in self.errors)
        super().__init__(f"Validation failed: {summary}", **context)

    @property
    def fields(self) -> List[str]:
        return [error.field for error in self.errors]

    def to_audit_dict(self) -> Dict[str, Any]:
        record = super().to_audit_dict()
        record["errors"] = [error.model_dump() for error in self.errors]
        return record


class PaymentNotFoundError(PaymentError):
    """Raised when a transaction id or identity cannot be resolved."""


class AuthorizationError(PaymentError):
    """Raised when the acting identity may not perform the action."""


class SelfApprovalError(AuthorizationError):
    """Raised when an approver tries to approve a payment they submitted."""


class StateError(PaymentError):
    """Raised when a transition is invalid for the payment's current state."""


class InvalidTransitionError(StateError):
    """Raised when a guard on a lifecycle transition fails."""

    def __init__(
        self,
        *,
        current_status: str,
        attempted: str,
        guard: str,
        approval_status: Optional[str] = None,
        **context: Any,
    ):
        self.current_status = current_status
        self.attempted = attempted
        self.guard = guard
        self.approval_status = approval_status
        detail = f"status={current_status}"
        if approval_status is not None:
            detail += f", approval_status={approval_status}"
        super().__init__(
            f"Cannot {attempted} payment with {detail} (guard '{guard}' failed)",
            action=attempted,
            **context,
        )

    def to_audit_dict(self) -> Dict[str, Any]:
        record = super().to_audit_dict()
        record.update(
            current_status=self.current_status,
            approval_status=self.approval_status,
            guard=self.guard,
        )
        return record


class StaleStateError(StateError):
    """Raised when the stored payment changed between read and write."""

    def __init__(self, transaction_id: str, expected_version: int, actual_version: Optional[int]):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Payment {transaction_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            transaction_id=transaction_id,
        )


class DependencyError(PaymentError):
    """Raised when a persistence or identity-store call fails."""

    def __init__(self, message: str, *, retryable: bool, operation: str, **context: Any):
        super().__init__(message, **context)
        self.retryable = retryable
        self.operation = operation

    def to_audit_dict(self) -> Dict[str, Any]:
        record = super().to_audit_dict()
        record.update(operation=self.operation, retryable=self.retryable)
        return record


class DependencyTimeoutError(DependencyError):
    """Raised when a collaborator call exceeds its timeout."""


__all__ = [
    "FieldError",
    "FieldValidationError",
    "PaymentError",
    "PaymentValidationError",
    "PaymentNotFoundError",
    "AuthorizationError",
    "SelfApprovalError",
    "StateError",
    "InvalidTransitionError",
    "StaleStateError",
    "DependencyError",
    "DependencyTimeoutError",
]
