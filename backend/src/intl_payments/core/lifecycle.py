"""
International payment aggregate and its state machine.

``Payment`` is immutable: every transition validates its guards and
returns a new instance with exactly one entry appended to the status
history. No other code path changes ``status``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    AuthorizationError,
    FieldError,
    InvalidTransitionError,
    PaymentValidationError,
    SelfApprovalError,
)
from .models import (
    AmlRiskLevel,
    ApprovalStatus,
    Beneficiary,
    BankDetails,
    ComplianceInfo,
    FraudFlag,
    IntermediaryBank,
    PaymentDraft,
    PaymentStatus,
    StaffMember,
    StatusEntry,
    StatusHistory,
)
from .risk import RiskAssessment

COMPLIANCE_REJECTION_REASON = "Failed compliance checks - very high risk"
DEFAULT_SETTLEMENT_LAG = timedelta(days=3)
COMPLIANCE_REVIEW_THRESHOLD = Decimal("10000")

# sent/completed/failed edges belong to the downstream settlement processor
ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.DRAFT: frozenset(
        {PaymentStatus.PENDING_REVIEW, PaymentStatus.REJECTED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PENDING_REVIEW: frozenset(
        {PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SENT, PaymentStatus.FAILED}),
    PaymentStatus.SENT: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
}

CANCELLABLE_STATUSES = frozenset(
    {PaymentStatus.DRAFT, PaymentStatus.PENDING_REVIEW, PaymentStatus.APPROVED}
)


class Payment(BaseModel):
    """A cross-border payment and its approval workflow state."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    employee_id: str
    customer_id: str

    amount: Decimal
    currency: str
    beneficiary: Beneficiary
    beneficiary_bank: BankDetails
    intermediary_bank: Optional[IntermediaryBank] = None
    compliance: ComplianceInfo

    status: PaymentStatus = PaymentStatus.DRAFT
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    processor_transaction_id: Optional[str] = None
    expected_delivery_date: Optional[datetime] = None

    fraud_score: int = Field(default=0, ge=0, le=100)
    fraud_flags: Tuple[FraudFlag, ...] = ()
    status_history: StatusHistory = Field(default_factory=StatusHistory)

    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    version: int = 0

    @classmethod
    def create(
        cls,
        draft: PaymentDraft,
        *,
        transaction_id: str,
        employee_id: str,
        assessment: RiskAssessment,
        at: datetime,
    ) -> "Payment":
        """Build a new draft payment from validated input and its risk assessment."""
        return cls(
            transaction_id=transaction_id,
            employee_id=employee_id,
            customer_id=draft.customer_id,
            amount=draft.amount,
            currency=draft.currency,
            beneficiary=draft.beneficiary,
            beneficiary_bank=draft.beneficiary_bank,
            intermediary_bank=draft.intermediary_bank,
            compliance=ComplianceInfo(
                purpose=draft.purpose,
                purpose_description=draft.purpose_description,
                reference=draft.reference,
                source_of_funds=draft.source_of_funds,
                aml_risk_level=assessment.aml_risk_level,
            ),
            fraud_score=assessment.fraud_score,
            fraud_flags=assessment.fraud_flags,
            internal_notes="; ".join(assessment.reasons) or None,
            customer_notes=draft.customer_notes,
            created_at=at,
            updated_at=at,
        )

    # --- Predicates ---------------------------------------------------------

    @property
    def destination_country(self) -> Optional[str]:
        return self.beneficiary_bank.country

    def can_approve(self) -> bool:
        return (
            self.status == PaymentStatus.PENDING_REVIEW
            and self.approval_status == ApprovalStatus.PENDING
        )

    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def requires_compliance_check(self, threshold: Decimal = COMPLIANCE_REVIEW_THRESHOLD) -> bool:
        return self.amount > threshold or self.compliance.aml_risk_level in (
            AmlRiskLevel.HIGH,
            AmlRiskLevel.VERY_HIGH,
        )

    # --- Transitions --------------------------------------------------------

    def submit(self, actor_id: str, at: datetime) -> "Payment":
        """
        Run the (simulated) AML and sanctions checks and move to review.

        Very-high-risk payments are rejected outright and never reach
        ``pending_review``.
        """
        self._guard(self.status == PaymentStatus.DRAFT, "submit", "is_draft", actor_id)

        compliance = self.compliance.model_copy(
            update={
                "aml_checked": True,
                "aml_check_date": at,
                "sanctions_checked": True,
                "sanctions_check_date": at,
            }
        )

        if compliance.aml_risk_level == AmlRiskLevel.VERY_HIGH:
            return self._transition(
                PaymentStatus.REJECTED,
                actor_id=actor_id,
                at=at,
                note=f"Auto-rejected: {COMPLIANCE_REJECTION_REASON}",
                compliance=compliance,
                approval_status=ApprovalStatus.REJECTED,
                rejection_reason=COMPLIANCE_REJECTION_REASON,
            )

        return self._transition(
            PaymentStatus.PENDING_REVIEW,
            actor_id=actor_id,
            at=at,
            note="Submitted for review",
            compliance=compliance,
        )

    def approve(self, approver: StaffMember, at: datetime, notes: Optional[str] = None) -> "Payment":
        self._guard(self.can_approve(), "approve", "can_approve", approver.staff_id)
        self._require_reviewer(approver, "approve")
        if approver.staff_id == self.employee_id:
            raise SelfApprovalError(
                "Cannot approve your own payment",
                transaction_id=self.transaction_id,
                actor_id=approver.staff_id,
                action="approve",
            )

        return self._transition(
            PaymentStatus.APPROVED,
            actor_id=approver.staff_id,
            at=at,
            note=notes or "Payment approved",
            approval_status=ApprovalStatus.APPROVED,
            approved_by=approver.staff_id,
            approved_at=at,
        )

    def reject(self, approver: StaffMember, at: datetime, reason: str) -> "Payment":
        self._guard(self.can_approve(), "reject", "can_approve", approver.staff_id)
        self._require_reviewer(approver, "reject")
        reason = (reason or "").strip()
        if not reason:
            raise PaymentValidationError(
                [FieldError(field="reason", message="Rejection reason is required")],
                transaction_id=self.transaction_id,
                actor_id=approver.staff_id,
                action="reject",
            )

        return self._transition(
            PaymentStatus.REJECTED,
            actor_id=approver.staff_id,
            at=at,
            note=f"Payment rejected: {reason}",
            approval_status=ApprovalStatus.REJECTED,
            rejection_reason=reason,
        )

    def process(
        self,
        actor_id: str,
        at: datetime,
        processor_reference: str,
        settlement_lag: timedelta = DEFAULT_SETTLEMENT_LAG,
    ) -> "Payment":
        self._guard(self.status == PaymentStatus.APPROVED, "process", "is_approved", actor_id)
        return self._transition(
            PaymentStatus.PROCESSING,
            actor_id=actor_id,
            at=at,
            note="Payment processing started",
            expected_delivery_date=at + settlement_lag,
            processor_transaction_id=processor_reference,
        )

    def cancel(self, actor_id: str, at: datetime, reason: Optional[str] = None) -> "Payment":
        self._guard(self.can_cancel(), "cancel", "can_cancel", actor_id)
        return self._transition(
            PaymentStatus.CANCELLED,
            actor_id=actor_id,
            at=at,
            note=reason or "Payment cancelled",
        )

    # --- Internals ----------------------------------------------------------

    def _guard(self, condition: bool, attempted: str, guard: str, actor_id: str) -> None:
        if not condition:
            raise InvalidTransitionError(
                current_status=self.status.value,
                approval_status=self.approval_status.value,
                attempted=attempted,
                guard=guard,
                transaction_id=self.transaction_id,
                actor_id=actor_id,
            )

    def _require_reviewer(self, approver: StaffMember, action: str) -> None:
        if not approver.is_active or not approver.role.is_elevated:
            raise AuthorizationError(
                f"Insufficient permissions to {action} payments",
                transaction_id=self.transaction_id,
                actor_id=approver.staff_id,
                action=action,
            )

    def _transition(
        self,
        target: PaymentStatus,
        *,
        actor_id: str,
        at: datetime,
        note: str,
        **changes: Any,
    ) -> "Payment":
        if target not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(
                current_status=self.status.value,
                attempted=target.value,
                guard="transition_graph",
                transaction_id=self.transaction_id,
                actor_id=actor_id,
            )
        entry = StatusEntry(status=target, timestamp=at, actor=actor_id, note=note)
        return self.model_copy(
            update={
                "status": target,
                "status_history": self.status_history.record(entry),
                "updated_at": at,
                **changes,
            }
        )


__all__ = [
    "Payment",
    "ALLOWED_TRANSITIONS",
    "CANCELLABLE_STATUSES",
    "COMPLIANCE_REJECTION_REASON",
]
