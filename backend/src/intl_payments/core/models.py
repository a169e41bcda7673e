"""
Value types for international payments: closed enumerations, nested
beneficiary/bank records, the append-only status history and the
validated payment draft.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, RootModel


class PaymentStatus(str, Enum):
    """Lifecycle states of an international payment."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    PROCESSING = "processing"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AmlRiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class FraudFlag(str, Enum):
    HIGH_AMOUNT = "high_amount"
    UNUSUAL_DESTINATION = "unusual_destination"
    VELOCITY_CHECK = "velocity_check"


class StaffRole(str, Enum):
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"

    @property
    def is_elevated(self) -> bool:
        return self in (StaffRole.MANAGER, StaffRole.ADMIN)


# Statuses that count as "money has left" for first-time destination checks
SETTLED_STATUSES = frozenset(
    {PaymentStatus.PROCESSING, PaymentStatus.SENT, PaymentStatus.COMPLETED}
)


class StaffMember(BaseModel):
    """Minimal view of a staff record from the identity store."""

    model_config = ConfigDict(frozen=True)

    staff_id: str
    role: StaffRole = StaffRole.STAFF
    is_active: bool = True


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class Beneficiary(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    account_number: str
    address: Address = Field(default_factory=Address)
    phone: Optional[str] = None
    email: Optional[str] = None


class BankDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    swift_code: str
    address: Address = Field(default_factory=Address)

    @property
    def country(self) -> Optional[str]:
        return self.address.country


class IntermediaryBank(BaseModel):
    """Correspondent bank used to route the transfer."""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    swift_code: str
    account_number: Optional[str] = None


class ComplianceInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    purpose: str
    purpose_description: Optional[str] = None
    reference: Optional[str] = None
    source_of_funds: Optional[str] = None
    aml_checked: bool = False
    aml_check_date: Optional[datetime] = None
    aml_risk_level: AmlRiskLevel = AmlRiskLevel.LOW
    sanctions_checked: bool = False
    sanctions_check_date: Optional[datetime] = None


class StatusEntry(BaseModel):
    """One immutable audit record of a status change."""

    model_config = ConfigDict(frozen=True)

    status: PaymentStatus
    timestamp: datetime
    actor: str
    note: str


class StatusHistory(RootModel[Tuple[StatusEntry, ...]]):
    """
    Append-only log of status changes.

    ``record`` returns a new history with the entry appended; existing
    entries are never touched.
    """

    model_config = ConfigDict(frozen=True)

    root: Tuple[StatusEntry, ...] = ()

    def record(self, entry: StatusEntry) -> "StatusHistory":
        return StatusHistory(self.root + (entry,))

    def __iter__(self) -> Iterator[StatusEntry]:  # type: ignore[override]
        return iter(self.root)

    def __getitem__(self, index: int) -> StatusEntry:
        return self.root[index]

    def __len__(self) -> int:
        return len(self.root)

    @property
    def latest(self) -> Optional[StatusEntry]:
        return self.root[-1] if self.root else None


class PaymentDraft(BaseModel):
    """Validated, normalised payment request; the only input the entity accepts."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    amount: Decimal
    currency: str
    beneficiary: Beneficiary
    beneficiary_bank: BankDetails
    intermediary_bank: Optional[IntermediaryBank] = None
    purpose: str
    purpose_description: Optional[str] = None
    reference: Optional[str] = None
    source_of_funds: Optional[str] = None
    customer_notes: Optional[str] = None

    @property
    def destination_country(self) -> str:
        # Always set by the validator
        return self.beneficiary_bank.address.country or ""


__all__ = [
    "PaymentStatus",
    "ApprovalStatus",
    "AmlRiskLevel",
    "FraudFlag",
    "StaffRole",
    "SETTLED_STATUSES",
    "StaffMember",
    "Address",
    "Beneficiary",
    "BankDetails",
    "IntermediaryBank",
    "ComplianceInfo",
    "StatusEntry",
    "StatusHistory",
    "PaymentDraft",
]
