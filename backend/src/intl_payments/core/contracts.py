"""Collaborator interfaces and query/result shapes for the payment workflow."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .lifecycle import Payment
from .models import ApprovalStatus, PaymentStatus, StaffMember


class PaymentQuery(BaseModel):
    """Filter, sort and page options for ``PaymentRepository.find``."""

    model_config = ConfigDict(frozen=True)

    employee_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    approval_status: Optional[ApprovalStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    oldest_first: bool = False
    limit: int = Field(default=50, ge=1)
    skip: int = Field(default=0, ge=0)


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    limit: int
    skip: int
    has_more: bool


class PaymentPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    payments: List[dict]
    pagination: Pagination


class PaymentStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_payments: int = 0
    total_amount: Decimal = Decimal("0")
    completed_payments: int = 0
    completed_amount: Decimal = Decimal("0")
    pending_payments: int = 0
    pending_amount: Decimal = Decimal("0")


class CountryTotal(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str
    count: int
    total_amount: Decimal


class IdentityStore(Protocol):
    """Read-only view of staff and customer records."""

    async def find_staff_by_id(self, staff_id: str) -> Optional[StaffMember]:
        ...

    async def find_customer_by_id(self, customer_id: str) -> bool:
        ...


class PaymentHistory(Protocol):
    """History reads used by the risk assessor."""

    async def count_customer_payments_since(self, customer_id: str, since: datetime) -> int:
        ...

    async def has_settled_payment_to_country(self, customer_id: str, country: str) -> bool:
        ...


class PaymentRepository(PaymentHistory, Protocol):
    """
    Durable store for the payment aggregate.

    ``save`` must be atomic per payment: it succeeds only when the stored
    version equals ``expected_version`` and returns the payment with its
    version incremented, otherwise it raises ``StaleStateError``.
    """

    async def add(self, payment: Payment) -> Payment:
        ...

    async def get(self, transaction_id: str) -> Optional[Payment]:
        ...

    async def save(self, payment: Payment, *, expected_version: int) -> Payment:
        ...

    async def find(self, query: PaymentQuery) -> Tuple[List[Payment], int]:
        ...

    async def stats(
        self, *, status: Optional[PaymentStatus] = None, employee_id: Optional[str] = None
    ) -> PaymentStats:
        ...

    async def totals_by_country(self) -> List[CountryTotal]:
        ...


__all__ = [
    "PaymentQuery",
    "Pagination",
    "PaymentPage",
    "PaymentStats",
    "CountryTotal",
    "IdentityStore",
    "PaymentHistory",
    "PaymentRepository",
]
