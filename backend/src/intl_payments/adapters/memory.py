"""In-process collaborators for tests and local demos."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.contracts import CountryTotal, PaymentQuery, PaymentStats
from ..core.errors import StaleStateError
from ..core.lifecycle import Payment
from ..core.models import SETTLED_STATUSES, PaymentStatus, StaffMember


def matches_query(payment: Payment, query: PaymentQuery) -> bool:
    if query.employee_id is not None and payment.employee_id != query.employee_id:
        return False
    if query.customer_id is not None and payment.customer_id != query.customer_id:
        return False
    if query.status is not None and payment.status != query.status:
        return False
    if query.approval_status is not None and payment.approval_status != query.approval_status:
        return False
    if query.created_from is not None and payment.created_at < query.created_from:
        return False
    if query.created_to is not None and payment.created_at > query.created_to:
        return False
    return True


def summarise(payments: Iterable[Payment]) -> PaymentStats:
    """Aggregate counts and amounts the way ``PaymentRepository.stats`` reports them."""
    totals = {"total": [0, Decimal("0")], "completed": [0, Decimal("0")], "pending": [0, Decimal("0")]}
    for payment in payments:
        buckets = ["total"]
        if payment.status == PaymentStatus.COMPLETED:
            buckets.append("completed")
        elif payment.status == PaymentStatus.PENDING_REVIEW:
            buckets.append("pending")
        for bucket in buckets:
            totals[bucket][0] += 1
            totals[bucket][1] += payment.amount
    return PaymentStats(
        total_payments=totals["total"][0],
        total_amount=totals["total"][1],
        completed_payments=totals["completed"][0],
        completed_amount=totals["completed"][1],
        pending_payments=totals["pending"][0],
        pending_amount=totals["pending"][1],
    )


class InMemoryPaymentRepository:
    """Dictionary-backed repository; every call is serialised by one asyncio lock."""

    def __init__(self, payments: Iterable[Payment] = ()):
        self._payments: Dict[str, Payment] = {payment.transaction_id: payment for payment in payments}
        self._lock = asyncio.Lock()

    async def add(self, payment: Payment) -> Payment:
        async with self._lock:
            if payment.transaction_id in self._payments:
                raise ValueError(f"duplicate transaction id {payment.transaction_id}")
            self._payments[payment.transaction_id] = payment
            return payment

    async def get(self, transaction_id: str) -> Optional[Payment]:
        async with self._lock:
            return self._payments.get(transaction_id)

    async def save(self, payment: Payment, *, expected_version: int) -> Payment:
        async with self._lock:
            current = self._payments.get(payment.transaction_id)
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise StaleStateError(payment.transaction_id, expected_version, actual)
            stored = payment.model_copy(update={"version": expected_version + 1})
            self._payments[payment.transaction_id] = stored
            return stored

    async def find(self, query: PaymentQuery) -> Tuple[List[Payment], int]:
        async with self._lock:
            selected = [payment for payment in self._payments.values() if matches_query(payment, query)]
        selected.sort(key=lambda payment: payment.created_at, reverse=not query.oldest_first)
        return selected[query.skip : query.skip + query.limit], len(selected)

    async def stats(
        self, *, status: Optional[PaymentStatus] = None, employee_id: Optional[str] = None
    ) -> PaymentStats:
        async with self._lock:
            payments = list(self._payments.values())
        return summarise(
            payment
            for payment in payments
            if (status is None or payment.status == status)
            and (employee_id is None or payment.employee_id == employee_id)
        )

    async def totals_by_country(self) -> List[CountryTotal]:
        async with self._lock:
            payments = list(self._payments.values())
        grouped: Dict[str, List[Decimal]] = defaultdict(list)
        for payment in payments:
            grouped[payment.destination_country or ""].append(payment.amount)
        totals = [
            CountryTotal(country=country, count=len(amounts), total_amount=sum(amounts, Decimal("0")))
            for country, amounts in grouped.items()
        ]
        return sorted(totals, key=lambda total: total.total_amount, reverse=True)

    async def count_customer_payments_since(self, customer_id: str, since: datetime) -> int:
        async with self._lock:
            return sum(
                1
                for payment in self._payments.values()
                if payment.customer_id == customer_id and payment.created_at >= since
            )

    async def has_settled_payment_to_country(self, customer_id: str, country: str) -> bool:
        async with self._lock:
            return any(
                payment.customer_id == customer_id
                and payment.destination_country == country
                and payment.status in SETTLED_STATUSES
                for payment in self._payments.values()
            )


class InMemoryIdentityStore:
    def __init__(
        self,
        staff: Iterable[StaffMember] = (),
        customers: Iterable[str] = (),
    ):
        self._staff: Dict[str, StaffMember] = {member.staff_id: member for member in staff}
        self._customers = set(customers)

    def add_staff(self, member: StaffMember) -> None:
        self._staff[member.staff_id] = member

    def add_customer(self, customer_id: str) -> None:
        self._customers.add(customer_id)

    async def find_staff_by_id(self, staff_id: str) -> Optional[StaffMember]:
        return self._staff.get(staff_id)

    async def find_customer_by_id(self, customer_id: str) -> bool:
        return customer_id in self._customers


__all__ = [
    "InMemoryPaymentRepository",
    "InMemoryIdentityStore",
    "matches_query",
    "summarise",
]
