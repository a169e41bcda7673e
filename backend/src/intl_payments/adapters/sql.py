"""
SQLAlchemy-backed payment repository.

Each payment is one row: indexed columns for the filters the workflow
queries on, plus the full aggregate serialised as JSON. Writes are
optimistic: ``UPDATE ... WHERE version = :expected`` either changes exactly
one row or the save is refused with ``StaleStateError``.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional, Tuple

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    case,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..core.contracts import CountryTotal, PaymentQuery, PaymentStats
from ..core.errors import StaleStateError
from ..core.lifecycle import Payment
from ..core.models import SETTLED_STATUSES, PaymentStatus

logger = structlog.get_logger(__name__)

Base = declarative_base()

CENT = Decimal("0.01")


class PaymentRecord(Base):
    """Stored international payment."""

    __tablename__ = "international_payments"

    transaction_id = Column(String(64), primary_key=True)
    employee_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    approval_status = Column(String(16), nullable=False, index=True)
    destination_country = Column(String(2), nullable=False, index=True)
    currency = Column(String(3), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=0)
    payload = Column(Text, nullable=False)

    def __repr__(self):
        return f"<PaymentRecord(transaction_id={self.transaction_id}, status={self.status}, version={self.version})>"


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc) if value.tzinfo else value


def _to_minor(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value())


def _from_minor(value: Any) -> Decimal:
    return (Decimal(int(value or 0)) * CENT).quantize(CENT)


def _columns(payment: Payment) -> dict:
    return {
        "employee_id": payment.employee_id,
        "customer_id": payment.customer_id,
        "status": payment.status.value,
        "approval_status": payment.approval_status.value,
        "destination_country": payment.destination_country or "",
        "currency": payment.currency,
        "amount_minor": _to_minor(payment.amount),
        "created_at": _utc(payment.created_at),
        "updated_at": _utc(payment.updated_at),
        "payload": payment.model_dump_json(exclude={"version"}),
    }


def _to_payment(record: PaymentRecord) -> Payment:
    return Payment.model_validate_json(record.payload).model_copy(update={"version": record.version})


class SqlPaymentRepository:
    """
    ``PaymentRepository`` over any SQLAlchemy engine; blocking work runs in a thread.

    A thread cannot be cancelled, so a write whose caller has already timed
    out still runs to completion: the transaction either commits in full or
    rolls back. Callers must re-read the payment after a write timeout before
    deciding whether to repeat the transition.
    """

    def __init__(self, engine: Optional[Engine] = None, *, database_url: Optional[str] = None):
        self.engine = engine or create_engine(database_url or "sqlite:///intl_payments.db")
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info("payment_schema_ready", table=PaymentRecord.__tablename__)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Async interface ----------------------------------------------------

    async def add(self, payment: Payment) -> Payment:
        return await asyncio.to_thread(self._add, payment)

    async def get(self, transaction_id: str) -> Optional[Payment]:
        return await asyncio.to_thread(self._get, transaction_id)

    async def save(self, payment: Payment, *, expected_version: int) -> Payment:
        return await asyncio.to_thread(self._save, payment, expected_version)

    async def find(self, query: PaymentQuery) -> Tuple[List[Payment], int]:
        return await asyncio.to_thread(self._find, query)

    async def stats(
        self, *, status: Optional[PaymentStatus] = None, employee_id: Optional[str] = None
    ) -> PaymentStats:
        return await asyncio.to_thread(self._stats, status, employee_id)

    async def totals_by_country(self) -> List[CountryTotal]:
        return await asyncio.to_thread(self._totals_by_country)

    async def count_customer_payments_since(self, customer_id: str, since: datetime) -> int:
        return await asyncio.to_thread(self._count_since, customer_id, since)

    async def has_settled_payment_to_country(self, customer_id: str, country: str) -> bool:
        return await asyncio.to_thread(self._has_settled, customer_id, country)

    # --- Blocking implementations -------------------------------------------

    def _add(self, payment: Payment) -> Payment:
        with self._session() as session:
            session.add(
                PaymentRecord(
                    transaction_id=payment.transaction_id,
                    version=payment.version,
                    **_columns(payment),
                )
            )
        return payment

    def _get(self, transaction_id: str) -> Optional[Payment]:
        with self._session() as session:
            record = session.get(PaymentRecord, transaction_id)
            return _to_payment(record) if record is not None else None

    def _save(self, payment: Payment, expected_version: int) -> Payment:
        with self._session() as session:
            result = session.execute(
                update(PaymentRecord)
                .where(
                    PaymentRecord.transaction_id == payment.transaction_id,
                    PaymentRecord.version == expected_version,
                )
                .values(version=expected_version + 1, **_columns(payment))
            )
            if result.rowcount != 1:
                actual = session.execute(
                    select(PaymentRecord.version).where(
                        PaymentRecord.transaction_id == payment.transaction_id
                    )
                ).scalar_one_or_none()
                raise StaleStateError(payment.transaction_id, expected_version, actual)
        return payment.model_copy(update={"version": expected_version + 1})

    def _find(self, query: PaymentQuery) -> Tuple[List[Payment], int]:
        conditions = []
        if query.employee_id is not None:
            conditions.append(PaymentRecord.employee_id == query.employee_id)
        if query.customer_id is not None:
            conditions.append(PaymentRecord.customer_id == query.customer_id)
        if query.status is not None:
            conditions.append(PaymentRecord.status == query.status.value)
        if query.approval_status is not None:
            conditions.append(PaymentRecord.approval_status == query.approval_status.value)
        if query.created_from is not None:
            conditions.append(PaymentRecord.created_at >= _utc(query.created_from))
        if query.created_to is not None:
            conditions.append(PaymentRecord.created_at <= _utc(query.created_to))

        ordering = PaymentRecord.created_at.asc() if query.oldest_first else PaymentRecord.created_at.desc()
        with self._session() as session:
            total = session.execute(
                select(func.count()).select_from(PaymentRecord).where(*conditions)
            ).scalar_one()
            records = (
                session.execute(
                    select(PaymentRecord)
                    .where(*conditions)
                    .order_by(ordering, PaymentRecord.transaction_id)
                    .offset(query.skip)
                    .limit(query.limit)
                )
                .scalars()
                .all()
            )
            return [_to_payment(record) for record in records], total

    def _stats(self, status: Optional[PaymentStatus], employee_id: Optional[str]) -> PaymentStats:
        completed = PaymentRecord.status == PaymentStatus.COMPLETED.value
        pending = PaymentRecord.status == PaymentStatus.PENDING_REVIEW.value
        conditions = []
        if status is not None:
            conditions.append(PaymentRecord.status == status.value)
        if employee_id is not None:
            conditions.append(PaymentRecord.employee_id == employee_id)

        with self._session() as session:
            row = session.execute(
                select(
                    func.count(),
                    func.sum(PaymentRecord.amount_minor),
                    func.sum(case((completed, 1), else_=0)),
                    func.sum(case((completed, PaymentRecord.amount_minor), else_=0)),
                    func.sum(case((pending, 1), else_=0)),
                    func.sum(case((pending, PaymentRecord.amount_minor), else_=0)),
                )
                .select_from(PaymentRecord)
                .where(*conditions)
            ).one()

        return PaymentStats(
            total_payments=row[0] or 0,
            total_amount=_from_minor(row[1]),
            completed_payments=row[2] or 0,
            completed_amount=_from_minor(row[3]),
            pending_payments=row[4] or 0,
            pending_amount=_from_minor(row[5]),
        )

    def _totals_by_country(self) -> List[CountryTotal]:
        total_minor = func.sum(PaymentRecord.amount_minor)
        with self._session() as session:
            rows = session.execute(
                select(PaymentRecord.destination_country, func.count(), total_minor)
                .group_by(PaymentRecord.destination_country)
                .order_by(total_minor.desc())
            ).all()
        return [
            CountryTotal(country=country, count=count, total_amount=_from_minor(amount))
            for country, count, amount in rows
        ]

    def _count_since(self, customer_id: str, since: datetime) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count())
                .select_from(PaymentRecord)
                .where(
                    PaymentRecord.customer_id == customer_id,
                    PaymentRecord.created_at >= _utc(since),
                )
            ).scalar_one()

    def _has_settled(self, customer_id: str, country: str) -> bool:
        with self._session() as session:
            match = session.execute(
                select(PaymentRecord.transaction_id)
                .where(
                    PaymentRecord.customer_id == customer_id,
                    PaymentRecord.destination_country == country,
                    PaymentRecord.status.in_([status.value for status in SETTLED_STATUSES]),
                )
                .limit(1)
            ).first()
            return match is not None


__all__ = ["Base", "PaymentRecord", "SqlPaymentRepository"]
