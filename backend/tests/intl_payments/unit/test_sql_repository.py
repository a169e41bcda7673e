import asyncio
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

from intl_payments.adapters.sql import PaymentRecord, SqlPaymentRepository
from intl_payments.core.contracts import PaymentQuery
from intl_payments.core.errors import DependencyTimeoutError, InvalidTransitionError, StaleStateError
from intl_payments.core.models import PaymentStatus, StaffMember, StaffRole
from intl_payments.core.service import PaymentWorkflowService

MANAGER = StaffMember(staff_id="mgr-1", role=StaffRole.MANAGER)


class SlowSaveRepository(SqlPaymentRepository):
    def __init__(self, engine, delay):
        super().__init__(engine)
        self.delay = delay

    def _save(self, payment, expected_version):
        time.sleep(self.delay)
        return super()._save(payment, expected_version)


@pytest.fixture
def sql_repository():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    repository = SqlPaymentRepository(engine)
    repository.create_schema()
    yield repository
    engine.dispose()


def test_schema_has_indexed_query_columns(sql_repository):
    inspector = inspect(sql_repository.engine)
    assert PaymentRecord.__tablename__ in inspector.get_table_names()
    indexed = {
        column
        for index in inspector.get_indexes(PaymentRecord.__tablename__)
        for column in index["column_names"]
    }
    assert {"employee_id", "customer_id", "status", "created_at"} <= indexed


@pytest.mark.asyncio
async def test_round_trip_preserves_the_aggregate(sql_repository, make_payment, clock):
    payment = make_payment().submit("emp-1", clock()).approve(MANAGER, clock(), "ok")
    await sql_repository.add(payment)

    loaded = await sql_repository.get(payment.transaction_id)

    assert loaded == payment
    assert loaded.amount == Decimal("60000.00")
    assert loaded.status_history.latest.note == "ok"
    assert await sql_repository.get("INTL-MISSING") is None


@pytest.mark.asyncio
async def test_save_is_version_checked(sql_repository, make_payment, clock):
    payment = await sql_repository.add(make_payment())

    submitted = await sql_repository.save(payment.submit("emp-1", clock()), expected_version=0)
    assert submitted.version == 1
    assert (await sql_repository.get(payment.transaction_id)).version == 1

    with pytest.raises(StaleStateError) as excinfo:
        await sql_repository.save(payment.cancel("emp-1", clock()), expected_version=0)
    assert excinfo.value.expected_version == 0
    assert excinfo.value.actual_version == 1

    stored = await sql_repository.get(payment.transaction_id)
    assert stored.status == PaymentStatus.PENDING_REVIEW


@pytest.mark.asyncio
async def test_save_of_unknown_payment_is_stale(sql_repository, make_payment):
    with pytest.raises(StaleStateError) as excinfo:
        await sql_repository.save(make_payment(), expected_version=0)
    assert excinfo.value.actual_version is None


@pytest.mark.asyncio
async def test_find_filters_sorts_and_counts(sql_repository, make_payment, clock):
    ids = []
    for index in range(4):
        payment = make_payment(transaction_id=f"INTL-{index}")
        if index % 2:
            payment = payment.submit("emp-1", clock())
        await sql_repository.add(payment)
        ids.append(payment.transaction_id)
        clock.advance(minutes=1)
    await sql_repository.add(make_payment(employee_id="emp-2", transaction_id="INTL-OTHER"))

    newest, total = await sql_repository.find(PaymentQuery(employee_id="emp-1", limit=2))
    assert total == 4
    assert [payment.transaction_id for payment in newest] == ["INTL-3", "INTL-2"]

    pending, total = await sql_repository.find(
        PaymentQuery(status=PaymentStatus.PENDING_REVIEW, oldest_first=True)
    )
    assert total == 2
    assert [payment.transaction_id for payment in pending] == ["INTL-1", "INTL-3"]


@pytest.mark.asyncio
async def test_history_queries(sql_repository, make_payment, clock):
    payment = make_payment().submit("emp-1", clock()).approve(MANAGER, clock())
    await sql_repository.add(payment)

    assert await sql_repository.has_settled_payment_to_country("cust-1", "DE") is False
    await sql_repository.save(payment.process("emp-1", clock(), "SWIFT1"), expected_version=0)
    assert await sql_repository.has_settled_payment_to_country("cust-1", "DE") is True
    assert await sql_repository.has_settled_payment_to_country("cust-2", "DE") is False

    assert await sql_repository.count_customer_payments_since("cust-1", clock() - timedelta(hours=1)) == 1
    assert await sql_repository.count_customer_payments_since("cust-1", clock() + timedelta(seconds=1)) == 0


@pytest.mark.asyncio
async def test_stats_and_country_totals_are_exact(sql_repository, make_payment, clock):
    await sql_repository.add(make_payment(transaction_id="INTL-A", amount=Decimal("0.10")))
    await sql_repository.add(make_payment(transaction_id="INTL-B", amount=Decimal("0.20")))
    await sql_repository.add(
        make_payment(transaction_id="INTL-C", amount=Decimal("100.05")).submit("emp-1", clock())
    )

    stats = await sql_repository.stats()
    assert stats.total_payments == 3
    assert stats.total_amount == Decimal("100.35")
    assert stats.pending_payments == 1
    assert stats.pending_amount == Decimal("100.05")
    assert stats.completed_amount == Decimal("0.00")

    drafts = await sql_repository.stats(status=PaymentStatus.DRAFT, employee_id="emp-1")
    assert drafts.total_payments == 2
    assert drafts.total_amount == Decimal("0.30")

    assert [(row.country, row.count, row.total_amount) for row in await sql_repository.totals_by_country()] == [
        ("DE", 3, Decimal("100.35"))
    ]


@pytest.mark.asyncio
async def test_empty_stats(sql_repository):
    stats = await sql_repository.stats()
    assert stats.total_payments == 0
    assert stats.total_amount == Decimal("0.00")
    assert await sql_repository.totals_by_country() == []


@pytest.mark.asyncio
async def test_timed_out_write_still_commits_and_is_seen_on_reread(
    sql_repository, identity_store, settings, reference, clock, payment_request
):
    repository = SlowSaveRepository(sql_repository.engine, delay=0.3)
    service = PaymentWorkflowService(
        repository, identity_store, settings=settings, reference=reference, clock=clock
    )
    created = await service.create_payment(payment_request, "emp-1")

    with pytest.raises(DependencyTimeoutError) as excinfo:
        await service.submit_for_review(created["transaction_id"], "emp-1", timeout=0.05)
    assert excinfo.value.retryable is False

    await asyncio.sleep(1.0)
    stored = await repository.get(created["transaction_id"])
    assert stored.status == PaymentStatus.PENDING_REVIEW
    assert len(stored.status_history) == 1

    with pytest.raises(InvalidTransitionError):
        await service.submit_for_review(created["transaction_id"], "emp-1")
