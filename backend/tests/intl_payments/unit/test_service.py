import asyncio
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from intl_payments.adapters.memory import InMemoryIdentityStore, InMemoryPaymentRepository
from intl_payments.core.errors import (
    AuthorizationError,
    DependencyError,
    DependencyTimeoutError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    SelfApprovalError,
    StateError,
)
from intl_payments.core.models import AmlRiskLevel, ApprovalStatus, PaymentStatus
from intl_payments.core.observability import registry
from intl_payments.core.service import PaymentWorkflowService, new_reference

TRANSACTION_ID = re.compile(r"INTL\d{13}[0-9A-F]{8}")


class SlowRepository(InMemoryPaymentRepository):
    def __init__(self, slow_operations=(), delay=0.5):
        super().__init__()
        self.slow_operations = set(slow_operations)
        self.delay = delay

    async def get(self, transaction_id):
        if "get" in self.slow_operations:
            await asyncio.sleep(self.delay)
        return await super().get(transaction_id)

    async def save(self, payment, *, expected_version):
        if "save" in self.slow_operations:
            await asyncio.sleep(self.delay)
        return await super().save(payment, expected_version=expected_version)


class BrokenIdentityStore(InMemoryIdentityStore):
    async def find_staff_by_id(self, staff_id):
        raise ConnectionError("identity store unreachable")


async def _submitted(service, payment_request, employee_id="emp-1"):
    created = await service.create_payment(payment_request, employee_id)
    return await service.submit_for_review(created["transaction_id"], employee_id)


def _sample(name, **labels):
    return registry.get_sample_value(name, labels) or 0.0


# --- create ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_payment_scores_and_sanitises(service, payment_request, repository):
    view = await service.create_payment(payment_request, "emp-1")

    assert TRANSACTION_ID.fullmatch(view["transaction_id"])
    assert view["status"] == PaymentStatus.DRAFT
    assert view["approval_status"] == ApprovalStatus.PENDING
    assert view["fraud_score"] == 35
    assert view["compliance"]["aml_risk_level"] == AmlRiskLevel.MEDIUM
    assert view["amount"] == Decimal("60000.00")
    assert "internal_notes" not in view
    assert "version" not in view

    stored = await repository.get(view["transaction_id"])
    assert stored.internal_notes
    assert stored.employee_id == "emp-1"


@pytest.mark.asyncio
async def test_create_payment_reports_every_invalid_field(service, payment_request):
    payment_request.update(amount="0", currency="XAU")
    before = _sample("intl_payments_validation_failures_total", field="currency")

    with pytest.raises(PaymentValidationError) as excinfo:
        await service.create_payment(payment_request, "emp-1")

    assert excinfo.value.fields == ["amount", "currency"]
    assert excinfo.value.actor_id == "emp-1"
    assert excinfo.value.action == "create"
    assert _sample("intl_payments_validation_failures_total", field="currency") == before + 1


@pytest.mark.asyncio
async def test_create_payment_rejects_amount_above_configured_ceiling(
    repository, identity_store, settings, reference, clock, payment_request
):
    capped = settings.model_copy(update={"max_amount": Decimal("50000")})
    service = PaymentWorkflowService(
        repository, identity_store, settings=capped, reference=reference, clock=clock
    )
    with pytest.raises(PaymentValidationError) as excinfo:
        await service.create_payment(payment_request, "emp-1")
    assert excinfo.value.fields == ["amount"]


@pytest.mark.asyncio
async def test_create_payment_requires_known_identities(service, payment_request):
    with pytest.raises(PaymentNotFoundError):
        await service.create_payment(payment_request, "ghost")

    with pytest.raises(AuthorizationError):
        await service.create_payment(payment_request, "mgr-off")

    payment_request["customer_id"] = "cust-unknown"
    with pytest.raises(PaymentNotFoundError) as excinfo:
        await service.create_payment(payment_request, "emp-1")
    assert excinfo.value.message == "Customer not found"


# --- submit / approve / reject --------------------------------------------------


@pytest.mark.asyncio
async def test_submit_is_scoped_to_the_creator(service, payment_request):
    created = await service.create_payment(payment_request, "emp-1")

    with pytest.raises(PaymentNotFoundError):
        await service.submit_for_review(created["transaction_id"], "emp-2")

    submitted = await service.submit_for_review(created["transaction_id"], "emp-1")
    assert submitted["status"] == PaymentStatus.PENDING_REVIEW


@pytest.mark.asyncio
async def test_high_risk_destination_is_auto_rejected(service, payment_request):
    payment_request.update(
        bank_country="IR",
        swift_code="MELIIRTH",
        beneficiary_account="12345678901",
    )
    created = await service.create_payment(payment_request, "emp-1")
    assert created["compliance"]["aml_risk_level"] == AmlRiskLevel.VERY_HIGH

    result = await service.submit_for_review(created["transaction_id"], "emp-1")

    assert result["status"] == PaymentStatus.REJECTED
    assert result["approval_status"] == ApprovalStatus.REJECTED
    assert [entry["status"] for entry in result["status_history"]] == [PaymentStatus.REJECTED]

    with pytest.raises(InvalidTransitionError):
        await service.approve_payment(created["transaction_id"], "mgr-1")


@pytest.mark.asyncio
async def test_staff_cannot_approve(service, payment_request):
    submitted = await _submitted(service, payment_request)
    with pytest.raises(AuthorizationError) as excinfo:
        await service.approve_payment(submitted["transaction_id"], "emp-2")
    assert excinfo.value.to_audit_dict() == {
        "error": "AuthorizationError",
        "reason": "Insufficient permissions to approve payments",
        "transaction_id": submitted["transaction_id"],
        "actor_id": "emp-2",
        "action": "approve",
    }


@pytest.mark.asyncio
async def test_manager_cannot_approve_own_payment(service, payment_request):
    submitted = await _submitted(service, payment_request, employee_id="mgr-1")

    with pytest.raises(SelfApprovalError):
        await service.approve_payment(submitted["transaction_id"], "mgr-1")

    approved = await service.approve_payment(submitted["transaction_id"], "adm-1")
    assert approved["approved_by"] == "adm-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["too short", "x" * 501, "   ", None])
async def test_reject_reason_length_is_enforced(service, payment_request, reason):
    submitted = await _submitted(service, payment_request)
    with pytest.raises(PaymentValidationError) as excinfo:
        await service.reject_payment(submitted["transaction_id"], "mgr-1", reason)
    assert excinfo.value.fields == ["reason"]


@pytest.mark.asyncio
async def test_reject_payment(service, payment_request):
    submitted = await _submitted(service, payment_request)
    rejected = await service.reject_payment(
        submitted["transaction_id"], "mgr-1", "  Beneficiary documents missing  "
    )
    assert rejected["status"] == PaymentStatus.REJECTED
    assert rejected["rejection_reason"] == "Beneficiary documents missing"


@pytest.mark.asyncio
async def test_concurrent_approvals_yield_one_winner(service, payment_request, repository):
    submitted = await _submitted(service, payment_request)
    transaction_id = submitted["transaction_id"]

    results = await asyncio.gather(
        service.approve_payment(transaction_id, "mgr-1"),
        service.approve_payment(transaction_id, "adm-1"),
        return_exceptions=True,
    )

    successes = [result for result in results if isinstance(result, dict)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], StateError)

    stored = await repository.get(transaction_id)
    assert stored.approved_by == successes[0]["approved_by"]
    assert len(stored.status_history) == 2


# --- process / cancel -----------------------------------------------------------


@pytest.mark.asyncio
async def test_process_requires_approval(service, payment_request):
    submitted = await _submitted(service, payment_request)
    with pytest.raises(InvalidTransitionError) as excinfo:
        await service.process_payment(submitted["transaction_id"], "emp-1")
    assert excinfo.value.current_status == "pending_review"


@pytest.mark.asyncio
async def test_process_assigns_processor_reference(service, payment_request, clock, settings):
    submitted = await _submitted(service, payment_request)
    await service.approve_payment(submitted["transaction_id"], "mgr-1")
    at = clock.advance(hours=2)

    processing = await service.process_payment(submitted["transaction_id"], "emp-1")

    assert processing["status"] == PaymentStatus.PROCESSING
    assert re.fullmatch(r"SWIFT\d{13}[0-9A-F]{8}", processing["processor_transaction_id"])
    assert processing["expected_delivery_date"] == at + timedelta(days=settings.settlement_lag_days)


@pytest.mark.asyncio
async def test_cancel_by_creator_or_reviewer(service, payment_request):
    first = await service.create_payment(payment_request, "emp-1")
    second = await service.create_payment(payment_request, "emp-1")

    with pytest.raises(AuthorizationError):
        await service.cancel_payment(first["transaction_id"], "emp-2")

    by_creator = await service.cancel_payment(first["transaction_id"], "emp-1", "Duplicate request")
    by_manager = await service.cancel_payment(second["transaction_id"], "mgr-1")

    assert by_creator["status"] == PaymentStatus.CANCELLED
    assert by_creator["status_history"][-1]["note"] == "Duplicate request"
    assert by_manager["status_history"][-1]["note"] == "Payment cancelled"


# --- queries --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_payment_access_rules(service, payment_request):
    created = await service.create_payment(payment_request, "emp-1")
    transaction_id = created["transaction_id"]

    assert (await service.get_payment(transaction_id, "emp-1"))["transaction_id"] == transaction_id
    assert (await service.get_payment(transaction_id, "mgr-1"))["transaction_id"] == transaction_id
    with pytest.raises(AuthorizationError):
        await service.get_payment(transaction_id, "emp-2")
    with pytest.raises(PaymentNotFoundError):
        await service.get_payment("INTL0000000000000DEADBEEF", "mgr-1")


@pytest.mark.asyncio
async def test_employee_payments_are_newest_first_and_paginated(service, payment_request, clock):
    created = []
    for _ in range(5):
        created.append((await service.create_payment(payment_request, "emp-1"))["transaction_id"])
        clock.advance(minutes=1)
    await service.create_payment(payment_request, "emp-2")

    page = await service.get_employee_payments("emp-1", limit=2, skip=1)

    assert [payment["transaction_id"] for payment in page.payments] == [created[3], created[2]]
    assert page.pagination.total == 5
    assert page.pagination.limit == 2
    assert page.pagination.skip == 1
    assert page.pagination.has_more is True

    last = await service.get_employee_payments("emp-1", limit=2, skip=4)
    assert last.pagination.has_more is False
    assert [payment["transaction_id"] for payment in last.payments] == [created[0]]


@pytest.mark.asyncio
async def test_employee_payments_filter_by_status_and_date(service, payment_request, clock):
    early = await service.create_payment(payment_request, "emp-1")
    start = clock.advance(hours=1)
    late = await service.create_payment(payment_request, "emp-1")
    await service.submit_for_review(late["transaction_id"], "emp-1")

    drafts = await service.get_employee_payments("emp-1", status=PaymentStatus.DRAFT)
    recent = await service.get_employee_payments("emp-1", created_from=start)

    assert [payment["transaction_id"] for payment in drafts.payments] == [early["transaction_id"]]
    assert [payment["transaction_id"] for payment in recent.payments] == [late["transaction_id"]]


@pytest.mark.asyncio
async def test_date_filters_must_be_timezone_aware(service, payment_request, clock):
    await service.create_payment(payment_request, "emp-1")

    with pytest.raises(PaymentValidationError) as excinfo:
        await service.get_employee_payments("emp-1", created_from=datetime(2025, 1, 1))
    assert excinfo.value.fields == ["created_from"]

    with pytest.raises(PaymentValidationError) as excinfo:
        await service.get_pending_approvals(
            "mgr-1", created_from=datetime(2025, 1, 1), created_to=clock()
        )
    assert excinfo.value.fields == ["created_from"]


@pytest.mark.asyncio
async def test_date_filters_in_other_offsets_are_compared_in_utc(service, payment_request, clock):
    created = await service.create_payment(payment_request, "emp-1")
    # 11:30 in UTC+2 is 09:30 UTC, after the payment was created at 09:00 UTC
    plus_two = timezone(timedelta(hours=2))

    after = await service.get_employee_payments(
        "emp-1", created_from=datetime(2025, 3, 3, 11, 30, tzinfo=plus_two)
    )
    before = await service.get_employee_payments(
        "emp-1", created_to=datetime(2025, 3, 3, 11, 30, tzinfo=plus_two)
    )

    assert after.pagination.total == 0
    assert [payment["transaction_id"] for payment in before.payments] == [created["transaction_id"]]


@pytest.mark.asyncio
@pytest.mark.parametrize("limit, skip, field", [(0, 0, "limit"), (101, 0, "limit"), (10, -1, "skip")])
async def test_pagination_bounds(service, limit, skip, field):
    with pytest.raises(PaymentValidationError) as excinfo:
        await service.get_employee_payments("emp-1", limit=limit, skip=skip)
    assert excinfo.value.fields == [field]


@pytest.mark.asyncio
async def test_pending_approvals_are_oldest_first(service, payment_request, clock):
    ids = []
    for employee in ("emp-1", "emp-2", "emp-1"):
        ids.append((await _submitted(service, payment_request, employee))["transaction_id"])
        clock.advance(minutes=10)
    await service.create_payment(payment_request, "emp-1")

    queue = await service.get_pending_approvals("mgr-1")

    assert [payment["transaction_id"] for payment in queue.payments] == ids
    assert queue.pagination.total == 3

    with pytest.raises(AuthorizationError):
        await service.get_pending_approvals("emp-1")


@pytest.mark.asyncio
async def test_stats_and_country_totals(service, payment_request):
    await _submitted(service, payment_request)
    await service.create_payment(payment_request, "emp-2")
    payment_request.update(
        amount="1500.50",
        bank_country="GB",
        swift_code="NWBKGB2L",
        beneficiary_account="GB82WEST12345698765432",
    )
    await service.create_payment(payment_request, "emp-1")

    stats = await service.get_payment_stats("mgr-1")
    assert stats.total_payments == 3
    assert stats.total_amount == Decimal("121500.50")
    assert stats.pending_payments == 1
    assert stats.pending_amount == Decimal("60000.00")
    assert stats.completed_payments == 0

    own = await service.get_payment_stats("emp-1", employee_id="emp-1")
    assert own.total_payments == 2
    with pytest.raises(AuthorizationError):
        await service.get_payment_stats("emp-1")

    totals = await service.get_payments_by_country("adm-1")
    assert [(total.country, total.count, total.total_amount) for total in totals] == [
        ("DE", 2, Decimal("120000.00")),
        ("GB", 1, Decimal("1500.50")),
    ]


# --- collaborator failures ------------------------------------------------------


@pytest.mark.asyncio
async def test_slow_read_times_out_as_retryable(identity_store, settings, reference, clock, payment_request):
    repository = SlowRepository(slow_operations={"get"})
    service = PaymentWorkflowService(
        repository, identity_store, settings=settings, reference=reference, clock=clock
    )
    created = await service.create_payment(payment_request, "emp-1")

    with pytest.raises(DependencyTimeoutError) as excinfo:
        await service.get_payment(created["transaction_id"], "emp-1", timeout=0.01)

    assert excinfo.value.retryable is True
    assert excinfo.value.operation == "get"


@pytest.mark.asyncio
async def test_slow_write_times_out_without_partial_state(
    identity_store, settings, reference, clock, payment_request
):
    repository = SlowRepository(slow_operations={"save"})
    service = PaymentWorkflowService(
        repository, identity_store, settings=settings, reference=reference, clock=clock
    )
    created = await service.create_payment(payment_request, "emp-1")

    with pytest.raises(DependencyTimeoutError) as excinfo:
        await service.submit_for_review(created["transaction_id"], "emp-1", timeout=0.01)

    assert excinfo.value.retryable is False
    stored = await repository.get(created["transaction_id"])
    assert stored.status == PaymentStatus.DRAFT
    assert stored.version == 0


@pytest.mark.asyncio
async def test_identity_store_failure_is_a_dependency_error(repository, settings, reference, clock, payment_request):
    service = PaymentWorkflowService(
        repository, BrokenIdentityStore(), settings=settings, reference=reference, clock=clock
    )
    with pytest.raises(DependencyError) as excinfo:
        await service.create_payment(payment_request, "emp-1")

    assert excinfo.value.retryable is True
    assert excinfo.value.operation == "find_staff"
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_new_reference_format(clock):
    reference = new_reference("INTL", clock())
    assert reference.startswith(f"INTL{int(clock().timestamp() * 1000)}")
    assert TRANSACTION_ID.fullmatch(reference)
