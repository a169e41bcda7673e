"""Shared fixtures for the international payments tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from intl_payments.adapters.memory import InMemoryIdentityStore, InMemoryPaymentRepository
from intl_payments.core.config import Settings
from intl_payments.core.lifecycle import Payment
from intl_payments.core.models import StaffMember, StaffRole
from intl_payments.core.reference import load_reference_data
from intl_payments.core.risk import RiskAssessment
from intl_payments.core.service import PaymentWorkflowService
from intl_payments.core.validators import validate_payment_request


class FakeClock:
    """Deterministic clock; advance it explicitly between calls."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def reference(settings):
    return load_reference_data(settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def staff() -> dict:
    return {
        "emp-1": StaffMember(staff_id="emp-1", role=StaffRole.STAFF),
        "emp-2": StaffMember(staff_id="emp-2", role=StaffRole.STAFF),
        "mgr-1": StaffMember(staff_id="mgr-1", role=StaffRole.MANAGER),
        "adm-1": StaffMember(staff_id="adm-1", role=StaffRole.ADMIN),
        "mgr-off": StaffMember(staff_id="mgr-off", role=StaffRole.MANAGER, is_active=False),
    }


@pytest.fixture
def identity_store(staff) -> InMemoryIdentityStore:
    return InMemoryIdentityStore(staff=staff.values(), customers=["cust-1", "cust-2"])


@pytest.fixture
def repository() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def service(repository, identity_store, settings, reference, clock) -> PaymentWorkflowService:
    return PaymentWorkflowService(
        repository, identity_store, settings=settings, reference=reference, clock=clock
    )


@pytest.fixture
def payment_request() -> dict:
    """A valid request: 60,000 USD to a German bank."""
    return {
        "customer_id": "cust-1",
        "amount": "60000",
        "currency": "USD",
        "beneficiary_name": "Erika Mustermann",
        "beneficiary_account": "DE89 3704 0044 0532 0130 00",
        "swift_code": "deutdeff",
        "bank_name": "Deutsche Bank",
        "bank_country": "DE",
        "purpose": "SUPP",
        "reference": "INV-2025/001",
    }


@pytest.fixture
def draft(payment_request, reference):
    return validate_payment_request(payment_request, reference)


@pytest.fixture
def make_payment(draft, clock):
    """Build a draft ``Payment`` without going through the service."""

    def _make(
        employee_id: str = "emp-1",
        assessment: Optional[RiskAssessment] = None,
        transaction_id: str = "INTL1740992400000ABCDEF01",
        **overrides,
    ) -> Payment:
        source = draft.model_copy(update=overrides) if overrides else draft
        return Payment.create(
            source,
            transaction_id=transaction_id,
            employee_id=employee_id,
            assessment=assessment or RiskAssessment(fraud_score=35),
            at=clock(),
        )

    return _make
