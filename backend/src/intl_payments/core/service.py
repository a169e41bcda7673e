"""
Orchestration of the international payment workflow.

``PaymentWorkflowService`` is the only entry point the request layer needs:
it validates raw input, resolves identities, scores risk, drives the
``Payment`` state machine and persists the result. Every collaborator call
is bounded by a timeout and surfaces failures as ``DependencyError``.
"""
from __future__ import annotations

import asyncio
import functools
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog

from .config import Settings, load_settings
from .contracts import (
    CountryTotal,
    IdentityStore,
    Pagination,
    PaymentPage,
    PaymentQuery,
    PaymentRepository,
    PaymentStats,
)
from .errors import (
    AuthorizationError,
    DependencyError,
    DependencyTimeoutError,
    FieldError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
    StaleStateError,
)
from .lifecycle import Payment
from .models import ApprovalStatus, PaymentStatus, StaffMember
from .observability import (
    FRAUD_SCORE,
    PAYMENTS_CREATED,
    PERSISTENCE_LATENCY,
    VALIDATION_FAILURES,
    WORKFLOW_TRANSITIONS,
    mask_identifier,
)
from .reference import ReferenceData, load_reference_data
from .risk import RiskAssessor
from .validators import validate_payment_request

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SANITIZED_EXCLUDE = frozenset({"internal_notes", "version"})


def sanitize_payment(payment: Payment) -> Dict[str, Any]:
    """Caller-facing view of a payment with internal-only fields removed."""
    return payment.model_dump(exclude=set(SANITIZED_EXCLUDE))


def new_reference(prefix: str, at: datetime) -> str:
    """``<prefix><epoch-ms><8 hex>``, e.g. ``INTL1700000000000A1B2C3D4``."""
    return f"{prefix}{int(at.timestamp() * 1000)}{secrets.token_hex(4).upper()}"


def _outcome(exc: PaymentError) -> str:
    if isinstance(exc, PaymentValidationError):
        return "invalid"
    if isinstance(exc, StaleStateError):
        return "conflict"
    if isinstance(exc, DependencyError):
        return "error"
    return "refused"


def audited(transition: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Log and count every refused or failed use-case call."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except PaymentError as exc:
                if isinstance(exc, PaymentValidationError):
                    for field in exc.fields:
                        VALIDATION_FAILURES.labels(field=field).inc()
                WORKFLOW_TRANSITIONS.labels(transition=transition, outcome=_outcome(exc)).inc()
                logger.warning("payment_request_refused", transition=transition, **exc.to_audit_dict())
                raise

        return wrapper

    return decorator


class PaymentWorkflowService:
    """Use-case operations over the payment aggregate."""

    def __init__(
        self,
        repository: PaymentRepository,
        identity_store: IdentityStore,
        *,
        settings: Optional[Settings] = None,
        reference: Optional[ReferenceData] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.identity_store = identity_store
        self.settings = settings or load_settings()
        self.reference = reference or load_reference_data(self.settings)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.risk = RiskAssessor(repository, self.settings)

    # --- Commands -----------------------------------------------------------

    @audited("create")
    async def create_payment(
        self, raw: Dict[str, Any], employee_id: str, *, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Validate, score and store a new draft payment.

        Raises:
            PaymentValidationError: one or more fields are invalid
            PaymentNotFoundError: unknown employee or customer
            AuthorizationError: the employee account is inactive
            DependencyError: a collaborator call failed or timed out
        """
        try:
            draft = validate_payment_request(raw, self.reference, max_amount=self.settings.max_amount)
        except PaymentValidationError as exc:
            exc.actor_id = employee_id
            exc.action = "create"
            raise

        await self._require_staff(employee_id, "create", timeout)
        customer_exists = await self._call(
            "find_customer",
            self.identity_store.find_customer_by_id(draft.customer_id),
            retryable=True,
            timeout=timeout,
            actor_id=employee_id,
        )
        if not customer_exists:
            raise PaymentNotFoundError("Customer not found", actor_id=employee_id, action="create")

        now = self.clock()
        assessment = await self._call(
            "risk_assessment",
            self.risk.assess(draft, now),
            retryable=True,
            timeout=timeout,
            actor_id=employee_id,
        )
        payment = Payment.create(
            draft,
            transaction_id=new_reference("INTL", now),
            employee_id=employee_id,
            assessment=assessment,
            at=now,
        )
        stored = await self._call(
            "add",
            self.repository.add(payment),
            retryable=False,
            timeout=timeout,
            transaction_id=payment.transaction_id,
            actor_id=employee_id,
        )

        PAYMENTS_CREATED.labels(currency=stored.currency).inc()
        FRAUD_SCORE.observe(stored.fraud_score)
        WORKFLOW_TRANSITIONS.labels(transition="create", outcome="success").inc()
        logger.info(
            "payment_created",
            transaction_id=stored.transaction_id,
            actor_id=employee_id,
            customer_id=stored.customer_id,
            amount=str(stored.amount),
            currency=stored.currency,
            beneficiary_account=mask_identifier(stored.beneficiary.account_number),
            destination_country=stored.destination_country,
            fraud_score=stored.fraud_score,
            aml_risk_level=stored.compliance.aml_risk_level.value,
        )
        return sanitize_payment(stored)

    @audited("submit")
    async def submit_for_review(
        self, transaction_id: str, employee_id: str, *, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        payment = await self._load_owned(transaction_id, employee_id, "submit", timeout)
        updated = payment.submit(employee_id, self.clock())
        stored = await self._persist(payment, updated, "submit", employee_id, timeout)
        return sanitize_payment(stored)

    @audited("approve")
    async def approve_payment(
        self,
        transaction_id: str,
        approver_id: str,
        notes: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        approver = await self._require_staff(approver_id, "approve", timeout)
        payment = await self._load(transaction_id, approver_id, "approve", timeout)
        updated = payment.approve(approver, self.clock(), notes)
        stored = await self._persist(payment, updated, "approve", approver_id, timeout)
        return sanitize_payment(stored)

    @audited("reject")
    async def reject_payment(
        self,
        transaction_id: str,
        approver_id: str,
        reason: str,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        reason = self._check_rejection_reason(reason, transaction_id, approver_id)
        approver = await self._require_staff(approver_id, "reject", timeout)
        payment = await self._load(transaction_id, approver_id, "reject", timeout)
        updated = payment.reject(approver, self.clock(), reason)
        stored = await self._persist(payment, updated, "reject", approver_id, timeout)
        return sanitize_payment(stored)

    @audited("process")
    async def process_payment(
        self, transaction_id: str, employee_id: str, *, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        await self._require_staff(employee_id, "process", timeout)
        payment = await self._load_owned(transaction_id, employee_id, "process", timeout)
        now = self.clock()
        updated = payment.process(
            employee_id,
            now,
            processor_reference=new_reference("SWIFT", now),
            settlement_lag=timedelta(days=self.settings.settlement_lag_days),
        )
        stored = await self._persist(payment, updated, "process", employee_id, timeout)
        return sanitize_payment(stored)

    @audited("cancel")
    async def cancel_payment(
        self,
        transaction_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        actor = await self._require_staff(actor_id, "cancel", timeout)
        payment = await self._load(transaction_id, actor_id, "cancel", timeout)
        if payment.employee_id != actor_id and not actor.role.is_elevated:
            raise AuthorizationError(
                "Only the creator or a manager can cancel this payment",
                transaction_id=transaction_id,
                actor_id=actor_id,
                action="cancel",
            )
        updated = payment.cancel(actor_id, self.clock(), (reason or "").strip() or None)
        stored = await self._persist(payment, updated, "cancel", actor_id, timeout)
        return sanitize_payment(stored)

    # --- Queries ------------------------------------------------------------

    @audited("get")
    async def get_payment(
        self, transaction_id: str, actor_id: str, *, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        actor = await self._require_staff(actor_id, "get", timeout)
        payment = await self._load(transaction_id, actor_id, "get", timeout)
        if payment.employee_id != actor_id and not actor.role.is_elevated:
            raise AuthorizationError(
                "Access denied to another employee's payment",
                transaction_id=transaction_id,
                actor_id=actor_id,
                action="get",
            )
        return sanitize_payment(payment)

    @audited("list")
    async def get_employee_payments(
        self,
        employee_id: str,
        *,
        status: Optional[PaymentStatus] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        timeout: Optional[float] = None,
    ) -> PaymentPage:
        """Payments created by ``employee_id``, newest first."""
        await self._require_staff(employee_id, "list", timeout)
        query = self._build_query(
            employee_id,
            "list",
            employee_id=employee_id,
            status=status,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            skip=skip,
        )
        return await self._page(query, employee_id, timeout)

    @audited("pending_approvals")
    async def get_pending_approvals(
        self,
        approver_id: str,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        timeout: Optional[float] = None,
    ) -> PaymentPage:
        """Review queue, oldest first so payments are reviewed in arrival order."""
        await self._require_reviewer(approver_id, "pending_approvals", timeout)
        query = self._build_query(
            approver_id,
            "pending_approvals",
            status=PaymentStatus.PENDING_REVIEW,
            approval_status=ApprovalStatus.PENDING,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            skip=skip,
            oldest_first=True,
        )
        return await self._page(query, approver_id, timeout)

    @audited("stats")
    async def get_payment_stats(
        self,
        actor_id: str,
        *,
        status: Optional[PaymentStatus] = None,
        employee_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PaymentStats:
        # Staff may see their own figures; anything wider needs a reviewer role
        if employee_id == actor_id:
            await self._require_staff(actor_id, "stats", timeout)
        else:
            await self._require_reviewer(actor_id, "stats", timeout)
        return await self._call(
            "stats",
            self.repository.stats(status=status, employee_id=employee_id),
            retryable=True,
            timeout=timeout,
            actor_id=actor_id,
        )

    @audited("by_country")
    async def get_payments_by_country(
        self, actor_id: str, *, timeout: Optional[float] = None
    ) -> List[CountryTotal]:
        """Per-destination counts and amounts, largest amount first."""
        await self._require_reviewer(actor_id, "by_country", timeout)
        totals = await self._call(
            "totals_by_country",
            self.repository.totals_by_country(),
            retryable=True,
            timeout=timeout,
            actor_id=actor_id,
        )
        return sorted(totals, key=lambda total: total.total_amount, reverse=True)

    # --- Internals ----------------------------------------------------------

    async def _call(
        self,
        operation: str,
        awaitable: Awaitable[T],
        *,
        retryable: bool,
        timeout: Optional[float] = None,
        transaction_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> T:
        """Await a collaborator call under a timeout, mapping failures to ``DependencyError``."""
        limit = timeout if timeout is not None else self.settings.persistence_timeout_seconds
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.error(
                "dependency_timeout",
                operation=operation,
                timeout_seconds=limit,
                transaction_id=transaction_id,
                actor_id=actor_id,
            )
            raise DependencyTimeoutError(
                f"{operation} timed out after {limit}s",
                retryable=retryable,
                operation=operation,
                transaction_id=transaction_id,
                actor_id=actor_id,
            ) from exc
        except PaymentError:
            raise
        except Exception as exc:
            logger.error(
                "dependency_failed",
                operation=operation,
                error=str(exc),
                transaction_id=transaction_id,
                actor_id=actor_id,
            )
            raise DependencyError(
                f"{operation} failed",
                retryable=retryable,
                operation=operation,
                transaction_id=transaction_id,
                actor_id=actor_id,
            ) from exc
        finally:
            PERSISTENCE_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

    async def _require_staff(self, staff_id: str, action: str, timeout: Optional[float]) -> StaffMember:
        staff = await self._call(
            "find_staff",
            self.identity_store.find_staff_by_id(staff_id),
            retryable=True,
            timeout=timeout,
            actor_id=staff_id,
        )
        if staff is None:
            raise PaymentNotFoundError("Staff member not found", actor_id=staff_id, action=action)
        if not staff.is_active:
            raise AuthorizationError("Staff account is inactive", actor_id=staff_id, action=action)
        return staff

    async def _require_reviewer(self, staff_id: str, action: str, timeout: Optional[float]) -> StaffMember:
        staff = await self._require_staff(staff_id, action, timeout)
        if not staff.role.is_elevated:
            raise AuthorizationError("Insufficient permissions", actor_id=staff_id, action=action)
        return staff

    async def _load(
        self, transaction_id: str, actor_id: str, action: str, timeout: Optional[float]
    ) -> Payment:
        payment = await self._call(
            "get",
            self.repository.get(transaction_id),
            retryable=True,
            timeout=timeout,
            transaction_id=transaction_id,
            actor_id=actor_id,
        )
        if payment is None:
            raise PaymentNotFoundError(
                "Payment not found", transaction_id=transaction_id, actor_id=actor_id, action=action
            )
        return payment

    async def _load_owned(
        self, transaction_id: str, employee_id: str, action: str, timeout: Optional[float]
    ) -> Payment:
        # Another employee's payment is indistinguishable from a missing one
        payment = await self._load(transaction_id, employee_id, action, timeout)
        if payment.employee_id != employee_id:
            raise PaymentNotFoundError(
                "Payment not found", transaction_id=transaction_id, actor_id=employee_id, action=action
            )
        return payment

    async def _persist(
        self,
        original: Payment,
        updated: Payment,
        transition: str,
        actor_id: str,
        timeout: Optional[float],
    ) -> Payment:
        stored = await self._call(
            "save",
            self.repository.save(updated, expected_version=original.version),
            retryable=False,
            timeout=timeout,
            transaction_id=original.transaction_id,
            actor_id=actor_id,
        )
        outcome = "success"
        if transition == "submit" and stored.status == PaymentStatus.REJECTED:
            outcome = "auto_rejected"
        WORKFLOW_TRANSITIONS.labels(transition=transition, outcome=outcome).inc()
        logger.info(
            "payment_transitioned",
            transaction_id=stored.transaction_id,
            actor_id=actor_id,
            transition=transition,
            from_status=original.status.value,
            to_status=stored.status.value,
            approval_status=stored.approval_status.value,
            note=stored.status_history.latest.note if stored.status_history.latest else None,
        )
        return stored

    def _check_rejection_reason(self, reason: Any, transaction_id: str, approver_id: str) -> str:
        cleaned = reason.strip() if isinstance(reason, str) else ""
        low = self.settings.rejection_reason_min_length
        high = self.settings.rejection_reason_max_length
        if not low <= len(cleaned) <= high:
            raise PaymentValidationError(
                [FieldError(field="reason", message=f"Rejection reason must be {low}-{high} characters")],
                transaction_id=transaction_id,
                actor_id=approver_id,
                action="reject",
            )
        return cleaned

    def _build_query(self, actor_id: str, action: str, *, limit: Optional[int], skip: int, **filters: Any) -> PaymentQuery:
        limit = self.settings.default_page_limit if limit is None else limit
        errors: List[FieldError] = []
        if not 1 <= limit <= self.settings.max_page_limit:
            errors.append(
                FieldError(field="limit", message=f"must be between 1 and {self.settings.max_page_limit}")
            )
        if skip < 0:
            errors.append(FieldError(field="skip", message="must be zero or greater"))
        for bound in ("created_from", "created_to"):
            value = filters.get(bound)
            if value is None:
                continue
            if not isinstance(value, datetime) or value.utcoffset() is None:
                errors.append(FieldError(field=bound, message="must be a timezone-aware datetime"))
                filters[bound] = None
            else:
                filters[bound] = value.astimezone(timezone.utc)
        created_from, created_to = filters.get("created_from"), filters.get("created_to")
        if created_from is not None and created_to is not None and created_from > created_to:
            errors.append(FieldError(field="created_from", message="must not be after created_to"))
        if errors:
            raise PaymentValidationError(errors, actor_id=actor_id, action=action)
        return PaymentQuery(limit=limit, skip=skip, **filters)

    async def _page(self, query: PaymentQuery, actor_id: str, timeout: Optional[float]) -> PaymentPage:
        payments, total = await self._call(
            "find",
            self.repository.find(query),
            retryable=True,
            timeout=timeout,
            actor_id=actor_id,
        )
        return PaymentPage(
            payments=[sanitize_payment(payment) for payment in payments],
            pagination=Pagination(
                total=total,
                limit=query.limit,
                skip=query.skip,
                has_more=query.skip + len(payments) < total,
            ),
        )


__all__ = ["PaymentWorkflowService", "sanitize_payment", "new_reference"]
