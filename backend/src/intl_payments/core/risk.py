"""
Fraud scoring and AML risk tiering for cross-border payments.

The score is additive and capped at 100. All inputs come from the payment
itself plus two history reads, so identical history yields identical output.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, load_settings
from .models import AmlRiskLevel, FraudFlag, PaymentDraft

if TYPE_CHECKING:
    from .contracts import PaymentHistory

logger = structlog.get_logger(__name__)

ELEVATED_AMOUNT_POINTS = 10
HIGH_AMOUNT_POINTS = 20
FIRST_TIME_DESTINATION_POINTS = 15
HIGH_RISK_COUNTRY_POINTS = 40
VELOCITY_POINTS = 20
MAX_FRAUD_SCORE = 100


class RiskSignals(BaseModel):
    """Inputs to the scoring rules."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    destination_country: str
    first_time_destination: bool
    recent_payment_count: int = Field(ge=0)


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    fraud_score: int = Field(ge=0, le=MAX_FRAUD_SCORE)
    fraud_flags: Tuple[FraudFlag, ...] = ()
    aml_risk_level: AmlRiskLevel = AmlRiskLevel.LOW
    reasons: Tuple[str, ...] = ()


def evaluate_risk(signals: RiskSignals, settings: Settings) -> RiskAssessment:
    """Apply the scoring rules to already-gathered signals."""

    score = 0
    flags: List[FraudFlag] = []
    reasons: List[str] = []
    high_risk_country = signals.destination_country in settings.high_risk_country_set
    velocity_exceeded = signals.recent_payment_count > settings.velocity_max_payments

    if signals.amount > settings.high_amount_threshold:
        score += HIGH_AMOUNT_POINTS
        flags.append(FraudFlag.HIGH_AMOUNT)
        reasons.append(f"amount above {settings.high_amount_threshold}")
    elif signals.amount > settings.elevated_amount_threshold:
        score += ELEVATED_AMOUNT_POINTS
        reasons.append(f"amount above {settings.elevated_amount_threshold}")

    if signals.first_time_destination:
        score += FIRST_TIME_DESTINATION_POINTS
        reasons.append(f"first payment to {signals.destination_country}")

    if high_risk_country:
        score += HIGH_RISK_COUNTRY_POINTS
        flags.append(FraudFlag.UNUSUAL_DESTINATION)
        reasons.append(f"high-risk destination {signals.destination_country}")

    if velocity_exceeded:
        score += VELOCITY_POINTS
        flags.append(FraudFlag.VELOCITY_CHECK)
        reasons.append(
            f"{signals.recent_payment_count} payments in the last {settings.velocity_window_hours}h"
        )

    # Destination takes precedence over amount tiers
    if high_risk_country:
        tier = AmlRiskLevel.VERY_HIGH
    elif signals.amount > settings.very_large_amount_threshold:
        tier = AmlRiskLevel.HIGH
    elif signals.amount > settings.high_amount_threshold:
        tier = AmlRiskLevel.MEDIUM
    else:
        tier = AmlRiskLevel.LOW

    return RiskAssessment(
        fraud_score=min(score, MAX_FRAUD_SCORE),
        fraud_flags=tuple(flags),
        aml_risk_level=tier,
        reasons=tuple(reasons),
    )


class RiskAssessor:
    """Gathers history signals for a draft and scores it."""

    def __init__(self, history: "PaymentHistory", settings: Optional[Settings] = None):
        self.history = history
        self.settings = settings or load_settings()

    async def collect_signals(self, draft: PaymentDraft, now: datetime) -> RiskSignals:
        since = now - timedelta(hours=self.settings.velocity_window_hours)
        has_prior = await self.history.has_settled_payment_to_country(
            draft.customer_id, draft.destination_country
        )
        recent = await self.history.count_customer_payments_since(draft.customer_id, since)
        return RiskSignals(
            amount=draft.amount,
            destination_country=draft.destination_country,
            first_time_destination=not has_prior,
            recent_payment_count=recent,
        )

    async def assess(self, draft: PaymentDraft, now: datetime) -> RiskAssessment:
        signals = await self.collect_signals(draft, now)
        assessment = evaluate_risk(signals, self.settings)
        logger.info(
            "risk_assessed",
            customer_id=draft.customer_id,
            destination_country=signals.destination_country,
            fraud_score=assessment.fraud_score,
            fraud_flags=[flag.value for flag in assessment.fraud_flags],
            aml_risk_level=assessment.aml_risk_level.value,
        )
        return assessment


__all__ = [
    "RiskSignals",
    "RiskAssessment",
    "RiskAssessor",
    "evaluate_risk",
    "MAX_FRAUD_SCORE",
]
