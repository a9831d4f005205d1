from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from blueprint_ai.dependencies import ErrorResponse, get_ledger, require_user
from blueprint_ai.services.usage_ledger import (
    UNLIMITED,
    AnalysisLimit,
    Eligibility,
    InvalidTierError,
    Subscription,
    UsageLedger,
)

router = APIRouter()

LimitValue = int | Literal["unlimited"]


def limit_value(limit: AnalysisLimit) -> LimitValue:
    return "unlimited" if limit is UNLIMITED else limit


class SubscriptionResponse(BaseModel):
    tier: str
    analysis_limit: LimitValue
    start_date: datetime | None = None
    end_date: datetime | None = None

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionResponse":
        return cls(
            tier=sub.tier.value,
            analysis_limit=limit_value(sub.analysis_limit),
            start_date=sub.start_date,
            end_date=sub.end_date,
        )


class EligibilityResponse(BaseModel):
    can_analyze: bool
    remaining: LimitValue
    tier: str
    limit: LimitValue

    @classmethod
    def from_eligibility(cls, e: Eligibility) -> "EligibilityResponse":
        return cls(
            can_analyze=e.can_analyze,
            remaining=limit_value(e.remaining),
            tier=e.tier.value,
            limit=limit_value(e.limit),
        )


class UsageResponse(BaseModel):
    analysis_count: int
    monthly_analysis_count: int
    last_analysis_date: datetime | None = None
    current_month_year: str
    total_cost: Decimal
    subscription: SubscriptionResponse
    eligibility: EligibilityResponse


class UpgradeRequest(BaseModel):
    tier: str
    duration_months: int = Field(1, ge=1, le=36)


@router.get(
    "/usage",
    response_model=UsageResponse,
    responses={401: {"model": ErrorResponse}},
)
async def get_usage(
    user_id: str = Depends(require_user),
    ledger: UsageLedger = Depends(get_ledger),
):
    record, eligibility = await asyncio.to_thread(ledger.get_usage, user_id)
    return UsageResponse(
        analysis_count=record.analysis_count,
        monthly_analysis_count=record.monthly_analysis_count,
        last_analysis_date=record.last_analysis_date,
        current_month_year=record.current_month_year,
        total_cost=record.total_cost,
        subscription=SubscriptionResponse.from_subscription(record.subscription),
        eligibility=EligibilityResponse.from_eligibility(eligibility),
    )


@router.post(
    "/usage/subscription",
    response_model=SubscriptionResponse,
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def upgrade_subscription(
    body: UpgradeRequest,
    user_id: str = Depends(require_user),
    ledger: UsageLedger = Depends(get_ledger),
):
    try:
        record = await asyncio.to_thread(
            ledger.upgrade_subscription, user_id, body.tier, body.duration_months
        )
    except InvalidTierError as exc:
        err = ErrorResponse(code="BAD_REQUEST", message=str(exc))
        raise HTTPException(status_code=422, detail=err.model_dump()) from exc
    return SubscriptionResponse.from_subscription(record.subscription)
