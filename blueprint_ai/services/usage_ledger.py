"""Per-user analysis ledger with monthly, tier-scoped quotas.

- One ``ai_usage`` row per user, created lazily on first access.
- Monthly counters roll over lazily: every access compares the stored
  ``current_month_year`` with the ledger clock and resets on mismatch.
- Counter updates are single ``UPDATE .. SET col = col + 1`` statements so
  concurrent requests for the same user never lose an increment.
- Premium quota is the ``UNLIMITED`` marker (NULL in the database), never a
  large number.
"""
from __future__ import annotations

import calendar
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, NamedTuple

from sqlalchemy import case, select, text, update
from sqlalchemy.orm import Session

from blueprint_ai.config import Settings
from blueprint_ai.metrics import tier_upgrade_total
from blueprint_ai.models import AIUsage

logger = logging.getLogger(__name__)


class Tier(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


class Unlimited(enum.Enum):
    """Marker for a quota without an upper bound."""

    UNLIMITED = "unlimited"

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited.UNLIMITED

# Either a finite monthly quota or UNLIMITED.
AnalysisLimit = int | Unlimited

UPGRADE_TIERS = frozenset({Tier.BASIC, Tier.PREMIUM})


class InvalidTierError(ValueError):
    """Raised when an upgrade targets a tier outside basic/premium."""


@dataclass(frozen=True)
class Subscription:
    tier: Tier
    analysis_limit: AnalysisLimit
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass(frozen=True)
class UsageRecord:
    user_id: str
    analysis_count: int
    monthly_analysis_count: int
    current_month_year: str
    total_cost: Decimal
    subscription: Subscription
    last_analysis_date: datetime | None = None


class Eligibility(NamedTuple):
    can_analyze: bool
    remaining: int | Unlimited
    tier: Tier
    limit: AnalysisLimit


class UsageSummary(NamedTuple):
    record: UsageRecord
    eligibility: Eligibility


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(dt: datetime) -> str:
    """Return the ``YYYY-MM`` key of ``dt`` on the UTC calendar."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m")


def add_months(dt: datetime, months: int) -> datetime:
    """Shift ``dt`` by calendar months, clamping the day to the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _as_utc(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _limit_from_column(value: int | None) -> AnalysisLimit:
    return UNLIMITED if value is None else int(value)


def _limit_to_column(limit: AnalysisLimit) -> int | None:
    return None if limit is UNLIMITED else limit


def _to_record(row: AIUsage) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        analysis_count=row.analysis_count,
        monthly_analysis_count=row.monthly_analysis_count,
        current_month_year=row.current_month_year,
        total_cost=Decimal(row.total_cost or 0),
        last_analysis_date=_as_utc(row.last_analysis_date),
        subscription=Subscription(
            tier=Tier(row.tier),
            analysis_limit=_limit_from_column(row.analysis_limit),
            start_date=_as_utc(row.subscription_start),
            end_date=_as_utc(row.subscription_end),
        ),
    )


class UsageLedger:
    """Ledger service bound to a session factory and a clock."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or Settings()
        self._clock = clock

    def tier_limit(self, tier: Tier) -> AnalysisLimit:
        if tier is Tier.PREMIUM:
            return UNLIMITED
        if tier is Tier.BASIC:
            return self._settings.basic_monthly_limit
        return self._settings.free_monthly_limit

    def _ensure_current(self, db: Session, user_id: str, month: str) -> None:
        # Writes come first in the transaction so SQLite takes the write lock
        # before any read lock is held.
        created = db.execute(
            text(
                "INSERT INTO ai_usage (user_id, analysis_count, monthly_analysis_count, "
                "current_month_year, total_cost, tier, analysis_limit, created_at, updated_at) "
                "VALUES (:uid, 0, 0, :month, 0, 'free', :limit, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP) "
                "ON CONFLICT (user_id) DO NOTHING"
            ),
            {"uid": user_id, "month": month, "limit": self._settings.free_monthly_limit},
        )
        if created.rowcount:
            logger.info("Created usage ledger for user %s", user_id)

        rolled = db.execute(
            update(AIUsage)
            .where(AIUsage.user_id == user_id, AIUsage.current_month_year != month)
            .values(monthly_analysis_count=0, current_month_year=month)
            .execution_options(synchronize_session=False)
        )
        if rolled.rowcount:
            logger.info("Monthly usage rolled over to %s for user %s", month, user_id)

    def _fetch(self, db: Session, user_id: str) -> UsageRecord:
        row = db.scalars(select(AIUsage).where(AIUsage.user_id == user_id)).one()
        return _to_record(row)

    def get_or_create(self, user_id: str) -> UsageRecord:
        """Return the user's record, creating it on first access and rolling the month."""
        month = month_key(self._clock())
        with self._session_factory() as db:
            self._ensure_current(db, user_id, month)
            record = self._fetch(db, user_id)
            db.commit()
        return record

    def eligibility(self, record: UsageRecord) -> Eligibility:
        sub = record.subscription
        if sub.tier is Tier.PREMIUM or sub.analysis_limit is UNLIMITED:
            return Eligibility(True, UNLIMITED, sub.tier, UNLIMITED)
        remaining = max(0, sub.analysis_limit - record.monthly_analysis_count)
        return Eligibility(remaining > 0, remaining, sub.tier, sub.analysis_limit)

    def can_analyze(self, user_id: str) -> Eligibility:
        return self.eligibility(self.get_or_create(user_id))

    def get_usage(self, user_id: str) -> UsageSummary:
        record = self.get_or_create(user_id)
        return UsageSummary(record, self.eligibility(record))

    def normalize_cost(self, cost: Decimal | float | str | None) -> Decimal:
        """Return ``cost`` as a non-negative Decimal, defaulting from settings."""
        if cost is None:
            cost = self._settings.default_analysis_cost
        try:
            value = Decimal(str(cost))
        except InvalidOperation as exc:
            raise ValueError(f"invalid cost: {cost!r}") from exc
        if not value.is_finite() or value < 0:
            raise ValueError("cost must be a finite non-negative amount")
        return value

    def record_analysis(self, user_id: str, cost: Decimal | None = None) -> UsageRecord:
        """Charge one analysis to the user's lifetime and monthly counters."""
        cost = self.normalize_cost(cost)

        now = self._clock()
        month = month_key(now)
        with self._session_factory() as db:
            self._ensure_current(db, user_id, month)
            db.execute(
                update(AIUsage)
                .where(AIUsage.user_id == user_id)
                .values(
                    analysis_count=AIUsage.analysis_count + 1,
                    monthly_analysis_count=case(
                        (
                            AIUsage.current_month_year == month,
                            AIUsage.monthly_analysis_count + 1,
                        ),
                        else_=1,
                    ),
                    current_month_year=month,
                    last_analysis_date=now,
                    total_cost=AIUsage.total_cost + cost,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            record = self._fetch(db, user_id)
            db.commit()
        logger.info(
            "Recorded analysis for user %s (%s this month)",
            user_id,
            record.monthly_analysis_count,
            extra={"user_id": user_id},
        )
        return record

    def upgrade_subscription(
        self, user_id: str, tier: Tier | str, duration_months: int = 1
    ) -> UsageRecord:
        """Replace the user's subscription block with the tier defaults."""
        try:
            target = Tier(tier)
        except ValueError as exc:
            raise InvalidTierError(f"unknown tier: {tier!r}") from exc
        if target not in UPGRADE_TIERS:
            raise InvalidTierError(f"cannot upgrade to {target.value!r}")
        if duration_months < 1:
            raise ValueError("duration_months must be at least 1")

        now = self._clock()
        with self._session_factory() as db:
            self._ensure_current(db, user_id, month_key(now))
            db.execute(
                update(AIUsage)
                .where(AIUsage.user_id == user_id)
                .values(
                    tier=target.value,
                    subscription_start=now,
                    subscription_end=add_months(now, duration_months),
                    analysis_limit=_limit_to_column(self.tier_limit(target)),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            record = self._fetch(db, user_id)
            db.commit()
        tier_upgrade_total.labels(tier=target.value).inc()
        logger.info(
            "User %s upgraded to %s for %s month(s)", user_id, target.value, duration_months
        )
        return record


__all__ = [
    "Tier",
    "Unlimited",
    "UNLIMITED",
    "AnalysisLimit",
    "InvalidTierError",
    "Subscription",
    "UsageRecord",
    "Eligibility",
    "UsageSummary",
    "UsageLedger",
    "month_key",
    "add_months",
    "utc_now",
]
