from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Optional

from chatgateway.logging import get_logger
from chatgateway.service.errors import (
    DailyLimitExceededError,
    ModelNotAllowedError,
    MonthlyLimitExceededError,
)
from chatgateway.service.model_backend import ALL_MODELS
from chatgateway.storage.models import Account

UNLIMITED = -1

TIER_ORDER = ("free", "basic", "pro")

_FREE_MODELS = frozenset(
    {"gpt-4o-mini", "claude-3-5-haiku-20241022", "gemini-2.0-flash"}
)

_BASIC_MODELS = _FREE_MODELS | frozenset(
    {
        "gpt-4o",
        "gpt-4.1",
        "gpt-4.1-mini",
        "claude-3-5-sonnet-20241022",
        "claude-3-7-sonnet-20250219",
        "claude-sonnet-4-20250514",
        "gemini-1.5-flash",
        "gemini-1.5-pro",
        "gemini-2.5-flash",
    }
)


@dataclass(frozen=True)
class TierLimits:
    monthly_token_limit: int
    daily_message_limit: int
    allowed_models: FrozenSet[str]

    def allows(self, model: str) -> bool:
        return model in self.allowed_models


TIER_LIMITS: Dict[str, TierLimits] = {
    "free": TierLimits(35_000, 25, _FREE_MODELS),
    "basic": TierLimits(1_000_000, UNLIMITED, _BASIC_MODELS),
    "pro": TierLimits(1_500_000, UNLIMITED, frozenset(ALL_MODELS)),
}


def normalize_tier(tier: Optional[str]) -> str:
    return tier if tier in TIER_LIMITS else "free"


def limits_for(tier: Optional[str]) -> TierLimits:
    return TIER_LIMITS[normalize_tier(tier)]


def required_tier_for(model: str) -> Optional[str]:
    """Lowest tier whose allow-list contains ``model``."""

    for tier in TIER_ORDER:
        if TIER_LIMITS[tier].allows(model):
            return tier
    return None


def _on_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def most_recent_anniversary(billing_period_start: date, today: date) -> date:
    """Latest date on the billing day (clamped to month length) that is <= today."""

    anchor = billing_period_start.day
    candidate = _on_day(today.year, today.month, anchor)
    if candidate <= today:
        return candidate
    year, month = _shift_month(today.year, today.month, -1)
    return _on_day(year, month, anchor)


def next_anniversary(billing_period_start: date, today: date) -> date:
    """First date on the billing day (clamped) strictly after today."""

    anchor = billing_period_start.day
    candidate = _on_day(today.year, today.month, anchor)
    if candidate > today:
        return candidate
    year, month = _shift_month(today.year, today.month, 1)
    return _on_day(year, month, anchor)


def next_daily_reset(today: date) -> datetime:
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


def _percentage(current: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return round(current / limit * 100)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class QuotaSnapshot:
    """Post-reset view of an account's entitlement and consumption."""

    account_id: str
    tier: str
    limits: TierLimits
    monthly_tokens_used: int
    daily_messages_sent: int
    billing_period_start: date
    today: date

    @property
    def daily_reset_at(self) -> datetime:
        return next_daily_reset(self.today)

    @property
    def monthly_reset_at(self) -> datetime:
        return datetime.combine(
            next_anniversary(self.billing_period_start, self.today),
            time.min,
            tzinfo=timezone.utc,
        )

    def daily_usage(self) -> dict:
        return {
            "current": self.daily_messages_sent,
            "limit": self.limits.daily_message_limit,
            "percentage": _percentage(
                self.daily_messages_sent, self.limits.daily_message_limit
            ),
            "resetTime": self.daily_reset_at.isoformat(),
        }

    def monthly_usage(self) -> dict:
        return {
            "current": self.monthly_tokens_used,
            "limit": self.limits.monthly_token_limit,
            "percentage": _percentage(
                self.monthly_tokens_used, self.limits.monthly_token_limit
            ),
            "resetTime": self.monthly_reset_at.isoformat(),
        }


class QuotaLedger:
    """Applies period resets and enforces tier entitlements before a call.

    Resets go through the store's conditional update methods so two racing
    requests cannot both zero a counter that the other already incremented.
    """

    def __init__(self, store, *, clock: Optional[Callable[[], date]] = None) -> None:
        self.store = store
        self.clock = clock or _utc_today
        self.logger = get_logger(__name__)

    def _load(self, account_id: str) -> QuotaSnapshot:
        today = self.clock()
        account: Account = self.store.get_account(account_id) or self.store.ensure_account(
            account_id, billing_period_start=today
        )
        if self.store.apply_daily_reset(account_id, today):
            self.logger.info("daily_quota_reset", account_id=account_id, day=today.isoformat())
        anniversary = most_recent_anniversary(account.billing_period_start, today)
        if self.store.apply_monthly_reset(account_id, anniversary, today):
            self.logger.info(
                "monthly_quota_reset",
                account_id=account_id,
                anniversary=anniversary.isoformat(),
            )
        account = self.store.get_account(account_id) or account
        tier = normalize_tier(account.tier)
        return QuotaSnapshot(
            account_id=account_id,
            tier=tier,
            limits=TIER_LIMITS[tier],
            monthly_tokens_used=account.monthly_tokens_used,
            daily_messages_sent=account.daily_messages_sent,
            billing_period_start=account.billing_period_start,
            today=today,
        )

    def usage_snapshot(self, account_id: str) -> QuotaSnapshot:
        return self._load(account_id)

    def check_and_reserve(self, account_id: str, model: str) -> QuotaSnapshot:
        """Reset stale counters, then check the allow-list and both limits.

        Nothing is incremented here; consumption is recorded only after a
        completed exchange.
        """

        snapshot = self._load(account_id)
        limits = snapshot.limits
        if not limits.allows(model):
            raise ModelNotAllowedError(
                f"{model} is not available on your current plan. "
                "Please upgrade or select a different model.",
                detail={
                    "tier": snapshot.tier,
                    "allowedModels": sorted(limits.allowed_models),
                    "requiredTier": required_tier_for(model),
                },
            )
        daily_limit = limits.daily_message_limit
        if daily_limit != UNLIMITED and snapshot.daily_messages_sent >= daily_limit:
            raise DailyLimitExceededError(
                "Daily message limit reached. You've used "
                f"{snapshot.daily_messages_sent}/{daily_limit} messages today. "
                "Upgrade to Basic for unlimited messages!",
                detail={"tier": snapshot.tier, "usage": snapshot.daily_usage()},
            )
        self._check_monthly(snapshot)
        return snapshot

    def check_monthly_tokens(self, account_id: str) -> QuotaSnapshot:
        snapshot = self._load(account_id)
        self._check_monthly(snapshot)
        return snapshot

    def _check_monthly(self, snapshot: QuotaSnapshot) -> None:
        monthly_limit = snapshot.limits.monthly_token_limit
        if monthly_limit != UNLIMITED and snapshot.monthly_tokens_used >= monthly_limit:
            raise MonthlyLimitExceededError(
                "Monthly token limit exceeded. You've used "
                f"{snapshot.monthly_tokens_used:,}/{monthly_limit:,} tokens this month. "
                "Upgrade for more tokens!",
                detail={"tier": snapshot.tier, "usage": snapshot.monthly_usage()},
            )


__all__ = [
    "QuotaLedger",
    "QuotaSnapshot",
    "TIER_LIMITS",
    "TIER_ORDER",
    "TierLimits",
    "UNLIMITED",
    "limits_for",
    "most_recent_anniversary",
    "next_anniversary",
    "next_daily_reset",
    "normalize_tier",
    "required_tier_for",
]
