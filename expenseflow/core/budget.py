"""
Budget Accumulator

Track approved spend per site against its budgets:
- Site monthly budget
- Site yearly budget
- Category budgets (monthly)

Spend is counted once, when an expense is paid. Each payment event is applied
at most once; replaying it (crash/retry) leaves the running totals unchanged.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from expenseflow.core.models import to_money

logger = logging.getLogger(__name__)

SITE_BUCKET = "*"

# (bucket, period_key) -> running total
Totals = Dict[Tuple[str, str], Decimal]


class BudgetStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"      # >= alert threshold
    EXCEEDED = "exceeded"    # >= 100%


class BudgetScope(str, Enum):
    SITE_MONTHLY = "site_monthly"
    SITE_YEARLY = "site_yearly"
    CATEGORY_MONTHLY = "category_monthly"


def category_key(category: str) -> str:
    """'Vehicle KM', 'vehicleKm' and 'vehicle_km' share one budget line."""
    return "".join(ch for ch in (category or "").lower() if ch.isalnum())


def period_key_for(timestamp: datetime) -> str:
    return timestamp.strftime("%Y-%m")


def year_of(period_key: str) -> str:
    return period_key.split("-", 1)[0]


def utilization_percent(total: Decimal, limit: Decimal) -> int:
    """Whole percent, half-up. A missing/zero limit reads as 0%."""
    if not limit or limit <= 0:
        return 0
    return int((Decimal(total) / Decimal(limit) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class BudgetConfig:
    """Budget limits for one site."""
    site_id: str
    monthly_limit: Decimal = Decimal("0")
    yearly_limit: Decimal = Decimal("0")
    category_limits: Dict[str, Decimal] = field(default_factory=dict)
    alert_threshold_percent: int = 80
    site_name: str = ""

    def __post_init__(self):
        if not (0 <= int(self.alert_threshold_percent) <= 100):
            raise ValueError("Alert threshold must be between 0 and 100")
        self.monthly_limit = to_money(self.monthly_limit or 0)
        self.yearly_limit = to_money(self.yearly_limit or 0)
        self.category_limits = {
            category_key(k): to_money(v or 0) for k, v in (self.category_limits or {}).items()
        }

    def category_limit(self, category: str) -> Decimal:
        return self.category_limits.get(category_key(category), Decimal("0"))


@dataclass
class BudgetCheck:
    """Utilization of one budget scope after (or without) new spend."""
    scope: BudgetScope
    period_key: str
    limit: Decimal
    total: Decimal
    utilization_percent: int
    threshold_percent: int
    category: Optional[str] = None

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0.00"), self.limit - self.total)

    @property
    def status(self) -> BudgetStatus:
        if self.limit <= 0:
            return BudgetStatus.HEALTHY
        if self.utilization_percent >= 100:
            return BudgetStatus.EXCEEDED
        if self.utilization_percent >= self.threshold_percent:
            return BudgetStatus.WARNING
        return BudgetStatus.HEALTHY

    @property
    def breached(self) -> bool:
        return self.limit > 0 and self.utilization_percent >= self.threshold_percent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.value,
            "period": self.period_key,
            "category": self.category,
            "limit": str(self.limit),
            "total": str(self.total),
            "remaining": str(self.remaining),
            "utilization_percent": self.utilization_percent,
            "threshold_percent": self.threshold_percent,
            "status": self.status.value,
        }


@dataclass
class SpendRecordResult:
    site_id: str
    category: str
    amount: Decimal
    period_key: str
    event_id: str
    applied: bool
    checks: List[BudgetCheck] = field(default_factory=list)
    site_name: str = ""

    @property
    def breaches(self) -> List[BudgetCheck]:
        if not self.applied:
            return []
        return [c for c in self.checks if c.breached]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "category": self.category,
            "amount": str(self.amount),
            "period": self.period_key,
            "event_id": self.event_id,
            "applied": self.applied,
            "checks": [c.to_dict() for c in self.checks],
            "breaches": [c.scope.value for c in self.breaches],
        }


class BudgetLedger(Protocol):
    """Storage for running totals. ``ExpenseDB`` and ``InMemoryBudgetLedger`` implement it."""

    def apply_spend(
        self,
        event_id: str,
        site_id: str,
        amount: Decimal,
        buckets: Sequence[Tuple[str, str]],
    ) -> Optional[Totals]:
        ...

    def get_totals(self, site_id: str, buckets: Sequence[Tuple[str, str]]) -> Totals:
        ...


class InMemoryBudgetLedger:
    """Process-local ledger for library use and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals: Dict[Tuple[str, str, str], Decimal] = {}
        self._applied: set = set()

    def apply_spend(self, event_id, site_id, amount, buckets):
        with self._lock:
            if event_id in self._applied:
                return None
            self._applied.add(event_id)
            out: Totals = {}
            for bucket, period in buckets:
                key = (site_id, bucket, period)
                self._totals[key] = self._totals.get(key, Decimal("0.00")) + amount
                out[(bucket, period)] = self._totals[key]
            return out

    def get_totals(self, site_id, buckets):
        with self._lock:
            return {
                (bucket, period): self._totals.get((site_id, bucket, period), Decimal("0.00"))
                for bucket, period in buckets
            }


class BudgetAccumulator:
    """
    Maintains running totals of paid spend and reports threshold breaches.

    Usage:
        accumulator = BudgetAccumulator(ledger, db.get_budget_config)
        result = accumulator.record_approved_spend(
            "site-1", "Travel", Decimal("18000"), "2025-08", event_id="AE-1",
        )
        for breach in result.breaches:
            print(breach.scope, breach.utilization_percent)
    """

    def __init__(self, ledger: BudgetLedger, config_provider: Callable[[str], BudgetConfig]):
        self.ledger = ledger
        self.config_provider = config_provider

    @staticmethod
    def _buckets(category: str, period_key: str) -> List[Tuple[str, str]]:
        return [
            (SITE_BUCKET, period_key),
            (SITE_BUCKET, year_of(period_key)),
            (category_key(category), period_key),
        ]

    def _checks(self, config: BudgetConfig, category: str, period_key: str, totals: Totals) -> List[BudgetCheck]:
        threshold = int(config.alert_threshold_percent)
        cat = category_key(category)
        year = year_of(period_key)
        scopes = [
            (BudgetScope.SITE_MONTHLY, period_key, config.monthly_limit, totals[(SITE_BUCKET, period_key)], None),
            (BudgetScope.SITE_YEARLY, year, config.yearly_limit, totals[(SITE_BUCKET, year)], None),
            (BudgetScope.CATEGORY_MONTHLY, period_key, config.category_limit(category), totals[(cat, period_key)], category),
        ]
        return [
            BudgetCheck(
                scope=scope,
                period_key=period,
                limit=limit,
                total=total,
                utilization_percent=utilization_percent(total, limit),
                threshold_percent=threshold,
                category=cat_name,
            )
            for scope, period, limit, total, cat_name in scopes
        ]

    def record_approved_spend(
        self,
        site_id: str,
        category: str,
        amount: Decimal,
        period_key: str,
        event_id: str,
    ) -> SpendRecordResult:
        """Add ``amount`` to the site/category totals for ``period_key`` once per ``event_id``."""
        config = self.config_provider(site_id)
        amount = to_money(amount)
        buckets = self._buckets(category, period_key)

        totals = self.ledger.apply_spend(event_id, site_id, amount, buckets)
        applied = totals is not None
        if not applied:
            logger.info("Spend for event %s already recorded; skipping", event_id)
            totals = self.ledger.get_totals(site_id, buckets)

        result = SpendRecordResult(
            site_id=site_id,
            category=category,
            amount=amount,
            period_key=period_key,
            event_id=event_id,
            applied=applied,
            checks=self._checks(config, category, period_key, totals),
            site_name=config.site_name,
        )

        for breach in result.breaches:
            logger.warning(
                "Budget threshold reached for site %s (%s %s): %s%% >= %s%%",
                site_id, breach.scope.value, breach.period_key,
                breach.utilization_percent, breach.threshold_percent,
            )
        return result

    def get_budget_status(self, site_id: str, period_key: str) -> Dict[str, Any]:
        """Read-only utilization summary for a site and month."""
        config = self.config_provider(site_id)
        year = year_of(period_key)
        categories = sorted(config.category_limits)
        buckets = [(SITE_BUCKET, period_key), (SITE_BUCKET, year)] + [(c, period_key) for c in categories]
        totals = self.ledger.get_totals(site_id, buckets)
        threshold = int(config.alert_threshold_percent)

        def check(scope, period, limit, total, category=None):
            return BudgetCheck(
                scope=scope,
                period_key=period,
                limit=limit,
                total=total,
                utilization_percent=utilization_percent(total, limit),
                threshold_percent=threshold,
                category=category,
            )

        monthly = check(BudgetScope.SITE_MONTHLY, period_key, config.monthly_limit, totals[(SITE_BUCKET, period_key)])
        yearly = check(BudgetScope.SITE_YEARLY, year, config.yearly_limit, totals[(SITE_BUCKET, year)])
        by_category = [
            check(BudgetScope.CATEGORY_MONTHLY, period_key, config.category_limits[c], totals[(c, period_key)], c)
            for c in categories
        ]
        return {
            "site_id": site_id,
            "site_name": config.site_name,
            "period": period_key,
            "alert_threshold_percent": threshold,
            "monthly": monthly.to_dict(),
            "yearly": yearly.to_dict(),
            "categories": [c.to_dict() for c in by_category],
            "should_alert": any(c.breached for c in [monthly, yearly, *by_category]),
        }
