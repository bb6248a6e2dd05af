"""
Merchant settlement - tiered revenue share plus conditional bonuses.

Amounts are integer minor units (fen). Commission tiers are progressive
brackets: each rate applies only to the slice of revenue inside its
[min, max) band, and a max of -1 means unbounded. Bands start at 0, meet
end to end and end with an unbounded band.
"""
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.domain import Order
from usage_orders.models.enums import BonusType, MerchantLevel, OrderStatus, SettlementCycle
from usage_orders.services.errors import RuleNotFoundError

logger = structlog.get_logger(__name__)

UNBOUNDED = -1
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class CommissionTier:
    min: int
    max: int  # UNBOUNDED for the open top bracket
    rate: Decimal


@dataclass(frozen=True)
class Bonus:
    type: BonusType
    condition: Mapping[str, Any]
    amount: int


@dataclass
class SettlementRule:
    id: str
    name: str
    cycle: SettlementCycle
    level: MerchantLevel
    tiers: Tuple[CommissionTier, ...]
    bonuses: Tuple[Bonus, ...] = ()
    min_revenue: int = 0
    custom_days: Optional[int] = None
    description: str = ""
    enabled: bool = True

    def __post_init__(self):
        validate_tiers(self.tiers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cycle": self.cycle.value,
            "level": self.level.value,
            "min_revenue": self.min_revenue,
            "custom_days": self.custom_days,
            "description": self.description,
            "enabled": self.enabled,
            "tiers": [{"min": t.min, "max": t.max, "rate": str(t.rate)} for t in self.tiers],
            "bonuses": [{"type": b.type.value, "condition": dict(b.condition), "amount": b.amount}
                        for b in self.bonuses],
        }


@dataclass(frozen=True)
class SettlementResult:
    total_revenue: int
    order_count: int
    merchant_share: int
    platform_fee: int
    bonus_amount: int
    final_amount: int


@dataclass
class SettlementPreview:
    merchant_id: int
    rule_id: str
    period_start: datetime
    period_end: datetime
    result: SettlementResult
    below_minimum: bool
    applied_bonuses: List[str] = field(default_factory=list)


def _tier(low: int, high: int, rate: str) -> CommissionTier:
    return CommissionTier(min=low, max=high, rate=Decimal(rate))


def default_settlement_rules() -> List[SettlementRule]:
    return [
        SettlementRule(
            id="bronze_daily",
            name="Bronze daily settlement",
            cycle=SettlementCycle.DAILY,
            level=MerchantLevel.BRONZE,
            min_revenue=10000,
            description="New or low-volume merchants",
            tiers=(_tier(0, 50000, "0.65"), _tier(50000, 100000, "0.70"), _tier(100000, UNBOUNDED, "0.75")),
            bonuses=(Bonus(BonusType.VOLUME, {"min_orders": 10}, 500),),
        ),
        SettlementRule(
            id="silver_weekly",
            name="Silver weekly settlement",
            cycle=SettlementCycle.WEEKLY,
            level=MerchantLevel.SILVER,
            min_revenue=50000,
            description="Mid-volume merchants, settled for the previous Monday to Sunday",
            tiers=(_tier(0, 100000, "0.72"), _tier(100000, 500000, "0.77"), _tier(500000, UNBOUNDED, "0.82")),
            bonuses=(
                Bonus(BonusType.GROWTH, {"growth_rate": "0.2"}, 2000),
                Bonus(BonusType.VOLUME, {"min_orders": 50}, 1500),
            ),
        ),
        SettlementRule(
            id="gold_monthly",
            name="Gold monthly settlement",
            cycle=SettlementCycle.MONTHLY,
            level=MerchantLevel.GOLD,
            min_revenue=200000,
            description="High-volume merchants, settled for the previous calendar month",
            tiers=(_tier(0, 500000, "0.80"), _tier(500000, 2000000, "0.85"), _tier(2000000, UNBOUNDED, "0.90")),
            bonuses=(
                Bonus(BonusType.RETENTION, {"active_months": 6}, 5000),
                Bonus(BonusType.VOLUME, {"min_orders": 200}, 10000),
            ),
        ),
        SettlementRule(
            id="platinum_custom",
            name="Platinum custom settlement",
            cycle=SettlementCycle.CUSTOM,
            level=MerchantLevel.PLATINUM,
            min_revenue=500000,
            custom_days=3,
            description="Top merchants, flat share every three days",
            tiers=(_tier(0, UNBOUNDED, "0.95"),),
            bonuses=(Bonus(BonusType.VOLUME, {"avg_daily_revenue": 100000}, 20000),),
        ),
    ]


def validate_tiers(tiers: Tuple[CommissionTier, ...]) -> None:
    """Brackets must start at 0 and meet end to end, with only the last one open."""
    if not tiers:
        raise ValueError("a settlement rule needs at least one commission tier")
    expected_min = 0
    for index, tier in enumerate(tiers):
        if tier.min != expected_min:
            raise ValueError(f"tier {index} starts at {tier.min}, expected {expected_min}")
        if tier.max == UNBOUNDED:
            if index != len(tiers) - 1:
                raise ValueError(f"tier {index} is unbounded but is not the last tier")
            return
        if tier.max <= tier.min:
            raise ValueError(f"tier {index} has an empty band [{tier.min}, {tier.max})")
        expected_min = tier.max
    raise ValueError(f"the last tier must be unbounded, got max {tiers[-1].max}")


def tiered_share(total_revenue: int, tiers: Tuple[CommissionTier, ...]) -> Decimal:
    """Exact merchant share before flooring. Each tier prices clamp(revenue, min, max) - min."""
    share = Decimal(0)
    revenue = Decimal(total_revenue)
    for tier in tiers:
        upper = revenue if tier.max == UNBOUNDED else min(revenue, Decimal(tier.max))
        slice_ = upper - tier.min
        if slice_ > 0:
            share += slice_ * tier.rate
    return share


def bonus_applies(
    bonus: Bonus,
    total_revenue: int,
    order_count: int,
    period_days: int,
    merchant_since: Optional[datetime],
    previous_revenue: Optional[int],
    now: datetime,
) -> bool:
    condition = bonus.condition
    if bonus.type == BonusType.VOLUME:
        if "min_orders" in condition:
            return order_count >= int(condition["min_orders"])
        if "avg_daily_revenue" in condition:
            return Decimal(total_revenue) / max(period_days, 1) >= Decimal(condition["avg_daily_revenue"])
        return False
    if bonus.type == BonusType.GROWTH:
        if not previous_revenue:
            return False
        growth = (Decimal(total_revenue) - previous_revenue) / previous_revenue
        return growth >= Decimal(condition["growth_rate"])
    if bonus.type == BonusType.RETENTION:
        if merchant_since is None:
            return False
        active_months = (now - merchant_since).days // DAYS_PER_MONTH
        return active_months >= int(condition.get("active_months", 0))
    return False


def _floor(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_FLOOR))


def calculate_settlement(
    total_revenue: int,
    order_count: int,
    rule: SettlementRule,
    merchant_since: Optional[datetime] = None,
    now: Optional[datetime] = None,
    previous_revenue: Optional[int] = None,
    period_days: int = 1,
) -> SettlementResult:
    """
    Merchant share from the progressive tiers, the platform keeps the rest,
    and every bonus whose condition holds is added on top.

    Share, fee and final amount are floored to whole minor units.
    """
    now = now or DEFAULT_CLOCK.now()
    share = tiered_share(total_revenue, rule.tiers)
    bonus_amount = sum(
        b.amount for b in rule.bonuses
        if bonus_applies(b, total_revenue, order_count, period_days, merchant_since, previous_revenue, now)
    )
    return SettlementResult(
        total_revenue=total_revenue,
        order_count=order_count,
        merchant_share=_floor(share),
        platform_fee=_floor(Decimal(total_revenue) - share),
        bonus_amount=bonus_amount,
        final_amount=_floor(share + bonus_amount),
    )


def settlement_period(cycle: SettlementCycle, now: datetime, custom_days: Optional[int] = None
                      ) -> Tuple[datetime, datetime]:
    """
    The closed window a run at ``now`` settles. Every window ends before today.

    daily: yesterday. weekly: the previous Monday to Sunday. monthly: the
    previous calendar month. custom: the last ``custom_days`` whole days.
    """
    today = datetime.combine(now.date(), time.min)
    end_of_yesterday = today - timedelta(microseconds=1)

    if cycle == SettlementCycle.DAILY:
        return today - timedelta(days=1), end_of_yesterday
    if cycle == SettlementCycle.WEEKLY:
        this_monday = today - timedelta(days=today.weekday())
        return this_monday - timedelta(days=7), this_monday - timedelta(microseconds=1)
    if cycle == SettlementCycle.MONTHLY:
        first_of_month = today.replace(day=1)
        previous_first = (first_of_month - timedelta(days=1)).replace(day=1)
        return previous_first, first_of_month - timedelta(microseconds=1)
    if cycle == SettlementCycle.CUSTOM:
        days = custom_days or 7
        return today - timedelta(days=days), end_of_yesterday
    raise ValueError(f"Unsupported settlement cycle: {cycle}")


class SettlementService:
    """Settlement previews over DONE orders. Nothing is paid out from here."""

    def __init__(self, session_factory: sessionmaker, clock: Clock = DEFAULT_CLOCK,
                 rules: Optional[List[SettlementRule]] = None):
        self.session_factory = session_factory
        self.clock = clock
        self._rules: Dict[str, SettlementRule] = {
            r.id: r for r in (rules if rules is not None else default_settlement_rules())
        }

    def get_rules(self) -> List[SettlementRule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> SettlementRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Settlement rule not found: {rule_id}")
        return rule

    def select_rule(self, total_revenue: int) -> SettlementRule:
        """Pick the tier rule for a merchant's lifetime revenue."""
        if total_revenue > 10000000:
            preferred = "platinum_custom"
        elif total_revenue > 1000000:
            preferred = "gold_monthly"
        elif total_revenue > 100000:
            preferred = "silver_weekly"
        else:
            preferred = "bronze_daily"
        rule = self._rules.get(preferred)
        if rule is not None and rule.enabled:
            return rule
        enabled = [r for r in self._rules.values() if r.enabled]
        if not enabled:
            raise RuleNotFoundError("No enabled settlement rule")
        return enabled[0]

    def preview(self, merchant_id: int, rule_id: Optional[str] = None) -> SettlementPreview:
        now = self.clock.now()
        with self.session_factory() as db:
            lifetime_revenue, merchant_since = self._lifetime(db, merchant_id)
            rule = self.get_rule(rule_id) if rule_id else self.select_rule(lifetime_revenue)
            start, end = settlement_period(rule.cycle, now, rule.custom_days)
            revenue, count = self._revenue(db, merchant_id, start, end)
            span = end - start
            previous_revenue, _ = self._revenue(db, merchant_id, start - span, start - timedelta(microseconds=1))

        period_days = max((end - start).days + 1, 1)
        result = calculate_settlement(revenue, count, rule, merchant_since=merchant_since, now=now,
                                      previous_revenue=previous_revenue, period_days=period_days)
        applied = [
            b.type.value for b in rule.bonuses
            if bonus_applies(b, revenue, count, period_days, merchant_since, previous_revenue, now)
        ]
        logger.info("settlement_previewed", merchant_id=merchant_id, rule_id=rule.id,
                    revenue=revenue, final_amount=result.final_amount)
        return SettlementPreview(
            merchant_id=merchant_id,
            rule_id=rule.id,
            period_start=start,
            period_end=end,
            result=result,
            below_minimum=revenue < rule.min_revenue,
            applied_bonuses=applied,
        )

    @staticmethod
    def _lifetime(db: Session, merchant_id: int) -> Tuple[int, Optional[datetime]]:
        revenue, since = (
            db.query(func.coalesce(func.sum(Order.amount), 0), func.min(Order.created_at))
            .filter(Order.merchant_id == merchant_id, Order.status == OrderStatus.DONE)
            .one()
        )
        return int(revenue), since

    @staticmethod
    def _revenue(db: Session, merchant_id: int, start: datetime, end: datetime) -> Tuple[int, int]:
        revenue, count = (
            db.query(func.coalesce(func.sum(Order.amount), 0), func.count(Order.id))
            .filter(
                Order.merchant_id == merchant_id,
                Order.status == OrderStatus.DONE,
                Order.updated_at >= start,
                Order.updated_at <= end,
            )
            .one()
        )
        return int(revenue), int(count)
