"""Settlement: progressive commission brackets, bonuses and settlement windows."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from usage_orders.models.enums import MerchantLevel, OrderStatus, SettlementCycle
from usage_orders.services.errors import RuleNotFoundError
from usage_orders.services.settlement import (
    UNBOUNDED,
    CommissionTier,
    SettlementRule,
    calculate_settlement,
    default_settlement_rules,
    settlement_period,
    tiered_share,
)

NOW = datetime(2024, 1, 1, 12, 0, 0)  # a Monday

BRONZE_TIERS = (
    CommissionTier(0, 50000, Decimal("0.65")),
    CommissionTier(50000, 100000, Decimal("0.70")),
    CommissionTier(100000, UNBOUNDED, Decimal("0.75")),
)


def _rule(rule_id):
    return {r.id: r for r in default_settlement_rules()}[rule_id]


class TestTieredShare:
    def test_each_rate_applies_only_to_its_band(self):
        """
        INVARIANT: 120000 over the bronze brackets is 32500 + 35000 + 15000 = 82500.
        """
        assert tiered_share(120000, BRONZE_TIERS) == Decimal("82500")

    def test_revenue_inside_first_band(self):
        assert tiered_share(40000, BRONZE_TIERS) == Decimal("26000")

    def test_zero_revenue(self):
        assert tiered_share(0, BRONZE_TIERS) == 0

    def test_single_unbounded_tier_is_flat(self):
        assert tiered_share(1000, (CommissionTier(0, UNBOUNDED, Decimal("0.95")),)) == Decimal("950")

    def test_each_slice_is_priced_from_its_own_bounds(self):
        # Listed out of order, the slices still land in the right bands
        shuffled = (BRONZE_TIERS[2], BRONZE_TIERS[0], BRONZE_TIERS[1])
        assert tiered_share(120000, shuffled) == Decimal("82500")


class TestTierValidation:
    @pytest.mark.parametrize("tiers", [
        (),
        (CommissionTier(100, UNBOUNDED, Decimal("0.7")),),
        (CommissionTier(0, 50000, Decimal("0.65")), CommissionTier(60000, UNBOUNDED, Decimal("0.7"))),
        (CommissionTier(0, 50000, Decimal("0.65")), CommissionTier(40000, UNBOUNDED, Decimal("0.7"))),
        (CommissionTier(0, UNBOUNDED, Decimal("0.65")), CommissionTier(50000, UNBOUNDED, Decimal("0.7"))),
        (CommissionTier(0, 50000, Decimal("0.65")),),
    ], ids=["empty", "not_from_zero", "gap", "overlap", "open_middle", "closed_top"])
    def test_malformed_brackets_are_rejected_when_the_rule_is_built(self, tiers):
        with pytest.raises(ValueError):
            SettlementRule(id="bad", name="Bad", cycle=SettlementCycle.DAILY, level=MerchantLevel.BRONZE,
                           tiers=tiers)

    def test_default_rules_have_well_formed_brackets(self):
        assert len(default_settlement_rules()) == 4


class TestCalculateSettlement:
    def test_amounts_are_floored_to_minor_units(self):
        result = calculate_settlement(333, 1, _rule("bronze_daily"), now=NOW)
        assert result.merchant_share == 216
        assert result.platform_fee == 116
        assert result.final_amount == 216

    def test_volume_bonus_by_order_count(self):
        rule = _rule("bronze_daily")
        assert calculate_settlement(10000, 10, rule, now=NOW).bonus_amount == 500
        assert calculate_settlement(10000, 9, rule, now=NOW).bonus_amount == 0

    def test_growth_bonus_against_previous_period(self):
        rule = _rule("silver_weekly")
        result = calculate_settlement(120000, 5, rule, now=NOW, previous_revenue=100000)
        assert result.merchant_share == 87400
        assert result.bonus_amount == 2000
        assert result.final_amount == 89400

    def test_growth_bonus_needs_a_previous_period(self):
        rule = _rule("silver_weekly")
        assert calculate_settlement(120000, 5, rule, now=NOW, previous_revenue=0).bonus_amount == 0
        assert calculate_settlement(120000, 5, rule, now=NOW).bonus_amount == 0

    def test_retention_bonus_counts_whole_months(self):
        rule = _rule("gold_monthly")
        loyal = calculate_settlement(300000, 5, rule, merchant_since=NOW - timedelta(days=200), now=NOW)
        newer = calculate_settlement(300000, 5, rule, merchant_since=NOW - timedelta(days=150), now=NOW)
        assert loyal.bonus_amount == 5000
        assert newer.bonus_amount == 0

    def test_average_daily_revenue_uses_period_length(self):
        rule = _rule("platinum_custom")
        assert calculate_settlement(300000, 3, rule, now=NOW, period_days=3).bonus_amount == 20000
        assert calculate_settlement(299999, 3, rule, now=NOW, period_days=3).bonus_amount == 0


class TestSettlementPeriod:
    @pytest.mark.parametrize("cycle, custom_days, start, end_day", [
        (SettlementCycle.DAILY, None, datetime(2023, 12, 31), 31),
        (SettlementCycle.WEEKLY, None, datetime(2023, 12, 25), 31),
        (SettlementCycle.MONTHLY, None, datetime(2023, 12, 1), 31),
        (SettlementCycle.CUSTOM, 3, datetime(2023, 12, 29), 31),
    ])
    def test_windows_close_before_today(self, cycle, custom_days, start, end_day):
        period_start, period_end = settlement_period(cycle, NOW, custom_days)
        assert period_start == start
        assert period_end == datetime(2023, 12, end_day, 23, 59, 59, 999999)

    def test_weekly_mid_week(self):
        start, end = settlement_period(SettlementCycle.WEEKLY, datetime(2024, 1, 4, 8, 0))
        assert start == datetime(2023, 12, 25)
        assert end.date() == datetime(2023, 12, 31).date()


class TestSettlementService:
    @pytest.mark.parametrize("lifetime, expected", [
        (50000, "bronze_daily"),
        (100001, "silver_weekly"),
        (1000001, "gold_monthly"),
        (10000001, "platinum_custom"),
    ])
    def test_rule_follows_lifetime_revenue(self, services, lifetime, expected):
        assert services.settlement.select_rule(lifetime).id == expected

    def test_unknown_rule(self, services):
        with pytest.raises(RuleNotFoundError):
            services.settlement.get_rule("diamond")

    def test_disabled_preferred_rule_falls_back(self, services):
        services.settlement.get_rule("bronze_daily").enabled = False
        assert services.settlement.select_rule(10).id != "bronze_daily"

    def test_preview_settles_yesterdays_done_orders(self, services, make_order):
        yesterday = datetime(2023, 12, 31, 10, 0)
        for _ in range(3):
            make_order(OrderStatus.DONE, merchant_id=77, amount=20000, created_at=yesterday, updated_at=yesterday)
        # Not finished, and finished today: neither counts
        make_order(OrderStatus.IN_USE, merchant_id=77, amount=99999, created_at=yesterday, updated_at=yesterday)
        make_order(OrderStatus.DONE, merchant_id=77, amount=1, updated_at=NOW)

        preview = services.settlement.preview(77)

        assert preview.rule_id == "bronze_daily"
        assert preview.period_start == datetime(2023, 12, 31)
        assert preview.result.total_revenue == 60000
        assert preview.result.order_count == 3
        assert preview.result.merchant_share == 39500
        assert preview.below_minimum is False
        assert preview.applied_bonuses == []

    def test_preview_with_explicit_rule_reports_growth(self, services, make_order):
        previous_week = datetime(2023, 12, 20, 9, 0)
        last_week = datetime(2023, 12, 28, 9, 0)
        make_order(OrderStatus.DONE, merchant_id=78, amount=50000, created_at=previous_week,
                   updated_at=previous_week)
        make_order(OrderStatus.DONE, merchant_id=78, amount=70000, created_at=last_week, updated_at=last_week)

        preview = services.settlement.preview(78, rule_id="silver_weekly")

        assert preview.result.total_revenue == 70000
        assert preview.applied_bonuses == ["growth"]
        assert preview.result.bonus_amount == 2000

    def test_custom_rule_serialises(self):
        rule = SettlementRule(
            id="flat", name="Flat", cycle=SettlementCycle.CUSTOM, level=MerchantLevel.GOLD,
            tiers=(CommissionTier(0, UNBOUNDED, Decimal("0.9")),), custom_days=5,
        )
        data = rule.to_dict()
        assert data["tiers"] == [{"min": 0, "max": -1, "rate": "0.9"}]
        assert data["cycle"] == "custom"
