"""Settings from the environment, engine URL handling and order predicates."""
import pytest

from usage_orders.config import Settings, load_settings
from usage_orders.database import build_engine
from usage_orders.models.domain import Order
from usage_orders.models.enums import OrderStatus


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_TIMEOUT_MINUTES", raising=False)
        monkeypatch.delenv("SCHEDULER_ENABLED", raising=False)
        settings = load_settings()
        assert settings.payment_timeout_minutes == 15
        assert settings.exception_batch_concurrency == 5
        assert settings.scheduler_enabled is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_TIMEOUT_MINUTES", "30")
        monkeypatch.setenv("USAGE_OVERTIME_FACTOR", "1.5")
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = load_settings()

        assert settings.payment_timeout_minutes == 30
        assert settings.usage_overtime_factor == 1.5
        assert settings.scheduler_enabled is False
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("name, raw", [
        ("SCAN_INTERVAL_SECONDS", "soon"),
        ("MAX_REMEDIATION_ATTEMPTS", "0"),
        ("USAGE_OVERTIME_FACTOR", "0.5"),
    ])
    def test_invalid_values_fail_at_load(self, monkeypatch, name, raw):
        monkeypatch.setenv(name, raw)
        with pytest.raises(ValueError):
            load_settings()

    def test_settings_are_frozen(self):
        with pytest.raises(AttributeError):
            Settings().payment_timeout_minutes = 1


class TestBuildEngine:
    def test_memory_database_shares_one_connection(self):
        engine = build_engine("sqlite:///:memory:")
        assert type(engine.pool).__name__ == "StaticPool"


class TestOrderPredicates:
    @pytest.mark.parametrize("status, paid, active, finished, cancellable", [
        (OrderStatus.PAY_PENDING, False, False, False, True),
        (OrderStatus.PAID, True, False, False, False),
        (OrderStatus.IN_USE, True, True, False, False),
        (OrderStatus.DONE, True, False, True, False),
        (OrderStatus.CLOSED, False, False, True, False),
    ])
    def test_status_predicates(self, status, paid, active, finished, cancellable):
        order = Order(status=status)
        assert order.is_paid is paid
        assert order.is_active is active
        assert order.is_finished is finished
        assert order.can_cancel is cancellable

    def test_refund_only_while_paid_and_unfinished(self):
        assert Order(status=OrderStatus.IN_USE).can_refund
        assert not Order(status=OrderStatus.DONE).can_refund

    def test_needs_settlement(self):
        assert Order(status=OrderStatus.SETTLING).needs_settlement
