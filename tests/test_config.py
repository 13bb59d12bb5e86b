"""Unit tests for marketplace/config.py defaults and overrides."""

from decimal import Decimal

from marketplace.config import Settings


def test_default_settings_testable() -> None:
    """Default settings should have test-friendly defaults."""
    s = Settings()
    assert s.env != "production"
    assert s.test_database_url.startswith("sqlite+aiosqlite")
    assert s.sweeper_enabled is False


def test_money_settings_are_decimal() -> None:
    s = Settings()
    assert s.ledger_tolerance == Decimal("0.01")
    assert isinstance(s.min_withdrawal_amount, Decimal)
    assert s.min_worker_allocation > 0


def test_day_windows() -> None:
    s = Settings()
    assert s.dispute_overdue_days == 7
    assert s.escrow_auto_release_days == 7


def test_overrides_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("MIN_WITHDRAWAL_AMOUNT", "250.50")
    monkeypatch.setenv("DISPUTE_OVERDUE_DAYS", "3")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    s = Settings()
    assert s.min_withdrawal_amount == Decimal("250.50")
    assert s.dispute_overdue_days == 3
    assert s.notifications_enabled is False
