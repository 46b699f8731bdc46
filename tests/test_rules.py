"""
Unit tests for rule settings: defaults, stored overrides, cache TTL,
fallback on database errors and admin updates.
"""
import json

from sqlalchemy.exc import OperationalError

from loyalty import repository
from loyalty.models import SYSTEM_SETTINGS_ID, SystemSettingsLogModel, SystemSettingsModel
from loyalty.pipeline.rules import RuleSettingsProvider, SettingsCache
from loyalty.schemas import RuleSettings, RuleSettingsUpdate


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def _store_settings(db, **values):
    row = SystemSettingsModel(id=SYSTEM_SETTINGS_ID, **values)
    db.add(row)
    db.commit()
    return row


# =====================================================================
# Cache
# =====================================================================
class TestSettingsCache:
    def test_ttl(self):
        ticks = FakeMonotonic()
        cache = SettingsCache(ttl_seconds=10, clock=ticks)
        cache.set(RuleSettings(required_visits=3))
        ticks.value = 9.9
        assert cache.get().required_visits == 3
        ticks.value = 10
        assert cache.get() is None
        assert cache.peek().required_visits == 3

    def test_invalidate(self):
        cache = SettingsCache()
        cache.set(RuleSettings())
        cache.invalidate()
        assert cache.get() is None
        assert cache.peek() is None


# =====================================================================
# Provider
# =====================================================================
class TestRuleSettingsProvider:
    def test_defaults_without_row(self, rules):
        assert rules.current() == RuleSettings()
        assert rules.allowed_tins() == ["0003169685"]
        assert rules.visit_limit_hours() == 24
        assert rules.required_visits() == 5

    def test_stored_row_with_gaps(self, db, rules):
        _store_settings(db, allowed_tins=["1111111111"], min_receipt_amount=3000)
        assert rules.allowed_tins() == ["1111111111"]
        assert rules.min_receipt_amount() == 3000
        # Columns left empty fall back to the defaults
        assert rules.required_visits() == 5
        assert rules.reward_period_days() == 45

    def test_cached_until_invalidated(self, db, rules):
        assert rules.required_visits() == 5
        _store_settings(db, allowed_tins=[], required_visits=7)
        assert rules.required_visits() == 5
        rules.invalidate()
        assert rules.required_visits() == 7

    def test_cache_shared_between_providers(self, db):
        cache = SettingsCache()
        RuleSettingsProvider(db, cache).current()
        _store_settings(db, allowed_tins=[], discount_percent=20)
        assert RuleSettingsProvider(db, cache).discount_percent() == 10

    def test_database_error_uses_defaults(self, rules, monkeypatch):
        def _boom(db):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(repository, "get_system_settings", _boom)
        assert rules.current() == RuleSettings()

    def test_database_error_keeps_last_value(self, db, monkeypatch):
        ticks = FakeMonotonic()
        cache = SettingsCache(ttl_seconds=1, clock=ticks)
        rules = RuleSettingsProvider(db, cache)
        _store_settings(db, allowed_tins=[], required_visits=8)
        assert rules.required_visits() == 8

        def _boom(db):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(repository, "get_system_settings", _boom)
        ticks.value = 5
        assert rules.required_visits() == 8

    def test_store_overrides(self, rules):
        assert rules.min_receipt_amount(3000) == 3000
        assert rules.min_receipt_amount(500) == 2000
        assert rules.min_receipt_amount(None) == 2000
        assert rules.receipt_validity_hours(72) == 72
        assert rules.receipt_validity_hours(None) == 24
        assert rules.receipt_validity_hours(0) == 24

    def test_is_tin_allowed(self, rules):
        assert rules.is_tin_allowed("0003169685")
        assert not rules.is_tin_allowed("0001111111")
        assert not rules.is_tin_allowed(None)


# =====================================================================
# Administration
# =====================================================================
class TestUpdate:
    def test_creates_row_and_logs_changes(self, db, rules):
        updated = rules.update(
            RuleSettingsUpdate(min_receipt_amount=2500, required_visits=5, updated_by="admin")
        )
        assert updated.min_receipt_amount == 2500
        logs = db.query(SystemSettingsLogModel).all()
        # required_visits did not change
        assert [log.field for log in logs] == ["min_receipt_amount"]
        assert json.loads(logs[0].old_value) == 2000
        assert json.loads(logs[0].new_value) == 2500
        assert logs[0].changed_by == "admin"
        row = repository.get_system_settings(db)
        assert row.updated_by == "admin"

    def test_invalidates_cache(self, rules):
        assert rules.visit_limit_hours() == 24
        rules.update(RuleSettingsUpdate(visit_limit_hours=12))
        assert rules.visit_limit_hours() == 12

    def test_allowed_tins(self, rules):
        rules.update(RuleSettingsUpdate(allowed_tins=["0003169685", "0001111111"]))
        assert rules.is_tin_allowed("0001111111")
