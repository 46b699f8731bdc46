"""
Business-rule settings with a time-bounded in-process cache.

The provider never hard-fails: when the settings row is missing or the
database cannot be read, the built-in defaults apply.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.config import settings as app_settings
from loyalty.models import SYSTEM_SETTINGS_ID, SystemSettingsLogModel, SystemSettingsModel
from loyalty.schemas import RuleSettings, RuleSettingsUpdate

logger = logging.getLogger(__name__)

DEFAULT_RULES = RuleSettings()


class SettingsCache:
    """Holds one ``RuleSettings`` value for ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float = app_settings.SETTINGS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: Optional[RuleSettings] = None
        self._stored_at = 0.0

    def get(self) -> Optional[RuleSettings]:
        if self._value is None:
            return None
        if self._clock() - self._stored_at >= self.ttl_seconds:
            return None
        return self._value

    def peek(self) -> Optional[RuleSettings]:
        """Last stored value, even if stale."""
        return self._value

    def set(self, value: RuleSettings) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = 0.0


def rules_from_row(row: SystemSettingsModel) -> RuleSettings:
    values = {}
    for name in RuleSettings.model_fields:
        value = getattr(row, name, None)
        if value is not None:
            values[name] = value
    return RuleSettings(**values)


class RuleSettingsProvider:
    def __init__(self, db: Session, cache: Optional[SettingsCache] = None):
        self.db = db
        self.cache = cache or SettingsCache()

    # ── Loading ──

    def current(self) -> RuleSettings:
        cached = self.cache.get()
        if cached is not None:
            return cached
        try:
            row = repository.get_system_settings(self.db)
        except SQLAlchemyError as exc:
            logger.warning("Could not load system settings, using fallback: %s", exc)
            self.db.rollback()
            fallback = self.cache.peek() or DEFAULT_RULES
            self.cache.set(fallback)
            return fallback
        if row is None:
            logger.info("No system settings stored, using defaults")
            rules = DEFAULT_RULES
        else:
            rules = rules_from_row(row)
        self.cache.set(rules)
        return rules

    def invalidate(self) -> None:
        self.cache.invalidate()

    # ── Accessors ──

    def allowed_tins(self) -> list[str]:
        return list(self.current().allowed_tins)

    def is_tin_allowed(self, tin: Optional[str]) -> bool:
        return bool(tin) and tin in self.current().allowed_tins

    def min_receipt_amount(self, store_min: Optional[float] = None) -> float:
        """A store may raise the system floor, never lower it."""
        system_min = self.current().min_receipt_amount
        if store_min and store_min >= system_min:
            return store_min
        return system_min

    def receipt_validity_hours(self, store_hours: Optional[int] = None) -> int:
        if store_hours and store_hours > 0:
            return store_hours
        return self.current().receipt_validity_hours

    def visit_limit_hours(self) -> int:
        return self.current().visit_limit_hours

    def required_visits(self) -> int:
        return self.current().required_visits

    def reward_period_days(self) -> int:
        return self.current().reward_period_days

    def discount_percent(self) -> float:
        return self.current().discount_percent

    def initial_expiration_days(self) -> int:
        return self.current().initial_expiration_days

    def redemption_expiration_days(self) -> int:
        return self.current().redemption_expiration_days

    # ── Administration ──

    def update(self, changes: RuleSettingsUpdate) -> RuleSettings:
        """Apply a partial update, log each changed field, drop the cache."""
        row = repository.get_system_settings(self.db)
        if row is None:
            row = SystemSettingsModel(id=SYSTEM_SETTINGS_ID, **DEFAULT_RULES.model_dump())
            self.db.add(row)
            self.db.flush()
        before = rules_from_row(row)

        data = changes.model_dump(exclude_unset=True, exclude={"updated_by"})
        for name, value in data.items():
            if value is None:
                continue
            old = getattr(before, name)
            if old == value:
                continue
            setattr(row, name, value)
            self.db.add(
                SystemSettingsLogModel(
                    field=name,
                    old_value=json.dumps(old),
                    new_value=json.dumps(value),
                    changed_by=changes.updated_by,
                )
            )
            logger.info("System setting %s: %r -> %r", name, old, value)
        row.updated_by = changes.updated_by
        self.db.commit()
        self.invalidate()
        return self.current()
