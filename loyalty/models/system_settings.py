"""
System-wide rule settings (singleton row) and its change log
"""
import uuid

from sqlalchemy import Column, DateTime, Float, Integer, JSON, String, Text

from loyalty.database import Base, utcnow

SYSTEM_SETTINGS_ID = "system"


class SystemSettingsModel(Base):
    __tablename__ = "system_settings"

    id = Column(String, primary_key=True, default=SYSTEM_SETTINGS_ID)

    # Validation rules
    allowed_tins = Column(JSON, nullable=False, default=list)
    min_receipt_amount = Column(Float)
    receipt_validity_hours = Column(Integer)

    # Visit limits
    visit_limit_hours = Column(Integer)

    # Reward rules
    required_visits = Column(Integer)
    reward_period_days = Column(Integer)

    # Reward settings
    discount_percent = Column(Float)
    initial_expiration_days = Column(Integer)
    redemption_expiration_days = Column(Integer)

    updated_by = Column(String)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SystemSettingsLogModel(Base):
    __tablename__ = "system_settings_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    field = Column(String, nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    changed_by = Column(String)
    changed_at = Column(DateTime, default=utcnow, nullable=False)
