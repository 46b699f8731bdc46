"""
Customers, visits and rewards
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String

from loyalty.database import Base, utcnow

REWARD_STATUSES = ("pending", "claimed", "redeemed", "used", "expired")
ACTIVE_REWARD_STATUSES = ("pending", "claimed", "redeemed")


class CustomerModel(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True, index=True)
    total_visits = Column(Integer, nullable=False, default=0)
    last_visit = Column(DateTime)
    reward_period_start = Column(DateTime)  # anchor after a period restart
    created_at = Column(DateTime, default=utcnow, nullable=False)


class VisitModel(Base):
    __tablename__ = "visits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String, nullable=False, index=True)
    store_id = Column(String, nullable=False, index=True)
    receipt_id = Column(String, nullable=False, index=True)
    visit_method = Column(String, nullable=False, default="receipt")
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    reward_earned = Column(Boolean, nullable=False, default=False)


class RewardModel(Base):
    __tablename__ = "rewards"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String, nullable=False, index=True)
    store_id = Column(String, nullable=False, index=True)
    code = Column(String, nullable=False, unique=True)
    reward_type = Column(String, nullable=False)
    discount_percent = Column(Float)

    status = Column(String, nullable=False, default="pending", index=True)  # pending, claimed, redeemed, used, expired
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    claimed_at = Column(DateTime)
    redeemed_at = Column(DateTime)
    used_at = Column(DateTime)
