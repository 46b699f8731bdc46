"""
Visits, reward periods and the reward lifecycle.
"""
from __future__ import annotations

import logging
import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.config import settings
from loyalty.models import CustomerModel, ReceiptModel, RewardModel, VisitModel
from loyalty.pipeline.rules import RuleSettingsProvider
from loyalty.schemas import RewardStatus, RewardSummary

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 5


class RewardError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class RewardPeriod:
    start: datetime
    end: datetime
    visits: int
    restarted: bool = False

    def days_remaining(self, now: datetime) -> int:
        return max(0, math.ceil((self.end - now).total_seconds() / 86400))


@dataclass
class VisitOutcome:
    customer: CustomerModel
    visit: VisitModel
    period: RewardPeriod
    required_visits: int
    reward: Optional[RewardModel] = None


# ---------------------------------------------------------------------------
# Reward period
# ---------------------------------------------------------------------------

def current_reward_period(
    db: Session,
    customer: CustomerModel,
    period_days: int,
    now: datetime,
    persist: bool = False,
) -> RewardPeriod:
    """Window in which approved receipts count toward the next reward.

    Anchored at the stored period start, else the first approved receipt.
    Once ``now`` passes the end, the window restarts at the most recent
    approved receipt and earlier visits stop counting. With *persist* the
    new anchor is saved on the customer.
    """
    length = timedelta(days=period_days)
    anchor = customer.reward_period_start
    if anchor is None:
        first = repository.first_approved_receipt(db, customer.phone)
        if first is None:
            return RewardPeriod(start=now, end=now + length, visits=0)
        anchor = first.processed_at

    end = anchor + length
    if now <= end:
        visits = repository.count_approved_receipts(db, customer.phone, anchor, end)
        return RewardPeriod(start=anchor, end=end, visits=visits)

    latest = repository.latest_approved_receipt(db, customer.phone)
    new_anchor = latest.processed_at if latest is not None else now
    if persist:
        customer.reward_period_start = new_anchor
        db.commit()
        logger.info("Reward period for customer %s restarted at %s", customer.id, new_anchor)
    visits = repository.count_approved_receipts(db, customer.phone, new_anchor, now)
    return RewardPeriod(start=new_anchor, end=new_anchor + length, visits=visits, restarted=True)


# ---------------------------------------------------------------------------
# Visits
# ---------------------------------------------------------------------------

def generate_reward_code(now: datetime, prefix: str = settings.REWARD_CODE_PREFIX) -> str:
    epoch_ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{prefix}{epoch_ms}{suffix}"


def record_visit_and_evaluate_reward(
    db: Session,
    receipt: ReceiptModel,
    customer_phone: str,
    store_id: str,
    rules: RuleSettingsProvider,
    now: datetime,
) -> VisitOutcome:
    """Link an approved receipt to its customer, count the visit and issue
    a reward once the period quota is met."""
    customer = repository.get_or_create_customer(db, customer_phone)
    receipt.customer_id = customer.id

    visit = VisitModel(
        customer_id=customer.id,
        store_id=store_id,
        receipt_id=receipt.id,
        visit_method="receipt",
        timestamp=now,
        reward_earned=False,
    )
    db.add(visit)
    customer.total_visits = (customer.total_visits or 0) + 1
    customer.last_visit = now
    db.commit()
    db.refresh(visit)
    logger.info("Visit %s recorded, customer %s has %d visits", visit.id, customer.id, customer.total_visits)

    required = rules.required_visits()
    period = current_reward_period(db, customer, rules.reward_period_days(), now, persist=True)
    outcome = VisitOutcome(customer=customer, visit=visit, period=period, required_visits=required)
    logger.info(
        "Reward progress %d/%d (period %s .. %s)",
        period.visits, required, period.start.isoformat(), period.end.isoformat(),
    )

    if period.visits < required:
        return outcome
    active = repository.find_active_reward(db, customer.id, store_id)
    if active is not None:
        logger.info("Customer %s already holds an active reward (%s)", customer.id, active.status)
        return outcome

    discount = rules.discount_percent()
    reward = RewardModel(
        customer_id=customer.id,
        store_id=store_id,
        code=generate_reward_code(now),
        reward_type=f"{discount:g}% Discount on Next Purchase",
        discount_percent=discount,
        status="claimed",
        issued_at=now,
        claimed_at=now,
        expires_at=now + timedelta(days=rules.initial_expiration_days()),
    )
    db.add(reward)
    visit.reward_earned = True
    db.commit()
    db.refresh(reward)
    logger.info("Reward %s issued to customer %s", reward.code, customer.id)
    outcome.reward = reward
    return outcome


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def reward_summary(reward: RewardModel) -> RewardSummary:
    return RewardSummary(
        id=reward.id,
        code=reward.code,
        store_id=reward.store_id,
        reward_type=reward.reward_type,
        status=reward.status,
        discount_percent=reward.discount_percent,
        issued_at=reward.issued_at,
        expires_at=reward.expires_at,
    )


def get_reward_status(
    db: Session, phone: str, rules: RuleSettingsProvider, now: datetime
) -> Optional[RewardStatus]:
    customer = repository.get_customer_by_phone(db, phone)
    if customer is None:
        return None
    required = rules.required_visits()
    period = current_reward_period(db, customer, rules.reward_period_days(), now)
    return RewardStatus(
        customer_phone=phone,
        total_visits=customer.total_visits or 0,
        visits_in_period=period.visits,
        visits_needed=max(0, required - period.visits),
        required_visits=required,
        period_start=period.start,
        period_end=period.end,
        days_remaining=period.days_remaining(now),
        period_expired=period.restarted,
        active_rewards=[reward_summary(r) for r in repository.list_active_rewards(db, customer.id)],
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def _load_unexpired(db: Session, reward_id: str, now: datetime) -> RewardModel:
    reward = repository.get_reward(db, reward_id)
    if reward is None:
        raise RewardError("Reward not found", status_code=404)
    if reward.status in ("claimed", "redeemed", "pending") and now > reward.expires_at:
        reward.status = "expired"
        db.commit()
        raise RewardError("This reward has expired")
    return reward


def redeem_reward(db: Session, reward_id: str, rules: RuleSettingsProvider, now: datetime) -> RewardModel:
    reward = _load_unexpired(db, reward_id, now)
    if reward.status != "claimed":
        raise RewardError(
            f'Reward is in "{reward.status}" status. Only "claimed" rewards can be redeemed.'
        )
    reward.status = "redeemed"
    reward.redeemed_at = now
    reward.expires_at = now + timedelta(days=rules.redemption_expiration_days())
    db.commit()
    db.refresh(reward)
    logger.info("Reward %s redeemed", reward.code)
    return reward


def use_reward(db: Session, reward_id: str, now: datetime) -> RewardModel:
    reward = _load_unexpired(db, reward_id, now)
    if reward.status not in ("claimed", "redeemed"):
        raise RewardError(f'Reward is in "{reward.status}" status and cannot be used.')
    reward.status = "used"
    reward.used_at = now
    db.commit()
    db.refresh(reward)
    logger.info("Reward %s used", reward.code)
    return reward


def expire_rewards(db: Session, now: datetime) -> int:
    expired = repository.find_expirable_rewards(db, now)
    for reward in expired:
        reward.status = "expired"
    if expired:
        db.commit()
        logger.info("Expired %d rewards", len(expired))
    return len(expired)
