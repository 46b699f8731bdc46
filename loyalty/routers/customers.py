"""
Customer-facing reward progress.
"""
import logging
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from loyalty.database import get_db
from loyalty.dependencies import get_clock, get_rules
from loyalty.pipeline.rewards import get_reward_status
from loyalty.pipeline.rules import RuleSettingsProvider
from loyalty.schemas import RewardStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/customers")


@router.get("/{phone}/reward-status", response_model=RewardStatus)
def reward_status(
    phone: str,
    db: Session = Depends(get_db),
    rules: RuleSettingsProvider = Depends(get_rules),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    status = get_reward_status(db, phone, rules, clock())
    if status is None:
        logger.warning("Reward status for unknown customer %s", phone)
        raise HTTPException(status_code=404, detail="Customer not found")
    return status
