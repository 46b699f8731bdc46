"""
Admin endpoints: receipt review, rule settings and reward redemption.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from loyalty.database import get_db
from loyalty.dependencies import get_clock, get_rules
from loyalty.models import RewardModel
from loyalty.pipeline.review import ReviewError, approve_receipt, reject_receipt
from loyalty.pipeline.rewards import RewardError, redeem_reward, use_reward
from loyalty.pipeline.rules import RuleSettingsProvider
from loyalty.schemas import (
    ReviewRequest,
    RewardActionResponse,
    RuleSettings,
    RuleSettingsUpdate,
    ValidationResult,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin")


def _reward_response(reward: RewardModel) -> RewardActionResponse:
    return RewardActionResponse(
        id=reward.id,
        code=reward.code,
        status=reward.status,
        expires_at=reward.expires_at,
        redeemed_at=reward.redeemed_at,
        used_at=reward.used_at,
    )


# ── Receipt review ──
@router.post("/receipts/{receipt_id}/review", response_model=ValidationResult)
def review_receipt(
    receipt_id: str,
    req: ReviewRequest,
    db: Session = Depends(get_db),
    rules: RuleSettingsProvider = Depends(get_rules),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    logger.info("Review %s: %s by %s", receipt_id, req.action, req.reviewer)
    try:
        if req.action == "approve":
            return approve_receipt(db, receipt_id, req.reviewer, rules, req.notes, now=clock())
        return reject_receipt(db, receipt_id, req.reviewer, req.reason or "", req.notes, now=clock())
    except ReviewError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


# ── Rule settings ──
@router.get("/settings", response_model=RuleSettings)
def read_settings(rules: RuleSettingsProvider = Depends(get_rules)):
    return rules.current()


@router.put("/settings", response_model=RuleSettings)
def update_settings(req: RuleSettingsUpdate, rules: RuleSettingsProvider = Depends(get_rules)):
    return rules.update(req)


# ── Rewards ──
@router.post("/rewards/{reward_id}/redeem", response_model=RewardActionResponse)
def redeem(
    reward_id: str,
    db: Session = Depends(get_db),
    rules: RuleSettingsProvider = Depends(get_rules),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    try:
        reward = redeem_reward(db, reward_id, rules, clock())
    except RewardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return _reward_response(reward)


@router.post("/rewards/{reward_id}/use", response_model=RewardActionResponse)
def use(
    reward_id: str,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    try:
        reward = use_reward(db, reward_id, clock())
    except RewardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return _reward_response(reward)
