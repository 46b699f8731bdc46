"""
Tests for visit counting, reward periods and the reward lifecycle.
"""
import re
from datetime import timedelta

import pytest
from conftest import START, receipt_image, receipt_text

from loyalty.models import CustomerModel, RewardModel, VisitModel
from loyalty.pipeline import ValidationInput
from loyalty.pipeline.rewards import (
    RewardError,
    expire_rewards,
    generate_reward_code,
    get_reward_status,
    redeem_reward,
    use_reward,
)

PHONE = "0911000001"


@pytest.fixture()
def visit(pipeline, ocr, clock, store):
    """Upload an approvable receipt *hours* after START."""
    def _visit(seed, hours):
        clock.now = START + timedelta(hours=hours)
        ocr.script(receipt_text(invoice=f"05507-001-{1000 + seed}L", day=clock.now.date().isoformat()))
        return pipeline.validate(
            ValidationInput(image_bytes=receipt_image(seed), store_id=store.id, customer_phone=PHONE)
        )

    return _visit


@pytest.fixture()
def make_reward(db, clock, store):
    def _make(**overrides):
        values = dict(
            customer_id="customer-1",
            store_id=store.id,
            code=generate_reward_code(clock()),
            reward_type="10% Discount on Next Purchase",
            discount_percent=10,
            status="claimed",
            issued_at=clock(),
            claimed_at=clock(),
            expires_at=clock() + timedelta(days=45),
        )
        values.update(overrides)
        reward = RewardModel(**values)
        db.add(reward)
        db.commit()
        db.refresh(reward)
        return reward

    return _make


# =====================================================================
# Earning
# =====================================================================
class TestEarning:
    def test_reward_after_required_visits(self, db, visit):
        results = [visit(seed, 25 * seed) for seed in range(5)]
        assert [r.status for r in results] == ["approved"] * 5
        assert [r.visits_needed for r in results] == [4, 3, 2, 1, 0]
        assert all(r.reward_id is None for r in results[:4])

        last = results[-1]
        assert last.reason == "Receipt approved - You are now eligible for a reward!"
        reward = db.get(RewardModel, last.reward_id)
        assert re.match(r"^LEWIS\d+[A-Z0-9]{5}$", reward.code)
        assert reward.status == "claimed"
        assert reward.reward_type == "10% Discount on Next Purchase"
        assert reward.expires_at == START + timedelta(hours=100, days=45)
        assert db.get(VisitModel, last.visit_id).reward_earned

    def test_one_active_reward_at_a_time(self, db, visit):
        for seed in range(5):
            visit(seed, 25 * seed)
        sixth = visit(5, 125)
        assert sixth.reward_id is None
        assert db.query(RewardModel).count() == 1

    def test_new_reward_after_use(self, db, visit, clock):
        for seed in range(5):
            last = visit(seed, 25 * seed)
        use_reward(db, last.reward_id, clock())
        again = visit(5, 125)
        assert again.reward_id is not None
        assert again.reward_id != last.reward_id

    def test_period_restarts_after_expiry(self, db, visit):
        visit(0, 0)
        late = visit(1, 24 * 50)
        assert late.visits_in_period == 1
        customer = db.query(CustomerModel).filter_by(phone=PHONE).one()
        assert customer.reward_period_start == START + timedelta(days=50)

        next_day = visit(2, 24 * 51 + 1)
        assert next_day.visits_in_period == 2
        assert next_day.visit_count == 3


# =====================================================================
# Status
# =====================================================================
class TestRewardStatus:
    def test_unknown_customer(self, db, rules, clock):
        assert get_reward_status(db, "0900000000", rules, clock()) is None

    def test_progress(self, db, visit, rules, clock):
        visit(0, 0)
        visit(1, 25)
        status = get_reward_status(db, PHONE, rules, clock())
        assert status.total_visits == 2
        assert status.visits_in_period == 2
        assert status.visits_needed == 3
        assert status.period_start == START
        assert status.period_end == START + timedelta(days=45)
        assert status.days_remaining == 44
        assert not status.period_expired
        assert status.active_rewards == []

    def test_lists_active_rewards(self, db, visit, rules, clock):
        for seed in range(5):
            last = visit(seed, 25 * seed)
        status = get_reward_status(db, PHONE, rules, clock())
        assert [r.id for r in status.active_rewards] == [last.reward_id]


# =====================================================================
# Lifecycle
# =====================================================================
class TestLifecycle:
    def test_redeem(self, db, make_reward, rules, clock):
        reward = make_reward()
        redeemed = redeem_reward(db, reward.id, rules, clock())
        assert redeemed.status == "redeemed"
        assert redeemed.redeemed_at == clock()
        assert redeemed.expires_at == clock() + timedelta(days=30)

    def test_redeem_twice(self, db, make_reward, rules, clock):
        reward = make_reward(status="redeemed")
        with pytest.raises(RewardError) as exc:
            redeem_reward(db, reward.id, rules, clock())
        assert exc.value.status_code == 400
        assert '"redeemed"' in exc.value.message

    def test_use_claimed_or_redeemed(self, db, make_reward, clock):
        assert use_reward(db, make_reward().id, clock()).status == "used"
        assert use_reward(db, make_reward(status="redeemed").id, clock()).status == "used"

    def test_use_twice(self, db, make_reward, clock):
        reward = make_reward(status="used")
        with pytest.raises(RewardError):
            use_reward(db, reward.id, clock())

    def test_expired_on_access(self, db, make_reward, clock):
        reward = make_reward(expires_at=clock() - timedelta(minutes=1))
        with pytest.raises(RewardError) as exc:
            use_reward(db, reward.id, clock())
        assert exc.value.message == "This reward has expired"
        db.refresh(reward)
        assert reward.status == "expired"

    def test_unknown_reward(self, db, rules, clock):
        with pytest.raises(RewardError) as exc:
            redeem_reward(db, "missing", rules, clock())
        assert exc.value.status_code == 404

    def test_expire_rewards(self, db, make_reward, clock):
        stale = make_reward(expires_at=clock() - timedelta(days=1))
        fresh = make_reward()
        make_reward(status="used", expires_at=clock() - timedelta(days=1))
        assert expire_rewards(db, clock()) == 1
        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == "expired"
        assert fresh.status == "claimed"
