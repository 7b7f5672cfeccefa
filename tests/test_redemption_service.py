"""
Tests for RedemptionService: explicit redemption and order-based detection.
"""
import pytest

from conftest import make_line, make_order
from punchcard.extensions import db
from punchcard.models.reward import Reward, Redemption, RewardStatus, RedemptionType
from punchcard.models.summary import CustomerSummary
from punchcard.models.discount_task import DiscountTask, DiscountAction
from punchcard.services.redemption_service import RedemptionService, RedemptionInput
from punchcard.utils.exceptions import (
    NotFoundError,
    RewardNotFoundError,
    StateError,
    InvalidStatusTransitionError,
    ValidationError,
)


@pytest.fixture
def earned_reward(offer, purchase):
    result = purchase(12, unit_price_cents=5000)
    return db.session.get(Reward, result.reward_progress.earned_reward_ids[0])


class TestRedeemReward:
    """Explicit redemption."""

    def test_redeem_earned_reward(self, tenant, earned_reward):
        """An earned reward becomes redeemed with a Redemption row."""
        service = RedemptionService(tenant.id)
        result = service.redeem_reward(RedemptionInput(
            tenant.id, earned_reward.id, actor='staff@example.com', notes='Counter redemption'
        ))

        assert result.success is True
        assert result.reward.status == RewardStatus.REDEEMED.value
        assert result.reward.redeemed_at is not None
        assert result.reward.redemption_id == result.redemption.id
        assert result.redemption.redemption_type == RedemptionType.MANUAL_ADMIN.value
        assert result.redemption.redeemed_by == 'staff@example.com'

        summary = CustomerSummary.query.filter_by(customer_id='CUST1').one()
        assert summary.total_rewards_redeemed == 1
        assert summary.has_earned_reward is False

    def test_redeem_twice_fails(self, tenant, earned_reward):
        """A reward can be redeemed only once."""
        service = RedemptionService(tenant.id)
        service.redeem_reward(RedemptionInput(tenant.id, earned_reward.id))

        with pytest.raises(InvalidStatusTransitionError) as exc:
            service.redeem_reward(RedemptionInput(tenant.id, earned_reward.id))

        assert exc.value.from_status == RewardStatus.REDEEMED.value
        assert Redemption.query.count() == 1

    def test_in_progress_reward_cannot_be_redeemed(self, tenant, offer, purchase):
        """Only earned rewards are redeemable."""
        result = purchase(3)

        with pytest.raises(StateError):
            RedemptionService(tenant.id).redeem_reward(
                RedemptionInput(tenant.id, result.reward_progress.reward_id)
            )

    def test_missing_reward(self, tenant, offer):
        """Unknown reward ids raise RewardNotFoundError."""
        with pytest.raises(RewardNotFoundError) as exc:
            RedemptionService(tenant.id).redeem_reward(RedemptionInput(tenant.id, 9999))

        assert isinstance(exc.value, NotFoundError)
        assert exc.value.code == 'REWARD_NOT_FOUND'

    def test_other_tenants_reward_is_not_found(self, tenant, other_tenant, earned_reward):
        """A reward is invisible outside its tenant."""
        with pytest.raises(RewardNotFoundError):
            RedemptionService(other_tenant.id).redeem_reward(
                RedemptionInput(other_tenant.id, earned_reward.id)
            )

    def test_customer_mismatch(self, tenant, earned_reward):
        """Redeeming for the wrong customer is refused."""
        with pytest.raises(StateError):
            RedemptionService(tenant.id).redeem_reward(
                RedemptionInput(tenant.id, earned_reward.id, customer_id='SOMEONE_ELSE')
            )

        db.session.refresh(earned_reward)
        assert earned_reward.status == RewardStatus.EARNED.value

    def test_tenant_mismatch(self, tenant, other_tenant, earned_reward):
        with pytest.raises(ValidationError):
            RedemptionService(tenant.id).redeem_reward(RedemptionInput(other_tenant.id, earned_reward.id))

    def test_redeeming_issued_discount_queues_cleanup(self, tenant, earned_reward):
        """Redemption removes the POS discount through the outbox."""
        earned_reward.discount_id = 'DISC1'
        earned_reward.pricing_rule_id = 'RULE1'
        db.session.commit()

        RedemptionService(tenant.id).redeem_reward(RedemptionInput(tenant.id, earned_reward.id))

        task = DiscountTask.query.filter_by(action=DiscountAction.CLEANUP.value).one()
        assert task.reward_id == earned_reward.id
        assert task.payload['reason'] == 'redeemed'


class TestDetectRedemption:
    """Detecting redemptions from completed orders."""

    def test_detect_by_issued_discount(self, tenant, earned_reward):
        """An order discount referencing the reward's pricing rule redeems it."""
        earned_reward.discount_id = 'DISC1'
        earned_reward.pricing_rule_id = 'RULE1'
        db.session.commit()

        order = make_order(
            order_id='ORD-REDEEM',
            line_items=[make_line('VAR_B', 1, unit=5000, discount=5000, applied=['d1'])],
            discounts=[{'uid': 'd1', 'catalog_object_id': 'RULE1', 'scope': 'LINE_ITEM'}]
        )

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1')

        assert result['detected'] is True
        assert result['method'] == 'discount_id'
        assert result['reward_id'] == earned_reward.id

        redemption = Redemption.query.one()
        assert redemption.redemption_type == RedemptionType.ORDER_DISCOUNT.value
        assert redemption.order_id == 'ORD-REDEEM'
        assert redemption.redeemed_variation_id == 'VAR_B'

    def test_detect_free_item(self, tenant, earned_reward):
        """A qualifying line discounted to zero redeems the reward."""
        order = make_order(line_items=[make_line('VAR_C', 1, unit=5000, discount=5000)])

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1')

        assert result['detected'] is True
        assert result['method'] == 'free_item'
        db.session.refresh(earned_reward)
        assert earned_reward.status == RewardStatus.REDEEMED.value
        assert Redemption.query.one().redemption_type == RedemptionType.AUTO_DETECTED.value

    def test_detect_by_discount_amount(self, tenant, earned_reward):
        """A discount covering 95% of the expected value redeems the reward."""
        order = make_order(line_items=[make_line('VAR_A', 2, unit=5000, discount=4800)])

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1')

        assert result['detected'] is True
        assert result['method'] == 'discount_amount'

    def test_small_discount_not_detected(self, tenant, earned_reward):
        """A modest discount is not a redemption."""
        order = make_order(line_items=[make_line('VAR_A', 1, unit=5000, discount=500)])

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1')

        assert result['detected'] is False
        db.session.refresh(earned_reward)
        assert earned_reward.status == RewardStatus.EARNED.value

    def test_free_item_needs_an_earned_reward(self, tenant, offer, purchase):
        """Free items without an earned reward are not redemptions."""
        purchase(3)
        order = make_order(line_items=[make_line('VAR_A', 1, unit=5000, discount=5000)])

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1')

        assert result['detected'] is False

    def test_dry_run_leaves_reward_untouched(self, tenant, earned_reward):
        """dry_run reports the match without redeeming."""
        order = make_order(line_items=[make_line('VAR_A', 1, unit=5000, discount=5000)])

        result = RedemptionService(tenant.id).detect_redemption_from_order(order, 'CUST1', dry_run=True)

        assert result['detected'] is True
        assert result['dry_run'] is True
        db.session.refresh(earned_reward)
        assert earned_reward.status == RewardStatus.EARNED.value
        assert Redemption.query.count() == 0

    def test_redelivered_order_redeems_once(self, tenant, offer, purchase):
        """A second delivery of the same order does not consume another reward."""
        first = purchase(24, unit_price_cents=5000)
        assert len(first.reward_progress.earned_reward_ids) == 2

        order = make_order(order_id='ORD-FREE', line_items=[make_line('VAR_A', 1, unit=5000, discount=5000)])
        service = RedemptionService(tenant.id)

        assert service.detect_redemption_from_order(order, 'CUST1')['detected'] is True
        again = service.detect_redemption_from_order(order, 'CUST1')

        assert again['detected'] is False
        assert again['reason'] == 'already_redeemed'
        assert Reward.query.filter_by(status=RewardStatus.EARNED.value).count() == 1
