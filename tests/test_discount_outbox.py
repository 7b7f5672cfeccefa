"""
Tests for the DiscountOutbox: queued POS side effects of reward transitions.
"""
from punchcard.extensions import db
from punchcard.models.reward import Reward, RewardStatus
from punchcard.models.discount_task import DiscountTask, DiscountAction, DiscountTaskStatus
from punchcard.services.discount_outbox import DiscountOutbox
from punchcard.services.redemption_service import RedemptionService, RedemptionInput
from punchcard.services.square_client import SquareAPIError


def earned(purchase, **kwargs):
    result = purchase(12, **kwargs)
    return db.session.get(Reward, result.reward_progress.earned_reward_ids[0])


def outbox_for(tenant, square_client):
    return DiscountOutbox(tenant.id, client_factory=lambda tenant_id: square_client)


class TestIssue:
    """Issuing discounts for earned rewards."""

    def test_drain_issues_discount(self, tenant, offer, purchase, square_client):
        """The issued object ids are stored on the reward."""
        reward = earned(purchase)

        stats = outbox_for(tenant, square_client).drain()

        assert stats['processed'] == 1
        assert stats['completed'] == 1
        db.session.refresh(reward)
        assert reward.discount_id == 'DISC1'
        assert reward.pricing_rule_id == 'RULE1'
        assert reward.group_id == 'GROUP1'
        assert reward.discount_synced_at is not None

        kwargs = square_client.issue_reward_discount.call_args.kwargs
        assert kwargs['reward_id'] == reward.id
        assert kwargs['customer_id'] == 'CUST1'
        assert sorted(kwargs['variation_ids']) == ['VAR_A', 'VAR_B', 'VAR_C']

        task = DiscountTask.query.one()
        assert task.status == DiscountTaskStatus.COMPLETED.value
        assert task.attempts == 1

    def test_nothing_pending(self, tenant, square_client):
        stats = outbox_for(tenant, square_client).drain()

        assert stats['processed'] == 0
        square_client.issue_reward_discount.assert_not_called()

    def test_redeemed_before_drain_is_skipped(self, tenant, offer, purchase, square_client):
        """A reward redeemed before its discount was issued needs no discount."""
        reward = earned(purchase)
        RedemptionService(tenant.id).redeem_reward(RedemptionInput(tenant.id, reward.id))

        stats = outbox_for(tenant, square_client).drain()

        assert stats['skipped'] == 1
        square_client.issue_reward_discount.assert_not_called()
        assert DiscountTask.query.one().status == DiscountTaskStatus.SKIPPED.value

    def test_drain_scoped_to_tenant(self, tenant, other_tenant, offer, purchase, square_client):
        earned(purchase)

        stats = outbox_for(other_tenant, square_client).drain()

        assert stats['processed'] == 0
        assert DiscountOutbox(tenant.id).pending_count() == 1


class TestRetries:
    """Failures are retried, then abandoned."""

    def test_failure_is_retried(self, tenant, offer, purchase, square_client):
        earned(purchase)
        square_client.issue_reward_discount.side_effect = SquareAPIError('Square API error 503')

        stats = outbox_for(tenant, square_client).drain()

        assert stats['retrying'] == 1
        task = DiscountTask.query.one()
        assert task.status == DiscountTaskStatus.PENDING.value
        assert task.attempts == 1
        assert '503' in task.last_error

    def test_gives_up_after_max_attempts(self, app, tenant, offer, purchase, square_client):
        app.config['DISCOUNT_OUTBOX_MAX_ATTEMPTS'] = 2
        reward = earned(purchase)
        square_client.issue_reward_discount.side_effect = SquareAPIError('Square API error 503')
        outbox = outbox_for(tenant, square_client)

        outbox.drain()
        stats = outbox.drain()

        assert stats['failed'] == 1
        task = DiscountTask.query.one()
        assert task.status == DiscountTaskStatus.FAILED.value
        assert task.attempts == 2

        # The reward itself is unaffected
        db.session.refresh(reward)
        assert reward.status == RewardStatus.EARNED.value


class TestCleanup:
    """Removing discount objects after redemption or revocation."""

    def test_cleanup_after_redemption(self, tenant, offer, purchase, square_client):
        reward = earned(purchase)
        outbox = outbox_for(tenant, square_client)
        outbox.drain()

        RedemptionService(tenant.id).redeem_reward(RedemptionInput(tenant.id, reward.id))
        stats = outbox.drain()

        assert stats['completed'] == 1
        square_client.cleanup_reward_discount.assert_called_once_with(
            customer_id='CUST1',
            group_id='GROUP1',
            discount_id='DISC1',
            product_set_id='PSET1',
            pricing_rule_id='RULE1'
        )
        db.session.refresh(reward)
        assert reward.discount_id is None
        assert reward.has_discount is False

        cleanup = DiscountTask.query.filter_by(action=DiscountAction.CLEANUP.value).one()
        assert cleanup.status == DiscountTaskStatus.COMPLETED.value

    def test_cleanup_without_objects_is_skipped(self, tenant, offer, purchase, square_client):
        reward = earned(purchase)
        DiscountOutbox(tenant.id).enqueue_cleanup(reward, reason='revoked')
        db.session.commit()
        DiscountTask.query.filter_by(action=DiscountAction.ISSUE.value).delete()
        db.session.commit()

        stats = outbox_for(tenant, square_client).drain()

        assert stats['skipped'] == 1
        square_client.cleanup_reward_discount.assert_not_called()
