"""
Tests for the loyalty CLI commands and scheduler wiring.
"""
from datetime import timedelta
from unittest.mock import patch

from punchcard.extensions import db
from punchcard.models.purchase import PurchaseEvent
from punchcard.models.reward import Reward, RewardStatus
from punchcard.models.summary import CustomerSummary
from punchcard.models.discount_task import DiscountTask, DiscountTaskStatus
from punchcard.commands.loyalty import loyalty_cli
from punchcard.utils import scheduler
from punchcard.utils.dates import today


class TestLoyaltyCommands:

    def test_drain_outbox(self, app, tenant, offer, purchase, square_client):
        purchase(12)
        runner = app.test_cli_runner()

        with patch('punchcard.services.discount_outbox.SquareClient', return_value=square_client):
            result = runner.invoke(loyalty_cli, ['drain-outbox', '--tenant-id', str(tenant.id)])

        assert result.exit_code == 0
        assert 'Processed: 1 tasks' in result.output
        assert 'Completed: 1' in result.output
        assert DiscountTask.query.one().status == DiscountTaskStatus.COMPLETED.value

    def test_expire_windows(self, app, tenant, offer, purchase):
        purchase(5)
        for event in PurchaseEvent.query.all():
            event.window_end_date = today() - timedelta(days=1)
        db.session.commit()

        result = app.test_cli_runner().invoke(loyalty_cli, ['expire-windows'])

        assert result.exit_code == 0
        assert 'Pairs recomputed: 1' in result.output
        assert Reward.query.one().current_quantity == 0

    def test_expire_rewards_nothing_due(self, app, tenant, offer, purchase):
        purchase(12)

        result = app.test_cli_runner().invoke(loyalty_cli, ['expire-rewards'])

        assert result.exit_code == 0
        assert 'TOTAL: 0 rewards revoked' in result.output
        assert Reward.query.one().status == RewardStatus.EARNED.value

    def test_rebuild_summaries(self, app, tenant, offer, purchase):
        purchase(4)
        CustomerSummary.query.delete()
        db.session.commit()

        result = app.test_cli_runner().invoke(loyalty_cli, ['rebuild-summaries'])

        assert result.exit_code == 0
        assert 'rebuilt 1 summaries' in result.output
        assert CustomerSummary.query.one().current_quantity == 4

    def test_unknown_tenant(self, app, tenant):
        result = app.test_cli_runner().invoke(loyalty_cli, ['expire-windows', '--tenant-id', '999'])

        assert result.exit_code == 0
        assert 'Tenant 999 not found' in result.output


class TestScheduler:

    def test_disabled_in_testing(self, app):
        assert scheduler.get_scheduler_status() == {'running': False, 'jobs': []}
