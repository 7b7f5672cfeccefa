"""
Tests for OrderIntakeService line filtering and dispatch.
"""
from unittest.mock import patch

from conftest import make_line, make_order
from punchcard.extensions import db
from punchcard.models.purchase import PurchaseEvent
from punchcard.models.reward import Reward, Redemption
from punchcard.models.processed_order import ProcessedOrder, OrderResultType
from punchcard.services.customer_resolution import CustomerResolver
from punchcard.services.order_intake import (
    OrderIntakeService,
    parse_quantity,
    is_fully_discounted,
    LOYALTY_DISABLED,
    SKIP_NO_VARIATION,
    SKIP_ZERO_QUANTITY,
    SKIP_FREE_ITEM,
    SKIP_REWARD_REDEMPTION,
)
from punchcard.services.purchase_service import NO_CUSTOMER, VARIATION_NOT_QUALIFYING, ALREADY_PROCESSED


def intake_for(tenant, square_client=None):
    return OrderIntakeService(tenant.id, resolver=CustomerResolver(tenant.id, square_client))


def skip_reasons(result):
    return [s['reason'] for s in result['skipped']]


class TestLineHelpers:
    """Parsing helpers for POS line items."""

    def test_parse_quantity(self):
        assert parse_quantity('3') == 3
        assert parse_quantity('2.000') == 2
        assert parse_quantity('1.5') == 0
        assert parse_quantity(None) == 0
        assert parse_quantity('abc') == 0

    def test_fully_discounted_uses_totals(self):
        assert is_fully_discounted(make_line(unit=1000, discount=1000), 1) is True
        assert is_fully_discounted(make_line(unit=1000, discount=999), 1) is False

    def test_fully_discounted_falls_back_to_unit_price(self):
        """Without gross or total, unit price and discount decide."""
        line = {
            'base_price_money': {'amount': 1000},
            'total_discount_money': {'amount': 2000},
        }
        line_total = dict(line, total_money={'amount': 0})
        assert is_fully_discounted(line_total, 2) is True
        assert is_fully_discounted({'base_price_money': {'amount': 1000}}, 2) is False

    def test_zero_priced_item_is_not_free_item(self):
        """A line that never had a price is not fully discounted."""
        assert is_fully_discounted(make_line(unit=0), 1) is False


class TestProcessOrder:
    """Order intake end to end."""

    def test_qualifying_lines_accrue(self, tenant, offer):
        """Each qualifying line is dispatched as its own purchase."""
        order = make_order(line_items=[
            make_line('VAR_A', 2),
            make_line('VAR_B', 3),
            make_line('VAR_OTHER', 1),
        ])

        result = intake_for(tenant).process_order(order)

        assert result['processed'] is True
        assert result['customer_id'] == 'CUST1'
        assert result['customer_source'] == 'order'
        assert len(result['purchases']) == 2
        assert result['purchases'][-1]['reward_progress']['current_quantity'] == 5
        assert skip_reasons(result) == [VARIATION_NOT_QUALIFYING]
        assert result['errors'] == []

    def test_skip_reasons(self, tenant, offer):
        """Custom amounts, zero and fractional quantities, free items are skipped."""
        custom = make_line('VAR_A', 1, uid='custom')
        custom.pop('catalog_object_id')
        by_weight = make_line('VAR_B', 1, uid='weight')
        by_weight['quantity'] = '0.75'
        order = make_order(line_items=[
            custom,
            make_line('VAR_A', 0, uid='zero'),
            by_weight,
            make_line('VAR_C', 1, unit=4000, discount=4000, uid='free'),
        ])

        result = intake_for(tenant).process_order(order)

        assert result['processed'] is False
        assert skip_reasons(result) == [
            SKIP_NO_VARIATION,
            SKIP_ZERO_QUANTITY,
            SKIP_ZERO_QUANTITY,
            SKIP_FREE_ITEM,
        ]
        assert PurchaseEvent.query.count() == 0

    def test_reward_discounted_line_skipped(self, tenant, offer, purchase):
        """A line carrying our own reward discount never accrues."""
        earned = purchase(12)
        reward = db.session.get(Reward, earned.reward_progress.earned_reward_ids[0])
        reward.discount_id = 'DISC1'
        reward.pricing_rule_id = 'RULE1'
        db.session.commit()

        # Two units, one made free by the reward: the line total is not zero
        order = make_order(
            order_id='ORD-REWARD',
            line_items=[make_line('VAR_A', 2, unit=5000, discount=5000, applied=['d1'])],
            discounts=[{'uid': 'd1', 'catalog_object_id': 'RULE1'}]
        )

        result = intake_for(tenant).process_order(order)

        assert skip_reasons(result) == [SKIP_REWARD_REDEMPTION]
        assert result['redemption']['detected'] is True
        assert result['redemption']['method'] == 'discount_id'
        assert PurchaseEvent.query.filter_by(order_id='ORD-REWARD').count() == 0

    def test_free_reward_item_redeemed_and_paid_items_accrue(self, tenant, offer, purchase):
        """The free item redeems the reward; the paid line on the same order accrues."""
        purchase(12, unit_price_cents=5000)
        order = make_order(order_id='ORD-MIXED', line_items=[
            make_line('VAR_A', 1, unit=5000, discount=5000, uid='free'),
            make_line('VAR_A', 2, unit=5000, uid='paid'),
        ])

        result = intake_for(tenant).process_order(order)

        assert result['redemption']['detected'] is True
        assert Redemption.query.filter_by(order_id='ORD-MIXED').count() == 1
        assert skip_reasons(result) == [SKIP_FREE_ITEM]
        assert len(result['purchases']) == 1
        assert result['purchases'][0]['reward_progress']['current_quantity'] == 2

    def test_no_customer(self, tenant, offer):
        """Orders without a resolvable customer are logged and skipped."""
        order = make_order(order_id='ORD-ANON', customer_id=None)

        result = intake_for(tenant).process_order(order)

        assert result['processed'] is False
        assert result['reason'] == NO_CUSTOMER
        row = ProcessedOrder.query.filter_by(order_id='ORD-ANON').one()
        assert row.result_type == OrderResultType.NO_CUSTOMER.value

    def test_loyalty_disabled(self, tenant, offer):
        """Tenants can switch accrual off."""
        tenant.settings = {'loyalty_enabled': False}
        db.session.commit()

        result = intake_for(tenant).process_order(make_order())

        assert result['reason'] == LOYALTY_DISABLED
        assert PurchaseEvent.query.count() == 0

    def test_line_error_does_not_stop_order(self, tenant, offer):
        """A failing line is reported and the remaining lines still accrue."""
        intake = intake_for(tenant)
        original = intake.purchases.process_qualifying_purchase

        def flaky(purchase_input):
            if purchase_input.variation_id == 'VAR_B':
                raise RuntimeError('database unavailable')
            return original(purchase_input)

        order = make_order(line_items=[make_line('VAR_A', 1), make_line('VAR_B', 1), make_line('VAR_C', 1)])
        with patch.object(intake.purchases, 'process_qualifying_purchase', side_effect=flaky):
            result = intake.process_order(order)

        assert len(result['purchases']) == 2
        assert len(result['errors']) == 1
        assert result['errors'][0]['variation_id'] == 'VAR_B'
        assert 'database unavailable' in result['errors'][0]['error']

        row = ProcessedOrder.query.filter_by(order_id='ORDER1').one()
        assert row.error_count == 1

    def test_processed_order_logged(self, tenant, offer):
        """Intake upserts one ProcessedOrder row per order."""
        intake = intake_for(tenant)
        order = make_order(order_id='ORD-LOG', line_items=[make_line('VAR_A', 2), make_line('VAR_X', 1)])

        intake.process_order(order)
        second = intake.process_order(order)

        assert skip_reasons(second) == [ALREADY_PROCESSED, VARIATION_NOT_QUALIFYING]
        row = ProcessedOrder.query.filter_by(order_id='ORD-LOG').one()
        assert row.result_type == OrderResultType.QUALIFYING.value
        assert row.qualifying_items == 1
        assert row.total_line_items == 2

    def test_non_qualifying_order_logged(self, tenant, offer):
        order = make_order(order_id='ORD-NQ', line_items=[make_line('VAR_X', 1)])

        intake_for(tenant).process_order(order)

        row = ProcessedOrder.query.filter_by(order_id='ORD-NQ').one()
        assert row.result_type == OrderResultType.NON_QUALIFYING.value

    def test_purchase_time_from_order(self, tenant, offer):
        """purchased_at comes from closed_at."""
        order = make_order(line_items=[make_line('VAR_A', 1)], closed_at='2026-10-01T18:30:00-04:00')

        intake_for(tenant).process_order(order)

        event = PurchaseEvent.query.one()
        assert event.purchased_at.isoformat() == '2026-10-01T22:30:00'

    def test_tender_details_recorded(self, tenant, offer):
        order = make_order(tenders=[{'type': 'CARD', 'receipt_url': 'https://squareup.com/receipt/1'}])

        intake_for(tenant).process_order(order)

        event = PurchaseEvent.query.one()
        assert event.payment_type == 'CARD'
        assert event.receipt_url == 'https://squareup.com/receipt/1'


class TestProcessOrderRefunds:
    """Refunds arriving on an order payload."""

    def refund_order(self, lines, status='COMPLETED'):
        return make_order(
            order_id='ORD-R',
            refunds=[{
                'id': 'REFUND1',
                'status': status,
                'created_at': '2026-10-10T12:00:00Z',
                'return_line_items': lines,
            }]
        )

    def test_refund_lines_reverse_accrual(self, tenant, offer, purchase):
        purchase(5, order_id='ORD-R')

        result = intake_for(tenant).process_order_refunds(self.refund_order([make_line('VAR_A', 2)]))

        assert result['processed'] is True
        assert result['refunds'][0]['quantity'] == -2
        assert result['refunds'][0]['reward_progress']['current_quantity'] == 3

    def test_free_return_line_skipped(self, tenant, offer, purchase):
        """Returning a free item creates no reversal."""
        purchase(5, order_id='ORD-R')

        result = intake_for(tenant).process_order_refunds(
            self.refund_order([make_line('VAR_A', 1, unit=5999, discount=5999)])
        )

        assert result['processed'] is False
        assert skip_reasons(result) == [SKIP_FREE_ITEM]
        assert PurchaseEvent.query.filter_by(is_refund=True).count() == 0

    def test_pending_refund_ignored(self, tenant, offer, purchase):
        purchase(5, order_id='ORD-R')

        result = intake_for(tenant).process_order_refunds(
            self.refund_order([make_line('VAR_A', 2)], status='PENDING')
        )

        assert result['refunds'] == []
        assert result['skipped'] == []
