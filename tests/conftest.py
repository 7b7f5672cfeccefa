"""
Shared fixtures for Punchcard tests.

The app fixture keeps one application context pushed for the whole test,
so fixtures and tests share the same database session.
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from punchcard import create_app
from punchcard.extensions import db
from punchcard.models.tenant import Tenant
from punchcard.services.offer_service import OfferService
from punchcard.services.purchase_service import PurchaseService, PurchaseInput, RefundInput


@pytest.fixture
def app():
    """Create test application."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tenant(app):
    """Tenant without POS credentials, so no HTTP lookups happen."""
    tenant = Tenant(
        name='Corner Pet Supply',
        slug='corner-pet-supply',
        pos_merchant_id='MERCHANT_A',
        settings={'loyalty_enabled': True}
    )
    db.session.add(tenant)
    db.session.commit()
    return tenant


@pytest.fixture
def other_tenant(app):
    tenant = Tenant(
        name='Uptown Pets',
        slug='uptown-pets',
        pos_merchant_id='MERCHANT_B'
    )
    db.session.add(tenant)
    db.session.commit()
    return tenant


@pytest.fixture
def offer(tenant):
    """Buy 12 get 1 free on three variations of one product line."""
    service = OfferService(tenant.id)
    offer = service.create_offer(
        brand_name='Acana',
        size_group='25lb',
        required_quantity=12,
        window_months=12,
        created_by='owner@example.com'
    )
    service.add_variations(offer.id, [
        {'variation_id': 'VAR_A', 'item_name': 'Acana Red Meat', 'variation_name': '25lb'},
        {'variation_id': 'VAR_B', 'item_name': 'Acana Wild Coast', 'variation_name': '25lb'},
        {'variation_id': 'VAR_C', 'item_name': 'Acana Free-Run Poultry', 'variation_name': '25lb'},
    ])
    return offer


@pytest.fixture
def purchase(tenant):
    """
    Record a purchase line directly through PurchaseService.

    Each call gets a distinct order id unless one is given, and purchases
    are spaced a minute apart so oldest-first locking is deterministic.
    """
    service = PurchaseService(tenant.id)
    counter = {'n': 0}
    base = datetime.utcnow() - timedelta(days=30)

    def _purchase(quantity, variation_id='VAR_A', customer_id='CUST1', order_id=None,
                  purchased_at=None, unit_price_cents=5999):
        counter['n'] += 1
        return service.process_qualifying_purchase(PurchaseInput(
            tenant_id=tenant.id,
            order_id=order_id or f'ORD{counter["n"]}',
            customer_id=customer_id,
            variation_id=variation_id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            purchased_at=purchased_at or base + timedelta(minutes=counter['n'])
        ))

    return _purchase


@pytest.fixture
def refund(tenant):
    service = PurchaseService(tenant.id)

    def _refund(order_id, quantity, variation_id='VAR_A', customer_id='CUST1', refund_id='RF1'):
        return service.process_refund(RefundInput(
            tenant_id=tenant.id,
            order_id=order_id,
            customer_id=customer_id,
            variation_id=variation_id,
            quantity=quantity,
            unit_price_cents=5999,
            refunded_at=datetime.utcnow(),
            refund_id=refund_id
        ))

    return _refund


@pytest.fixture
def square_client():
    """Stand-in for SquareClient; nothing is found unless a test says so."""
    client = MagicMock()
    client.search_loyalty_events_by_order.return_value = []
    client.get_loyalty_account.return_value = None
    client.search_customers.return_value = []
    client.issue_reward_discount.return_value = {
        'group_id': 'GROUP1',
        'discount_id': 'DISC1',
        'product_set_id': 'PSET1',
        'pricing_rule_id': 'RULE1',
    }
    return client


def make_line(variation_id='VAR_A', quantity=1, unit=5999, discount=0, uid=None, applied=None, **extra):
    """POS order line item payload."""
    gross = unit * quantity
    line = {
        'uid': uid or f'line-{variation_id}-{quantity}',
        'catalog_object_id': variation_id,
        'quantity': str(quantity),
        'base_price_money': {'amount': unit, 'currency': 'USD'},
        'gross_sales_money': {'amount': gross, 'currency': 'USD'},
        'total_discount_money': {'amount': discount, 'currency': 'USD'},
        'total_money': {'amount': gross - discount, 'currency': 'USD'},
    }
    if applied:
        line['applied_discounts'] = [{'discount_uid': uid} for uid in applied]
    line.update(extra)
    return line


def make_order(order_id='ORDER1', customer_id='CUST1', line_items=None, **extra):
    """Completed POS order payload."""
    order = {
        'id': order_id,
        'location_id': 'LOC1',
        'state': 'COMPLETED',
        'created_at': '2026-09-01T15:00:00Z',
        'closed_at': (datetime.utcnow() - timedelta(days=1)).strftime('%Y-%m-%dT%H:%M:%SZ'),
        'line_items': line_items if line_items is not None else [make_line()],
    }
    if customer_id:
        order['customer_id'] = customer_id
    order.update(extra)
    return order
