"""
Tests for CustomerResolver attribution order and lookup fallbacks.
"""
from conftest import make_order
from punchcard.extensions import db
from punchcard.models.reward import Reward
from punchcard.services.customer_resolution import (
    CustomerResolver,
    normalize_phone,
    SOURCE_ORDER,
    SOURCE_TENDER,
    SOURCE_LOYALTY_API,
    SOURCE_REWARD_DISCOUNT,
    SOURCE_FULFILLMENT,
)
from punchcard.services.square_client import SquareAPIError


def pickup_order(phone=None, email=None, **extra):
    recipient = {'display_name': 'Pat Walker'}
    if phone:
        recipient['phone_number'] = phone
    if email:
        recipient['email_address'] = email
    return make_order(
        customer_id=None,
        fulfillments=[{'type': 'PICKUP', 'pickup_details': {'recipient': recipient}}],
        **extra
    )


class TestNormalizePhone:

    def test_ten_digit_numbers_get_country_code(self):
        assert normalize_phone('(555) 867-5309') == '+15558675309'

    def test_international_numbers_kept(self):
        assert normalize_phone('+44 20 7946 0958') == '+442079460958'

    def test_empty(self):
        assert normalize_phone('') is None
        assert normalize_phone('n/a') is None


class TestResolutionOrder:
    """Each method is tried in turn; the first hit wins."""

    def test_order_customer_wins(self, tenant, square_client):
        """An order customer id is used without any POS lookups."""
        resolver = CustomerResolver(tenant.id, square_client)

        assert resolver.resolve(make_order(customer_id='CUST1')) == ('CUST1', SOURCE_ORDER)
        square_client.search_loyalty_events_by_order.assert_not_called()

    def test_tender_customer(self, tenant, square_client):
        order = make_order(customer_id=None, tenders=[{'type': 'CASH'}, {'type': 'CARD', 'customer_id': 'CUST_T'}])

        resolved = CustomerResolver(tenant.id, square_client).resolve(order)

        assert resolved == ('CUST_T', SOURCE_TENDER)

    def test_loyalty_account(self, tenant, square_client):
        """Loyalty events on the order lead to the account's customer."""
        square_client.search_loyalty_events_by_order.return_value = [
            {'type': 'ACCUMULATE_POINTS'},
            {'type': 'ACCUMULATE_POINTS', 'loyalty_account_id': 'ACCT1'},
        ]
        square_client.get_loyalty_account.return_value = {'id': 'ACCT1', 'customer_id': 'CUST_L'}

        resolved = CustomerResolver(tenant.id, square_client).resolve(make_order(customer_id=None))

        assert resolved == ('CUST_L', SOURCE_LOYALTY_API)
        square_client.search_loyalty_events_by_order.assert_called_once_with('ORDER1')
        square_client.get_loyalty_account.assert_called_once_with('ACCT1')

    def test_reward_discount(self, tenant, offer, purchase, square_client):
        """An order discount we issued points back at the reward's customer."""
        result = purchase(12, customer_id='CUST_R')
        reward = db.session.get(Reward, result.reward_progress.earned_reward_ids[0])
        reward.pricing_rule_id = 'RULE9'
        db.session.commit()

        order = make_order(customer_id=None, discounts=[{'uid': 'd1', 'catalog_object_id': 'RULE9'}])
        resolved = CustomerResolver(tenant.id, square_client).resolve(order)

        assert resolved == ('CUST_R', SOURCE_REWARD_DISCOUNT)

    def test_fulfillment_phone(self, tenant, square_client):
        square_client.search_customers.return_value = [{'id': 'CUST_P'}]

        resolved = CustomerResolver(tenant.id, square_client).resolve(pickup_order(phone='555-867-5309'))

        assert resolved == ('CUST_P', SOURCE_FULFILLMENT)
        square_client.search_customers.assert_called_once_with(phone='+15558675309')

    def test_fulfillment_email_after_phone_miss(self, tenant, square_client):
        square_client.search_customers.side_effect = [[], [{'id': 'CUST_E'}]]

        resolved = CustomerResolver(tenant.id, square_client).resolve(
            pickup_order(phone='555-867-5309', email='pat@example.com')
        )

        assert resolved == ('CUST_E', SOURCE_FULFILLMENT)
        assert square_client.search_customers.call_count == 2

    def test_nothing_found(self, tenant, square_client):
        assert CustomerResolver(tenant.id, square_client).resolve(make_order(customer_id=None)) == (None, None)


class TestLookupFailures:
    """Failed lookups are misses, not errors."""

    def test_loyalty_lookup_error_falls_through(self, tenant, square_client):
        """An API error on the loyalty lookup still lets fulfillment match."""
        square_client.search_loyalty_events_by_order.side_effect = SquareAPIError('Square API error 500')
        square_client.search_customers.return_value = [{'id': 'CUST_P'}]

        resolved = CustomerResolver(tenant.id, square_client).resolve(pickup_order(phone='5558675309'))

        assert resolved == ('CUST_P', SOURCE_FULFILLMENT)

    def test_missing_credentials_disable_lookups(self, tenant):
        """Without a POS token the lookup methods are skipped."""
        resolver = CustomerResolver(tenant.id)

        assert resolver.resolve(pickup_order(phone='5558675309')) == (None, None)
        assert resolver.client is None

    def test_client_factory_used(self, tenant, square_client):
        created = []

        def factory(tenant_id):
            created.append(tenant_id)
            return square_client

        resolver = CustomerResolver(tenant.id, client_factory=factory)
        resolver.resolve(make_order(customer_id=None))
        resolver.resolve(make_order(customer_id=None, order_id='ORDER2'))

        assert created == [tenant.id]
