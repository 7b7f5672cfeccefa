"""
Customer resolution for POS orders.

Walk-in orders often carry no customer id. The resolver tries, in order,
and stops at the first hit:

1. order.customer_id
2. a tender's customer_id
3. the POS loyalty program: loyalty event for the order -> loyalty
   account -> customer
4. the customer of one of our rewards whose discount appears on the order
5. a fulfillment recipient's phone number, then email, via customer search

A lookup that fails (HTTP error, missing credentials) is logged and
treated as a miss so the remaining methods still run.
"""
import re
from typing import Optional, Dict, Any, Tuple, Callable, List
from flask import current_app
from sqlalchemy import or_

from ..models.reward import Reward
from ..utils.exceptions import PunchcardError
from .square_client import SquareClient

SOURCE_ORDER = 'order'
SOURCE_TENDER = 'tender'
SOURCE_LOYALTY_API = 'loyalty_api'
SOURCE_REWARD_DISCOUNT = 'reward_discount'
SOURCE_FULFILLMENT = 'fulfillment'


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164-ish form for exact search.

    Ten-digit numbers are assumed North American.
    """
    if not phone:
        return None
    digits = re.sub(r'\D', '', phone)
    if not digits:
        return None
    if phone.strip().startswith('+'):
        return f'+{digits}'
    if len(digits) == 10:
        return f'+1{digits}'
    return f'+{digits}'


class CustomerResolver:
    """
    Usage:
        resolver = CustomerResolver(tenant_id, square_client)
        customer_id, source = resolver.resolve(order)
    """

    def __init__(self, tenant_id: int, square_client=None, client_factory: Callable[[int], Any] = None):
        """
        Args:
            tenant_id: Tenant owning the order
            square_client: Client for POS lookups (created lazily when omitted)
            client_factory: Callable tenant_id -> client used for lazy creation
        """
        self.tenant_id = tenant_id
        self._client = square_client
        self._client_factory = client_factory
        self._client_failed = False

    @property
    def client(self):
        if self._client is None and not self._client_failed:
            try:
                if self._client_factory is not None:
                    self._client = self._client_factory(self.tenant_id)
                else:
                    self._client = SquareClient(self.tenant_id)
            except PunchcardError as e:
                self._client_failed = True
                current_app.logger.warning(f"Tenant {self.tenant_id}: POS lookups unavailable: {e.message}")
        return self._client

    def resolve(self, order: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """
        Resolve the paying customer for an order.

        Returns:
            (customer_id, source) or (None, None)
        """
        methods = [
            (SOURCE_ORDER, self._from_order),
            (SOURCE_TENDER, self._from_tenders),
            (SOURCE_LOYALTY_API, self._from_loyalty_events),
            (SOURCE_REWARD_DISCOUNT, self._from_reward_discount),
            (SOURCE_FULFILLMENT, self._from_fulfillment),
        ]

        for source, method in methods:
            try:
                customer_id = method(order)
            except Exception as e:
                current_app.logger.warning(
                    f"Order {order.get('id')}: customer lookup via {source} failed: {e}"
                )
                continue
            if customer_id:
                return customer_id, source

        return None, None

    def _from_order(self, order: Dict[str, Any]) -> Optional[str]:
        return order.get('customer_id')

    def _from_tenders(self, order: Dict[str, Any]) -> Optional[str]:
        for tender in order.get('tenders', []) or []:
            if tender.get('customer_id'):
                return tender['customer_id']
        return None

    def _from_loyalty_events(self, order: Dict[str, Any]) -> Optional[str]:
        if not order.get('id') or self.client is None:
            return None

        events = self.client.search_loyalty_events_by_order(order['id'])
        for event in events:
            account_id = event.get('loyalty_account_id')
            if not account_id:
                continue
            account = self.client.get_loyalty_account(account_id)
            if account and account.get('customer_id'):
                return account['customer_id']
        return None

    def _from_reward_discount(self, order: Dict[str, Any]) -> Optional[str]:
        refs = [d.get('catalog_object_id') for d in order.get('discounts', []) or [] if d.get('catalog_object_id')]
        if not refs:
            return None

        reward = Reward.query.filter(
            Reward.tenant_id == self.tenant_id,
            or_(Reward.discount_id.in_(refs), Reward.pricing_rule_id.in_(refs))
        ).order_by(Reward.id).first()
        return reward.customer_id if reward else None

    def _from_fulfillment(self, order: Dict[str, Any]) -> Optional[str]:
        recipients = self._fulfillment_recipients(order)
        if not recipients or self.client is None:
            return None

        for recipient in recipients:
            phone = normalize_phone(recipient.get('phone_number'))
            if phone:
                customers = self.client.search_customers(phone=phone)
                if customers:
                    return customers[0].get('id')

        for recipient in recipients:
            email = recipient.get('email_address')
            if email:
                customers = self.client.search_customers(email=email)
                if customers:
                    return customers[0].get('id')

        return None

    @staticmethod
    def _fulfillment_recipients(order: Dict[str, Any]) -> List[Dict[str, Any]]:
        recipients = []
        for fulfillment in order.get('fulfillments', []) or []:
            for details_key in ('pickup_details', 'shipment_details', 'delivery_details'):
                recipient = (fulfillment.get(details_key) or {}).get('recipient')
                if recipient:
                    recipients.append(recipient)
        return recipients
