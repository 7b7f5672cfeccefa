"""
Square REST API client.
Handles customer lookups used for order attribution and the discount
objects that make an earned reward redeemable at the register.
"""
import re
import httpx
from typing import Optional, Dict, Any, List
from flask import current_app

from ..utils.exceptions import ExternalServiceError, ConfigurationError


class SquareAPIError(ExternalServiceError):
    """Non-2xx response or transport failure talking to Square."""

    def __init__(self, message: str, endpoint: str = None, status_code: int = None,
                 errors: list = None, original_error: Exception = None):
        self.endpoint = endpoint
        self.errors = errors or []
        super().__init__(message, original_error=original_error, status_code=status_code)


class SquareClient:
    """
    Client for the Square REST API.

    Supports:
    - Loyalty event and account lookup (customer attribution)
    - Customer search by phone/email
    - Order retrieval
    - Reward discount issue/cleanup (customer group + catalog pricing rule)
    """

    def __init__(self, tenant_id_or_token, base_url: str = None, api_version: str = None,
                 timeout: float = None, http_client: httpx.Client = None):
        """
        Initialize Square client.

        Can be initialized either with:
        - tenant_id (int): Will fetch the access token from the database
        - access_token (str): Direct initialization
        """
        if isinstance(tenant_id_or_token, int):
            from ..models.tenant import Tenant
            tenant = Tenant.query.get(tenant_id_or_token)
            if not tenant:
                raise ConfigurationError(f"Tenant {tenant_id_or_token} not found")
            if not tenant.pos_access_token:
                raise ConfigurationError(f"Tenant {tenant_id_or_token} missing Square credentials")
            self.access_token = tenant.pos_access_token
        else:
            self.access_token = tenant_id_or_token

        config = current_app.config
        self.base_url = (base_url or config.get('SQUARE_API_BASE_URL', 'https://connect.squareup.com')).rstrip('/')
        self.api_version = api_version or config.get('SQUARE_API_VERSION')
        self.timeout = timeout or config.get('SQUARE_HTTP_TIMEOUT', 30.0)
        self._http_client = http_client

    def _request(self, method: str, path: str, json: Dict = None, params: Dict = None) -> Dict[str, Any]:
        """Execute a REST call and return the decoded body."""
        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
            'Square-Version': self.api_version,
        }
        url = f'{self.base_url}{path}'

        try:
            if self._http_client is not None:
                response = self._http_client.request(
                    method, url, headers=headers, json=json, params=params, timeout=self.timeout
                )
            else:
                with httpx.Client() as client:
                    response = client.request(
                        method, url, headers=headers, json=json, params=params, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            raise SquareAPIError(f"Square request failed: {e}", endpoint=path, original_error=e)

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code >= 400:
            errors = body.get('errors', []) if isinstance(body, dict) else []
            detail = errors[0].get('detail') if errors else response.text
            raise SquareAPIError(
                f"Square API error {response.status_code} on {path}: {detail}",
                endpoint=path,
                status_code=response.status_code,
                errors=errors
            )

        return body

    # ==================== Orders ====================

    def retrieve_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        result = self._request('GET', f'/v2/orders/{order_id}')
        return result.get('order')

    # ==================== Customer attribution ====================

    def search_loyalty_events_by_order(self, order_id: str) -> List[Dict[str, Any]]:
        """Loyalty program events (points accrual etc.) recorded against an order."""
        result = self._request('POST', '/v2/loyalty/events/search', json={
            'query': {'filter': {'order_filter': {'order_id': order_id}}},
            'limit': 30,
        })
        return result.get('events', [])

    def get_loyalty_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        result = self._request('GET', f'/v2/loyalty/accounts/{account_id}')
        return result.get('loyalty_account')

    def search_customers(self, phone: str = None, email: str = None) -> List[Dict[str, Any]]:
        """
        Exact-match customer search by phone number or email address.

        Args:
            phone: E.164 phone number
            email: Email address

        Returns:
            List of customer objects (possibly empty)
        """
        customer_filter = {}
        if phone:
            customer_filter['phone_number'] = {'exact': phone}
        elif email:
            customer_filter['email_address'] = {'exact': email.strip().lower()}
        else:
            return []

        result = self._request('POST', '/v2/customers/search', json={
            'query': {'filter': customer_filter},
            'limit': 2,
        })
        return result.get('customers', [])

    # ==================== Reward discounts ====================

    def issue_reward_discount(self, reward_id: int, customer_id: str, offer_name: str,
                              variation_ids: List[str]) -> Dict[str, str]:
        """
        Make an earned reward redeemable at the register.

        Creates a customer group holding only this customer, then a
        100% discount limited to one unit of the offer's variations and a
        pricing rule that applies it automatically for that group.

        Idempotency keys are derived from the reward id so a retried
        task does not create duplicate objects.

        Returns:
            Dict with group_id, discount_id, product_set_id, pricing_rule_id
        """
        label = self._discount_label(reward_id, offer_name)

        group = self._request('POST', '/v2/customers/groups', json={
            'idempotency_key': f'loyalty-reward-{reward_id}-group',
            'group': {'name': label},
        })
        group_id = group['group']['id']

        self._request('PUT', f'/v2/customers/{customer_id}/groups/{group_id}')

        discount_ref = f'#loyalty-discount-{reward_id}'
        product_set_ref = f'#loyalty-product-set-{reward_id}'
        pricing_rule_ref = f'#loyalty-pricing-rule-{reward_id}'

        result = self._request('POST', '/v2/catalog/batch-upsert', json={
            'idempotency_key': f'loyalty-reward-{reward_id}-catalog',
            'batches': [{
                'objects': [
                    {
                        'type': 'DISCOUNT',
                        'id': discount_ref,
                        'discount_data': {
                            'name': label,
                            'discount_type': 'FIXED_PERCENTAGE',
                            'percentage': '100',
                            'application_method': 'AUTOMATICALLY_APPLIED',
                        },
                    },
                    {
                        'type': 'PRODUCT_SET',
                        'id': product_set_ref,
                        'product_set_data': {
                            'name': label,
                            'product_ids_any': variation_ids,
                            'quantity_exact': 1,
                        },
                    },
                    {
                        'type': 'PRICING_RULE',
                        'id': pricing_rule_ref,
                        'pricing_rule_data': {
                            'name': label,
                            'discount_id': discount_ref,
                            'match_products_id': product_set_ref,
                            'customer_group_ids_any': [group_id],
                        },
                    },
                ]
            }],
        })

        mappings = {
            m['client_object_id']: m['object_id']
            for m in result.get('id_mappings', [])
        }

        return {
            'group_id': group_id,
            'discount_id': mappings.get(discount_ref),
            'product_set_id': mappings.get(product_set_ref),
            'pricing_rule_id': mappings.get(pricing_rule_ref),
        }

    def cleanup_reward_discount(self, customer_id: str, group_id: str = None, discount_id: str = None,
                                product_set_id: str = None, pricing_rule_id: str = None) -> None:
        """
        Remove the discount objects issued for a reward.

        Pricing rule goes first so the discount is never briefly applied
        without its product restriction.
        """
        if group_id and customer_id:
            self._request('DELETE', f'/v2/customers/{customer_id}/groups/{group_id}')

        object_ids = [oid for oid in (pricing_rule_id, product_set_id, discount_id) if oid]
        if object_ids:
            self._request('POST', '/v2/catalog/batch-delete', json={'object_ids': object_ids})

        if group_id:
            self._request('DELETE', f'/v2/customers/groups/{group_id}')

    @staticmethod
    def _discount_label(reward_id: int, offer_name: str) -> str:
        name = re.sub(r'\s+', ' ', offer_name or '').strip()
        return f'Loyalty reward #{reward_id}: free {name}'[:255]
