"""
Order Intake Service.

Entry point for completed POS orders and their refunds. Resolves the
paying customer, filters out line items that must never accrue, and
dispatches the rest to PurchaseService one line at a time.

Skipped lines always carry a reason:
- no_variation: ad-hoc/custom amount line without a catalog variation
- zero_quantity: quantity <= 0
- fully_discounted_to_zero: gross > 0 but nothing was paid (free item)
- loyalty_reward_redemption: discounted by our own reward discount
- variation_not_qualifying / already_processed: from PurchaseService
"""
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Set
from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models.tenant import Tenant
from ..models.reward import Reward
from ..models.processed_order import ProcessedOrder, OrderResultType, OrderSource
from ..models.audit import TriggeredBy
from ..utils.dates import parse_timestamp
from .audit_service import AuditService
from .customer_resolution import CustomerResolver
from .offer_service import OfferService
from .purchase_service import (
    PurchaseService,
    PurchaseInput,
    RefundInput,
    NO_CUSTOMER,
    NO_LINE_ITEMS,
    ALREADY_PROCESSED,
)
from .redemption_service import RedemptionService

LOYALTY_DISABLED = 'loyalty_disabled'

SKIP_NO_VARIATION = 'no_variation'
SKIP_ZERO_QUANTITY = 'zero_quantity'
SKIP_FREE_ITEM = 'fully_discounted_to_zero'
SKIP_REWARD_REDEMPTION = 'loyalty_reward_redemption'


def money_amount(obj: Optional[Dict[str, Any]]) -> Optional[int]:
    """Minor-unit amount from a POS Money object, None when absent."""
    if not obj or obj.get('amount') is None:
        return None
    return int(obj['amount'])


def parse_quantity(value) -> int:
    """
    POS quantities are decimal strings ("2", "1.000"). Fractional
    quantities (sold by weight) never qualify and parse as 0.
    """
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return 0
    if quantity != quantity.to_integral_value():
        return 0
    return int(quantity)


def is_fully_discounted(line: Dict[str, Any], quantity: int) -> bool:
    """
    True when the line had a price but nothing was paid for it.

    Gross falls back to unit price x quantity; net falls back to gross
    minus the line's total discount.
    """
    unit = money_amount(line.get('base_price_money')) or 0
    gross = money_amount(line.get('gross_sales_money'))
    if gross is None:
        gross = unit * quantity

    total = money_amount(line.get('total_money'))
    if total is None:
        total = gross - (money_amount(line.get('total_discount_money')) or 0)

    return gross > 0 and total == 0


class OrderIntakeService:
    """
    Usage:
        intake = OrderIntakeService(tenant_id)
        result = intake.process_order(order_payload)
        refunds = intake.process_order_refunds(order_payload)
    """

    def __init__(self, tenant_id: int, square_client=None, resolver: CustomerResolver = None,
                 purchase_service: PurchaseService = None, redemption_service: RedemptionService = None):
        self.tenant_id = tenant_id
        audit = AuditService(tenant_id)
        offers = OfferService(tenant_id, audit)
        self.resolver = resolver or CustomerResolver(tenant_id, square_client)
        self.purchases = purchase_service or PurchaseService(tenant_id, offer_service=offers, audit_service=audit)
        self.redemptions = redemption_service or RedemptionService(tenant_id, audit_service=audit, offer_service=offers)

    # ==================== Orders ====================

    def process_order(self, order: Dict[str, Any], source: str = OrderSource.WEBHOOK.value) -> Dict[str, Any]:
        """
        Accrue every qualifying line of a completed order.

        Args:
            order: POS order payload
            source: webhook, catchup, backfill or audit

        Returns:
            Dict with processed flag, reason (when nothing was processed),
            customer, per-line purchases, skipped lines, errors and the
            redemption detection outcome
        """
        order_id = order.get('id')
        line_items = order.get('line_items', []) or []
        result = {
            'order_id': order_id,
            'processed': False,
            'reason': None,
            'customer_id': None,
            'customer_source': None,
            'purchases': [],
            'skipped': [],
            'errors': [],
            'redemption': None,
        }

        tenant = db.session.get(Tenant, self.tenant_id)
        if tenant is not None and not tenant.loyalty_enabled:
            result['reason'] = LOYALTY_DISABLED
            self._record_order(order_id, OrderResultType.LOYALTY_DISABLED, result, len(line_items), source)
            return result

        customer_id, customer_source = self.resolver.resolve(order)
        result['customer_id'] = customer_id
        result['customer_source'] = customer_source

        if not customer_id:
            current_app.logger.info(f"Order {order_id}: no customer resolved, skipping loyalty")
            result['reason'] = NO_CUSTOMER
            self._record_order(order_id, OrderResultType.NO_CUSTOMER, result, len(line_items), source)
            return result

        if not line_items:
            result['reason'] = NO_LINE_ITEMS
            self._record_order(order_id, OrderResultType.NO_LINE_ITEMS, result, 0, source)
            return result

        # Redemption first so a free reward item is consumed before accrual
        result['redemption'] = self.redemptions.detect_redemption_from_order(order, customer_id)

        reward_discount_uids = self._reward_discount_uids(order)
        purchased_at = parse_timestamp(order.get('closed_at') or order.get('created_at'))
        receipt_url, payment_type = self._tender_details(order)
        triggered_by = TriggeredBy.WEBHOOK if source == OrderSource.WEBHOOK.value else TriggeredBy.SYSTEM

        for line in line_items:
            variation_id = line.get('catalog_object_id')
            quantity = parse_quantity(line.get('quantity'))
            skip = {'line_uid': line.get('uid'), 'variation_id': variation_id}

            if not variation_id:
                result['skipped'].append({**skip, 'reason': SKIP_NO_VARIATION})
                continue
            if quantity <= 0:
                result['skipped'].append({**skip, 'reason': SKIP_ZERO_QUANTITY})
                continue
            if is_fully_discounted(line, quantity):
                result['skipped'].append({**skip, 'reason': SKIP_FREE_ITEM})
                continue
            applied = {ad.get('discount_uid') for ad in line.get('applied_discounts', []) or []}
            if applied & reward_discount_uids:
                result['skipped'].append({**skip, 'reason': SKIP_REWARD_REDEMPTION})
                continue

            try:
                outcome = self.purchases.process_qualifying_purchase(PurchaseInput(
                    tenant_id=self.tenant_id,
                    order_id=order_id,
                    customer_id=customer_id,
                    variation_id=variation_id,
                    quantity=quantity,
                    unit_price_cents=money_amount(line.get('base_price_money')),
                    purchased_at=purchased_at,
                    location_id=order.get('location_id'),
                    receipt_url=receipt_url,
                    customer_source=customer_source,
                    payment_type=payment_type,
                    triggered_by=triggered_by
                ))
            except Exception as e:
                current_app.logger.error(f"Order {order_id} line {line.get('uid')}: accrual failed: {e}")
                result['errors'].append({**skip, 'error': str(e)})
                continue

            if outcome.processed:
                result['purchases'].append({
                    **skip,
                    'event_id': outcome.event.id,
                    'quantity': quantity,
                    'reward_progress': outcome.reward_progress.to_dict()
                })
            else:
                result['skipped'].append({**skip, 'reason': outcome.reason})

        qualifying = len(result['purchases']) + sum(
            1 for s in result['skipped'] if s['reason'] == ALREADY_PROCESSED
        )
        result['processed'] = bool(result['purchases'])
        result_type = OrderResultType.QUALIFYING if qualifying else OrderResultType.NON_QUALIFYING
        self._record_order(order_id, result_type, result, len(line_items), source, qualifying)

        current_app.logger.info(
            f"Order {order_id}: customer {customer_id} via {customer_source}, "
            f"{len(result['purchases'])} accrued, {len(result['skipped'])} skipped, {len(result['errors'])} errors"
        )
        return result

    # ==================== Refunds ====================

    def process_order_refunds(self, order: Dict[str, Any], customer_id: str = None) -> Dict[str, Any]:
        """
        Reverse accrual for the completed refunds on an order.

        Free (100%-discounted) return lines are skipped: they never
        accrued, so they must not create a reversal.
        """
        order_id = order.get('id')
        result = {
            'order_id': order_id,
            'processed': False,
            'reason': None,
            'customer_id': customer_id,
            'refunds': [],
            'skipped': [],
            'errors': [],
        }

        tenant = db.session.get(Tenant, self.tenant_id)
        if tenant is not None and not tenant.loyalty_enabled:
            result['reason'] = LOYALTY_DISABLED
            return result

        if customer_id is None:
            customer_id, _ = self.resolver.resolve(order)
            result['customer_id'] = customer_id

        for refund in order.get('refunds', []) or []:
            if refund.get('status') != 'COMPLETED':
                continue
            refunded_at = parse_timestamp(refund.get('created_at'))

            for line in refund.get('return_line_items', []) or []:
                variation_id = line.get('catalog_object_id')
                quantity = parse_quantity(line.get('quantity'))
                skip = {'refund_id': refund.get('id'), 'line_uid': line.get('uid'), 'variation_id': variation_id}

                if not variation_id:
                    result['skipped'].append({**skip, 'reason': SKIP_NO_VARIATION})
                    continue
                if quantity <= 0:
                    result['skipped'].append({**skip, 'reason': SKIP_ZERO_QUANTITY})
                    continue

                unit = money_amount(line.get('base_price_money')) or 0
                total = money_amount(line.get('total_money'))
                if unit > 0 and total == 0:
                    result['skipped'].append({**skip, 'reason': SKIP_FREE_ITEM})
                    continue

                try:
                    outcome = self.purchases.process_refund(RefundInput(
                        tenant_id=self.tenant_id,
                        order_id=order_id,
                        customer_id=customer_id,
                        variation_id=variation_id,
                        quantity=quantity,
                        unit_price_cents=unit or None,
                        refunded_at=refunded_at,
                        refund_id=refund.get('id'),
                        location_id=refund.get('location_id') or order.get('location_id')
                    ))
                except Exception as e:
                    current_app.logger.error(f"Order {order_id} refund {refund.get('id')}: reversal failed: {e}")
                    result['errors'].append({**skip, 'error': str(e)})
                    continue

                if outcome.processed:
                    result['refunds'].append({
                        **skip,
                        'event_id': outcome.event.id,
                        'quantity': -quantity,
                        'reward_progress': outcome.reward_progress.to_dict()
                    })
                else:
                    result['skipped'].append({**skip, 'reason': outcome.reason})

        result['processed'] = bool(result['refunds'])
        return result

    # ==================== Helpers ====================

    def _reward_discount_uids(self, order: Dict[str, Any]) -> Set[str]:
        """Order discount uids that reference a discount we issued."""
        discounts = order.get('discounts', []) or []
        refs = [d.get('catalog_object_id') for d in discounts if d.get('catalog_object_id')]
        if not refs:
            return set()

        rows = db.session.query(Reward.discount_id, Reward.pricing_rule_id).filter(
            Reward.tenant_id == self.tenant_id,
            or_(Reward.discount_id.in_(refs), Reward.pricing_rule_id.in_(refs))
        ).all()
        known = {ref for row in rows for ref in row if ref}

        return {d.get('uid') for d in discounts if d.get('catalog_object_id') in known}

    @staticmethod
    def _tender_details(order: Dict[str, Any]):
        receipt_url = None
        payment_type = None
        for tender in order.get('tenders', []) or []:
            payment_type = payment_type or tender.get('type')
            receipt_url = receipt_url or tender.get('receipt_url')
        return receipt_url, payment_type

    def _record_order(self, order_id: str, result_type: OrderResultType, result: Dict[str, Any],
                      total_line_items: int, source: str, qualifying_items: int = 0) -> None:
        """Upsert the intake log row. Failures are logged only."""
        if not order_id:
            return
        try:
            row = ProcessedOrder.query.filter_by(tenant_id=self.tenant_id, order_id=order_id).first()
            if row is None:
                row = ProcessedOrder(tenant_id=self.tenant_id, order_id=order_id)
                db.session.add(row)
            row.customer_id = result.get('customer_id')
            row.customer_source = result.get('customer_source')
            row.result_type = result_type.value
            row.qualifying_items = qualifying_items
            row.total_line_items = total_line_items
            row.error_count = len(result.get('errors', []))
            row.source = source
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.warning(f"Order {order_id}: intake log not written: {e}")
