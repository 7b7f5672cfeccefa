"""
Redemption Service for the frequent-buyer program.

Consumes an earned reward exactly once, either on an explicit request
(admin action) or when an order shows the reward was used at checkout.

Detection strategies, tried in order per order:
1. An order discount whose catalog object is the reward's issued
   discount or pricing rule.
2. A free line item (base price > 0, total 0) of a qualifying variation
   for a customer holding an earned reward on that offer.
3. Discounts on qualifying lines that cover at least
   REDEMPTION_DISCOUNT_MATCH_RATIO of the expected reward value (the
   highest unit price among the reward's locked purchases).
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List
from flask import current_app
from sqlalchemy import func, or_

from ..extensions import db
from ..models.purchase import PurchaseEvent
from ..models.reward import Reward, Redemption, RewardStatus, RedemptionType
from ..models.audit import AuditAction, TriggeredBy
from ..utils.exceptions import (
    PunchcardError,
    ValidationError,
    StateError,
    RewardNotFoundError,
    InvalidStatusTransitionError,
)
from .audit_service import AuditService
from .offer_service import OfferService
from .summary_service import SummaryService
from .discount_outbox import DiscountOutbox


@dataclass
class RedemptionInput:
    tenant_id: int
    reward_id: int
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    redemption_type: RedemptionType = RedemptionType.MANUAL_ADMIN
    redeemed_variation_id: Optional[str] = None
    redeemed_item_name: Optional[str] = None
    redeemed_variation_name: Optional[str] = None
    redeemed_value_cents: Optional[int] = None
    location_id: Optional[str] = None
    actor: Optional[str] = None
    notes: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    triggered_by: TriggeredBy = TriggeredBy.ADMIN


@dataclass
class RedemptionResult:
    success: bool
    redemption: Optional[Redemption] = None
    reward: Optional[Reward] = None

    def to_dict(self):
        return {
            'success': self.success,
            'redemption': self.redemption.to_dict() if self.redemption else None,
            'reward': self.reward.to_dict() if self.reward else None,
        }


def _money(obj: Optional[Dict[str, Any]]) -> Optional[int]:
    if not obj or obj.get('amount') is None:
        return None
    return int(obj['amount'])


class RedemptionService:
    """
    Usage:
        service = RedemptionService(tenant_id)
        result = service.redeem_reward(RedemptionInput(tenant_id, reward_id, order_id='ORD1'))
    """

    def __init__(self, tenant_id: int, audit_service: AuditService = None,
                 offer_service: OfferService = None, outbox: DiscountOutbox = None):
        self.tenant_id = tenant_id
        self.audit = audit_service or AuditService(tenant_id)
        self.offers = offer_service or OfferService(tenant_id, self.audit)
        self.summaries = SummaryService(tenant_id)
        self.outbox = outbox or DiscountOutbox(tenant_id)

    def redeem_reward(self, redemption_input: RedemptionInput) -> RedemptionResult:
        """
        Redeem an earned reward.

        Raises:
            ValidationError: tenant id missing or mismatched
            RewardNotFoundError: reward does not exist for this tenant
            StateError: reward not earned, or belongs to another customer
        """
        data = redemption_input
        if not data.tenant_id:
            raise ValidationError('tenant_id is required', 'tenant_id')
        if data.tenant_id != self.tenant_id:
            raise ValidationError('tenant_id does not match service tenant', 'tenant_id')

        try:
            reward = Reward.query.filter_by(
                id=data.reward_id,
                tenant_id=self.tenant_id
            ).with_for_update().first()

            if reward is None:
                raise RewardNotFoundError(data.reward_id)
            if reward.status != RewardStatus.EARNED.value:
                raise InvalidStatusTransitionError('Reward', reward.status, RewardStatus.REDEEMED.value)
            if data.customer_id and data.customer_id != reward.customer_id:
                raise StateError('Reward belongs to a different customer', reward.status)

            redeemed_at = data.redeemed_at or datetime.utcnow()
            redemption_type = data.redemption_type.value if hasattr(data.redemption_type, 'value') \
                else data.redemption_type

            redemption = Redemption(
                tenant_id=self.tenant_id,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=reward.customer_id,
                redemption_type=redemption_type,
                order_id=data.order_id,
                location_id=data.location_id,
                redeemed_variation_id=data.redeemed_variation_id,
                redeemed_item_name=data.redeemed_item_name,
                redeemed_variation_name=data.redeemed_variation_name,
                redeemed_value_cents=data.redeemed_value_cents,
                redeemed_by=data.actor or 'system',
                admin_notes=data.notes,
                redeemed_at=redeemed_at
            )
            db.session.add(redemption)
            db.session.flush()

            reward.status = RewardStatus.REDEEMED.value
            reward.redeemed_at = redeemed_at
            reward.redemption_id = redemption.id
            reward.redemption_order_id = data.order_id

            self.audit.record(
                AuditAction.REWARD_REDEEMED,
                customer_id=reward.customer_id,
                offer_id=reward.offer_id,
                reward_id=reward.id,
                redemption_id=redemption.id,
                order_id=data.order_id,
                old_state=RewardStatus.EARNED.value,
                new_state=RewardStatus.REDEEMED.value,
                triggered_by=data.triggered_by,
                actor=data.actor,
                details={'redemption_type': redemption_type, 'value_cents': data.redeemed_value_cents}
            )

            self.summaries.rebuild(reward.customer_id, reward.offer_id)
            db.session.commit()

        except PunchcardError:
            db.session.rollback()
            raise
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Redemption of reward {data.reward_id} failed: {e}")
            raise

        current_app.logger.info(
            f"Reward {reward.id} redeemed by customer {reward.customer_id} ({redemption_type})"
        )

        if reward.has_discount:
            try:
                self.outbox.enqueue_cleanup(reward, reason='redeemed')
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                current_app.logger.warning(f"Reward {reward.id}: discount cleanup not queued: {e}")

        return RedemptionResult(True, redemption, reward)

    # ==================== Detection ====================

    def detect_redemption_from_order(self, order: Dict[str, Any], customer_id: str = None,
                                     dry_run: bool = False) -> Dict[str, Any]:
        """
        Detect and record use of an earned reward on a completed order.

        Args:
            order: POS order payload
            customer_id: Resolved customer, needed for strategies 2 and 3
            dry_run: Report the match without redeeming

        Returns:
            Dict with detected flag, reward_id, method and (unless dry_run)
            the redemption
        """
        order_id = order.get('id')

        # Webhooks are redelivered; one redemption per order
        if order_id and Redemption.query.filter_by(tenant_id=self.tenant_id, order_id=order_id).first():
            return {'detected': False, 'reason': 'already_redeemed'}

        try:
            match = (
                self._match_by_discount_id(order)
                or (customer_id and self._match_by_free_item(order, customer_id))
                or (customer_id and self._match_by_discount_amount(order, customer_id))
            )
        except Exception as e:
            current_app.logger.error(f"Redemption detection failed for order {order_id}: {e}")
            return {'detected': False, 'error': str(e)}

        if not match:
            return {'detected': False}

        reward, method, line = match
        result = {
            'detected': True,
            'reward_id': reward.id,
            'customer_id': reward.customer_id,
            'method': method,
            'dry_run': dry_run,
        }
        if dry_run:
            return result

        redemption_type = RedemptionType.ORDER_DISCOUNT if method == 'discount_id' \
            else RedemptionType.AUTO_DETECTED
        line = line or {}

        try:
            redemption = self.redeem_reward(RedemptionInput(
                tenant_id=self.tenant_id,
                reward_id=reward.id,
                order_id=order_id,
                customer_id=reward.customer_id,
                redemption_type=redemption_type,
                redeemed_variation_id=line.get('catalog_object_id'),
                redeemed_item_name=line.get('name'),
                redeemed_variation_name=line.get('variation_name'),
                redeemed_value_cents=_money(line.get('base_price_money')),
                location_id=order.get('location_id'),
                actor='system',
                triggered_by=TriggeredBy.WEBHOOK
            ))
        except PunchcardError as e:
            current_app.logger.warning(f"Order {order_id}: detected reward {reward.id} not redeemed: {e.message}")
            result.update({'detected': False, 'error': e.message})
            return result

        result['redemption'] = redemption.redemption.to_dict()
        return result

    def find_reward_by_discount_refs(self, refs: List[str], status: str = None) -> Optional[Reward]:
        refs = [r for r in refs if r]
        if not refs:
            return None
        query = Reward.query.filter(
            Reward.tenant_id == self.tenant_id,
            or_(Reward.discount_id.in_(refs), Reward.pricing_rule_id.in_(refs))
        )
        if status:
            query = query.filter(Reward.status == status)
        return query.order_by(Reward.id).first()

    def _match_by_discount_id(self, order: Dict[str, Any]):
        refs = [d.get('catalog_object_id') for d in order.get('discounts', []) or []]
        reward = self.find_reward_by_discount_refs(refs, RewardStatus.EARNED.value)
        if reward is None:
            return None

        # The line carrying our discount is the free item
        uids = {
            d.get('uid') for d in order.get('discounts', []) or []
            if d.get('catalog_object_id') in (reward.discount_id, reward.pricing_rule_id)
        }
        line = next((
            li for li in order.get('line_items', []) or []
            if any(ad.get('discount_uid') in uids for ad in li.get('applied_discounts', []) or [])
        ), None)
        return reward, 'discount_id', line

    def _earned_rewards_for(self, customer_id: str) -> List[Reward]:
        return Reward.query.filter_by(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            status=RewardStatus.EARNED.value
        ).order_by(Reward.earned_at, Reward.id).all()

    def _match_by_free_item(self, order: Dict[str, Any], customer_id: str):
        earned = self._earned_rewards_for(customer_id)
        if not earned:
            return None

        for line in order.get('line_items', []) or []:
            base = _money(line.get('base_price_money')) or 0
            total = _money(line.get('total_money'))
            if base <= 0 or total != 0:
                continue
            offer = self.offers.get_offer_for_variation(line.get('catalog_object_id'))
            if offer is None:
                continue
            reward = next((r for r in earned if r.offer_id == offer.id), None)
            if reward:
                return reward, 'free_item', line
        return None

    def _match_by_discount_amount(self, order: Dict[str, Any], customer_id: str):
        earned = self._earned_rewards_for(customer_id)
        if not earned:
            return None

        ratio = current_app.config.get('REDEMPTION_DISCOUNT_MATCH_RATIO', 0.95)

        for reward in earned:
            variation_ids = set(self.offers.get_qualifying_variation_ids(reward.offer_id))
            lines = [
                li for li in order.get('line_items', []) or []
                if li.get('catalog_object_id') in variation_ids
            ]
            if not lines:
                continue

            discount_total = sum(_money(li.get('total_discount_money')) or 0 for li in lines)
            expected = db.session.query(func.max(PurchaseEvent.unit_price_cents)).filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.reward_id == reward.id,
                PurchaseEvent.quantity > 0
            ).scalar()

            if expected and discount_total >= ratio * expected:
                line = max(lines, key=lambda li: _money(li.get('total_discount_money')) or 0)
                return reward, 'discount_amount', line
        return None
