"""
Reward Engine for the frequent-buyer program.

Owns the per (customer, offer) reward lifecycle:

    in_progress -> earned -> redeemed
                      \\-> revoked

All methods run inside the caller's transaction and never commit. The
in_progress (or earned) Reward row is locked with SELECT ... FOR UPDATE
for the duration of a recompute so that two concurrent orders cannot both
observe N-1 units, or both lock the same events.

Counting rules:
- A unit counts toward progress while its event is unlocked
  (reward_id IS NULL), inside its window (window_end_date >= today) and
  not superseded by a split.
- Earning locks exactly required_quantity units, oldest purchase first
  (ties by insertion order). An event that would overshoot is split into
  a locked child and an unlocked child carrying the excess.
"""
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Optional, List, Tuple
from flask import current_app
from sqlalchemy import func, exists
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit import AuditAction, TriggeredBy
from ..utils.dates import today
from ..utils.exceptions import InvalidStatusTransitionError
from .audit_service import AuditService
from .summary_service import SummaryService
from .discount_outbox import DiscountOutbox

NO_PROGRESS = 'no_progress'


@dataclass
class RewardProgress:
    """Progress snapshot after a recompute."""
    reward_id: Optional[int]
    status: str
    current_quantity: int
    required_quantity: int
    earned_reward_ids: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            'reward_id': self.reward_id,
            'status': self.status,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'earned_reward_ids': list(self.earned_reward_ids),
        }


def not_superseded():
    """Filter clause excluding events that were split into children."""
    child = aliased(PurchaseEvent)
    return ~exists().where(child.split_from_event_id == PurchaseEvent.id)


class RewardEngine:
    """
    Usage:
        engine = RewardEngine(tenant_id)
        progress = engine.update_progress(offer, customer_id)
        db.session.commit()
    """

    def __init__(self, tenant_id: int, audit_service: AuditService = None,
                 summary_service: SummaryService = None, outbox: DiscountOutbox = None):
        self.tenant_id = tenant_id
        self.audit = audit_service or AuditService(tenant_id)
        self.summaries = summary_service or SummaryService(tenant_id)
        self.outbox = outbox or DiscountOutbox(tenant_id)

    # ==================== Queries ====================

    def contributing_events_query(self, offer_id: int, customer_id: str, as_of: date = None):
        """Unlocked, unexpired, non-superseded events for the pair."""
        return PurchaseEvent.query.filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.offer_id == offer_id,
            PurchaseEvent.customer_id == customer_id,
            PurchaseEvent.reward_id.is_(None),
            PurchaseEvent.window_end_date >= (as_of or today()),
            not_superseded(),
        )

    def current_quantity(self, offer_id: int, customer_id: str) -> int:
        total = self.contributing_events_query(offer_id, customer_id).with_entities(
            func.coalesce(func.sum(PurchaseEvent.quantity), 0)
        ).scalar()
        return int(total or 0)

    def earliest_open_purchase(self, offer_id: int, customer_id: str) -> Optional[datetime]:
        """Oldest purchased_at among positive contributing events."""
        return self.contributing_events_query(offer_id, customer_id).filter(
            PurchaseEvent.quantity > 0
        ).with_entities(func.min(PurchaseEvent.purchased_at)).scalar()

    def window_bounds(self, offer_id: int, customer_id: str) -> Tuple[Optional[date], Optional[date]]:
        return self.contributing_events_query(offer_id, customer_id).with_entities(
            func.min(PurchaseEvent.window_start_date),
            func.max(PurchaseEvent.window_end_date)
        ).one()

    def lock_in_progress_reward(self, offer_id: int, customer_id: str) -> Optional[Reward]:
        return Reward.query.filter_by(
            tenant_id=self.tenant_id,
            offer_id=offer_id,
            customer_id=customer_id,
            status=RewardStatus.IN_PROGRESS.value
        ).with_for_update().first()

    def lock_reward(self, reward_id: int) -> Optional[Reward]:
        return Reward.query.filter_by(
            id=reward_id,
            tenant_id=self.tenant_id
        ).with_for_update().first()

    def locked_quantity(self, reward_id: int) -> int:
        """Sum of quantity over events locked to a reward, refunds included."""
        total = db.session.query(
            func.coalesce(func.sum(PurchaseEvent.quantity), 0)
        ).filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.reward_id == reward_id,
            not_superseded(),
        ).scalar()
        return int(total or 0)

    # ==================== State machine ====================

    def update_progress(
        self,
        offer: Offer,
        customer_id: str,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
        order_id: str = None
    ) -> RewardProgress:
        """
        Recompute progress for (customer, offer) and apply transitions.

        Creates the in_progress reward on first contribution, earns it
        (possibly several times over) once the threshold is met, and
        rebuilds the customer summary.

        Args:
            offer: Offer being accrued
            customer_id: POS customer id
            triggered_by: Audit source of the recompute
            order_id: Order that caused the recompute, for the audit trail

        Returns:
            RewardProgress for the reward that is in progress afterwards
            (or the last earned one when nothing remains)
        """
        reward = self.lock_in_progress_reward(offer.id, customer_id)
        current = self.current_quantity(offer.id, customer_id)
        earned_ids = []
        last_earned = None

        if reward is None:
            if current <= 0:
                self.summaries.rebuild(customer_id, offer.id)
                return RewardProgress(None, NO_PROGRESS, max(current, 0), offer.required_quantity)
            reward = self._open_reward(offer, customer_id)

        self._apply_quantity(reward, current, triggered_by, order_id)

        while reward.current_quantity >= reward.required_quantity:
            self._earn(reward, triggered_by, order_id)
            earned_ids.append(reward.id)
            last_earned = reward

            # Rollover: units beyond the threshold start the next cycle
            remaining = self.current_quantity(offer.id, customer_id)
            if remaining <= 0:
                reward = None
                break
            reward = self._open_reward(offer, customer_id)
            self._apply_quantity(reward, remaining, triggered_by, order_id)

        self.summaries.rebuild(customer_id, offer.id)

        if reward is None:
            reward = last_earned

        return RewardProgress(
            reward_id=reward.id,
            status=reward.status,
            current_quantity=reward.current_quantity,
            required_quantity=reward.required_quantity,
            earned_reward_ids=earned_ids
        )

    def revoke_reward(
        self,
        reward: Reward,
        reason: str,
        triggered_by: TriggeredBy = TriggeredBy.SYSTEM,
        order_id: str = None,
        actor: str = None
    ) -> Reward:
        """
        Revoke an earned reward and release its locked units.

        Every event tied to the reward, refunds included, is unlocked so
        the next recompute counts it again if still in window. A cleanup
        task is queued when a POS discount was already issued.
        """
        if reward.status != RewardStatus.EARNED.value:
            raise InvalidStatusTransitionError('Reward', reward.status, RewardStatus.REVOKED.value)

        locked = PurchaseEvent.query.filter_by(
            tenant_id=self.tenant_id,
            reward_id=reward.id
        ).all()
        for event in locked:
            event.reward_id = None

        old_quantity = reward.current_quantity
        reward.status = RewardStatus.REVOKED.value
        reward.revoked_at = datetime.utcnow()
        reward.revocation_reason = reason[:255] if reason else None
        db.session.flush()

        self.audit.record(
            AuditAction.REWARD_REVOKED,
            customer_id=reward.customer_id,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            order_id=order_id,
            old_state=RewardStatus.EARNED.value,
            new_state=RewardStatus.REVOKED.value,
            old_quantity=old_quantity,
            new_quantity=sum(e.quantity for e in locked),
            triggered_by=triggered_by,
            actor=actor,
            details={'reason': reason, 'unlocked_events': len(locked)}
        )

        if reward.has_discount:
            self.outbox.enqueue_cleanup(reward, reason='revoked')

        current_app.logger.info(
            f"Reward {reward.id} revoked for customer {reward.customer_id}: {reason}"
        )
        return reward
    # ==================== Internals ====================

    def _open_reward(self, offer: Offer, customer_id: str) -> Reward:
        reward = Reward(
            tenant_id=self.tenant_id,
            offer_id=offer.id,
            customer_id=customer_id,
            status=RewardStatus.IN_PROGRESS.value,
            current_quantity=0,
            required_quantity=offer.required_quantity
        )
        db.session.add(reward)
        db.session.flush()
        return reward

    def _apply_quantity(self, reward: Reward, current: int, triggered_by, order_id: str) -> None:
        old_quantity = reward.current_quantity or 0
        reward.current_quantity = max(current, 0)
        reward.window_start_date, reward.window_end_date = self.window_bounds(
            reward.offer_id, reward.customer_id
        )

        if reward.current_quantity != old_quantity:
            self.audit.record(
                AuditAction.REWARD_PROGRESS_UPDATED,
                customer_id=reward.customer_id,
                offer_id=reward.offer_id,
                reward_id=reward.id,
                order_id=order_id,
                old_state=reward.status,
                new_state=reward.status,
                old_quantity=old_quantity,
                new_quantity=reward.current_quantity,
                triggered_by=triggered_by
            )

    def _earn(self, reward: Reward, triggered_by, order_id: str) -> None:
        """Lock required_quantity units oldest-first and mark the reward earned."""
        needed = reward.required_quantity
        candidates = self.contributing_events_query(reward.offer_id, reward.customer_id).filter(
            PurchaseEvent.quantity > 0
        ).order_by(PurchaseEvent.purchased_at, PurchaseEvent.id).all()

        locked_events = []
        for event in candidates:
            if needed <= 0:
                break
            if event.quantity <= needed:
                event.reward_id = reward.id
                needed -= event.quantity
                locked_events.append(event)
            else:
                locked_child = self._split_event(event, needed, reward.id)
                locked_events.append(locked_child)
                needed = 0

        old_quantity = reward.current_quantity
        reward.status = RewardStatus.EARNED.value
        reward.earned_at = datetime.utcnow()
        reward.current_quantity = reward.required_quantity
        reward.window_start_date = min(e.window_start_date or e.purchased_at.date() for e in locked_events)
        reward.window_end_date = max(e.window_end_date for e in locked_events)
        db.session.flush()

        self.audit.record(
            AuditAction.REWARD_EARNED,
            customer_id=reward.customer_id,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            order_id=order_id,
            old_state=RewardStatus.IN_PROGRESS.value,
            new_state=RewardStatus.EARNED.value,
            old_quantity=old_quantity,
            new_quantity=reward.current_quantity,
            triggered_by=triggered_by,
            details={'locked_event_ids': [e.id for e in locked_events]}
        )

        self.outbox.enqueue_issue(reward)

        current_app.logger.info(
            f"Reward {reward.id} earned by customer {reward.customer_id} "
            f"for offer {reward.offer_id} ({reward.current_quantity} units locked)"
        )

    def _split_event(self, event: PurchaseEvent, locked_quantity: int, reward_id: int) -> PurchaseEvent:
        """
        Split an event that straddles the threshold.

        The parent stays untouched and becomes superseded; two children
        carry the locked and excess units.
        """
        common = dict(
            tenant_id=event.tenant_id,
            offer_id=event.offer_id,
            customer_id=event.customer_id,
            order_id=event.order_id,
            location_id=event.location_id,
            variation_id=event.variation_id,
            unit_price_cents=event.unit_price_cents,
            purchased_at=event.purchased_at,
            window_start_date=event.window_start_date,
            window_end_date=event.window_end_date,
            is_refund=False,
            split_from_event_id=event.id,
            receipt_url=event.receipt_url,
            customer_source=event.customer_source,
            payment_type=event.payment_type,
        )

        locked_child = PurchaseEvent(
            quantity=locked_quantity,
            reward_id=reward_id,
            idempotency_key=f'{event.idempotency_key}:split_locked:{reward_id}',
            **common
        )
        excess_child = PurchaseEvent(
            quantity=event.quantity - locked_quantity,
            reward_id=None,
            idempotency_key=f'{event.idempotency_key}:split_excess:{reward_id}',
            **common
        )
        db.session.add(locked_child)
        db.session.add(excess_child)
        db.session.flush()
        return locked_child
