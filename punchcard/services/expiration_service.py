"""
Expiration Service for the frequent-buyer program.

Two daily sweeps per tenant:
- Window expiry: unlocked purchases whose window_end_date has passed stop
  counting. Pairs with a stale in_progress reward are recomputed.
- Earned reward expiry: an earned reward older than its offer's window
  whose locked purchases have all left their window is revoked.

Each (customer, offer) pair is committed on its own so one failure does
not hold back the rest.
"""
from datetime import datetime
from typing import Dict, Any
from flask import current_app
from sqlalchemy import exists, and_

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit import AuditAction, TriggeredBy
from ..utils.dates import today, subtract_months
from .audit_service import AuditService
from .reward_engine import RewardEngine

EXPIRED_REWARD_REASON = 'Expired - all locked purchases outside window'


class ExpirationService:
    """
    Usage:
        service = ExpirationService(tenant_id)
        service.process_expired_window_entries()
        service.process_expired_earned_rewards()
    """

    def __init__(self, tenant_id: int, reward_engine: RewardEngine = None):
        self.tenant_id = tenant_id
        self.audit = AuditService(tenant_id)
        self.engine = reward_engine or RewardEngine(tenant_id, self.audit)

    def process_expired_window_entries(self) -> Dict[str, Any]:
        """
        Recompute in_progress rewards that still count expired purchases.

        Returns:
            Dict with processed count and per-pair errors
        """
        as_of = today()
        results = {'processed': 0, 'errors': []}

        expired_unlocked = exists().where(and_(
            PurchaseEvent.tenant_id == Reward.tenant_id,
            PurchaseEvent.offer_id == Reward.offer_id,
            PurchaseEvent.customer_id == Reward.customer_id,
            PurchaseEvent.reward_id.is_(None),
            PurchaseEvent.window_end_date < as_of,
        ))
        pairs = db.session.query(Reward.offer_id, Reward.customer_id, Reward.current_quantity).filter(
            Reward.tenant_id == self.tenant_id,
            Reward.status == RewardStatus.IN_PROGRESS.value,
            Reward.current_quantity > 0,
            expired_unlocked
        ).all()

        for offer_id, customer_id, before in pairs:
            try:
                offer = db.session.get(Offer, offer_id)
                progress = self.engine.update_progress(offer, customer_id, triggered_by=TriggeredBy.EXPIRATION)

                self.audit.record(
                    AuditAction.WINDOW_EXPIRED,
                    customer_id=customer_id,
                    offer_id=offer_id,
                    reward_id=progress.reward_id,
                    old_quantity=before,
                    new_quantity=progress.current_quantity,
                    triggered_by=TriggeredBy.EXPIRATION,
                    details={'as_of': as_of.isoformat()}
                )
                db.session.commit()
                results['processed'] += 1

            except Exception as e:
                db.session.rollback()
                current_app.logger.error(
                    f"Window expiry failed for customer {customer_id} offer {offer_id}: {e}"
                )
                results['errors'].append({'offer_id': offer_id, 'customer_id': customer_id, 'error': str(e)})

        current_app.logger.info(
            f"Tenant {self.tenant_id}: window expiry processed {results['processed']} pairs"
        )
        return results

    def process_expired_earned_rewards(self) -> Dict[str, Any]:
        """
        Revoke earned rewards whose locked purchases have all expired.

        Only rewards earned more than window_months ago are considered.
        Released units are immediately re-evaluated, and since they are out
        of window they contribute nothing.

        Returns:
            Dict with processed count, revoked reward ids and errors
        """
        as_of = today()
        now = datetime.utcnow()
        results = {'processed': 0, 'revoked_reward_ids': [], 'errors': []}

        live_locked = exists().where(and_(
            PurchaseEvent.reward_id == Reward.id,
            PurchaseEvent.window_end_date >= as_of,
        ))
        candidates = db.session.query(Reward, Offer).join(
            Offer, Reward.offer_id == Offer.id
        ).filter(
            Reward.tenant_id == self.tenant_id,
            Reward.status == RewardStatus.EARNED.value,
            ~live_locked
        ).order_by(Reward.id).all()

        for reward, offer in candidates:
            if reward.earned_at is None or reward.earned_at.date() >= subtract_months(now, offer.window_months):
                continue

            try:
                locked = self.engine.lock_reward(reward.id)
                if locked is None or locked.status != RewardStatus.EARNED.value:
                    continue

                self.engine.revoke_reward(locked, EXPIRED_REWARD_REASON, triggered_by=TriggeredBy.EXPIRATION)
                self.engine.update_progress(offer, locked.customer_id, triggered_by=TriggeredBy.EXPIRATION)
                db.session.commit()

                results['processed'] += 1
                results['revoked_reward_ids'].append(locked.id)

            except Exception as e:
                db.session.rollback()
                current_app.logger.error(f"Expiring reward {reward.id} failed: {e}")
                results['errors'].append({'reward_id': reward.id, 'error': str(e)})

        current_app.logger.info(
            f"Tenant {self.tenant_id}: revoked {results['processed']} expired earned rewards"
        )
        return results
