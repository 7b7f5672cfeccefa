"""
Customer summary projection.

The summary row is a read model: it is recomputed from events and
rewards inside the caller's transaction and never adjusted in place.
"""
from typing import List
from sqlalchemy import func

from ..extensions import db
from ..models.purchase import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.summary import CustomerSummary


class SummaryService:

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def rebuild(self, customer_id: str, offer_id: int) -> CustomerSummary:
        """
        Recompute the summary for one (customer, offer) pair.

        Adds/updates the row in the session; the caller commits.
        """
        summary = CustomerSummary.query.filter_by(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            offer_id=offer_id
        ).first()
        if summary is None:
            summary = CustomerSummary(
                tenant_id=self.tenant_id,
                customer_id=customer_id,
                offer_id=offer_id
            )
            db.session.add(summary)

        rewards = Reward.query.filter_by(
            tenant_id=self.tenant_id,
            customer_id=customer_id,
            offer_id=offer_id
        ).order_by(Reward.id).all()

        in_progress = next((r for r in rewards if r.status == RewardStatus.IN_PROGRESS.value), None)
        earned = [r for r in rewards if r.status == RewardStatus.EARNED.value]
        redeemed = [r for r in rewards if r.status == RewardStatus.REDEEMED.value]

        if in_progress:
            summary.current_quantity = in_progress.current_quantity
            summary.required_quantity = in_progress.required_quantity
            summary.window_start_date = in_progress.window_start_date
            summary.window_end_date = in_progress.window_end_date
        else:
            summary.current_quantity = 0
            summary.required_quantity = rewards[-1].required_quantity if rewards else None
            summary.window_start_date = None
            summary.window_end_date = None

        summary.has_earned_reward = bool(earned)
        summary.earned_reward_id = earned[0].id if earned else None
        summary.total_rewards_earned = len(earned) + len(redeemed)
        summary.total_rewards_redeemed = len(redeemed)

        # Split children are counted through their parent
        lifetime, last_purchase = db.session.query(
            func.coalesce(func.sum(PurchaseEvent.quantity), 0),
            func.max(PurchaseEvent.purchased_at)
        ).filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.customer_id == customer_id,
            PurchaseEvent.offer_id == offer_id,
            PurchaseEvent.is_refund.is_(False),
            PurchaseEvent.split_from_event_id.is_(None),
        ).one()

        refunded = db.session.query(
            func.coalesce(func.sum(PurchaseEvent.quantity), 0)
        ).filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.customer_id == customer_id,
            PurchaseEvent.offer_id == offer_id,
            PurchaseEvent.is_refund.is_(True),
        ).scalar()

        summary.total_lifetime_purchases = max(int(lifetime) + int(refunded), 0)
        summary.last_purchase_at = last_purchase

        return summary

    def get_customer_summaries(self, customer_id: str) -> List[CustomerSummary]:
        return CustomerSummary.query.filter_by(
            tenant_id=self.tenant_id,
            customer_id=customer_id
        ).order_by(CustomerSummary.offer_id).all()

    def rebuild_all(self) -> int:
        """
        Rebuild every summary for the tenant from the event ledger.

        Returns:
            Number of (customer, offer) pairs rebuilt
        """
        pairs = db.session.query(
            PurchaseEvent.customer_id, PurchaseEvent.offer_id
        ).filter(
            PurchaseEvent.tenant_id == self.tenant_id
        ).distinct().all()

        for customer_id, offer_id in pairs:
            self.rebuild(customer_id, offer_id)

        return len(pairs)

