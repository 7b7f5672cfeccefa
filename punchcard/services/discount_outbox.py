"""
Discount Outbox for reward side effects.

Reward transitions never call Square directly. They enqueue a
DiscountTask in the same transaction; drain() later performs the POS
calls, records the resulting object ids on the reward, and retries
failures up to DISCOUNT_OUTBOX_MAX_ATTEMPTS.
"""
from datetime import datetime
from typing import Dict, Any, Callable
from flask import current_app

from ..extensions import db
from ..models.discount_task import DiscountTask, DiscountAction, DiscountTaskStatus
from ..models.offer import QualifyingVariation
from ..models.reward import Reward, RewardStatus
from .square_client import SquareClient


class DiscountOutbox:
    """
    Usage:
        outbox = DiscountOutbox(tenant_id)
        outbox.enqueue_issue(reward)        # inside the reward transaction
        ...
        DiscountOutbox().drain()            # background job, all tenants
    """

    def __init__(self, tenant_id: int = None, client_factory: Callable[[int], Any] = None):
        """
        Args:
            tenant_id: Restrict enqueue/drain to one tenant (None = all on drain)
            client_factory: Callable tenant_id -> Square client, defaults to SquareClient
        """
        self.tenant_id = tenant_id
        self.client_factory = client_factory or SquareClient

    # ==================== Enqueue ====================

    def enqueue_issue(self, reward: Reward) -> DiscountTask:
        """Queue discount issuance for a newly earned reward (no commit)."""
        task = DiscountTask(
            tenant_id=reward.tenant_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            offer_id=reward.offer_id,
            action=DiscountAction.ISSUE.value,
            status=DiscountTaskStatus.PENDING.value,
        )
        db.session.add(task)
        return task

    def enqueue_cleanup(self, reward: Reward, reason: str = None) -> DiscountTask:
        """
        Queue removal of a reward's discount objects (no commit).

        The object ids are copied into the payload so cleanup still works
        after the reward row's references are cleared.
        """
        task = DiscountTask(
            tenant_id=reward.tenant_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            offer_id=reward.offer_id,
            action=DiscountAction.CLEANUP.value,
            status=DiscountTaskStatus.PENDING.value,
            payload={
                'group_id': reward.group_id,
                'discount_id': reward.discount_id,
                'product_set_id': reward.product_set_id,
                'pricing_rule_id': reward.pricing_rule_id,
                'reason': reason,
            },
        )
        db.session.add(task)
        return task

    # ==================== Drain ====================

    def drain(self, limit: int = None) -> Dict[str, Any]:
        """
        Process pending discount tasks.

        Each task commits on its own. Failures are recorded on the task
        and logged, never raised.

        Returns:
            Dict with processed/completed/skipped/failed/retrying counts
        """
        config = current_app.config
        limit = limit or config.get('DISCOUNT_OUTBOX_BATCH_SIZE', 50)
        max_attempts = config.get('DISCOUNT_OUTBOX_MAX_ATTEMPTS', 5)

        query = DiscountTask.query.filter_by(status=DiscountTaskStatus.PENDING.value)
        if self.tenant_id:
            query = query.filter_by(tenant_id=self.tenant_id)
        tasks = query.order_by(DiscountTask.created_at, DiscountTask.id).limit(limit).all()

        stats = {'processed': 0, 'completed': 0, 'skipped': 0, 'failed': 0, 'retrying': 0}
        clients = {}

        for task in tasks:
            stats['processed'] += 1
            task.attempts = (task.attempts or 0) + 1

            try:
                client = clients.get(task.tenant_id)
                if client is None:
                    client = self.client_factory(task.tenant_id)
                    clients[task.tenant_id] = client

                if task.action == DiscountAction.ISSUE.value:
                    outcome = self._issue(task, client)
                else:
                    outcome = self._cleanup(task, client)

                task.status = outcome
                task.processed_at = datetime.utcnow()
                task.last_error = None
                stats['completed' if outcome == DiscountTaskStatus.COMPLETED.value else 'skipped'] += 1
                db.session.commit()

            except Exception as e:
                db.session.rollback()
                task = db.session.get(DiscountTask, task.id)
                task.attempts = (task.attempts or 0) + 1
                task.last_error = str(e)[:2000]
                if task.attempts >= max_attempts:
                    task.status = DiscountTaskStatus.FAILED.value
                    task.processed_at = datetime.utcnow()
                    stats['failed'] += 1
                    current_app.logger.error(
                        f"Discount task {task.id} ({task.action}) for reward {task.reward_id} "
                        f"failed permanently after {task.attempts} attempts: {e}"
                    )
                else:
                    stats['retrying'] += 1
                    current_app.logger.warning(
                        f"Discount task {task.id} ({task.action}) for reward {task.reward_id} "
                        f"attempt {task.attempts} failed: {e}"
                    )
                db.session.commit()

        if stats['processed']:
            current_app.logger.info(
                f"Discount outbox drained: {stats['completed']} completed, {stats['skipped']} skipped, "
                f"{stats['retrying']} retrying, {stats['failed']} failed"
            )
        return stats

    def _issue(self, task: DiscountTask, client) -> str:
        reward = Reward.query.filter_by(id=task.reward_id, tenant_id=task.tenant_id).first()
        if reward is None or reward.status != RewardStatus.EARNED.value:
            # Redeemed or revoked before the task ran
            return DiscountTaskStatus.SKIPPED.value
        if reward.has_discount:
            return DiscountTaskStatus.COMPLETED.value

        variation_ids = [
            row.variation_id for row in QualifyingVariation.query.filter_by(
                tenant_id=task.tenant_id, offer_id=reward.offer_id, is_active=True
            ).all()
        ]
        if not variation_ids:
            current_app.logger.warning(
                f"Reward {reward.id}: offer {reward.offer_id} has no active variations, discount not issued"
            )
            return DiscountTaskStatus.SKIPPED.value

        ids = client.issue_reward_discount(
            reward_id=reward.id,
            customer_id=reward.customer_id,
            offer_name=reward.offer.name if reward.offer else '',
            variation_ids=variation_ids
        )

        reward.group_id = ids.get('group_id')
        reward.discount_id = ids.get('discount_id')
        reward.product_set_id = ids.get('product_set_id')
        reward.pricing_rule_id = ids.get('pricing_rule_id')
        reward.discount_synced_at = datetime.utcnow()

        current_app.logger.info(
            f"Reward {reward.id}: discount issued for customer {reward.customer_id} "
            f"(pricing rule {reward.pricing_rule_id})"
        )
        return DiscountTaskStatus.COMPLETED.value

    def _cleanup(self, task: DiscountTask, client) -> str:
        payload = task.payload or {}
        reward = Reward.query.filter_by(id=task.reward_id, tenant_id=task.tenant_id).first()

        ids = {
            key: payload.get(key) or (getattr(reward, key) if reward else None)
            for key in ('group_id', 'discount_id', 'product_set_id', 'pricing_rule_id')
        }
        if not any(ids.values()):
            return DiscountTaskStatus.SKIPPED.value

        client.cleanup_reward_discount(customer_id=task.customer_id, **ids)

        if reward is not None:
            reward.group_id = None
            reward.discount_id = None
            reward.product_set_id = None
            reward.pricing_rule_id = None
            reward.discount_synced_at = datetime.utcnow()

        current_app.logger.info(f"Reward {task.reward_id}: discount objects removed")
        return DiscountTaskStatus.COMPLETED.value

    def pending_count(self) -> int:
        query = DiscountTask.query.filter_by(status=DiscountTaskStatus.PENDING.value)
        if self.tenant_id:
            query = query.filter_by(tenant_id=self.tenant_id)
        return query.count()
