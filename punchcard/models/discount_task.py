"""
Outbox for POS discount side effects.

Rows are written inside the loyalty transaction that caused them and
drained later by DiscountOutbox.drain(), so a POS outage never fails or
blocks a reward transition.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class DiscountAction(str, Enum):
    ISSUE = 'issue'
    CLEANUP = 'cleanup'


class DiscountTaskStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'      # Gave up after max attempts
    SKIPPED = 'skipped'    # Reward no longer in a state that needs it


class DiscountTask(db.Model):
    __tablename__ = 'loyalty_discount_tasks'
    __table_args__ = (
        db.Index('ix_discount_tasks_status', 'status', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    reward_id = db.Column(db.Integer, db.ForeignKey('loyalty_rewards.id'), nullable=False)
    customer_id = db.Column(db.String(64), nullable=False)
    offer_id = db.Column(db.Integer, nullable=False)

    action = db.Column(db.String(20), nullable=False)  # DiscountAction
    status = db.Column(db.String(20), nullable=False, default=DiscountTaskStatus.PENDING.value)
    payload = db.Column(db.JSON)

    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<DiscountTask {self.id}: {self.action} reward {self.reward_id} ({self.status})>'

    def to_dict(self):
        return {
            'id': self.id,
            'reward_id': self.reward_id,
            'customer_id': self.customer_id,
            'offer_id': self.offer_id,
            'action': self.action,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None
        }
