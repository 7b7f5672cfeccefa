"""
Append-only audit trail for loyalty state changes.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class AuditAction(str, Enum):
    PURCHASE_RECORDED = 'PURCHASE_RECORDED'
    REFUND_PROCESSED = 'REFUND_PROCESSED'
    WINDOW_EXPIRED = 'WINDOW_EXPIRED'
    REWARD_PROGRESS_UPDATED = 'REWARD_PROGRESS_UPDATED'
    REWARD_EARNED = 'REWARD_EARNED'
    REWARD_REDEEMED = 'REWARD_REDEEMED'
    REWARD_REVOKED = 'REWARD_REVOKED'
    OFFER_CREATED = 'OFFER_CREATED'
    OFFER_UPDATED = 'OFFER_UPDATED'
    OFFER_DEACTIVATED = 'OFFER_DEACTIVATED'
    VARIATION_ADDED = 'VARIATION_ADDED'
    VARIATION_REMOVED = 'VARIATION_REMOVED'


class TriggeredBy(str, Enum):
    SYSTEM = 'SYSTEM'
    WEBHOOK = 'WEBHOOK'
    ADMIN = 'ADMIN'
    EXPIRATION = 'EXPIRATION'


class AuditLog(db.Model):
    """
    One row per loyalty state change. Never updated or deleted.
    """
    __tablename__ = 'loyalty_audit_logs'
    __table_args__ = (
        db.Index('ix_audit_tenant_customer', 'tenant_id', 'customer_id'),
        db.Index('ix_audit_tenant_reward', 'tenant_id', 'reward_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    action = db.Column(db.String(50), nullable=False)  # AuditAction

    offer_id = db.Column(db.Integer)
    reward_id = db.Column(db.Integer)
    purchase_event_id = db.Column(db.Integer)
    redemption_id = db.Column(db.Integer)
    customer_id = db.Column(db.String(64))
    order_id = db.Column(db.String(64))

    old_state = db.Column(db.String(20))
    new_state = db.Column(db.String(20))
    old_quantity = db.Column(db.Integer)
    new_quantity = db.Column(db.Integer)

    triggered_by = db.Column(db.String(20), default=TriggeredBy.SYSTEM.value)
    actor = db.Column(db.String(100))
    details = db.Column(db.JSON)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<AuditLog {self.id}: {self.action}>'

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'offer_id': self.offer_id,
            'reward_id': self.reward_id,
            'purchase_event_id': self.purchase_event_id,
            'redemption_id': self.redemption_id,
            'customer_id': self.customer_id,
            'order_id': self.order_id,
            'old_state': self.old_state,
            'new_state': self.new_state,
            'old_quantity': self.old_quantity,
            'new_quantity': self.new_quantity,
            'triggered_by': self.triggered_by,
            'actor': self.actor,
            'details': self.details,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
