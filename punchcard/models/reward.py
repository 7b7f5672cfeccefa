"""
Reward state machine and redemption models.

Reward lifecycle:
    in_progress -> earned -> redeemed
                      \\-> revoked
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import text
from ..extensions import db


class RewardStatus(str, Enum):
    """Reward lifecycle states."""
    IN_PROGRESS = 'in_progress'
    EARNED = 'earned'
    REDEEMED = 'redeemed'
    REVOKED = 'revoked'


class RedemptionType(str, Enum):
    """How a reward was consumed."""
    ORDER_DISCOUNT = 'order_discount'    # Issued POS discount applied at checkout
    MANUAL_ADMIN = 'manual_admin'        # Staff redeemed it from the admin API
    AUTO_DETECTED = 'auto_detected'      # Inferred from a free item on an order


class Reward(db.Model):
    """
    One reward cycle for a (customer, offer) pair.

    At most one in_progress row exists per pair, enforced by a partial
    unique index. Rows are never deleted; revoked and redeemed rows stay
    as history.
    """
    __tablename__ = 'loyalty_rewards'
    __table_args__ = (
        db.Index(
            'uq_reward_one_in_progress',
            'tenant_id', 'offer_id', 'customer_id',
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
        db.Index('ix_rewards_pair_status', 'tenant_id', 'offer_id', 'customer_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)
    customer_id = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(20), nullable=False, default=RewardStatus.IN_PROGRESS.value)
    current_quantity = db.Column(db.Integer, nullable=False, default=0)
    required_quantity = db.Column(db.Integer, nullable=False)  # Copied from offer at creation

    window_start_date = db.Column(db.Date)
    window_end_date = db.Column(db.Date)

    earned_at = db.Column(db.DateTime)
    redeemed_at = db.Column(db.DateTime)
    revoked_at = db.Column(db.DateTime)
    revocation_reason = db.Column(db.String(255))

    # Plain integer, redemptions already reference rewards
    redemption_id = db.Column(db.Integer)
    redemption_order_id = db.Column(db.String(64))

    # POS discount objects issued for this reward
    discount_id = db.Column(db.String(64))
    group_id = db.Column(db.String(64))
    product_set_id = db.Column(db.String(64))
    pricing_rule_id = db.Column(db.String(64))
    discount_synced_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    offer = db.relationship('Offer', backref=db.backref('rewards', lazy='dynamic'))
    locked_events = db.relationship('PurchaseEvent', backref='reward', lazy='dynamic')

    @property
    def has_discount(self) -> bool:
        return bool(self.discount_id or self.group_id or self.pricing_rule_id)

    def __repr__(self):
        return f'<Reward {self.id}: {self.customer_id} offer {self.offer_id} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'customer_id': self.customer_id,
            'status': self.status,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'earned_at': self.earned_at.isoformat() if self.earned_at else None,
            'redeemed_at': self.redeemed_at.isoformat() if self.redeemed_at else None,
            'revoked_at': self.revoked_at.isoformat() if self.revoked_at else None,
            'revocation_reason': self.revocation_reason,
            'redemption_id': self.redemption_id,
            'redemption_order_id': self.redemption_order_id,
            'discount_id': self.discount_id,
            'pricing_rule_id': self.pricing_rule_id,
            'discount_synced_at': self.discount_synced_at.isoformat() if self.discount_synced_at else None
        }


class Redemption(db.Model):
    """
    Immutable record of a reward being consumed.
    """
    __tablename__ = 'loyalty_redemptions'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    reward_id = db.Column(db.Integer, db.ForeignKey('loyalty_rewards.id'), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)
    customer_id = db.Column(db.String(64), nullable=False)

    redemption_type = db.Column(db.String(30), nullable=False)  # RedemptionType
    order_id = db.Column(db.String(64))
    location_id = db.Column(db.String(64))

    redeemed_variation_id = db.Column(db.String(64))
    redeemed_item_name = db.Column(db.String(255))
    redeemed_variation_name = db.Column(db.String(255))
    redeemed_value_cents = db.Column(db.Integer)

    redeemed_by = db.Column(db.String(100))  # Admin user or 'system'
    admin_notes = db.Column(db.Text)
    redeemed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f'<Redemption {self.id}: reward {self.reward_id} ({self.redemption_type})>'

    def to_dict(self):
        return {
            'id': self.id,
            'reward_id': self.reward_id,
            'offer_id': self.offer_id,
            'customer_id': self.customer_id,
            'redemption_type': self.redemption_type,
            'order_id': self.order_id,
            'location_id': self.location_id,
            'redeemed_variation_id': self.redeemed_variation_id,
            'redeemed_item_name': self.redeemed_item_name,
            'redeemed_variation_name': self.redeemed_variation_name,
            'redeemed_value_cents': self.redeemed_value_cents,
            'redeemed_by': self.redeemed_by,
            'admin_notes': self.admin_notes,
            'redeemed_at': self.redeemed_at.isoformat() if self.redeemed_at else None
        }
