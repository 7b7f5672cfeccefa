"""
Customer progress projection.
"""
from datetime import datetime
from ..extensions import db


class CustomerSummary(db.Model):
    """
    Denormalized per (customer, offer) view of loyalty progress.

    Rebuilt from events and rewards after every mutation; never
    patched incrementally.
    """
    __tablename__ = 'loyalty_customer_summaries'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'customer_id', 'offer_id', name='uq_customer_summary'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    customer_id = db.Column(db.String(64), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)

    current_quantity = db.Column(db.Integer, default=0)
    required_quantity = db.Column(db.Integer)
    window_start_date = db.Column(db.Date)
    window_end_date = db.Column(db.Date)

    has_earned_reward = db.Column(db.Boolean, default=False)
    earned_reward_id = db.Column(db.Integer)

    total_lifetime_purchases = db.Column(db.Integer, default=0)
    total_rewards_earned = db.Column(db.Integer, default=0)
    total_rewards_redeemed = db.Column(db.Integer, default=0)
    last_purchase_at = db.Column(db.DateTime)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<CustomerSummary {self.customer_id} offer {self.offer_id}: {self.current_quantity}/{self.required_quantity}>'

    def to_dict(self):
        return {
            'customer_id': self.customer_id,
            'offer_id': self.offer_id,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'has_earned_reward': self.has_earned_reward,
            'earned_reward_id': self.earned_reward_id,
            'total_lifetime_purchases': self.total_lifetime_purchases,
            'total_rewards_earned': self.total_rewards_earned,
            'total_rewards_redeemed': self.total_rewards_redeemed,
            'last_purchase_at': self.last_purchase_at.isoformat() if self.last_purchase_at else None
        }
