"""
Purchase event ledger for frequent-buyer accrual.
"""
from datetime import datetime
from ..extensions import db


class PurchaseEvent(db.Model):
    """
    Immutable record of a qualifying purchase or refund.

    Quantity is signed: refunds are negative rows with is_refund set.
    The only mutable column is reward_id, set while the units are locked
    into a reward and cleared again if that reward is revoked.

    A row that has been split (see RewardEngine) is superseded by its
    children, which reference it through split_from_event_id. Superseded
    rows never count toward progress.
    """
    __tablename__ = 'loyalty_purchase_events'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_purchase_event_idempotency'),
        db.Index('ix_purchase_events_pair', 'tenant_id', 'offer_id', 'customer_id'),
        db.Index('ix_purchase_events_order', 'tenant_id', 'order_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)
    customer_id = db.Column(db.String(64), nullable=False)

    # Source order
    order_id = db.Column(db.String(64), nullable=False)
    location_id = db.Column(db.String(64))
    variation_id = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)  # Negative for refunds
    unit_price_cents = db.Column(db.Integer)
    purchased_at = db.Column(db.DateTime, nullable=False)

    # Rolling window (derived, recomputed on every mutation)
    window_start_date = db.Column(db.Date)
    window_end_date = db.Column(db.Date, nullable=False)

    is_refund = db.Column(db.Boolean, default=False, nullable=False)
    original_event_id = db.Column(db.Integer, db.ForeignKey('loyalty_purchase_events.id'))
    split_from_event_id = db.Column(db.Integer, db.ForeignKey('loyalty_purchase_events.id'))

    # Set while units are locked into a reward
    reward_id = db.Column(db.Integer, db.ForeignKey('loyalty_rewards.id'), index=True)

    idempotency_key = db.Column(db.String(255), nullable=False)

    # Order metadata
    receipt_url = db.Column(db.Text)
    customer_source = db.Column(db.String(30))  # order, tender, loyalty_api, reward_discount, fulfillment
    payment_type = db.Column(db.String(30))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<PurchaseEvent {self.id}: {self.quantity:+d} x {self.variation_id} for {self.customer_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'customer_id': self.customer_id,
            'order_id': self.order_id,
            'variation_id': self.variation_id,
            'quantity': self.quantity,
            'unit_price_cents': self.unit_price_cents,
            'purchased_at': self.purchased_at.isoformat() if self.purchased_at else None,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'is_refund': self.is_refund,
            'original_event_id': self.original_event_id,
            'split_from_event_id': self.split_from_event_id,
            'reward_id': self.reward_id,
            'receipt_url': self.receipt_url,
            'customer_source': self.customer_source,
            'payment_type': self.payment_type
        }
