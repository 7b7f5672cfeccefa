"""
Frequent-buyer offer models.

An offer is one brand + size group ("buy 12 bags of Acme 5kg, get one
free"). Qualifying variations link POS catalog variations to the offer.
"""
from datetime import datetime
from ..extensions import db


class Offer(db.Model):
    """
    Buy-N-get-one-free program for a brand and size group.

    Offers are soft-deactivated, never deleted, so historic purchase
    events and rewards keep a valid reference.
    """
    __tablename__ = 'loyalty_offers'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'brand_name', 'size_group', name='uq_offer_brand_size'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    brand_name = db.Column(db.String(255), nullable=False)
    size_group = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)

    required_quantity = db.Column(db.Integer, nullable=False)
    reward_quantity = db.Column(db.Integer, nullable=False, default=1)  # Always one free unit
    window_months = db.Column(db.Integer, nullable=False, default=12)

    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variations = db.relationship('QualifyingVariation', backref='offer', lazy='dynamic')

    def __repr__(self):
        return f'<Offer {self.id}: {self.brand_name} {self.size_group} x{self.required_quantity}>'

    def to_dict(self, include_variations: bool = False):
        data = {
            'id': self.id,
            'name': self.name,
            'brand_name': self.brand_name,
            'size_group': self.size_group,
            'description': self.description,
            'required_quantity': self.required_quantity,
            'reward_quantity': self.reward_quantity,
            'window_months': self.window_months,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if include_variations:
            data['variations'] = [
                v.to_dict() for v in self.variations.filter_by(is_active=True).all()
            ]
        return data


class QualifyingVariation(db.Model):
    """
    POS catalog variation that counts toward an offer.

    A variation belongs to at most one active offer. The conflict check
    happens at assignment time, not on every purchase.
    """
    __tablename__ = 'loyalty_qualifying_variations'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'offer_id', 'variation_id', name='uq_offer_variation'),
        db.Index('ix_qualifying_variation_lookup', 'tenant_id', 'variation_id', 'is_active'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)

    variation_id = db.Column(db.String(64), nullable=False)
    item_id = db.Column(db.String(64))
    item_name = db.Column(db.String(255))
    variation_name = db.Column(db.String(255))
    sku = db.Column(db.String(100))

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<QualifyingVariation {self.variation_id} -> offer {self.offer_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'variation_id': self.variation_id,
            'item_id': self.item_id,
            'item_name': self.item_name,
            'variation_name': self.variation_name,
            'sku': self.sku,
            'is_active': self.is_active
        }
