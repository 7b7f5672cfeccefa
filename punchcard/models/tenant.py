"""
Tenant model for multi-tenant loyalty programs.
"""
from datetime import datetime
from ..extensions import db


class Tenant(db.Model):
    """
    Merchant using the loyalty service.
    Global table - shared across all tenants.
    """
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)

    # Square POS integration
    pos_merchant_id = db.Column(db.String(64), unique=True, index=True)
    pos_access_token = db.Column(db.Text)  # Encrypted in production

    # Settings (JSON for flexibility)
    settings = db.Column(db.JSON, default=dict)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def loyalty_enabled(self) -> bool:
        """Loyalty accrual is on unless the merchant switched it off."""
        return bool((self.settings or {}).get('loyalty_enabled', True))

    def __repr__(self):
        return f'<Tenant {self.slug}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'pos_merchant_id': self.pos_merchant_id,
            'loyalty_enabled': self.loyalty_enabled,
            'is_active': self.is_active
        }
