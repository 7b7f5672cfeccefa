"""
Order intake log.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class OrderResultType(str, Enum):
    QUALIFYING = 'qualifying'
    NON_QUALIFYING = 'non_qualifying'
    NO_CUSTOMER = 'no_customer'
    NO_LINE_ITEMS = 'no_line_items'
    LOYALTY_DISABLED = 'loyalty_disabled'


class OrderSource(str, Enum):
    WEBHOOK = 'webhook'
    CATCHUP = 'catchup'
    BACKFILL = 'backfill'
    AUDIT = 'audit'


class ProcessedOrder(db.Model):
    """
    Outcome of the last intake pass over an order.

    Reporting only. Exactly-once accrual is guaranteed by purchase event
    idempotency keys, so re-processing an order here is always safe.
    """
    __tablename__ = 'loyalty_processed_orders'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'order_id', name='uq_processed_order'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    order_id = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.String(64))
    customer_source = db.Column(db.String(30))
    result_type = db.Column(db.String(30), nullable=False)  # OrderResultType
    qualifying_items = db.Column(db.Integer, default=0)
    total_line_items = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    source = db.Column(db.String(20), default=OrderSource.WEBHOOK.value)

    processed_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<ProcessedOrder {self.order_id}: {self.result_type}>'

    def to_dict(self):
        return {
            'order_id': self.order_id,
            'customer_id': self.customer_id,
            'customer_source': self.customer_source,
            'result_type': self.result_type,
            'qualifying_items': self.qualifying_items,
            'total_line_items': self.total_line_items,
            'error_count': self.error_count,
            'source': self.source,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None
        }
