"""
Audit Service for the loyalty ledger.

Appends AuditLog rows to the caller's session so that the audit entry
commits (or rolls back) together with the state change it describes.
"""
from typing import Optional, Dict, Any, List, Union
from flask import current_app

from ..extensions import db
from ..models.audit import AuditLog, AuditAction, TriggeredBy


def _value(item):
    return item.value if hasattr(item, 'value') else item


class AuditService:
    """
    Best-effort audit writer.

    A failure while building an entry is logged and swallowed; the
    surrounding loyalty transaction must not fail because of its audit row.
    """

    def __init__(self, tenant_id: int):
        self.tenant_id = tenant_id

    def record(
        self,
        action: Union[AuditAction, str],
        customer_id: str = None,
        offer_id: int = None,
        reward_id: int = None,
        purchase_event_id: int = None,
        redemption_id: int = None,
        order_id: str = None,
        old_state: str = None,
        new_state: str = None,
        old_quantity: int = None,
        new_quantity: int = None,
        triggered_by: Union[TriggeredBy, str] = TriggeredBy.SYSTEM,
        actor: str = None,
        details: Dict[str, Any] = None
    ) -> Optional[AuditLog]:
        """
        Add an audit entry to the current session (no commit).

        Returns:
            The pending AuditLog, or None if it could not be built
        """
        try:
            entry = AuditLog(
                tenant_id=self.tenant_id,
                action=_value(action),
                customer_id=customer_id,
                offer_id=offer_id,
                reward_id=reward_id,
                purchase_event_id=purchase_event_id,
                redemption_id=redemption_id,
                order_id=order_id,
                old_state=_value(old_state),
                new_state=_value(new_state),
                old_quantity=old_quantity,
                new_quantity=new_quantity,
                triggered_by=_value(triggered_by),
                actor=actor,
                details=details
            )
            db.session.add(entry)
            return entry
        except Exception as e:
            current_app.logger.error(
                f"Audit entry {_value(action)} failed for tenant {self.tenant_id}: {e}"
            )
            return None

    def list_entries(
        self,
        customer_id: str = None,
        reward_id: int = None,
        offer_id: int = None,
        action: str = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditLog]:
        """Newest-first audit entries for the tenant, optionally filtered."""
        query = AuditLog.query.filter_by(tenant_id=self.tenant_id)

        if customer_id:
            query = query.filter_by(customer_id=customer_id)
        if reward_id:
            query = query.filter_by(reward_id=reward_id)
        if offer_id:
            query = query.filter_by(offer_id=offer_id)
        if action:
            query = query.filter_by(action=_value(action))

        return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit).all()
