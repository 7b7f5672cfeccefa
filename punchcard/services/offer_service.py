"""
Offer Service for the frequent-buyer program.

Offer and qualifying-variation administration plus the hot-path lookup
used by accrual: which active offer (if any) does a POS variation count
toward?

Lookups go through the Flask-Caching cache owned by the app factory.
Only the offer id is cached; the Offer row itself is always loaded from
the current session.
"""
from typing import Optional, List, Dict, Any
from flask import current_app

from ..extensions import db
from ..models.offer import Offer, QualifyingVariation
from ..models.audit import AuditAction, TriggeredBy
from ..utils.cache import cache, cache_key
from ..utils.exceptions import ValidationError, ConflictError, NotFoundError, OfferNotFoundError
from .audit_service import AuditService

# Cached marker for "variation is not in any active offer"
NO_OFFER = 0


class OfferService:
    """
    Usage:
        service = OfferService(tenant_id)
        offer = service.get_offer_for_variation('VAR123')
    """

    def __init__(self, tenant_id: int, audit_service: AuditService = None):
        self.tenant_id = tenant_id
        self.audit = audit_service or AuditService(tenant_id)

    # ==================== Lookup ====================

    def get_offer_for_variation(self, variation_id: str) -> Optional[Offer]:
        """
        Return the active offer a variation qualifies for, or None.

        Args:
            variation_id: POS catalog variation id

        Returns:
            Offer or None when the variation is not part of an active offer
        """
        if not variation_id:
            return None

        key = self._variation_cache_key(variation_id)
        cached_id = cache.get(key)

        if cached_id == NO_OFFER:
            return None
        if cached_id:
            offer = db.session.get(Offer, cached_id)
            if offer and offer.tenant_id == self.tenant_id and offer.is_active:
                return offer

        offer = Offer.query.join(
            QualifyingVariation, QualifyingVariation.offer_id == Offer.id
        ).filter(
            QualifyingVariation.tenant_id == self.tenant_id,
            QualifyingVariation.variation_id == variation_id,
            QualifyingVariation.is_active.is_(True),
            Offer.tenant_id == self.tenant_id,
            Offer.is_active.is_(True),
        ).order_by(Offer.id).first()

        cache.set(
            key,
            offer.id if offer else NO_OFFER,
            timeout=current_app.config.get('OFFER_CACHE_TIMEOUT', 300)
        )
        return offer

    def get_offer(self, offer_id: int) -> Offer:
        """Load an offer for this tenant or raise OfferNotFoundError."""
        offer = Offer.query.filter_by(id=offer_id, tenant_id=self.tenant_id).first()
        if not offer:
            raise OfferNotFoundError(offer_id)
        return offer

    def list_offers(self, active_only: bool = True) -> List[Offer]:
        query = Offer.query.filter_by(tenant_id=self.tenant_id)
        if active_only:
            query = query.filter_by(is_active=True)
        return query.order_by(Offer.brand_name, Offer.size_group).all()

    def get_qualifying_variation_ids(self, offer_id: int) -> List[str]:
        rows = QualifyingVariation.query.filter_by(
            tenant_id=self.tenant_id,
            offer_id=offer_id,
            is_active=True
        ).all()
        return [row.variation_id for row in rows]

    # ==================== Administration ====================

    def create_offer(
        self,
        brand_name: str,
        size_group: str,
        required_quantity: int,
        window_months: int = 12,
        name: str = None,
        description: str = None,
        created_by: str = None
    ) -> Offer:
        """
        Create a new offer.

        Raises:
            ValidationError: quantity/window not positive or names missing
            ConflictError: an offer for this brand and size group already exists
        """
        if not brand_name:
            raise ValidationError('brand_name is required', 'brand_name')
        if not size_group:
            raise ValidationError('size_group is required', 'size_group')
        if not isinstance(required_quantity, int) or required_quantity < 1:
            raise ValidationError('required_quantity must be at least 1', 'required_quantity')
        if not isinstance(window_months, int) or window_months < 1:
            raise ValidationError('window_months must be at least 1', 'window_months')

        existing = Offer.query.filter_by(
            tenant_id=self.tenant_id,
            brand_name=brand_name,
            size_group=size_group
        ).first()
        if existing:
            raise ConflictError(
                f'Offer for {brand_name} {size_group} already exists',
                conflicts=[{'offer_id': existing.id}]
            )

        offer = Offer(
            tenant_id=self.tenant_id,
            name=name or f'{brand_name} {size_group}',
            brand_name=brand_name,
            size_group=size_group,
            description=description,
            required_quantity=required_quantity,
            reward_quantity=1,
            window_months=window_months,
            created_by=created_by
        )

        try:
            db.session.add(offer)
            db.session.flush()
            self.audit.record(
                AuditAction.OFFER_CREATED,
                offer_id=offer.id,
                triggered_by=TriggeredBy.ADMIN,
                actor=created_by,
                details={'required_quantity': required_quantity, 'window_months': window_months}
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Offer create failed for tenant {self.tenant_id}: {e}")
            raise

        current_app.logger.info(
            f"Offer {offer.id} created: {offer.name} (buy {required_quantity} in {window_months} months)"
        )
        return offer

    def update_offer(self, offer_id: int, actor: str = None, **changes) -> Offer:
        """
        Update offer name/description/thresholds.

        Existing rewards keep the required_quantity they were created with.
        """
        offer = self.get_offer(offer_id)
        allowed = {'name', 'description', 'required_quantity', 'window_months'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        for field_name in ('required_quantity', 'window_months'):
            if field_name in changes:
                value = changes[field_name]
                if not isinstance(value, int) or value < 1:
                    raise ValidationError(f'{field_name} must be at least 1', field_name)

        before = {k: getattr(offer, k) for k in changes}
        for k, v in changes.items():
            setattr(offer, k, v)

        try:
            self.audit.record(
                AuditAction.OFFER_UPDATED,
                offer_id=offer.id,
                triggered_by=TriggeredBy.ADMIN,
                actor=actor,
                details={'before': before, 'after': changes}
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Offer {offer_id} update failed: {e}")
            raise

        return offer

    def deactivate_offer(self, offer_id: int, actor: str = None) -> Offer:
        """Soft-deactivate an offer. Its variations stop qualifying immediately."""
        offer = self.get_offer(offer_id)
        if not offer.is_active:
            return offer

        variation_ids = self.get_qualifying_variation_ids(offer.id)
        offer.is_active = False

        try:
            self.audit.record(
                AuditAction.OFFER_DEACTIVATED,
                offer_id=offer.id,
                triggered_by=TriggeredBy.ADMIN,
                actor=actor
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Offer {offer_id} deactivate failed: {e}")
            raise

        for variation_id in variation_ids:
            self._invalidate(variation_id)

        current_app.logger.info(f"Offer {offer.id} deactivated")
        return offer

    def find_variation_conflicts(self, offer_id: int, variation_ids: List[str]) -> List[Dict[str, Any]]:
        """
        Variations already assigned to a different active offer.
        """
        if not variation_ids:
            return []

        rows = db.session.query(QualifyingVariation, Offer).join(
            Offer, QualifyingVariation.offer_id == Offer.id
        ).filter(
            QualifyingVariation.tenant_id == self.tenant_id,
            QualifyingVariation.variation_id.in_(variation_ids),
            QualifyingVariation.is_active.is_(True),
            QualifyingVariation.offer_id != offer_id,
            Offer.is_active.is_(True),
        ).all()

        return [
            {
                'variation_id': variation.variation_id,
                'offer_id': offer.id,
                'offer_name': offer.name
            }
            for variation, offer in rows
        ]

    def add_variations(
        self,
        offer_id: int,
        variations: List[Dict[str, Any]],
        actor: str = None
    ) -> List[QualifyingVariation]:
        """
        Assign POS variations to an offer.

        Args:
            offer_id: Target offer
            variations: Dicts with variation_id and optional item_id,
                item_name, variation_name, sku
            actor: Admin performing the change

        Raises:
            ConflictError: one or more variations belong to another active offer
        """
        offer = self.get_offer(offer_id)
        if not offer.is_active:
            raise ValidationError('Cannot add variations to an inactive offer', 'offer_id')

        variation_ids = [v.get('variation_id') for v in variations]
        if not variation_ids or not all(variation_ids):
            raise ValidationError('Each variation requires a variation_id', 'variation_id')

        conflicts = self.find_variation_conflicts(offer.id, variation_ids)
        if conflicts:
            raise ConflictError(
                f'{len(conflicts)} variation(s) already belong to another offer',
                conflicts=conflicts
            )

        added = []
        try:
            for data in variations:
                row = QualifyingVariation.query.filter_by(
                    tenant_id=self.tenant_id,
                    offer_id=offer.id,
                    variation_id=data['variation_id']
                ).first()
                if row is None:
                    row = QualifyingVariation(
                        tenant_id=self.tenant_id,
                        offer_id=offer.id,
                        variation_id=data['variation_id']
                    )
                    db.session.add(row)

                row.item_id = data.get('item_id', row.item_id)
                row.item_name = data.get('item_name', row.item_name)
                row.variation_name = data.get('variation_name', row.variation_name)
                row.sku = data.get('sku', row.sku)
                row.is_active = True
                added.append(row)

                self.audit.record(
                    AuditAction.VARIATION_ADDED,
                    offer_id=offer.id,
                    triggered_by=TriggeredBy.ADMIN,
                    actor=actor,
                    details={'variation_id': data['variation_id']}
                )

            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Adding variations to offer {offer_id} failed: {e}")
            raise

        for variation_id in variation_ids:
            self._invalidate(variation_id)

        return added

    def remove_variation(self, offer_id: int, variation_id: str, actor: str = None) -> QualifyingVariation:
        """Soft-remove a variation from an offer."""
        row = QualifyingVariation.query.filter_by(
            tenant_id=self.tenant_id,
            offer_id=offer_id,
            variation_id=variation_id,
            is_active=True
        ).first()
        if not row:
            raise NotFoundError('Variation', variation_id)

        row.is_active = False

        try:
            self.audit.record(
                AuditAction.VARIATION_REMOVED,
                offer_id=offer_id,
                triggered_by=TriggeredBy.ADMIN,
                actor=actor,
                details={'variation_id': variation_id}
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Removing variation {variation_id} from offer {offer_id} failed: {e}")
            raise

        self._invalidate(variation_id)
        return row

    # ==================== Cache ====================

    def _variation_cache_key(self, variation_id: str) -> str:
        return cache_key('offer_for_variation', tenant_id=self.tenant_id, variation_id=variation_id)

    def _invalidate(self, variation_id: str) -> None:
        cache.delete(self._variation_cache_key(variation_id))
