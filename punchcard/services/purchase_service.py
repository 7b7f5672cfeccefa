"""
Purchase Service for the frequent-buyer program.

Records qualifying purchases and refunds as PurchaseEvent rows and hands
off to the RewardEngine for progress and state transitions.

Exactly-once accrual:
- Purchases are keyed "{order_id}:{variation_id}:{quantity}".
- Refunds are keyed "refund:{order_id}:{refund_id}:{variation_id}:{quantity}".
- A key that already exists for the tenant is a successful no-op
  (already_processed), including when the duplicate is only detected by
  the unique index at insert time.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit import AuditAction, TriggeredBy
from ..utils.dates import add_months, to_date
from ..utils.exceptions import ValidationError
from .audit_service import AuditService
from .offer_service import OfferService
from .reward_engine import RewardEngine, RewardProgress, not_superseded


# ProcessingResult reasons
NO_CUSTOMER = 'no_customer'
NO_LINE_ITEMS = 'no_line_items'
VARIATION_NOT_QUALIFYING = 'variation_not_qualifying'
ALREADY_PROCESSED = 'already_processed'


@dataclass
class PurchaseInput:
    """One qualifying line item from a completed order."""
    tenant_id: int
    order_id: str
    customer_id: Optional[str]
    variation_id: str
    quantity: int
    unit_price_cents: Optional[int]
    purchased_at: datetime
    location_id: Optional[str] = None
    receipt_url: Optional[str] = None
    customer_source: str = 'order'
    payment_type: Optional[str] = None
    triggered_by: TriggeredBy = TriggeredBy.WEBHOOK


@dataclass
class RefundInput:
    """One refunded line item."""
    tenant_id: int
    order_id: str
    customer_id: Optional[str]
    variation_id: str
    quantity: int
    unit_price_cents: Optional[int]
    refunded_at: datetime
    original_event_id: Optional[int] = None
    refund_id: Optional[str] = None
    location_id: Optional[str] = None
    triggered_by: TriggeredBy = TriggeredBy.WEBHOOK


@dataclass
class ProcessingResult:
    processed: bool
    reason: Optional[str] = None
    event: Optional[PurchaseEvent] = None
    reward_progress: Optional[RewardProgress] = None

    def to_dict(self):
        return {
            'processed': self.processed,
            'reason': self.reason,
            'event': self.event.to_dict() if self.event else None,
            'reward_progress': self.reward_progress.to_dict() if self.reward_progress else None,
        }


def purchase_idempotency_key(order_id: str, variation_id: str, quantity: int) -> str:
    return f'{order_id}:{variation_id}:{quantity}'


def refund_idempotency_key(order_id: str, refund_id: Optional[str], variation_id: str, quantity: int) -> str:
    return f'refund:{order_id}:{refund_id or "-"}:{variation_id}:{quantity}'


class PurchaseService:
    """
    Usage:
        service = PurchaseService(tenant_id)
        result = service.process_qualifying_purchase(PurchaseInput(...))
        if result.processed:
            print(result.reward_progress.status)
    """

    def __init__(self, tenant_id: int, offer_service: OfferService = None,
                 reward_engine: RewardEngine = None, audit_service: AuditService = None):
        self.tenant_id = tenant_id
        self.audit = audit_service or AuditService(tenant_id)
        self.offers = offer_service or OfferService(tenant_id, self.audit)
        self.engine = reward_engine or RewardEngine(tenant_id, self.audit)

    # ==================== Accrual ====================

    def process_qualifying_purchase(self, purchase: PurchaseInput) -> ProcessingResult:
        """
        Record a purchase and recompute the customer's progress.

        Args:
            purchase: PurchaseInput for one line item

        Returns:
            ProcessingResult. processed=False with a reason when the line
            does not count (no customer, variation not in an offer, or
            already recorded).

        Raises:
            ValidationError: tenant id missing or mismatched, quantity not positive
        """
        self._validate_tenant(purchase.tenant_id)
        if not purchase.customer_id:
            return ProcessingResult(False, NO_CUSTOMER)
        if not purchase.quantity or purchase.quantity <= 0:
            raise ValidationError('quantity must be positive', 'quantity')

        offer = self.offers.get_offer_for_variation(purchase.variation_id)
        if offer is None:
            return ProcessingResult(False, VARIATION_NOT_QUALIFYING)

        key = purchase_idempotency_key(purchase.order_id, purchase.variation_id, purchase.quantity)
        existing = self._find_by_key(key)
        if existing:
            return ProcessingResult(False, ALREADY_PROCESSED, event=existing)

        # Two first purchases for a pair can race to open the in_progress
        # reward; the loser hits the partial unique index and retries once.
        for attempt in range(2):
            try:
                event, progress = self._record_purchase(purchase, offer, key)
                break

            except IntegrityError:
                db.session.rollback()
                existing = self._find_by_key(key)
                if existing:
                    current_app.logger.info(f"Purchase {key} recorded concurrently, treating as already processed")
                    return ProcessingResult(False, ALREADY_PROCESSED, event=existing)
                if attempt:
                    current_app.logger.error(f"Purchase {key} failed with integrity error for tenant {self.tenant_id}")
                    raise
                current_app.logger.warning(f"Purchase {key} lost a reward insert race, retrying")

            except Exception as e:
                db.session.rollback()
                current_app.logger.error(f"Purchase {key} failed for tenant {self.tenant_id}: {e}")
                raise

        current_app.logger.info(
            f"Purchase recorded: customer {purchase.customer_id} +{purchase.quantity} "
            f"on offer {offer.id} ({progress.current_quantity}/{progress.required_quantity}, {progress.status})"
        )
        return ProcessingResult(True, event=event, reward_progress=progress)

    # ==================== Refunds ====================

    def process_refund(self, refund: RefundInput) -> ProcessingResult:
        """
        Record a refund as a negative event and revoke rewards it breaks.

        The refund row is attached to the reward that holds the refunded
        units, if any, so that reward's locked quantity drops. An earned
        reward falling below its threshold is revoked and its units are
        released back into progress. A redeemed reward absorbs the refund.

        Args:
            refund: RefundInput for one refunded line item

        Returns:
            ProcessingResult as for purchases

        Raises:
            ValidationError: tenant id missing or mismatched, quantity not positive
        """
        self._validate_tenant(refund.tenant_id)
        if not refund.quantity or refund.quantity <= 0:
            raise ValidationError('quantity must be positive', 'quantity')

        offer = self.offers.get_offer_for_variation(refund.variation_id)
        original = self._find_refund_source(refund, offer)
        if offer is None and original is not None:
            # Variation left the offer after the purchase was counted
            offer = db.session.get(Offer, original.offer_id)
        if offer is None:
            return ProcessingResult(False, VARIATION_NOT_QUALIFYING)

        customer_id = original.customer_id if original else refund.customer_id
        if not customer_id:
            return ProcessingResult(False, NO_CUSTOMER)

        key = refund_idempotency_key(refund.order_id, refund.refund_id, refund.variation_id, refund.quantity)
        existing = self._find_by_key(key)
        if existing:
            return ProcessingResult(False, ALREADY_PROCESSED, event=existing)

        try:
            reward = self._reward_for_refund(original)

            if original is not None:
                window_start = original.window_start_date
                window_end = original.window_end_date
            else:
                window_start = to_date(refund.refunded_at)
                window_end = add_months(refund.refunded_at, offer.window_months)

            event = PurchaseEvent(
                tenant_id=self.tenant_id,
                offer_id=offer.id,
                customer_id=customer_id,
                order_id=refund.order_id,
                location_id=refund.location_id,
                variation_id=refund.variation_id,
                quantity=-refund.quantity,
                unit_price_cents=refund.unit_price_cents,
                purchased_at=refund.refunded_at,
                window_start_date=window_start,
                window_end_date=window_end,
                is_refund=True,
                original_event_id=original.id if original else None,
                reward_id=reward.id if reward else None,
                idempotency_key=key
            )
            db.session.add(event)
            db.session.flush()

            self.audit.record(
                AuditAction.REFUND_PROCESSED,
                customer_id=customer_id,
                offer_id=offer.id,
                purchase_event_id=event.id,
                reward_id=reward.id if reward else None,
                order_id=refund.order_id,
                new_quantity=-refund.quantity,
                triggered_by=refund.triggered_by,
                details={'variation_id': refund.variation_id, 'refund_id': refund.refund_id}
            )

            if reward is not None and reward.status == RewardStatus.EARNED.value:
                remaining = self.engine.locked_quantity(reward.id)
                if remaining < reward.required_quantity:
                    self.engine.revoke_reward(
                        reward,
                        reason=f'Refund on order {refund.order_id} left {remaining} of {reward.required_quantity} units',
                        triggered_by=refund.triggered_by,
                        order_id=refund.order_id
                    )
            elif reward is not None:
                current_app.logger.warning(
                    f"Refund on order {refund.order_id} hits redeemed reward {reward.id}; absorbed"
                )

            progress = self.engine.update_progress(
                offer, customer_id,
                triggered_by=refund.triggered_by,
                order_id=refund.order_id
            )
            db.session.commit()

        except IntegrityError:
            db.session.rollback()
            existing = self._find_by_key(key)
            if existing:
                return ProcessingResult(False, ALREADY_PROCESSED, event=existing)
            raise

        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Refund {key} failed for tenant {self.tenant_id}: {e}")
            raise

        current_app.logger.info(
            f"Refund recorded: customer {customer_id} -{refund.quantity} on offer {offer.id} "
            f"({progress.current_quantity}/{progress.required_quantity}, {progress.status})"
        )
        return ProcessingResult(True, event=event, reward_progress=progress)

    # ==================== Helpers ====================

    def _validate_tenant(self, tenant_id) -> None:
        if not tenant_id:
            raise ValidationError('tenant_id is required', 'tenant_id')
        if tenant_id != self.tenant_id:
            raise ValidationError('tenant_id does not match service tenant', 'tenant_id')

    def _record_purchase(self, purchase: PurchaseInput, offer: Offer, key: str):
        """Insert the event, recompute progress and commit."""
        earliest = self.engine.earliest_open_purchase(offer.id, purchase.customer_id)
        purchase_date = to_date(purchase.purchased_at)
        window_start = min(to_date(earliest), purchase_date) if earliest else purchase_date

        event = PurchaseEvent(
            tenant_id=self.tenant_id,
            offer_id=offer.id,
            customer_id=purchase.customer_id,
            order_id=purchase.order_id,
            location_id=purchase.location_id,
            variation_id=purchase.variation_id,
            quantity=purchase.quantity,
            unit_price_cents=purchase.unit_price_cents,
            purchased_at=purchase.purchased_at,
            window_start_date=window_start,
            window_end_date=add_months(purchase.purchased_at, offer.window_months),
            is_refund=False,
            idempotency_key=key,
            receipt_url=purchase.receipt_url,
            customer_source=purchase.customer_source,
            payment_type=purchase.payment_type
        )
        db.session.add(event)
        db.session.flush()

        self.audit.record(
            AuditAction.PURCHASE_RECORDED,
            customer_id=purchase.customer_id,
            offer_id=offer.id,
            purchase_event_id=event.id,
            order_id=purchase.order_id,
            new_quantity=purchase.quantity,
            triggered_by=purchase.triggered_by,
            details={'variation_id': purchase.variation_id, 'customer_source': purchase.customer_source}
        )

        progress = self.engine.update_progress(
            offer, purchase.customer_id,
            triggered_by=purchase.triggered_by,
            order_id=purchase.order_id
        )
        db.session.commit()
        return event, progress

    def _find_by_key(self, key: str) -> Optional[PurchaseEvent]:
        return PurchaseEvent.query.filter_by(tenant_id=self.tenant_id, idempotency_key=key).first()

    def _find_refund_source(self, refund: RefundInput, offer: Optional[Offer]) -> Optional[PurchaseEvent]:
        """
        Purchase event the refunded units came from.

        An explicit original_event_id wins. Otherwise the positive events
        for the same order and variation are searched, preferring one
        still locked to a reward. A purchase that was split when a reward
        was earned resolves to its children, locked child first.
        """
        if refund.original_event_id:
            original = PurchaseEvent.query.filter_by(
                id=refund.original_event_id,
                tenant_id=self.tenant_id
            ).first()
            return self._follow_splits(original) if original else None

        query = PurchaseEvent.query.filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.order_id == refund.order_id,
            PurchaseEvent.variation_id == refund.variation_id,
            PurchaseEvent.is_refund.is_(False),
            PurchaseEvent.quantity > 0,
            not_superseded(),
        )
        if offer is not None:
            query = query.filter(PurchaseEvent.offer_id == offer.id)

        return self._prefer_locked(query.order_by(PurchaseEvent.id).all())

    def _follow_splits(self, event: PurchaseEvent) -> PurchaseEvent:
        while True:
            children = PurchaseEvent.query.filter_by(
                tenant_id=self.tenant_id,
                split_from_event_id=event.id
            ).order_by(PurchaseEvent.id).all()
            if not children:
                return event
            event = self._prefer_locked(children)

    @staticmethod
    def _prefer_locked(events):
        if not events:
            return None
        locked = [e for e in events if e.reward_id is not None]
        return locked[0] if locked else events[0]

    def _reward_for_refund(self, original: Optional[PurchaseEvent]) -> Optional[Reward]:
        """
        Reward the refund row should be attached to, locked for update.

        Only a traced purchase whose units are locked to an earned or
        redeemed reward names one. Untraced refunds touch in-progress
        units only.
        """
        if original is None or original.reward_id is None:
            return None
        reward = self.engine.lock_reward(original.reward_id)
        if reward and reward.status in (RewardStatus.EARNED.value, RewardStatus.REDEEMED.value):
            return reward
        return None
