"""
Business logic services for the Punchcard loyalty program.
"""
from .audit_service import AuditService
from .offer_service import OfferService
from .summary_service import SummaryService
from .reward_engine import RewardEngine, RewardProgress
from .purchase_service import PurchaseService, PurchaseInput, RefundInput, ProcessingResult
from .redemption_service import RedemptionService, RedemptionInput, RedemptionResult
from .customer_resolution import CustomerResolver
from .order_intake import OrderIntakeService
from .discount_outbox import DiscountOutbox
from .expiration_service import ExpirationService
from .square_client import SquareClient, SquareAPIError

__all__ = [
    'AuditService',
    'OfferService',
    'SummaryService',
    'RewardEngine',
    'RewardProgress',
    'PurchaseService',
    'PurchaseInput',
    'RefundInput',
    'ProcessingResult',
    'RedemptionService',
    'RedemptionInput',
    'RedemptionResult',
    'CustomerResolver',
    'OrderIntakeService',
    'DiscountOutbox',
    'ExpirationService',
    'SquareClient',
    'SquareAPIError',
]
