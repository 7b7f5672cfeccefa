"""
Database models for the Punchcard loyalty service.
Frequent-buyer offers, purchase ledger, and reward lifecycle.
"""
from .tenant import Tenant
from .offer import Offer, QualifyingVariation
from .purchase import PurchaseEvent
from .reward import Reward, Redemption, RewardStatus, RedemptionType
from .summary import CustomerSummary
from .audit import AuditLog, AuditAction, TriggeredBy
from .processed_order import ProcessedOrder, OrderResultType, OrderSource
from .discount_task import DiscountTask, DiscountAction, DiscountTaskStatus

__all__ = [
    'Tenant',
    'Offer',
    'QualifyingVariation',
    'PurchaseEvent',
    'Reward',
    'Redemption',
    'RewardStatus',
    'RedemptionType',
    'CustomerSummary',
    'AuditLog',
    'AuditAction',
    'TriggeredBy',
    'ProcessedOrder',
    'OrderResultType',
    'OrderSource',
    'DiscountTask',
    'DiscountAction',
    'DiscountTaskStatus',
]
