"""Repository package exports."""

from .advance_repository import AdvanceRepository
from .purchase_order_repository import PurchaseOrderRepository
from .reference_repository import ReferenceRepository
from .settlement_repository import SettlementRepository

__all__ = [
    "AdvanceRepository",
    "PurchaseOrderRepository",
    "ReferenceRepository",
    "SettlementRepository",
]
