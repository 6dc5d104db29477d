"""Custody engine services."""

from .advance_ledger import AdvanceLedger
from .purchase_order_linker import PurchaseOrderLinker
from .reconciliation_service import AdvanceReconciliation, HolderBalance, ReconciliationService
from .settlement_processor import SettlementProcessor
from .transfer_coordinator import TransferCoordinator

__all__ = [
    "AdvanceLedger",
    "AdvanceReconciliation",
    "HolderBalance",
    "PurchaseOrderLinker",
    "ReconciliationService",
    "SettlementProcessor",
    "TransferCoordinator",
]
