"""Domain types shared by the custody services."""

from .errors import (
    AmountExceedsBalance,
    ConcurrentModification,
    CustodyError,
    ExternalDependencyFailure,
    NotEligible,
    NotFound,
    ValidationError,
)
from .models import (
    Advance,
    AdvanceFilter,
    AdvanceStatus,
    EngineContext,
    Holder,
    HolderKind,
    LineItem,
    PurchaseOrderLine,
    PurchaseOrderSnapshot,
    Settlement,
    SettlementKind,
    TransferRecord,
    TransferResult,
    TreasuryDirection,
    VendorIdentity,
    VendorRef,
)

__all__ = [
    "Advance",
    "AdvanceFilter",
    "AdvanceStatus",
    "AmountExceedsBalance",
    "ConcurrentModification",
    "CustodyError",
    "EngineContext",
    "ExternalDependencyFailure",
    "Holder",
    "HolderKind",
    "LineItem",
    "NotEligible",
    "NotFound",
    "PurchaseOrderLine",
    "PurchaseOrderSnapshot",
    "Settlement",
    "SettlementKind",
    "TransferRecord",
    "TransferResult",
    "TreasuryDirection",
    "ValidationError",
    "VendorIdentity",
    "VendorRef",
]
