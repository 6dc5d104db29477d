"""
Domain model for petty-cash advances (custody) and their settlements.

Statuses and kinds are closed enums; decoding a value that is not a member
raises ``ValueError`` instead of falling back to a default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from custody.domain.errors import ValidationError
from custody.domain.money import ZERO


class AdvanceStatus(Enum):
    """Lifecycle states of an advance."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SETTLED = "settled"
    PARTIALLY_SETTLED = "partially_settled"
    TRANSFERRED = "transferred"

    @property
    def accepts_settlement(self) -> bool:
        return self in (AdvanceStatus.APPROVED, AdvanceStatus.PARTIALLY_SETTLED)

    @classmethod
    def after_settlement(cls, remaining: Decimal) -> "AdvanceStatus":
        """Status of an advance once a settlement has left ``remaining`` unspent."""
        if remaining == ZERO:
            return cls.SETTLED
        return cls.PARTIALLY_SETTLED


OPEN_STATUSES = (AdvanceStatus.APPROVED, AdvanceStatus.PARTIALLY_SETTLED)


class SettlementKind(Enum):
    """How an advance was settled."""

    EXPENSE = "expense"  # spent, documented by a purchase order
    RETURN = "return"  # handed back to a treasury account


class TreasuryDirection(Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class HolderKind(Enum):
    EMPLOYEE = "employee"
    EXTERNAL = "external"


@dataclass(frozen=True)
class EngineContext:
    """Tenant/branch scope and acting user for one engine call."""

    tenant_id: str
    branch_id: str
    actor: str = "system"

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if not self.branch_id:
            raise ValidationError("branch_id is required", field="branch_id")


@dataclass(frozen=True)
class Holder:
    """
    Person or party receiving an advance.

    Employees are identified only by reference; their display name comes from
    the employee directory. External holders are identified by name.
    """

    employee_ref: Optional[str] = None
    external_name: Optional[str] = None

    @classmethod
    def employee(cls, employee_ref: str) -> "Holder":
        return cls(employee_ref=employee_ref)

    @classmethod
    def external(cls, name: str) -> "Holder":
        return cls(external_name=name)

    @property
    def kind(self) -> HolderKind:
        return HolderKind.EMPLOYEE if self.employee_ref else HolderKind.EXTERNAL


@dataclass
class Advance:
    """One custody grant tracked against a remaining balance."""

    id: str
    tenant_id: str
    branch_id: str
    holder_name: str
    holder_ref: Optional[str]
    cost_center_id: Optional[str]
    original_amount: Decimal
    remaining_amount: Decimal
    currency: str
    treasury_account_id: str
    reference_number: str
    status: AdvanceStatus
    created_at: str
    source_advance_id: Optional[str] = None
    transferred_at: Optional[str] = None
    notes: Optional[str] = None
    created_by: str = "system"
    version: int = 1

    @property
    def is_eligible(self) -> bool:
        """Open for settlement or transfer."""
        return self.status.accepts_settlement and self.remaining_amount > ZERO

    @property
    def settled_amount(self) -> Decimal:
        return self.original_amount - self.remaining_amount


@dataclass(frozen=True)
class AdvanceFilter:
    """Optional filters for advance listings."""

    holder_ref: Optional[str] = None
    holder_name: Optional[str] = None
    cost_center_id: Optional[str] = None
    general_custody_only: bool = False


@dataclass(frozen=True)
class LineItem:
    """Purchase line as entered by the caller."""

    description: str
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True)
class PurchaseOrderLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class VendorRef:
    """Existing vendor id or an inline identity to resolve or create."""

    vendor_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class VendorIdentity:
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class PurchaseOrderSnapshot:
    """Immutable purchase order backing an expense settlement."""

    po_number: str
    vendor: VendorIdentity
    lines: Tuple[PurchaseOrderLine, ...]
    currency: str

    @property
    def total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), ZERO)


@dataclass
class Settlement:
    """One application of funds against an advance."""

    id: str
    tenant_id: str
    branch_id: str
    linked_advance_id: str
    kind: SettlementKind
    amount: Decimal
    currency: str
    cost_center_id: Optional[str]
    reference_number: str
    created_at: str
    created_by: str = "system"
    po_snapshot: Optional[PurchaseOrderSnapshot] = None
    treasury_transaction_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TransferRecord:
    closed_advance_id: str
    new_advance_id: str
    carried_amount: Decimal


@dataclass
class TransferResult:
    """Outcome of moving an open advance to another cost center."""

    closed_advance: Advance
    new_advance: Advance
    record: TransferRecord = field(init=False)

    def __post_init__(self) -> None:
        self.record = TransferRecord(
            closed_advance_id=self.closed_advance.id,
            new_advance_id=self.new_advance.id,
            carried_amount=self.new_advance.original_amount,
        )
