"""
Purchase order snapshots for expense settlements.

An expense settlement is documented by exactly one purchase order. The
snapshot is built from the caller's line items and a resolved vendor, and is
written in the same transaction as the settlement it backs.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import structlog

from custody.core.database import get_db_connection
from custody.domain.errors import ValidationError
from custody.domain.models import (
    EngineContext,
    LineItem,
    PurchaseOrderLine,
    PurchaseOrderSnapshot,
    VendorRef,
)
from custody.domain.money import ZERO, quantize_money, to_decimal, to_money
from custody.integrations.vendor_directory import VendorDirectory
from custody.repositories.purchase_order_repository import PurchaseOrderRepository

logger = structlog.get_logger(__name__)


def _coerce_line(item: Any, index: int) -> LineItem:
    if isinstance(item, LineItem):
        return item
    if isinstance(item, Mapping):
        return LineItem(
            description=item.get("description"),
            quantity=item.get("quantity"),
            unit_price=item.get("unit_price"),
        )
    raise ValidationError("Line item must be a LineItem or mapping", line=index)


def price_lines(line_items: Iterable[Any]) -> List[PurchaseOrderLine]:
    """
    Validate line items and compute their totals.

    Raises:
        ValidationError: If there are no items, a description is blank,
            a quantity is not positive or a unit price is negative.
    """
    priced: List[PurchaseOrderLine] = []
    for index, raw in enumerate(line_items or (), start=1):
        item = _coerce_line(raw, index)
        description = (item.description or "").strip()
        if not description:
            raise ValidationError("Line item description is required", line=index)

        quantity = to_decimal(item.quantity, "quantity")
        if quantity <= 0:
            raise ValidationError(
                "Line item quantity must be greater than zero", line=index, quantity=str(quantity)
            )
        unit_price = to_money(item.unit_price, "unit_price")
        if unit_price < ZERO:
            raise ValidationError(
                "Line item unit price cannot be negative", line=index, unit_price=str(unit_price)
            )

        priced.append(
            PurchaseOrderLine(
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                line_total=quantize_money(quantity * unit_price, "line_total"),
            )
        )

    if not priced:
        raise ValidationError("At least one line item is required", field="line_items")
    return priced


class PurchaseOrderLinker:
    """Builds, persists and loads purchase order snapshots."""

    def __init__(
        self,
        db: Optional[sqlite3.Connection] = None,
        *,
        vendors: Optional[VendorDirectory] = None,
    ) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()
        self.vendors = vendors or VendorDirectory(self.db)
        self.purchase_orders = PurchaseOrderRepository(self.db)

    def close(self) -> None:
        """Close the managed database connection if owned by the linker."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    def build_snapshot(
        self,
        ctx: EngineContext,
        vendor: VendorRef,
        line_items: Iterable[Any],
        currency: str,
    ) -> PurchaseOrderSnapshot:
        """
        Validate items, compute totals and resolve the vendor.

        Vendor creation happens on the linker's connection, so when called
        inside a settlement transaction a rolled-back settlement leaves no
        new vendor behind.
        """
        lines = price_lines(line_items)
        if vendor is None:
            raise ValidationError("Vendor is required", field="vendor")
        identity = self.vendors.resolve(ctx, vendor)
        po_number = self.purchase_orders.next_po_number(ctx, datetime.now(timezone.utc).year)

        snapshot = PurchaseOrderSnapshot(
            po_number=po_number,
            vendor=identity,
            lines=tuple(lines),
            currency=currency,
        )
        logger.debug(
            "purchase_order_snapshot_built",
            po_number=po_number,
            vendor_id=identity.id,
            lines=len(lines),
            total=str(snapshot.total),
        )
        return snapshot

    def persist_snapshot(
        self,
        conn: sqlite3.Connection,
        ctx: EngineContext,
        settlement_id: str,
        snapshot: PurchaseOrderSnapshot,
    ) -> str:
        """Write the snapshot inside the caller's open transaction."""
        repository = (
            self.purchase_orders if conn is self.db else PurchaseOrderRepository(conn)
        )
        purchase_order_id = repository.insert(ctx, settlement_id, snapshot)
        logger.info(
            "purchase_order_recorded",
            purchase_order_id=purchase_order_id,
            po_number=snapshot.po_number,
            settlement_id=settlement_id,
            total=str(snapshot.total),
        )
        return purchase_order_id

    def load_snapshot(
        self, ctx: EngineContext, settlement_id: str
    ) -> Optional[PurchaseOrderSnapshot]:
        return self.purchase_orders.get_for_settlement(ctx, settlement_id)

    def __enter__(self) -> "PurchaseOrderLinker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
