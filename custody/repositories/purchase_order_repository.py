"""
Repository layer for purchase order snapshots and their lines.

Both tables are write-once; triggers reject UPDATE and DELETE.
"""

from __future__ import annotations

import re
import sqlite3
import uuid
from typing import Optional

from custody.core.database import get_db_connection
from custody.domain.models import (
    EngineContext,
    PurchaseOrderLine,
    PurchaseOrderSnapshot,
    VendorIdentity,
)
from custody.domain.money import from_db
from custody.utils.datetime_helpers import utc_now_iso


class PurchaseOrderRepository:
    """Data access helpers for purchase_orders and purchase_order_lines."""

    def __init__(self, db: sqlite3.Connection | None = None) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()

    def close(self) -> None:
        """Close the managed database connection if owned by the repository."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    def insert(
        self, ctx: EngineContext, settlement_id: str, snapshot: PurchaseOrderSnapshot
    ) -> str:
        """Insert the PO header and its lines; returns the purchase order id."""
        purchase_order_id = str(uuid.uuid4())
        self.db.execute(
            """
            INSERT INTO purchase_orders (
                id, tenant_id, settlement_id, po_number, vendor_id, vendor_name,
                vendor_phone, vendor_email, currency, total, created_at_utc
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                purchase_order_id,
                ctx.tenant_id,
                settlement_id,
                snapshot.po_number,
                snapshot.vendor.id,
                snapshot.vendor.name,
                snapshot.vendor.phone,
                snapshot.vendor.email,
                snapshot.currency,
                str(snapshot.total),
                utc_now_iso(),
            ),
        )
        self.db.executemany(
            """
            INSERT INTO purchase_order_lines (
                purchase_order_id, line_no, description, quantity, unit_price, line_total
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    purchase_order_id,
                    line_no,
                    line.description,
                    str(line.quantity),
                    str(line.unit_price),
                    str(line.line_total),
                )
                for line_no, line in enumerate(snapshot.lines, start=1)
            ],
        )
        return purchase_order_id

    def get_for_settlement(
        self, ctx: EngineContext, settlement_id: str
    ) -> Optional[PurchaseOrderSnapshot]:
        cursor = self.db.execute(
            """
            SELECT id, po_number, vendor_id, vendor_name, vendor_phone, vendor_email, currency
            FROM purchase_orders
            WHERE settlement_id = ? AND tenant_id = ?
            """,
            (settlement_id, ctx.tenant_id),
        )
        header = cursor.fetchone()
        if header is None:
            return None

        lines_cursor = self.db.execute(
            """
            SELECT description, quantity, unit_price, line_total
            FROM purchase_order_lines
            WHERE purchase_order_id = ?
            ORDER BY line_no
            """,
            (header["id"],),
        )
        lines = tuple(
            PurchaseOrderLine(
                description=row["description"],
                quantity=from_db(row["quantity"]),
                unit_price=from_db(row["unit_price"]),
                line_total=from_db(row["line_total"]),
            )
            for row in lines_cursor.fetchall()
        )
        return PurchaseOrderSnapshot(
            po_number=header["po_number"],
            vendor=VendorIdentity(
                id=header["vendor_id"],
                name=header["vendor_name"],
                phone=header["vendor_phone"],
                email=header["vendor_email"],
            ),
            lines=lines,
            currency=header["currency"],
        )

    def next_po_number(self, ctx: EngineContext, year: int) -> str:
        """Return the next PO number for the year in PO-YYYY-NNNN format."""
        prefix = f"PO-{year}-"
        cursor = self.db.execute(
            "SELECT po_number FROM purchase_orders WHERE tenant_id = ? AND po_number LIKE ?",
            (ctx.tenant_id, f"{prefix}%"),
        )
        pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
        highest = 0
        for row in cursor.fetchall():
            match = pattern.match(row["po_number"])
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}{highest + 1:04d}"
