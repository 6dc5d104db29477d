"""
Repository layer for the append-only settlements table.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Dict, List, Optional

from custody.core.database import get_db_connection
from custody.domain.models import EngineContext, Settlement, SettlementKind
from custody.domain.money import ZERO, from_db


_COLUMNS = """
    id, tenant_id, branch_id, linked_advance_id, kind, amount, currency,
    cost_center_id, reference_number, treasury_transaction_id, notes,
    created_by, created_at_utc
"""


def _row_to_settlement(row: sqlite3.Row) -> Settlement:
    return Settlement(
        id=row["id"],
        tenant_id=row["tenant_id"],
        branch_id=row["branch_id"],
        linked_advance_id=row["linked_advance_id"],
        kind=SettlementKind(row["kind"]),
        amount=from_db(row["amount"]),
        currency=row["currency"],
        cost_center_id=row["cost_center_id"],
        reference_number=row["reference_number"],
        treasury_transaction_id=row["treasury_transaction_id"],
        notes=row["notes"],
        created_by=row["created_by"],
        created_at=row["created_at_utc"],
    )


class SettlementRepository:
    """Data access helpers for the settlements table."""

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

    def insert(self, settlement: Settlement) -> None:
        self.db.execute(
            f"""
            INSERT INTO settlements ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                settlement.id,
                settlement.tenant_id,
                settlement.branch_id,
                settlement.linked_advance_id,
                settlement.kind.value,
                str(settlement.amount),
                settlement.currency,
                settlement.cost_center_id,
                settlement.reference_number,
                settlement.treasury_transaction_id,
                settlement.notes,
                settlement.created_by,
                settlement.created_at,
            ),
        )

    def get(self, ctx: EngineContext, settlement_id: str) -> Optional[Settlement]:
        cursor = self.db.execute(
            f"""
            SELECT {_COLUMNS} FROM settlements
            WHERE id = ? AND tenant_id = ? AND branch_id = ?
            """,
            (settlement_id, ctx.tenant_id, ctx.branch_id),
        )
        row = cursor.fetchone()
        return _row_to_settlement(row) if row else None

    def list_for_advance(self, ctx: EngineContext, advance_id: str) -> List[Settlement]:
        """Return settlements applied to an advance, most recent first."""
        cursor = self.db.execute(
            f"""
            SELECT {_COLUMNS} FROM settlements
            WHERE linked_advance_id = ? AND tenant_id = ? AND branch_id = ?
            ORDER BY created_at_utc DESC, rowid DESC
            """,
            (advance_id, ctx.tenant_id, ctx.branch_id),
        )
        return [_row_to_settlement(row) for row in cursor.fetchall()]

    def totals_by_advance(self, ctx: EngineContext) -> Dict[str, Decimal]:
        """Sum settled amounts per advance, exactly (amounts are summed as Decimal)."""
        cursor = self.db.execute(
            """
            SELECT linked_advance_id, amount FROM settlements
            WHERE tenant_id = ? AND branch_id = ?
            """,
            (ctx.tenant_id, ctx.branch_id),
        )
        totals: Dict[str, Decimal] = {}
        for row in cursor.fetchall():
            advance_id = row["linked_advance_id"]
            totals[advance_id] = totals.get(advance_id, ZERO) + from_db(row["amount"])
        return totals
