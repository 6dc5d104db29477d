"""
Repository layer for the advances table.

All reads are scoped by tenant and branch. Balance and status writes carry an
optimistic version check so a stale read can never overwrite a newer balance.
"""

from __future__ import annotations

import re
import sqlite3
from decimal import Decimal
from typing import List, Optional, Sequence

from custody.core.database import get_db_connection
from custody.domain.errors import ConcurrentModification
from custody.domain.models import Advance, AdvanceFilter, AdvanceStatus, EngineContext
from custody.domain.money import from_db
from custody.utils.datetime_helpers import utc_now_iso


_COLUMNS = """
    id, tenant_id, branch_id, holder_name, holder_ref, cost_center_id,
    original_amount, remaining_amount, currency, treasury_account_id,
    reference_number, status, source_advance_id, transferred_at_utc,
    notes, version, created_by, created_at_utc
"""


def _row_to_advance(row: sqlite3.Row) -> Advance:
    """Convert a SQLite row into an Advance with Decimal conversions."""
    return Advance(
        id=row["id"],
        tenant_id=row["tenant_id"],
        branch_id=row["branch_id"],
        holder_name=row["holder_name"],
        holder_ref=row["holder_ref"],
        cost_center_id=row["cost_center_id"],
        original_amount=from_db(row["original_amount"]),
        remaining_amount=from_db(row["remaining_amount"]),
        currency=row["currency"],
        treasury_account_id=row["treasury_account_id"],
        reference_number=row["reference_number"],
        status=AdvanceStatus(row["status"]),
        source_advance_id=row["source_advance_id"],
        transferred_at=row["transferred_at_utc"],
        notes=row["notes"],
        version=row["version"],
        created_by=row["created_by"],
        created_at=row["created_at_utc"],
    )


class AdvanceRepository:
    """Data access helpers for the advances table."""

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

    # --------------------------------------------------------------------- #
    # Write helpers
    # --------------------------------------------------------------------- #

    def insert(self, advance: Advance) -> None:
        self.db.execute(
            f"""
            INSERT INTO advances ({_COLUMNS}, updated_at_utc)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                advance.id,
                advance.tenant_id,
                advance.branch_id,
                advance.holder_name,
                advance.holder_ref,
                advance.cost_center_id,
                str(advance.original_amount),
                str(advance.remaining_amount),
                advance.currency,
                advance.treasury_account_id,
                advance.reference_number,
                advance.status.value,
                advance.source_advance_id,
                advance.transferred_at,
                advance.notes,
                advance.version,
                advance.created_by,
                advance.created_at,
                advance.created_at,
            ),
        )

    def update_balance(
        self,
        advance: Advance,
        remaining_amount: Decimal,
        status: AdvanceStatus,
        *,
        transferred_at: Optional[str] = None,
    ) -> Advance:
        """
        Write a new remaining balance and status if the row is still at
        ``advance.version``.

        Raises:
            ConcurrentModification: If another writer updated the row first.
        """
        cursor = self.db.execute(
            """
            UPDATE advances
            SET remaining_amount = ?,
                status = ?,
                transferred_at_utc = COALESCE(?, transferred_at_utc),
                version = version + 1,
                updated_at_utc = ?
            WHERE id = ? AND tenant_id = ? AND version = ?
            """,
            (
                str(remaining_amount),
                status.value,
                transferred_at,
                utc_now_iso(),
                advance.id,
                advance.tenant_id,
                advance.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConcurrentModification(
                "Advance was modified by another operation",
                advance_id=advance.id,
                expected_version=advance.version,
            )
        advance.remaining_amount = remaining_amount
        advance.status = status
        advance.version += 1
        if transferred_at is not None:
            advance.transferred_at = transferred_at
        return advance

    # --------------------------------------------------------------------- #
    # Query helpers
    # --------------------------------------------------------------------- #

    def get(self, ctx: EngineContext, advance_id: str) -> Optional[Advance]:
        cursor = self.db.execute(
            f"""
            SELECT {_COLUMNS} FROM advances
            WHERE id = ? AND tenant_id = ? AND branch_id = ?
            """,
            (advance_id, ctx.tenant_id, ctx.branch_id),
        )
        row = cursor.fetchone()
        return _row_to_advance(row) if row else None

    def find(
        self,
        ctx: EngineContext,
        advance_filter: Optional[AdvanceFilter] = None,
        statuses: Optional[Sequence[AdvanceStatus]] = None,
    ) -> List[Advance]:
        """Return matching advances, most recent first."""
        query = f"SELECT {_COLUMNS} FROM advances WHERE tenant_id = ? AND branch_id = ?"
        params: List = [ctx.tenant_id, ctx.branch_id]

        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(status.value for status in statuses)

        if advance_filter is not None:
            if advance_filter.holder_ref:
                query += " AND holder_ref = ?"
                params.append(advance_filter.holder_ref)
            if advance_filter.holder_name:
                query += " AND holder_name = ? COLLATE NOCASE"
                params.append(advance_filter.holder_name)
            if advance_filter.general_custody_only:
                query += " AND cost_center_id IS NULL"
            elif advance_filter.cost_center_id:
                query += " AND cost_center_id = ?"
                params.append(advance_filter.cost_center_id)

        query += " ORDER BY created_at_utc DESC, rowid DESC"

        cursor = self.db.execute(query, params)
        return [_row_to_advance(row) for row in cursor.fetchall()]

    def next_reference_number(self, ctx: EngineContext, prefix: str, width: int) -> str:
        """Return the next sequential reference (e.g. ADV-004) for the tenant."""
        cursor = self.db.execute(
            """
            SELECT reference_number FROM advances
            WHERE tenant_id = ? AND reference_number LIKE ?
            """,
            (ctx.tenant_id, f"{prefix}-%"),
        )
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        highest = 0
        for row in cursor.fetchall():
            match = pattern.match(row["reference_number"])
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{highest + 1:0{width}d}"

    def reference_exists(self, ctx: EngineContext, reference_number: str) -> bool:
        cursor = self.db.execute(
            "SELECT 1 FROM advances WHERE tenant_id = ? AND reference_number = ?",
            (ctx.tenant_id, reference_number),
        )
        return cursor.fetchone() is not None
