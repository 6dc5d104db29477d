"""
Lookups against reference data owned by the surrounding application.

Cost centers (projects) and employees are maintained elsewhere; the engine
only checks that the identifiers it is given exist within the tenant.
"""

from __future__ import annotations

import sqlite3
from typing import Optional

from custody.core.database import get_db_connection
from custody.domain.models import EngineContext


class ReferenceRepository:
    """Read-only access to the cost_centers and employees tables."""

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

    def cost_center_exists(self, ctx: EngineContext, cost_center_id: str) -> bool:
        cursor = self.db.execute(
            """
            SELECT 1 FROM cost_centers
            WHERE id = ? AND tenant_id = ? AND is_active = 1
            """,
            (cost_center_id, ctx.tenant_id),
        )
        return cursor.fetchone() is not None

    def get_employee_name(self, ctx: EngineContext, employee_ref: str) -> Optional[str]:
        """Return the display name of an active employee, or None if unknown."""
        cursor = self.db.execute(
            """
            SELECT full_name FROM employees
            WHERE id = ? AND tenant_id = ? AND is_active = 1
            """,
            (employee_ref, ctx.tenant_id),
        )
        row = cursor.fetchone()
        return row["full_name"] if row else None
