"""
Vendor resolution for purchase-order snapshots.

Vendors are master data owned by the surrounding application. The engine
either references an existing vendor by id or resolves a free-text identity
(name, optional phone/email) to an existing vendor, creating one when no
match exists.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import List, Optional

import structlog

from custody.core.database import get_db_connection
from custody.domain.errors import ExternalDependencyFailure, NotFound, ValidationError
from custody.domain.models import EngineContext, VendorIdentity, VendorRef
from custody.utils.database_utils import TransactionError, transactional
from custody.utils.datetime_helpers import utc_now_iso

logger = structlog.get_logger(__name__)

DEPENDENCY = "vendor_directory"


def normalize_vendor_name(name: str) -> str:
    """Collapse whitespace and casefold so 'ACME  Co' and 'acme co' match."""
    return " ".join(name.split()).casefold()


def _row_to_vendor(row: sqlite3.Row) -> VendorIdentity:
    return VendorIdentity(
        id=row["id"], name=row["name"], phone=row["phone"], email=row["email"]
    )


class VendorDirectory:
    """Resolve-or-create access to the vendors table."""

    def __init__(self, db: Optional[sqlite3.Connection] = None) -> None:
        self._owns_connection = db is None
        self.db = db or get_db_connection()

    def close(self) -> None:
        """Close the managed database connection if owned by the directory."""
        if not self._owns_connection:
            return
        try:
            self.db.close()
        except Exception:  # pragma: no cover - defensive close
            pass

    def resolve(self, ctx: EngineContext, vendor: VendorRef) -> VendorIdentity:
        """
        Return the vendor identified by ``vendor``, creating it if needed.

        Raises:
            ValidationError: If neither an id nor a name is given.
            NotFound: If an explicit vendor id is unknown.
            ExternalDependencyFailure: If the directory cannot be queried.
        """
        try:
            if vendor.vendor_id:
                found = self._get(ctx, vendor.vendor_id)
                if found is None:
                    raise NotFound("vendor", vendor.vendor_id)
                return found

            if not vendor.name or not vendor.name.strip():
                raise ValidationError("Vendor id or name is required", field="vendor")

            normalized = normalize_vendor_name(vendor.name)
            cursor = self.db.execute(
                """
                SELECT id, name, phone, email FROM vendors
                WHERE tenant_id = ? AND name_normalized = ?
                """,
                (ctx.tenant_id, normalized),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_vendor(row)
            if self.db.in_transaction:
                return self._create(ctx, vendor, normalized)
            with transactional(self.db):
                return self._create(ctx, vendor, normalized)
        except (sqlite3.Error, TransactionError) as exc:
            logger.error("vendor_resolution_failed", tenant_id=ctx.tenant_id, error=str(exc))
            raise ExternalDependencyFailure(DEPENDENCY, str(exc)) from exc

    def search(self, ctx: EngineContext, text: str, limit: int = 10) -> List[VendorIdentity]:
        """Free-text search by name or phone, best matches first."""
        needle = normalize_vendor_name(text or "")
        if not needle:
            return []
        cursor = self.db.execute(
            """
            SELECT id, name, phone, email FROM vendors
            WHERE tenant_id = ? AND (name_normalized LIKE ? OR phone LIKE ?)
            ORDER BY CASE WHEN name_normalized = ? THEN 0 ELSE 1 END, name
            LIMIT ?
            """,
            (ctx.tenant_id, f"%{needle}%", f"%{needle}%", needle, limit),
        )
        return [_row_to_vendor(row) for row in cursor.fetchall()]

    def _get(self, ctx: EngineContext, vendor_id: str) -> Optional[VendorIdentity]:
        cursor = self.db.execute(
            "SELECT id, name, phone, email FROM vendors WHERE id = ? AND tenant_id = ?",
            (vendor_id, ctx.tenant_id),
        )
        row = cursor.fetchone()
        return _row_to_vendor(row) if row else None

    def _create(self, ctx: EngineContext, vendor: VendorRef, normalized: str) -> VendorIdentity:
        created = VendorIdentity(
            id=str(uuid.uuid4()),
            name=" ".join(vendor.name.split()),
            phone=vendor.phone or None,
            email=vendor.email or None,
        )
        self.db.execute(
            """
            INSERT INTO vendors (id, tenant_id, name, name_normalized, phone, email, created_at_utc)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                created.id,
                ctx.tenant_id,
                created.name,
                normalized,
                created.phone,
                created.email,
                utc_now_iso(),
            ),
        )
        logger.info("vendor_created", vendor_id=created.id, tenant_id=ctx.tenant_id)
        return created
