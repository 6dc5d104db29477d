"""
Database schema definition for the custody reconciliation engine.

This module defines the custody tables (advances, settlements, purchase
orders), the treasury tables used by the local gateway, and the reference
tables (cost centers, employees, vendors) with constraints and indexes.
"""

import sqlite3

from custody.utils.logging_config import get_logger

logger = get_logger(__name__)

ADVANCE_STATUSES = (
    "pending",
    "approved",
    "rejected",
    "settled",
    "partially_settled",
    "transferred",
)


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create all database tables with proper constraints and indexes.

    Args:
        conn: SQLite database connection.
    """
    # Create tables in dependency order
    create_cost_centers_table(conn)
    create_employees_table(conn)
    create_vendors_table(conn)
    create_treasury_accounts_table(conn)
    create_treasury_transactions_table(conn)
    create_advances_table(conn)
    create_settlements_table(conn)
    create_purchase_orders_table(conn)
    create_purchase_order_lines_table(conn)

    # Create triggers for data integrity
    create_settlement_append_only_trigger(conn)
    create_purchase_order_immutable_triggers(conn)
    create_advance_integrity_triggers(conn)

    conn.commit()
    logger.debug("schema_ready")


def create_cost_centers_table(conn: sqlite3.Connection) -> None:
    """Create the cost_centers (projects) table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cost_centers (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        )
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_cost_centers_tenant
        ON cost_centers(tenant_id)
    """
    )


def create_employees_table(conn: sqlite3.Connection) -> None:
    """Create the employees table used to resolve internal holders."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS employees (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            full_name TEXT NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        )
    """
    )


def create_vendors_table(conn: sqlite3.Connection) -> None:
    """Create the vendors table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vendors (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            name_normalized TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            UNIQUE(tenant_id, name_normalized)
        )
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_vendors_phone
        ON vendors(tenant_id, phone)
    """
    )


def create_treasury_accounts_table(conn: sqlite3.Connection) -> None:
    """Create the treasury_accounts table (cash boxes and bank accounts)."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS treasury_accounts (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            branch_id TEXT NOT NULL,
            name TEXT NOT NULL,
            account_type TEXT NOT NULL DEFAULT 'cash' CHECK (account_type IN ('cash', 'bank')),
            currency TEXT NOT NULL,
            current_balance TEXT NOT NULL DEFAULT '0.00',
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            updated_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        )
    """
    )


def create_treasury_transactions_table(conn: sqlite3.Connection) -> None:
    """Create the treasury_transactions table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS treasury_transactions (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            direction TEXT NOT NULL CHECK (direction IN ('inflow', 'outflow')),
            amount TEXT NOT NULL,
            reference_type TEXT,
            reference_id TEXT,
            description TEXT,
            is_void BOOLEAN NOT NULL DEFAULT FALSE,
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            FOREIGN KEY (account_id) REFERENCES treasury_accounts(id)
        )
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_treasury_transactions_reference
        ON treasury_transactions(reference_type, reference_id)
    """
    )


def create_advances_table(conn: sqlite3.Connection) -> None:
    """Create the advances (custody grants) table."""
    statuses = ", ".join(f"'{status}'" for status in ADVANCE_STATUSES)
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS advances (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            branch_id TEXT NOT NULL,
            holder_name TEXT NOT NULL,
            holder_ref TEXT,
            cost_center_id TEXT,
            original_amount TEXT NOT NULL,
            remaining_amount TEXT NOT NULL,
            currency TEXT NOT NULL,
            treasury_account_id TEXT NOT NULL,
            reference_number TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ({statuses})),
            source_advance_id TEXT,
            transferred_at_utc TEXT,
            notes TEXT,
            version INTEGER NOT NULL DEFAULT 1,
            created_by TEXT NOT NULL DEFAULT 'system',
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            updated_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            FOREIGN KEY (holder_ref) REFERENCES employees(id),
            FOREIGN KEY (cost_center_id) REFERENCES cost_centers(id),
            FOREIGN KEY (source_advance_id) REFERENCES advances(id),
            UNIQUE(tenant_id, reference_number)
        )
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_advances_scope_status
        ON advances(tenant_id, branch_id, status)
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_advances_source
        ON advances(source_advance_id)
    """
    )


def create_settlements_table(conn: sqlite3.Connection) -> None:
    """Create the settlements table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settlements (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            branch_id TEXT NOT NULL,
            linked_advance_id TEXT NOT NULL,
            kind TEXT NOT NULL CHECK (kind IN ('expense', 'return')),
            amount TEXT NOT NULL,
            currency TEXT NOT NULL,
            cost_center_id TEXT,
            reference_number TEXT NOT NULL,
            treasury_transaction_id TEXT,
            notes TEXT,
            created_by TEXT NOT NULL DEFAULT 'system',
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            FOREIGN KEY (linked_advance_id) REFERENCES advances(id),
            CHECK (
                (kind = 'return' AND treasury_transaction_id IS NOT NULL)
                OR (kind = 'expense' AND treasury_transaction_id IS NULL)
            )
        )
    """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_settlements_advance
        ON settlements(linked_advance_id)
    """
    )


def create_purchase_orders_table(conn: sqlite3.Connection) -> None:
    """Create the purchase_orders table (one per expense settlement)."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS purchase_orders (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            settlement_id TEXT NOT NULL UNIQUE,
            po_number TEXT NOT NULL,
            vendor_id TEXT NOT NULL,
            vendor_name TEXT NOT NULL,
            vendor_phone TEXT,
            vendor_email TEXT,
            currency TEXT NOT NULL,
            total TEXT NOT NULL,
            created_at_utc TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
            FOREIGN KEY (settlement_id) REFERENCES settlements(id),
            FOREIGN KEY (vendor_id) REFERENCES vendors(id),
            UNIQUE(tenant_id, po_number)
        )
    """
    )


def create_purchase_order_lines_table(conn: sqlite3.Connection) -> None:
    """Create the purchase_order_lines table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS purchase_order_lines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            purchase_order_id TEXT NOT NULL,
            line_no INTEGER NOT NULL,
            description TEXT NOT NULL,
            quantity TEXT NOT NULL,
            unit_price TEXT NOT NULL,
            line_total TEXT NOT NULL,
            FOREIGN KEY (purchase_order_id) REFERENCES purchase_orders(id),
            UNIQUE(purchase_order_id, line_no)
        )
    """
    )


def create_settlement_append_only_trigger(conn: sqlite3.Connection) -> None:
    """Create triggers to prevent UPDATE/DELETE on settlements."""
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_settlement_update
        BEFORE UPDATE ON settlements
        BEGIN
            SELECT RAISE(ABORT, 'Cannot update settlements - append-only table');
        END
    """
    )

    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_settlement_delete
        BEFORE DELETE ON settlements
        BEGIN
            SELECT RAISE(ABORT, 'Cannot delete from settlements - append-only table');
        END
    """
    )


def create_purchase_order_immutable_triggers(conn: sqlite3.Connection) -> None:
    """Create triggers that freeze purchase order snapshots after INSERT."""
    for table in ("purchase_orders", "purchase_order_lines"):
        conn.execute(
            f"""
            CREATE TRIGGER IF NOT EXISTS prevent_{table}_update
            BEFORE UPDATE ON {table}
            BEGIN
                SELECT RAISE(ABORT, 'Cannot modify {table} - snapshot is immutable');
            END
        """
        )
        conn.execute(
            f"""
            CREATE TRIGGER IF NOT EXISTS prevent_{table}_delete
            BEFORE DELETE ON {table}
            BEGIN
                SELECT RAISE(ABORT, 'Cannot delete from {table} - snapshot is immutable');
            END
        """
        )


def create_advance_integrity_triggers(conn: sqlite3.Connection) -> None:
    """Create triggers guarding terminal status and the original amount of advances."""
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_transferred_advance_update
        BEFORE UPDATE ON advances
        WHEN OLD.status = 'transferred'
        BEGIN
            SELECT RAISE(ABORT, 'Cannot modify a transferred advance');
        END
    """
    )

    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_advance_original_amount_update
        BEFORE UPDATE OF original_amount ON advances
        WHEN NEW.original_amount <> OLD.original_amount
        BEGIN
            SELECT RAISE(ABORT, 'Cannot modify advances.original_amount');
        END
    """
    )

    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_advance_delete
        BEFORE DELETE ON advances
        BEGIN
            SELECT RAISE(ABORT, 'Cannot delete advances');
        END
    """
    )
