"""
Seed data insertion for the custody reconciliation engine.

This module inserts the reference data a development database needs: one
demo tenant/branch with cost centers, employees, vendors and treasury accounts.
"""

import sqlite3
from typing import Dict, List

from custody.integrations.vendor_directory import normalize_vendor_name
from custody.utils.logging_config import get_logger

logger = get_logger(__name__)

DEMO_TENANT_ID = "demo-tenant"
DEMO_BRANCH_ID = "main-branch"


def insert_seed_data(conn: sqlite3.Connection) -> None:
    """
    Insert all seed data into the database.

    Args:
        conn: SQLite database connection.
    """
    # Insert in dependency order
    cost_center_ids = insert_cost_centers(conn)
    employee_ids = insert_employees(conn)
    vendor_ids = insert_vendors(conn)
    account_ids = insert_treasury_accounts(conn)
    conn.commit()

    logger.info(
        "seed_data_inserted",
        tenant_id=DEMO_TENANT_ID,
        cost_centers=len(cost_center_ids),
        employees=len(employee_ids),
        vendors=len(vendor_ids),
        treasury_accounts=len(account_ids),
    )


def insert_cost_centers(conn: sqlite3.Connection) -> List[str]:
    """Insert demo cost centers (projects)."""
    cost_centers = [
        ("cc-villa-renovation", "Villa Renovation"),
        ("cc-warehouse-fitout", "Warehouse Fit-out"),
    ]
    for cost_center_id, name in cost_centers:
        conn.execute(
            "INSERT OR IGNORE INTO cost_centers (id, tenant_id, name) VALUES (?, ?, ?)",
            (cost_center_id, DEMO_TENANT_ID, name),
        )
    return [cost_center_id for cost_center_id, _ in cost_centers]


def insert_employees(conn: sqlite3.Connection) -> List[str]:
    """Insert demo employees who can hold advances."""
    employees = [
        ("emp-site-manager", "Site Manager"),
        ("emp-procurement", "Procurement Officer"),
    ]
    for employee_id, full_name in employees:
        conn.execute(
            "INSERT OR IGNORE INTO employees (id, tenant_id, full_name) VALUES (?, ?, ?)",
            (employee_id, DEMO_TENANT_ID, full_name),
        )
    return [employee_id for employee_id, _ in employees]


def insert_vendors(conn: sqlite3.Connection) -> List[str]:
    """Insert demo vendors."""
    vendors: List[Dict[str, str]] = [
        {"id": "ven-building-supplies", "name": "Building Supplies Co", "phone": "0500000001"},
        {"id": "ven-hardware-store", "name": "Corner Hardware Store", "phone": "0500000002"},
    ]
    for vendor in vendors:
        conn.execute(
            """
            INSERT OR IGNORE INTO vendors (id, tenant_id, name, name_normalized, phone)
            VALUES (?, ?, ?, ?, ?)
        """,
            (
                vendor["id"],
                DEMO_TENANT_ID,
                vendor["name"],
                normalize_vendor_name(vendor["name"]),
                vendor["phone"],
            ),
        )
    return [vendor["id"] for vendor in vendors]


def insert_treasury_accounts(conn: sqlite3.Connection) -> List[str]:
    """Insert the demo cash box and bank account."""
    accounts = [
        ("acct-main-cash", "Main Cash Box", "cash", "10000.00"),
        ("acct-main-bank", "Main Bank Account", "bank", "50000.00"),
    ]
    for account_id, name, account_type, balance in accounts:
        conn.execute(
            """
            INSERT OR IGNORE INTO treasury_accounts
            (id, tenant_id, branch_id, name, account_type, currency, current_balance)
            VALUES (?, ?, ?, ?, ?, 'SAR', ?)
        """,
            (account_id, DEMO_TENANT_ID, DEMO_BRANCH_ID, name, account_type, balance),
        )
    return [account_id for account_id, *_ in accounts]
