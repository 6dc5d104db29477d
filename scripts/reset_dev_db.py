"""
Development reset script for the custody engine.

Usage:
  python scripts/reset_dev_db.py            # Reset DB, asking for confirmation
  python scripts/reset_dev_db.py --yes      # Skip confirmation prompt
  python scripts/reset_dev_db.py --db-path data/other.db

Deletes the SQLite database configured by Config.DB_PATH (including its WAL
side files) and reinitializes it with schema + demo seed data.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure project root is on sys.path so `custody` imports work when executed from anywhere
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from custody.core.config import Config
from custody.core.database import initialize_database
from custody.core.seed_data import DEMO_BRANCH_ID, DEMO_TENANT_ID


def database_files(db_path: Path) -> list[Path]:
    return [db_path, db_path.with_name(db_path.name + "-wal"), db_path.with_name(db_path.name + "-shm")]


def main() -> None:
    parser = argparse.ArgumentParser(description="Reset the development custody database")
    parser.add_argument("--db-path", default=Config.DB_PATH, help="Database file to reset")
    parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt")
    args = parser.parse_args()

    db_path = Path(args.db_path)

    print("\n=== Custody Dev Reset ===")
    print(f"DB path: {db_path}")

    if not args.yes:
        try:
            confirm = input("Type 'RESET' to proceed: ").strip()
        except KeyboardInterrupt:
            print("\nAborted.")
            return
        if confirm.upper() != "RESET":
            print("Aborted.")
            return

    for path in database_files(db_path):
        if path.exists():
            path.unlink()
            print(f"Deleted: {path}")

    conn = initialize_database(str(db_path))
    conn.close()
    print("Reinitialized database (schema + seed data)")
    print(f"\nReset complete. Demo scope: tenant={DEMO_TENANT_ID} branch={DEMO_BRANCH_ID}")


if __name__ == "__main__":
    main()
