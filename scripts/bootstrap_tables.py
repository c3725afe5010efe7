#!/usr/bin/env python3
"""Create every table named in the schema file on the configured backend.

Usage:
    SCHEMA_PATH=tables.json STORE_BACKEND=widecolumn python scripts/bootstrap_tables.py

    # Show what would be created without touching the backend:
    python scripts/bootstrap_tables.py --schema tables.json --dry-run

Environment Variables:
    SCHEMA_PATH: JSON file mapping table names to their configuration
    STORE_BACKEND: memory, keyvalue, document or widecolumn
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tables(dry_run: bool = False) -> dict:
    """Create missing tables.

    Returns:
        dict mapping table name to 'created', 'exists' or 'would_create'
    """
    # Import here to avoid loading config before env vars are set
    from nosqlgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = {name.lower() for name in runtime.catalog.list_tables(refresh=True)}
    results = {}
    for name in runtime.schema.table_names():
        if name.lower() in existing:
            print(f"Table {name} already exists")
            results[name] = "exists"
        elif dry_run:
            print(f"[DRY RUN] Would create table {name}")
            results[name] = "would_create"
        else:
            runtime.catalog.create_table(name)
            print(f"Created table {name}")
            results[name] = "created"
    return results


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the tables listed in the schema file")
    parser.add_argument("--schema", help="Schema file (or set SCHEMA_PATH env var)")
    parser.add_argument("--backend", help="Backend adapter (or set STORE_BACKEND env var)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if args.schema:
        os.environ["SCHEMA_PATH"] = args.schema
    if args.backend:
        os.environ["STORE_BACKEND"] = args.backend
    if not os.environ.get("SCHEMA_PATH"):
        print("Error: schema file required (--schema or SCHEMA_PATH env var)")
        return 1

    from nosqlgate.service.errors import ServiceError

    try:
        results = bootstrap_tables(dry_run=args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1
    finally:
        from nosqlgate.service.runtime import close_runtime

        close_runtime()

    created = sum(1 for status in results.values() if status == "created")
    print(f"Done: {created} created, {len(results) - created} unchanged")
    return 0


if __name__ == "__main__":
    sys.exit(main())
