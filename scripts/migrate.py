#!/usr/bin/env python3
"""Install the EOTY identity schema into a Postgres database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/eoty python scripts/migrate.py
    python scripts/migrate.py --dsn postgresql://... --seed-chapter "Downtown" --location "Springfield"

The DDL is idempotent (``IF NOT EXISTS`` everywhere), so re-running upgrades a
partially migrated database by adding the optional columns and tables.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def migrate(
    dsn: str,
    *,
    seed_permissions: bool = True,
    chapter_name: str | None = None,
    chapter_location: str | None = None,
) -> dict:
    from eoty.storage.common import (
        get_default_permission_catalog,
        get_default_role_permissions,
    )
    from eoty.storage.postgres import PostgresStore

    store = PostgresStore(dsn, verify_schema=False)
    try:
        store.apply_schema()
        print("Schema applied")
        if seed_permissions:
            store.seed_permissions(
                get_default_permission_catalog(), get_default_role_permissions()
            )
            print("Permission catalog seeded")
        chapter_id = None
        if chapter_name:
            chapter = store.create_chapter(chapter_name, chapter_location)
            chapter_id = chapter.id
            print(f"Created chapter {chapter.name!r} (id: {chapter.id})")
        capabilities = sorted(store.probe_capabilities())
        print(f"Capabilities present: {', '.join(capabilities) or 'none'}")
        return {"chapter_id": chapter_id, "capabilities": capabilities}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Apply the EOTY identity schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dsn",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--skip-permissions",
        action="store_true",
        help="Do not seed the permission catalog",
    )
    parser.add_argument("--seed-chapter", help="Create an active chapter with this name")
    parser.add_argument("--location", help="Location for the seeded chapter")
    args = parser.parse_args()

    if not args.dsn:
        print("Error: --dsn or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        migrate(
            args.dsn,
            seed_permissions=not args.skip_permissions,
            chapter_name=args.seed_chapter,
            chapter_location=args.location,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
