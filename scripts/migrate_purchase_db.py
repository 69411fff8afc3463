#!/usr/bin/env python3
"""
Migration: bring a purchase database up to the current schema.
Applies every pending step (legacy table rebuilds, purchase tables, caches,
shipping details, sync bookkeeping) in order, then recreates any table or
column an older install left out even if its user_version is already higher.

Run: python scripts/migrate_purchase_db.py --db purchases.db
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from purchase_store import SCHEMA_VERSION, PurchaseStore, connect, missing_schema_objects  # noqa: E402

ap = argparse.ArgumentParser()
ap.add_argument("--db", default="purchases.db")
args = ap.parse_args()

conn = connect(args.db)
before = int(conn.execute("PRAGMA user_version").fetchone()[0])
missing = missing_schema_objects(conn)

if before >= SCHEMA_VERSION and not missing:
    print(f"Schema already at version {before}; nothing to do")
else:
    if missing:
        print(f"Missing from {args.db}: {', '.join(missing)}")
    print(f"Migrating {args.db} from version {before}...")
    store = PurchaseStore(conn)
    print(f"✓ Schema now at version {store.schema_version()}")

conn.close()
