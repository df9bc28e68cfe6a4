#!/usr/bin/env python3
"""
Schema runner for the sponsorship tables

Usage:
    python run_migration.py up    # Create any missing tables and indexes
    python run_migration.py check # Report which tables exist
"""

import sys

from sqlalchemy import inspect, text

from kleanly import create_app, db

TABLES = (
    "businesses",
    "regions",
    "categories",
    "stripe_customers",
    "sponsorships",
    "sponsorship_locks",
    "sponsored_invoices",
    "billing_events",
)


def check_tables(app=None):
    """Print presence and row counts; True when every table exists."""
    app = app or create_app()
    with app.app_context():
        existing = set(inspect(db.engine).get_table_names())
        all_present = True
        for name in TABLES:
            if name in existing:
                rows = db.session.execute(text(f"SELECT COUNT(*) FROM {name}")).scalar()
                print(f"✅ {name}: {rows} rows")
            else:
                all_present = False
                print(f"❌ {name}: missing")
        return all_present


def run_migration_up():
    """Create missing tables (existing ones are left untouched)."""
    print("Running migration UP (creating sponsorship tables)...")
    app = create_app()
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            db.session.rollback()
            print(f"❌ Migration failed: {e}")
            return False
    print("✅ Migration completed successfully!")
    return check_tables(app)


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == 'up':
        success = run_migration_up()
    elif command == 'check':
        success = check_tables()
    else:
        print(f"❌ Unknown command: {command}")
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
