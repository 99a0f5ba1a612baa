#!/usr/bin/env python3
"""
Run database migrations for StepGuard.

Creates any missing tables, then copies two-factor state still held in the
legacy users.mfa_* columns into two_factor_auth.

Usage:
    python scripts/migrate_db.py
    DATABASE_URL=sqlite:///./stepguard.db python scripts/migrate_db.py
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from stepguard.database.auth_db import get_auth_db
from stepguard.database.two_factor_store import TwoFactorStateStore


def backfill_two_factor_state(db) -> int:
    """
    Copy enabled legacy state for users without a two_factor_auth row.

    Returns:
        Number of users copied.
    """
    try:
        with db.get_session() as session:
            rows = session.execute(
                text("""
                    SELECT u.user_id
                    FROM users u
                    LEFT JOIN two_factor_auth t ON t.user_id = u.user_id
                    WHERE t.user_id IS NULL AND u.totp_secret IS NOT NULL
                """)
            ).fetchall()
    except SQLAlchemyError as e:
        print(f"    Legacy columns not readable, nothing to copy ({e.__class__.__name__})")
        return 0

    store = TwoFactorStateStore(db)
    copied = 0
    for row in rows:
        # read() copies enabled legacy state into the primary table
        if store.read(str(row[0])).enabled:
            copied += 1
    return copied


def main():
    print("=" * 60)
    print("StepGuard Database Migration")
    print("=" * 60)

    db = get_auth_db()

    print("\n[1] Creating missing tables...")
    db.init_schema()
    print("    Schema up to date")

    print("\n[2] Copying legacy two-factor state...")
    copied = backfill_two_factor_state(db)
    if copied:
        print(f"    Copied {copied} user(s) into two_factor_auth")
    else:
        print("    No legacy state to copy")

    print("\n" + "=" * 60)
    print("Migration complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
