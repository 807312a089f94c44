#!/usr/bin/env python
"""Schema migration CLI for the SQLite order store.

Usage (examples):

python scripts/migrate.py --db condexec.db list
python scripts/migrate.py --db condexec.db apply
python scripts/migrate.py --db condexec.db apply --dry-run
python scripts/migrate.py --db condexec.db rollback --version 3
python scripts/migrate.py --db condexec.db rollback --last --yes
"""
import argparse
import sqlite3
import sys
from pathlib import Path

# Project root on sys.path so `condexec` imports when run as a plain script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from condexec.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_migration,
)
from condexec.errors import InvalidParameter


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirmed(prompt):
    try:
        return input(f"{prompt} This may DROP data. Type 'yes' to continue: ").strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # Non-interactive stdin
        return True


def apply(conn, dry_run):
    if dry_run:
        pending = pending_versions(conn)
        if pending:
            print("Pending migrations:", pending)
        else:
            print("No pending migrations; database up-to-date.")
        return

    applied = apply_migrations(conn)
    if applied:
        print("Applied migrations:", applied)
    else:
        print("No migrations applied; database up-to-date.")


def rollback(conn, version, last, dry_run, yes):
    if last:
        applied = applied_versions(conn)
        if not applied:
            print("No applied migrations to rollback")
            return 0
        version = max(applied)
    if version is None:
        print("Specify --version or --last")
        return 1

    if dry_run:
        print(f"Would rollback migration {version} (dry-run)")
        return 0
    if not yes and not confirmed(f"Are you sure you want to rollback migration {version}?"):
        print("Aborted.")
        return 0
    try:
        rollback_migration(conn, version)
    except InvalidParameter as e:
        print(f"Rollback failed: {e}")
        return 1
    print(f"Rolled back migration {version}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Order store schema migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args()
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)
    code = 0
    try:
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            apply(conn, args.dry_run)
        elif args.cmd == "rollback":
            code = rollback(conn, args.version, args.last, args.dry_run, args.yes)
        else:
            parser.print_help()
    finally:
        conn.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
