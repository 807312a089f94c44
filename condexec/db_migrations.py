from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .errors import InvalidParameter
from .logging_setup import logger


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            order_id TEXT PRIMARY KEY,
            record_type TEXT NOT NULL,
            symbol TEXT NOT NULL,
            market TEXT NOT NULL,
            status TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS orders")


def _migration_2(conn):
    """Add indices for the status scan done on every monitoring tick."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_symbol ON orders(symbol)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)")


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_orders_status")
    cur.execute("DROP INDEX IF EXISTS idx_orders_symbol")
    cur.execute("DROP INDEX IF EXISTS idx_orders_created_at")


def _migration_3(conn):
    """Stop-loss / take-profit pairs."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS order_pairs (
            pair_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            value TEXT NOT NULL,
            updated_at REAL
        )
        """
    )


def _migration_3_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS order_pairs")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
    3: _migration_3,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
    3: _migration_3_down,
}


def ensure_migrations_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> Dict[int, str]:
    """Applied migration versions mapped to their ISO applied_at timestamp."""
    ensure_migrations_table(conn)
    rows = conn.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version").fetchall()
    return {row[0]: row[1] for row in rows}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def _in_transaction(conn, step: Callable[[], None]) -> None:
    try:
        conn.execute("BEGIN IMMEDIATE")
        step()
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def apply_migrations(conn) -> List[int]:
    """Apply every pending migration, each in its own transaction.

    Returns the versions applied by this call, in order.
    """
    applied_now = []
    for version in pending_versions(conn):
        def step(v=version):
            MIGRATIONS[v](conn)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )

        _in_transaction(conn, step)
        applied_now.append(version)
        logger.info(f"Migration applied | version={version}")
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Run the down migration of ``version`` and forget it was applied.

    Raises:
        InvalidParameter: No down migration exists for this version
    """
    down = MIGRATION_DOWNS.get(version)
    if down is None:
        raise InvalidParameter(f"no down migration registered for version {version}")

    def step():
        down(conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))

    _in_transaction(conn, step)
    logger.warning(f"Migration rolled back | version={version}")


def rollback_last(conn) -> Optional[int]:
    """Roll back the newest applied migration; returns its version, or None if none is applied."""
    applied = applied_versions(conn)
    if not applied:
        return None
    version = max(applied)
    rollback_migration(conn, version)
    return version
