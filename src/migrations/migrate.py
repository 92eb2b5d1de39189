"""SQLite schema migration runner with backups."""

from __future__ import annotations

import logging
import os
import re
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = PROJECT_ROOT / "data"
DB_PATH = Path(os.environ.get("STUDYGEN_DB_PATH") or DATA_DIR / "studygen.db")
BACKUPS_DIR = PROJECT_ROOT / "backups"
LOCK_PATH = BACKUPS_DIR / ".migrate.lock"
MIGRATIONS_SQL_DIR = Path(__file__).resolve().parent / "sql"


class MigrationError(RuntimeError):
    """Raised when a migration fails and rollback was triggered."""


class MigrationInProgressError(RuntimeError):
    """Raised when a migration lock already exists."""


def _ensure_dirs() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    BACKUPS_DIR.mkdir(parents=True, exist_ok=True)


def list_migrations() -> list[tuple[int, Path]]:
    out: list[tuple[int, Path]] = []
    for path in MIGRATIONS_SQL_DIR.glob("[0-9][0-9][0-9]_*.sql"):
        match = re.match(r"^(\d{3})_", path.name)
        if match:
            out.append((int(match.group(1)), path))
    out.sort(key=lambda x: x[0])
    return out


def latest_migration_version() -> int:
    """Return the latest migration numeric version from sql files."""
    migrations = list_migrations()
    return migrations[-1][0] if migrations else 0


def read_schema_version(conn: sqlite3.Connection) -> int:
    # A database without the meta table is at version 0.
    row = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='meta'").fetchone()
    if row is None:
        return 0
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if not row:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _backup_db() -> Path | None:
    if not DB_PATH.exists():
        return None
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    target = BACKUPS_DIR / f"{DB_PATH.stem}_{timestamp}.db"
    shutil.copy2(DB_PATH, target)
    return target


def _acquire_lock() -> None:
    try:
        LOCK_PATH.touch(exist_ok=False)
    except FileExistsError as e:
        raise MigrationInProgressError("migration in progress") from e


def _release_lock() -> None:
    try:
        LOCK_PATH.unlink()
    except FileNotFoundError:
        pass


def apply_migrations(conn: sqlite3.Connection, migrations: list[tuple[int, Path]]) -> int:
    """Apply *migrations* newer than the stored version; return the final version."""
    current = read_schema_version(conn)
    pending = [(v, p) for v, p in migrations if v > current]
    for version, sql_path in pending:
        sql = sql_path.read_text(encoding="utf-8")
        # executescript commits any open transaction, so the script carries its own.
        script = (
            "BEGIN IMMEDIATE;\n"
            f"{sql.strip().rstrip(';')};\n"
            "INSERT INTO meta(key, value) VALUES('schema_version', "
            f"'{int(version)}') ON CONFLICT(key) DO UPDATE SET value=excluded.value;\n"
            "COMMIT;"
        )
        try:
            conn.executescript(script)
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise MigrationError(
                f"Migration failed at {sql_path.name}. Rolled back. Use backups in: {BACKUPS_DIR}"
            ) from e
        LOGGER.info("migration.applied(version=%s,file=%s)", version, sql_path.name)
    return pending[-1][0] if pending else current


def migrate_to_latest() -> int:
    """
    Run pending SQL migrations and return the final schema version.

    A missing database is created; an existing one is backed up before any
    pending migration runs.
    """
    _ensure_dirs()
    _acquire_lock()
    try:
        migrations = list_migrations()
        if not migrations:
            return 0
        conn = sqlite3.connect(DB_PATH, isolation_level=None)
        try:
            if read_schema_version(conn) < migrations[-1][0]:
                backup = _backup_db()
                if backup is not None:
                    LOGGER.info("migration.backup(path=%s)", backup)
            return apply_migrations(conn, migrations)
        finally:
            conn.close()
    finally:
        _release_lock()
