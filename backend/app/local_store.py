"""
Branch-local SQLite store for ledger entries.

The store has to survive power cuts at the branch, so every connection runs in
WAL mode with synchronous=FULL, and writes go through `BEGIN IMMEDIATE` so that
concurrent writers (HTTP handlers, the sync thread, a standalone worker process)
are serialised by SQLite itself instead of by in-process locks.
"""

import os
import sqlite3
from contextlib import contextmanager

from .errors import StorageError

BUSY_TIMEOUT_SECONDS = 15.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_entries (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  branch_id TEXT NOT NULL,
  type TEXT NOT NULL CHECK (type IN ('IN', 'OUT')),
  category TEXT NOT NULL,
  amount INTEGER NOT NULL CHECK (amount > 0),
  description TEXT,
  created_at TEXT NOT NULL,
  reversal_of TEXT REFERENCES ledger_entries(id),
  sync_state TEXT NOT NULL DEFAULT 'pending'
    CHECK (sync_state IN ('pending', 'syncing', 'synced', 'failed')),
  failure_reason TEXT,
  synced_at TEXT,
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_attempt_at TEXT,
  retry_requested INTEGER NOT NULL DEFAULT 0,
  CHECK ((sync_state = 'synced') = (synced_at IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS sync_heartbeats (
  worker_name TEXT PRIMARY KEY,
  connectivity TEXT NOT NULL,
  last_cycle_at TEXT NOT NULL,
  last_successful_sync_at TEXT,
  last_error TEXT,
  details_json TEXT NOT NULL DEFAULT '{}'
);
"""

# Indexes and guards run after the column migration below.
GUARDS_SQL = """
CREATE INDEX IF NOT EXISTS ledger_entries_sync_idx
  ON ledger_entries (sync_state, created_at, seq);

CREATE INDEX IF NOT EXISTS ledger_entries_branch_idx
  ON ledger_entries (branch_id, created_at);

CREATE UNIQUE INDEX IF NOT EXISTS ledger_entries_reversal_idx
  ON ledger_entries (reversal_of) WHERE reversal_of IS NOT NULL;

CREATE TRIGGER IF NOT EXISTS ledger_entries_immutable
BEFORE UPDATE OF id, branch_id, type, category, amount, description, created_at, reversal_of
ON ledger_entries
BEGIN
  SELECT RAISE(ABORT, 'ledger entries are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_synced_is_final
BEFORE UPDATE OF sync_state ON ledger_entries
WHEN OLD.sync_state = 'synced' AND NEW.sync_state <> 'synced'
BEGIN
  SELECT RAISE(ABORT, 'synced entries cannot change sync state');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
BEFORE DELETE ON ledger_entries
BEGIN
  SELECT RAISE(ABORT, 'ledger entries cannot be deleted');
END;
"""


def connect(db_path: str) -> sqlite3.Connection:
    try:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA synchronous = FULL")
        return conn
    except sqlite3.Error as e:
        raise StorageError(f"cannot open ledger store {db_path}: {e}") from e


@contextmanager
def get_conn(db_path: str, *, write: bool = False):
    """
    Yield a connection inside a transaction:
    - commit on success
    - rollback on exception
    - always close
    SQLite errors surface as StorageError; everything else propagates unchanged.
    """
    conn = connect(db_path)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        except sqlite3.Error as e:
            raise StorageError(f"cannot start transaction: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except BaseException:
            conn.rollback()
            raise
        try:
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"commit failed: {e}") from e
    finally:
        conn.close()


def init_store(db_path: str) -> None:
    parent = os.path.dirname(os.path.abspath(db_path))
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = connect(db_path)
    try:
        # WAL is persistent per database file, so setting it once is enough.
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
        # CREATE TABLE IF NOT EXISTS does not add new columns. Keep a tiny
        # runtime migration layer for stores created by older builds.
        cols = {r["name"] for r in conn.execute("PRAGMA table_info(ledger_entries)").fetchall()}
        wanted = {
            "reversal_of": "TEXT",
            "attempt_count": "INTEGER NOT NULL DEFAULT 0",
            "last_attempt_at": "TEXT",
            "retry_requested": "INTEGER NOT NULL DEFAULT 0",
        }
        for col, ddl in wanted.items():
            if col not in cols:
                conn.execute(f"ALTER TABLE ledger_entries ADD COLUMN {col} {ddl}")
        conn.executescript(GUARDS_SQL)
    except sqlite3.Error as e:
        raise StorageError(f"cannot initialise ledger store {db_path}: {e}") from e
    finally:
        conn.close()


def ping(db_path: str) -> None:
    with get_conn(db_path) as conn:
        conn.execute("SELECT 1").fetchone()
