"""
Postgres access for the cloud role (the remote authority branches upload to).

Branch nodes never import this module's pool; they only use the SQLite store
in `local_store.py`.
"""

import threading
from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

CLOUD_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS branches (
  id uuid PRIMARY KEY,
  name text NOT NULL,
  is_active boolean NOT NULL DEFAULT true,
  created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS ledger_entries (
  id uuid PRIMARY KEY,
  branch_id uuid NOT NULL REFERENCES branches(id),
  type text NOT NULL CHECK (type IN ('IN', 'OUT')),
  category text NOT NULL,
  amount bigint NOT NULL CHECK (amount > 0),
  description text,
  created_at timestamptz NOT NULL,
  reversal_of uuid,
  source_node_id text,
  received_at timestamptz NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS ledger_entries_branch_created_idx
  ON ledger_entries (branch_id, created_at);

CREATE TABLE IF NOT EXISTS branch_node_status (
  node_id text PRIMARY KEY,
  last_seen_at timestamptz NOT NULL,
  last_ping_at timestamptz,
  last_import_at timestamptz
);
"""

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    # Created lazily so branch nodes (and tests) never try to reach Postgres.
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ConnectionPool(
                conninfo=settings.db_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                kwargs={"row_factory": dict_row},
                open=True,
            )
        return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` semantics:
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pools() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close()
            _pool = None


def ensure_cloud_schema() -> None:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(CLOUD_SCHEMA_SQL)
