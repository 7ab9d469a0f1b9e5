"""
Entry repository: the only reader/writer of the branch ledger store.

Sync-state transitions allowed here:
  pending -> syncing            (mark_syncing)
  failed  -> syncing            (mark_syncing, retry)
  syncing -> synced | failed    (mark_synced / mark_failed)
  syncing -> pending            (revert_to_pending after a network error,
                                 recover_interrupted at startup)
Nothing ever leaves `synced`; the store enforces that with a trigger as well.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import ConflictError, EntryNotFoundError
from .local_store import get_conn
from .logs import json_log
from .models import EntryIn, FinancialEntry, SyncCycleResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    # Fixed-width UTC timestamps sort correctly as text.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _unique(ids: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen = set()
    for i in ids or []:
        s = str(i)
        if s not in seen:
            seen.add(s)
            out.append(s)
    return out


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


def _row_to_entry(row) -> FinancialEntry:
    return FinancialEntry.model_validate(dict(row))


class EntryRepository:
    def __init__(self, db_path: str, *, clock=None):
        self.db_path = db_path
        self._clock = clock or _utcnow

    # Write path.

    def _insert(self, conn, data: EntryIn, *, reversal_of: Optional[str] = None) -> FinancialEntry:
        entry_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO ledger_entries
              (id, branch_id, type, category, amount, description, created_at, reversal_of, sync_state)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending')
            """,
            (
                entry_id,
                data.branch_id,
                data.type,
                data.category,
                int(data.amount),
                data.description,
                _iso(self._clock()),
                reversal_of,
            ),
        )
        row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row)

    def create(self, data) -> FinancialEntry:
        if not isinstance(data, EntryIn):
            data = EntryIn.model_validate(data)
        with get_conn(self.db_path, write=True) as conn:
            entry = self._insert(conn, data)
        json_log(
            "info",
            "ledger.entry.created",
            entry_id=entry.id,
            branch_id=entry.branch_id,
            type=entry.type,
            amount=entry.amount,
        )
        return entry

    def create_reversal(self, entry_id: str, reason: Optional[str] = None) -> FinancialEntry:
        """Append a compensating entry; the original is never edited."""
        with get_conn(self.db_path, write=True) as conn:
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (str(entry_id),)).fetchone()
            if not row:
                raise EntryNotFoundError(f"entry {entry_id} not found")
            original = _row_to_entry(row)
            if original.reversal_of:
                raise ConflictError("a reversal cannot be reversed", [original.id])
            existing = conn.execute(
                "SELECT id FROM ledger_entries WHERE reversal_of = ?", (original.id,)
            ).fetchone()
            if existing:
                raise ConflictError(f"entry already reversed by {existing['id']}", [original.id])
            note = f"Reversal of {original.id}"
            if reason:
                note = f"{note}: {reason}"
            data = EntryIn(
                branch_id=original.branch_id,
                type="OUT" if original.type == "IN" else "IN",
                category=original.category,
                amount=original.amount,
                description=note[:2000],
            )
            entry = self._insert(conn, data, reversal_of=original.id)
        json_log("info", "ledger.entry.reversed", entry_id=entry.id, reversal_of=original.id)
        return entry

    # Reads.

    def get(self, entry_id: str) -> Optional[FinancialEntry]:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (str(entry_id),)).fetchone()
        return _row_to_entry(row) if row else None

    def list_entries(
        self,
        page: int = 1,
        limit: int = 20,
        branch_id: Optional[str] = None,
        sync_state: Optional[str] = None,
    ) -> tuple[list[FinancialEntry], int]:
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or 20), 200))
        where = []
        params: list = []
        if branch_id:
            where.append("branch_id = ?")
            params.append(branch_id)
        if sync_state:
            where.append("sync_state = ?")
            params.append(sync_state)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        with get_conn(self.db_path) as conn:
            total = conn.execute(f"SELECT COUNT(1) AS n FROM ledger_entries {clause}", params).fetchone()["n"]
            rows = conn.execute(
                f"""
                SELECT * FROM ledger_entries
                {clause}
                ORDER BY created_at DESC, seq DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return [_row_to_entry(r) for r in rows], int(total)

    def list_pending(self, limit: int) -> list[FinancialEntry]:
        # Failed entries were rejected by the cloud; they only come back once
        # an operator re-queues them.
        with get_conn(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM ledger_entries
                WHERE sync_state = 'pending'
                   OR (sync_state = 'failed' AND retry_requested = 1)
                ORDER BY created_at ASC, seq ASC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_pending(self) -> int:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM ledger_entries WHERE sync_state <> 'synced'").fetchone()
        return int(row["n"] if row else 0)

    def count_failed(self) -> int:
        with get_conn(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM ledger_entries WHERE sync_state = 'failed'").fetchone()
        return int(row["n"] if row else 0)

    def summary(self, branch_id: Optional[str] = None) -> dict:
        clause, params = ("WHERE branch_id = ?", (branch_id,)) if branch_id else ("", ())
        with get_conn(self.db_path) as conn:
            row = conn.execute(
                f"""
                SELECT
                  COALESCE(SUM(CASE WHEN type = 'IN' THEN amount END), 0) AS total_in,
                  COALESCE(SUM(CASE WHEN type = 'OUT' THEN amount END), 0) AS total_out,
                  COUNT(CASE WHEN type = 'IN' THEN 1 END) AS count_in,
                  COUNT(CASE WHEN type = 'OUT' THEN 1 END) AS count_out,
                  COUNT(CASE WHEN sync_state <> 'synced' THEN 1 END) AS unsynced_count
                FROM ledger_entries
                {clause}
                """,
                params,
            ).fetchone()
        total_in = int(row["total_in"])
        total_out = int(row["total_out"])
        return {
            "total_in": total_in,
            "total_out": total_out,
            "balance": total_in - total_out,
            "count_in": int(row["count_in"]),
            "count_out": int(row["count_out"]),
            "unsynced_count": int(row["unsynced_count"]),
        }

    # Sync-state transitions.

    def mark_syncing(self, ids: Iterable[str]) -> None:
        ids = _unique(ids)
        if not ids:
            return
        with get_conn(self.db_path, write=True) as conn:
            rows = conn.execute(
                f"SELECT id, sync_state FROM ledger_entries WHERE id IN ({_placeholders(len(ids))})",
                ids,
            ).fetchall()
            states = {r["id"]: r["sync_state"] for r in rows}
            blocked = [i for i in ids if states.get(i) not in {"pending", "failed"}]
            if blocked:
                raise ConflictError(f"{len(blocked)} entries are not eligible for sync", blocked)
            conn.execute(
                f"""
                UPDATE ledger_entries
                SET sync_state = 'syncing',
                    failure_reason = NULL,
                    retry_requested = 0,
                    attempt_count = attempt_count + 1,
                    last_attempt_at = ?
                WHERE id IN ({_placeholders(len(ids))})
                """,
                (_iso(self._clock()), *ids),
            )

    def mark_synced(self, entry_id: str, synced_at: Optional[datetime] = None) -> bool:
        """Returns False when the entry was already synced (idempotent repeat)."""
        entry_id = str(entry_id)
        with get_conn(self.db_path, write=True) as conn:
            row = conn.execute("SELECT sync_state FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
            if not row:
                raise ConflictError(f"entry {entry_id} not found", [entry_id])
            if row["sync_state"] == "synced":
                return False
            if row["sync_state"] != "syncing":
                raise ConflictError(f"entry {entry_id} is {row['sync_state']}, not syncing", [entry_id])
            conn.execute(
                """
                UPDATE ledger_entries
                SET sync_state = 'synced', synced_at = ?, failure_reason = NULL
                WHERE id = ?
                """,
                (_iso(synced_at or self._clock()), entry_id),
            )
        return True

    def mark_failed(self, entry_id: str, reason: str) -> bool:
        """Returns False when the entry already failed with the same reason."""
        entry_id = str(entry_id)
        reason = (str(reason or "").strip() or "rejected")[:1000]
        with get_conn(self.db_path, write=True) as conn:
            row = conn.execute(
                "SELECT sync_state, failure_reason FROM ledger_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            if not row:
                raise ConflictError(f"entry {entry_id} not found", [entry_id])
            if row["sync_state"] == "failed" and row["failure_reason"] == reason:
                return False
            if row["sync_state"] != "syncing":
                raise ConflictError(f"entry {entry_id} is {row['sync_state']}, not syncing", [entry_id])
            conn.execute(
                """
                UPDATE ledger_entries
                SET sync_state = 'failed', failure_reason = ?, retry_requested = 0
                WHERE id = ?
                """,
                (reason, entry_id),
            )
        return True

    def revert_to_pending(self, ids: Iterable[str]) -> int:
        ids = _unique(ids)
        if not ids:
            return 0
        with get_conn(self.db_path, write=True) as conn:
            cur = conn.execute(
                f"""
                UPDATE ledger_entries
                SET sync_state = 'pending'
                WHERE sync_state = 'syncing' AND id IN ({_placeholders(len(ids))})
                """,
                ids,
            )
            return int(cur.rowcount or 0)

    def recover_interrupted(self) -> int:
        """Startup sweep: nothing can still be uploading after a restart."""
        with get_conn(self.db_path, write=True) as conn:
            cur = conn.execute("UPDATE ledger_entries SET sync_state = 'pending' WHERE sync_state = 'syncing'")
            n = int(cur.rowcount or 0)
        if n:
            json_log("warning", "ledger.sync.recovered", count=n)
        return n

    def requeue_failed(self, entry_id: str) -> FinancialEntry:
        entry_id = str(entry_id)
        with get_conn(self.db_path, write=True) as conn:
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
            if not row:
                raise EntryNotFoundError(f"entry {entry_id} not found")
            if row["sync_state"] != "failed":
                raise ConflictError(f"entry {entry_id} is {row['sync_state']}, only failed entries can be retried", [entry_id])
            conn.execute("UPDATE ledger_entries SET retry_requested = 1 WHERE id = ?", (entry_id,))
            row = conn.execute("SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)).fetchone()
        json_log("info", "ledger.sync.requeued", entry_id=entry_id)
        return _row_to_entry(row)

    # Sync heartbeat, shared between the API process and a standalone worker.

    def record_heartbeat(self, worker_name: str, result: SyncCycleResult, details: Optional[dict] = None) -> None:
        finished = result.finished_at or self._clock()
        last_ok = _iso(finished) if result.connectivity == "online" else None
        with get_conn(self.db_path, write=True) as conn:
            conn.execute(
                """
                INSERT INTO sync_heartbeats
                  (worker_name, connectivity, last_cycle_at, last_successful_sync_at, last_error, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (worker_name) DO UPDATE SET
                  connectivity = excluded.connectivity,
                  last_cycle_at = excluded.last_cycle_at,
                  last_successful_sync_at = COALESCE(excluded.last_successful_sync_at, sync_heartbeats.last_successful_sync_at),
                  last_error = excluded.last_error,
                  details_json = excluded.details_json
                """,
                (
                    worker_name,
                    result.connectivity,
                    _iso(finished),
                    last_ok,
                    result.network_error,
                    json.dumps(details or {}, default=str),
                ),
            )

    def load_heartbeat(self, worker_name: Optional[str] = None) -> Optional[dict]:
        with get_conn(self.db_path) as conn:
            if worker_name:
                row = conn.execute("SELECT * FROM sync_heartbeats WHERE worker_name = ?", (worker_name,)).fetchone()
            else:
                row = conn.execute("SELECT * FROM sync_heartbeats ORDER BY last_cycle_at DESC LIMIT 1").fetchone()
        if not row:
            return None
        out = dict(row)
        try:
            out["details"] = json.loads(out.pop("details_json") or "{}")
        except ValueError:
            out["details"] = {}
        return out
