import hmac
import json
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import ValidationError

from ..db import get_conn
from ..models import EntryImportBatch, ImportedEntry, NodePing

router = APIRouter(prefix="/ledger-sync", tags=["ledger-sync"])

MAX_IMPORT_BATCH = 500


def _upsert_node_seen(cur, node_id: str, *, ping: bool = False, imported: bool = False) -> None:
    node = (node_id or "").strip()
    if not node:
        return
    cur.execute(
        """
        INSERT INTO branch_node_status (node_id, last_seen_at, last_ping_at, last_import_at)
        VALUES (%s, now(),
                CASE WHEN %s THEN now() ELSE NULL END,
                CASE WHEN %s THEN now() ELSE NULL END)
        ON CONFLICT (node_id)
        DO UPDATE SET
          last_seen_at = now(),
          last_ping_at = CASE WHEN %s THEN now() ELSE branch_node_status.last_ping_at END,
          last_import_at = CASE WHEN %s THEN now() ELSE branch_node_status.last_import_at END
        """,
        (node, bool(ping), bool(imported), bool(ping), bool(imported)),
    )


def _parse_env_map(raw: str, *, env_name: str) -> dict[str, str]:
    """
    Parse either:
    - JSON object: {"node-a":"key"}
    - CSV pairs: node-a=key,node-b=key2
    """
    text = (raw or "").strip()
    if not text:
        return {}

    if text.startswith("{"):
        try:
            obj = json.loads(text)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"invalid {env_name} json") from e
        if not isinstance(obj, dict):
            raise HTTPException(status_code=500, detail=f"invalid {env_name} (must be object)")
        pairs = obj.items()
    else:
        items: dict[str, str] = {}
        for part in [p.strip() for p in text.split(",") if p.strip()]:
            if "=" not in part:
                raise HTTPException(status_code=500, detail=f"invalid {env_name} pair")
            k, v = part.split("=", 1)
            items[k] = v
        pairs = items.items()

    out: dict[str, str] = {}
    for k, v in pairs:
        key = str(k or "").strip()
        val = str(v or "").strip()
        if key and val:
            out[key] = val
    return out


def _require_sync_auth(x_ledger_sync_key: Optional[str], node_id: Optional[str]) -> None:
    """
    Security model:
    - Preferred: LEDGER_SYNC_KEY_BY_BRANCH_NODE map (node_id -> key), one key per branch node
    - Fallback: LEDGER_SYNC_KEY shared by every node
    Fails closed when neither is configured.
    """
    presented = (x_ledger_sync_key or "").strip()
    node = (node_id or "").strip()

    key_map = _parse_env_map(os.getenv("LEDGER_SYNC_KEY_BY_BRANCH_NODE") or "", env_name="LEDGER_SYNC_KEY_BY_BRANCH_NODE")
    if key_map:
        expected = (key_map.get(node) or "").strip()
        if not node or not expected:
            raise HTTPException(status_code=403, detail="forbidden")
    else:
        expected = (os.getenv("LEDGER_SYNC_KEY") or "").strip()
        if not expected:
            raise HTTPException(status_code=403, detail="ledger sync not configured")

    if not presented or not hmac.compare_digest(presented, expected):
        raise HTTPException(status_code=403, detail="forbidden")


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _validation_reason(ex: ValidationError) -> str:
    errs = ex.errors()
    if not errs:
        return "invalid entry"
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc") or ())
    return f"invalid entry: {loc}: {first.get('msg')}" if loc else f"invalid entry: {first.get('msg')}"


def _same_entry(existing: dict, e: ImportedEntry) -> bool:
    return (
        str(existing.get("branch_id")) == e.branch_id
        and existing.get("type") == e.type
        and existing.get("category") == e.category
        and int(existing.get("amount") or 0) == e.amount
        and (existing.get("description") or None) == e.description
        and _as_utc(existing["created_at"]) == _as_utc(e.created_at)
        and (str(existing["reversal_of"]) if existing.get("reversal_of") else None) == e.reversal_of
    )


def _active_branches(cur, branch_ids: set[str]) -> set[str]:
    if not branch_ids:
        return set()
    cur.execute(
        "SELECT id FROM branches WHERE id = ANY(%s::uuid[]) AND is_active = true",
        (sorted(branch_ids),),
    )
    return {str(r["id"]) for r in cur.fetchall()}


@router.post("/ping")
def ping(
    data: NodePing,
    x_ledger_sync_key: Optional[str] = Header(None, alias="X-Ledger-Sync-Key"),
    x_branch_node_id: Optional[str] = Header(None, alias="X-Branch-Node-Id"),
):
    """Branch nodes may call this to report they are alive even with nothing to upload."""
    node_id = (x_branch_node_id or data.source_node_id or "").strip()
    _require_sync_auth(x_ledger_sync_key, node_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            _upsert_node_seen(cur, node_id, ping=True)
    return {"ok": True}


@router.post("/entries/import")
def import_entries(
    data: EntryImportBatch,
    x_ledger_sync_key: Optional[str] = Header(None, alias="X-Ledger-Sync-Key"),
    x_branch_node_id: Optional[str] = Header(None, alias="X-Branch-Node-Id"),
):
    """
    Cloud-side endpoint: record a batch of branch ledger entries.

    Idempotent by entry id:
    - new id -> inserted, accepted
    - known id with identical financial fields -> accepted as a duplicate, nothing written
    - known id with different fields -> rejected ("id conflict")
    Entries for unknown or inactive branches are rejected with "invalid branch".
    """
    node_id = (x_branch_node_id or data.source_node_id or "").strip()
    _require_sync_auth(x_ledger_sync_key, node_id)
    if len(data.entries) > MAX_IMPORT_BATCH:
        raise HTTPException(status_code=413, detail=f"at most {MAX_IMPORT_BATCH} entries per batch")

    accepted: list[str] = []
    accepted_meta: list[dict] = []
    rejected: list[dict] = []

    parsed: list[ImportedEntry] = []
    for raw in data.entries:
        try:
            parsed.append(ImportedEntry.model_validate(raw))
        except ValidationError as ex:
            rejected.append({"id": str((raw or {}).get("id") or "").strip(), "reason": _validation_reason(ex)})

    with get_conn() as conn:
        with conn.cursor() as cur:
            _upsert_node_seen(cur, node_id, imported=True)
            active = _active_branches(cur, {e.branch_id for e in parsed})
            for e in parsed:
                if e.branch_id not in active:
                    rejected.append({"id": e.id, "reason": "invalid branch"})
                    continue
                cur.execute(
                    """
                    INSERT INTO ledger_entries
                      (id, branch_id, type, category, amount, description, created_at, reversal_of, source_node_id)
                    VALUES
                      (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s::uuid, %s)
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        e.id,
                        e.branch_id,
                        e.type,
                        e.category,
                        e.amount,
                        e.description,
                        _as_utc(e.created_at),
                        e.reversal_of,
                        node_id or None,
                    ),
                )
                if cur.fetchone():
                    accepted.append(e.id)
                    accepted_meta.append({"id": e.id, "status": "inserted"})
                    continue
                cur.execute(
                    """
                    SELECT branch_id, type, category, amount, description, created_at, reversal_of
                    FROM ledger_entries
                    WHERE id = %s::uuid
                    """,
                    (e.id,),
                )
                existing = cur.fetchone()
                if existing and _same_entry(existing, e):
                    accepted.append(e.id)
                    accepted_meta.append({"id": e.id, "status": "duplicate"})
                else:
                    rejected.append({"id": e.id, "reason": "id conflict: a different entry already uses this id"})

    return {"accepted": accepted, "accepted_meta": accepted_meta, "rejected": rejected}
