from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_repository
from ..errors import ConflictError, EntryNotFoundError
from ..models import EntryIn, ReversalIn
from ..repository import EntryRepository

router = APIRouter(prefix="/entries", tags=["entries"])

SYNC_STATES = {"pending", "syncing", "synced", "failed"}


def _parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return str(UUID(raw))
    except Exception:
        raise HTTPException(status_code=400, detail=f"{field_name} must be a valid UUID")


def _parse_uuid_required(value: Optional[str], field_name: str) -> str:
    out = _parse_uuid_optional(value, field_name)
    if not out:
        raise HTTPException(status_code=400, detail=f"{field_name} is required")
    return out


@router.post("", status_code=201)
def create_entry(data: EntryIn, repo: EntryRepository = Depends(get_repository)):
    """
    Record a financial entry locally. Never waits on the network: the entry is
    committed as `pending` and the synchronizer uploads it later.
    """
    entry = repo.create(data)
    return {"entry": entry.model_dump(mode="json")}


@router.get("")
def list_entries(
    page: int = 1,
    limit: int = 20,
    branch_id: Optional[str] = None,
    sync_state: Optional[str] = None,
    repo: EntryRepository = Depends(get_repository),
):
    branch = _parse_uuid_optional(branch_id, "branch_id")
    state = (sync_state or "").strip().lower() or None
    if state and state not in SYNC_STATES:
        raise HTTPException(status_code=400, detail=f"sync_state must be one of {sorted(SYNC_STATES)}")
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 200))
    entries, total = repo.list_entries(page=page, limit=limit, branch_id=branch, sync_state=state)
    return {
        "entries": [e.model_dump(mode="json") for e in entries],
        "page": page,
        "limit": limit,
        "total": total,
    }


@router.get("/summary")
def entries_summary(branch_id: Optional[str] = None, repo: EntryRepository = Depends(get_repository)):
    return {"summary": repo.summary(_parse_uuid_optional(branch_id, "branch_id"))}


@router.get("/{entry_id}")
def get_entry(entry_id: str, repo: EntryRepository = Depends(get_repository)):
    entry = repo.get(_parse_uuid_required(entry_id, "entry_id"))
    if not entry:
        raise HTTPException(status_code=404, detail="entry not found")
    return {"entry": entry.model_dump(mode="json")}


@router.post("/{entry_id}/reverse", status_code=201)
def reverse_entry(
    entry_id: str,
    data: Optional[ReversalIn] = None,
    repo: EntryRepository = Depends(get_repository),
):
    """
    Entries are immutable once recorded. A mistake is corrected by appending a
    compensating entry of the opposite type; both entries sync independently.
    """
    try:
        entry = repo.create_reversal(_parse_uuid_required(entry_id, "entry_id"), data.reason if data else None)
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="entry not found")
    except ConflictError as ex:
        raise HTTPException(status_code=409, detail=str(ex))
    return {"entry": entry.model_dump(mode="json")}


@router.post("/{entry_id}/retry")
def retry_entry(entry_id: str, repo: EntryRepository = Depends(get_repository)):
    """Re-queue an entry the cloud rejected. It is picked up by the next cycle."""
    try:
        entry = repo.requeue_failed(_parse_uuid_required(entry_id, "entry_id"))
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="entry not found")
    except ConflictError as ex:
        raise HTTPException(status_code=409, detail=str(ex))
    return {"entry": entry.model_dump(mode="json")}
