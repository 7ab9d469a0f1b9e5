from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .validation import BranchId, Category, Connectivity, Description, EntryId, EntryType, SyncState


class EntryIn(BaseModel):
    branch_id: BranchId
    type: EntryType
    category: Category
    # Minor currency units (e.g. cents). Never a float.
    amount: int = Field(gt=0, strict=True)
    description: Description = None


class FinancialEntry(BaseModel):
    id: str
    branch_id: str
    type: EntryType
    category: str
    amount: int
    description: Optional[str] = None
    created_at: datetime
    reversal_of: Optional[str] = None
    sync_state: SyncState
    failure_reason: Optional[str] = None
    synced_at: Optional[datetime] = None
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    retry_requested: bool = False

    def wire(self) -> dict:
        """Fields sent to the remote authority (financial data + idempotency key only)."""
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "type": self.type,
            "category": self.category,
            "amount": self.amount,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "reversal_of": self.reversal_of,
        }


class ReversalIn(BaseModel):
    reason: Description = None


class UploadOutcome(BaseModel):
    status: Literal["accepted", "rejected", "network_error"]
    reason: Optional[str] = None


class SyncCycleResult(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    attempted: list[str] = []
    synced: list[str] = []
    failed: dict[str, str] = {}
    network_error: Optional[str] = None
    storage_error: Optional[str] = None
    conflict: bool = False
    connectivity: Connectivity = "offline"
    skipped: Optional[str] = None


class StatusSnapshot(BaseModel):
    connectivity: Connectivity
    pending_count: int
    failed_count: int = 0
    last_successful_sync_at: Optional[datetime] = None
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_state: Optional[str] = None


# Cloud-side wire models.

class ImportedEntry(EntryIn):
    id: EntryId
    created_at: datetime
    reversal_of: Optional[EntryId] = None


class EntryImportBatch(BaseModel):
    # Entries stay raw here so one malformed entry is rejected on its own
    # instead of failing the whole batch.
    source_node_id: Optional[str] = None
    entries: list[dict[str, Any]] = []


class NodePing(BaseModel):
    source_node_id: Optional[str] = None
