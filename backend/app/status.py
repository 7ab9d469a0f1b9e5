from typing import Optional

from .models import StatusSnapshot, SyncCycleResult
from .repository import EntryRepository

DEFAULT_WORKER_NAME = "LEDGER_SYNC"


class StatusReporter:
    """
    Connectivity is whatever the last sync cycle observed. There is no separate
    heartbeat or ping loop: a cycle that reached the cloud without a network
    error means "online", anything else means "offline".
    """

    def __init__(self, repo: EntryRepository, worker_name: str = DEFAULT_WORKER_NAME, synchronizer=None):
        self.repo = repo
        self.worker_name = worker_name
        # Optional in-process synchronizer, only used to expose its state.
        self.synchronizer = synchronizer

    def record_cycle(self, result: SyncCycleResult, state: Optional[str] = None) -> None:
        details = {
            "attempted": len(result.attempted),
            "synced": len(result.synced),
            "failed": len(result.failed),
            "conflict": result.conflict,
            "state": state,
        }
        self.repo.record_heartbeat(self.worker_name, result, details)

    def status(self) -> StatusSnapshot:
        hb = self.repo.load_heartbeat(self.worker_name) or {}
        state = None
        if self.synchronizer is not None:
            state = self.synchronizer.state
        elif hb:
            state = (hb.get("details") or {}).get("state")
        return StatusSnapshot(
            connectivity="online" if hb.get("connectivity") == "online" else "offline",
            pending_count=self.repo.count_pending(),
            failed_count=self.repo.count_failed(),
            last_successful_sync_at=hb.get("last_successful_sync_at"),
            last_cycle_at=hb.get("last_cycle_at"),
            last_error=hb.get("last_error"),
            sync_state=state,
        )
