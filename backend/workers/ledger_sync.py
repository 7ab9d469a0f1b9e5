"""
Branch -> cloud ledger synchronizer.

Goal: the branch keeps recording entries while offline; this worker pushes
pending entries to the cloud whenever it is reachable.

States:
- idle:        waiting for the next tick
- running:     a cycle is in flight (other ticks are dropped, not queued)
- backing_off: the last cycle hit a network error; ticks are dropped until an
               exponentially growing delay has passed

A cycle:
1) select the oldest pending entries (bounded batch)
2) claim them (pending/failed -> syncing); losing a race is a no-op
3) upload; accepted -> synced, rejected -> failed(reason),
   network error -> back to pending and start backing off
4) record the outcome for the status endpoint
"""

import threading
import time
from datetime import datetime, timezone
from typing import Optional

from backend.app.config import settings
from backend.app.errors import ConflictError, StorageError
from backend.app.logs import json_log
from backend.app.models import FinancialEntry, SyncCycleResult, UploadOutcome
from backend.app.repository import EntryRepository
from backend.app.status import StatusReporter

from .cloud_uploader import CloudUploader
from .sync_queue import SyncQueueSelector

IDLE = "idle"
RUNNING = "running"
BACKING_OFF = "backing_off"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Synchronizer:
    def __init__(
        self,
        repo: EntryRepository,
        uploader: CloudUploader,
        *,
        reporter: Optional[StatusReporter] = None,
        batch_size: int = 50,
        interval_seconds: float = 30.0,
        backoff_base_seconds: float = 15.0,
        backoff_max_seconds: float = 600.0,
        clock=time.monotonic,
        now=_utcnow,
    ):
        self.repo = repo
        self.uploader = uploader
        self.reporter = reporter
        self.selector = SyncQueueSelector(repo, batch_size)
        self.interval_seconds = float(interval_seconds)
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_max_seconds = max(float(backoff_max_seconds), self.backoff_base_seconds)
        self._clock = clock
        self._now = now

        self._lock = threading.Lock()
        self._state = IDLE
        self._consecutive_failures = 0
        self._backoff_until = 0.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def backoff_remaining(self) -> float:
        if self._state != BACKING_OFF:
            return 0.0
        return max(0.0, self._backoff_until - self._clock())

    def backoff_delay(self, failures: int) -> float:
        n = max(1, int(failures))
        # Cap the exponent so large failure counts don't overflow the float math.
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** min(n - 1, 32)))

    # Triggers.

    def tick(self) -> Optional[SyncCycleResult]:
        """Timer entry point. Returns None when the tick was dropped."""
        with self._lock:
            if self._state == RUNNING:
                json_log("debug", "ledger.sync.tick_dropped", reason="busy")
                return None
            if self._state == BACKING_OFF:
                if self._clock() < self._backoff_until:
                    json_log("debug", "ledger.sync.tick_dropped", reason="backing_off")
                    return None
                self._state = IDLE
            self._state = RUNNING
        return self._run()

    def sync_now(self) -> Optional[SyncCycleResult]:
        """Manual trigger: skips the backoff wait but never overlaps a running cycle."""
        with self._lock:
            if self._state == RUNNING:
                return None
            self._state = RUNNING
        return self._run()

    # Cycle.

    def _run(self) -> SyncCycleResult:
        result = SyncCycleResult(started_at=self._now())
        try:
            self._cycle(result)
        finally:
            result.finished_at = self._now()
            self._settle(result)
        self._report(result)
        return result

    def _cycle(self, result: SyncCycleResult) -> None:
        # One bounded batch per cycle: a cycle that ends offline never
        # committed a synced row.
        in_flight: list[str] = []
        try:
            batch = self.selector.next_batch()
            if not batch:
                self._probe(result)
                return
            ids = [e.id for e in batch]
            try:
                self.repo.mark_syncing(ids)
            except ConflictError as ex:
                # Another cycle (timer, manual trigger, second process) owns these.
                json_log("warning", "ledger.sync.conflict", ids=ex.ids, error=str(ex))
                result.conflict = True
                return
            in_flight = ids
            result.attempted.extend(ids)

            outcomes = self.uploader.upload(batch)
            retry = self._apply(batch, outcomes, result)
            in_flight = []
            if retry:
                self.repo.revert_to_pending(retry)
                result.connectivity = "offline"
                json_log(
                    "warning",
                    "ledger.sync.network_error",
                    count=len(retry),
                    error=result.network_error,
                )
                return
            result.connectivity = "online"
        except StorageError as ex:
            # Local failure: says nothing about the cloud, keep the last connectivity.
            json_log("error", "ledger.sync.storage_error", error=str(ex), in_flight=len(in_flight))
            result.storage_error = str(ex)
            self._revert(in_flight)
        except Exception as ex:
            json_log("error", "ledger.sync.cycle_error", error=str(ex), in_flight=len(in_flight))
            result.connectivity = "offline"
            result.network_error = result.network_error or f"cycle error: {ex}"
            self._revert(in_flight)

    def _revert(self, ids: list[str]) -> None:
        if not ids:
            return
        try:
            self.repo.revert_to_pending(ids)
        except Exception as revert_ex:
            # Startup recovery will sweep them back to pending.
            json_log("error", "ledger.sync.revert_failed", error=str(revert_ex), ids=ids)

    def _probe(self, result: SyncCycleResult) -> None:
        if self.uploader.probe():
            result.connectivity = "online"
        else:
            result.connectivity = "offline"
            result.network_error = "cloud unreachable"

    def _apply(self, batch: list[FinancialEntry], outcomes: dict[str, UploadOutcome], result: SyncCycleResult) -> list[str]:
        retry: list[str] = []
        synced_at = self._now()
        for e in batch:
            outcome = outcomes.get(e.id) or UploadOutcome(status="network_error", reason="no outcome")
            try:
                if outcome.status == "accepted":
                    self.repo.mark_synced(e.id, synced_at)
                    result.synced.append(e.id)
                elif outcome.status == "rejected":
                    reason = outcome.reason or "rejected"
                    self.repo.mark_failed(e.id, reason)
                    result.failed[e.id] = reason
                    json_log("warning", "ledger.sync.rejected", entry_id=e.id, reason=reason)
                else:
                    retry.append(e.id)
                    if not result.network_error:
                        result.network_error = outcome.reason or "network error"
            except ConflictError as ex:
                json_log("warning", "ledger.sync.conflict", ids=ex.ids, error=str(ex))
                result.conflict = True
        return retry

    def _settle(self, result: SyncCycleResult) -> None:
        with self._lock:
            if result.attempted and result.network_error:
                self._consecutive_failures += 1
                delay = self.backoff_delay(self._consecutive_failures)
                self._backoff_until = self._clock() + delay
                self._state = BACKING_OFF
                json_log(
                    "info",
                    "ledger.sync.backing_off",
                    delay_seconds=delay,
                    consecutive_failures=self._consecutive_failures,
                )
                return
            if result.connectivity == "online":
                self._consecutive_failures = 0
            self._state = IDLE

    def _report(self, result: SyncCycleResult) -> None:
        json_log(
            "info" if result.attempted else "debug",
            "ledger.sync.cycle",
            attempted=len(result.attempted),
            synced=len(result.synced),
            failed=len(result.failed),
            connectivity=result.connectivity,
            network_error=result.network_error,
            conflict=result.conflict,
        )
        if self.reporter is None:
            return
        if result.conflict and not result.attempted:
            # Lost the race before talking to the cloud: nothing was observed.
            return
        if result.storage_error:
            # The local store failed, not the link: keep the last recorded connectivity.
            return
        try:
            self.reporter.record_cycle(result, state=self._state)
        except Exception as ex:
            json_log("error", "ledger.sync.report_failed", error=str(ex))

    # Background thread.

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self.repo.recover_interrupted()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ledger-sync", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        json_log("info", "ledger.sync.started", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as ex:
                # Never let the sync thread die.
                json_log("error", "ledger.sync.tick_error", error=str(ex))
            if self._stop.wait(self.interval_seconds):
                break
        json_log("info", "ledger.sync.stopped")

    def is_alive(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        t = self._thread
        if t is not None:
            t.join(timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Let an in-flight cycle finish its current upload, then exit."""
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout)
            # Still finishing an upload: keep the handle so start() won't spawn a second loop.
            if not t.is_alive():
                self._thread = None


def build_synchronizer(repo: EntryRepository, reporter: Optional[StatusReporter] = None, s=settings) -> Synchronizer:
    return Synchronizer(
        repo,
        CloudUploader.from_settings(s),
        reporter=reporter,
        batch_size=s.sync_batch_size,
        interval_seconds=s.sync_interval_seconds,
        backoff_base_seconds=s.sync_backoff_base_seconds,
        backoff_max_seconds=s.sync_backoff_max_seconds,
    )
