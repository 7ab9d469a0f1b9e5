from datetime import datetime, timezone

from backend.app.models import SyncCycleResult
from backend.app.status import StatusReporter

from conftest import entry_data


class _Sync:
    state = "backing_off"


def _result(connectivity, minute, error=None):
    return SyncCycleResult(
        started_at=datetime(2026, 1, 1, 9, minute, tzinfo=timezone.utc),
        finished_at=datetime(2026, 1, 1, 9, minute, 5, tzinfo=timezone.utc),
        connectivity=connectivity,
        network_error=error,
    )


def test_status_is_offline_before_any_cycle(repo):
    repo.create(entry_data())
    s = StatusReporter(repo).status()
    assert s.connectivity == "offline"
    assert s.pending_count == 1
    assert s.last_successful_sync_at is None
    assert s.last_cycle_at is None


def test_status_follows_last_cycle(repo):
    reporter = StatusReporter(repo)
    reporter.record_cycle(_result("online", 0), state="idle")
    s = reporter.status()
    assert s.connectivity == "online"
    assert s.last_successful_sync_at == datetime(2026, 1, 1, 9, 0, 5, tzinfo=timezone.utc)
    assert s.sync_state == "idle"

    reporter.record_cycle(_result("offline", 1, "timed out"), state="backing_off")
    s = reporter.status()
    assert s.connectivity == "offline"
    assert s.last_error == "timed out"
    assert s.last_cycle_at == datetime(2026, 1, 1, 9, 1, 5, tzinfo=timezone.utc)
    assert s.last_successful_sync_at == datetime(2026, 1, 1, 9, 0, 5, tzinfo=timezone.utc)


def test_status_is_shared_through_the_store(repo, db_path):
    from backend.app.repository import EntryRepository

    StatusReporter(repo).record_cycle(_result("online", 0))
    other_process = StatusReporter(EntryRepository(db_path))
    assert other_process.status().connectivity == "online"


def test_status_prefers_in_process_synchronizer_state(repo):
    reporter = StatusReporter(repo, synchronizer=_Sync())
    reporter.record_cycle(_result("offline", 0, "timed out"), state="idle")
    assert reporter.status().sync_state == "backing_off"
