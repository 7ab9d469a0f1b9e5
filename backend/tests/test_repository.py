from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from backend.app.errors import ConflictError, EntryNotFoundError, StorageError
from backend.app.local_store import get_conn, init_store
from backend.app.models import SyncCycleResult
from backend.app.repository import EntryRepository

from conftest import BRANCH_ID, StepClock, entry_data


def _state(repo, entry_id):
    return repo.get(entry_id).sync_state


def test_create_persists_pending_entry(repo):
    e = repo.create(entry_data(type="out", category=" Rent ", amount=2500, description="March rent"))
    assert e.sync_state == "pending"
    assert e.type == "OUT"
    assert e.category == "Rent"
    assert e.synced_at is None
    assert e.attempt_count == 0
    assert e.created_at.tzinfo is not None

    again = repo.get(e.id)
    assert again == e


def test_create_rejects_invalid_input_without_writing(repo):
    with pytest.raises(ValidationError):
        repo.create(entry_data(amount=0))
    assert repo.list_entries()[1] == 0


def test_ids_are_unique(repo):
    ids = {repo.create(entry_data()).id for _ in range(20)}
    assert len(ids) == 20


def test_store_refuses_edits_and_deletes(repo, db_path):
    e = repo.create(entry_data())
    with pytest.raises(StorageError):
        with get_conn(db_path, write=True) as conn:
            conn.execute("UPDATE ledger_entries SET amount = 1 WHERE id = ?", (e.id,))
    with pytest.raises(StorageError):
        with get_conn(db_path, write=True) as conn:
            conn.execute("DELETE FROM ledger_entries WHERE id = ?", (e.id,))
    assert repo.get(e.id).amount == 1000


def test_init_store_is_idempotent(db_path):
    init_store(db_path)
    init_store(db_path)
    repo = EntryRepository(db_path)
    assert repo.count_pending() == 0


def test_list_pending_is_oldest_first_and_bounded(repo):
    ids = [repo.create(entry_data(amount=i + 1)).id for i in range(5)]
    assert [e.id for e in repo.list_pending(3)] == ids[:3]
    assert [e.id for e in repo.list_pending(50)] == ids


def test_sync_lifecycle_and_idempotent_mark_synced(repo):
    e = repo.create(entry_data())
    repo.mark_syncing([e.id])
    assert _state(repo, e.id) == "syncing"
    assert repo.get(e.id).attempt_count == 1
    assert repo.list_pending(10) == []

    when = datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert repo.mark_synced(e.id, when) is True
    assert repo.mark_synced(e.id, when) is False
    got = repo.get(e.id)
    assert got.sync_state == "synced"
    assert got.synced_at == when


def test_synced_is_final(repo):
    e = repo.create(entry_data())
    repo.mark_syncing([e.id])
    repo.mark_synced(e.id)

    with pytest.raises(ConflictError):
        repo.mark_syncing([e.id])
    with pytest.raises(ConflictError):
        repo.mark_failed(e.id, "late rejection")
    assert repo.revert_to_pending([e.id]) == 0
    assert repo.recover_interrupted() == 0
    assert _state(repo, e.id) == "synced"


def test_mark_syncing_is_all_or_nothing(repo):
    a = repo.create(entry_data())
    b = repo.create(entry_data())
    repo.mark_syncing([b.id])

    with pytest.raises(ConflictError) as exc_info:
        repo.mark_syncing([a.id, b.id])
    assert exc_info.value.ids == [b.id]
    assert _state(repo, a.id) == "pending"


def test_mark_synced_requires_syncing(repo):
    e = repo.create(entry_data())
    with pytest.raises(ConflictError):
        repo.mark_synced(e.id)
    with pytest.raises(ConflictError):
        repo.mark_synced("00000000-0000-0000-0000-000000000000")


def test_failed_entries_wait_for_operator_retry(repo):
    e = repo.create(entry_data())
    repo.mark_syncing([e.id])
    assert repo.mark_failed(e.id, "invalid branch") is True
    assert repo.mark_failed(e.id, "invalid branch") is False

    got = repo.get(e.id)
    assert got.sync_state == "failed"
    assert got.failure_reason == "invalid branch"
    assert repo.list_pending(10) == []
    assert repo.count_failed() == 1

    requeued = repo.requeue_failed(e.id)
    assert requeued.retry_requested is True
    assert [x.id for x in repo.list_pending(10)] == [e.id]

    repo.mark_syncing([e.id])
    got = repo.get(e.id)
    assert got.sync_state == "syncing"
    assert got.failure_reason is None
    assert got.retry_requested is False
    assert got.attempt_count == 2


def test_requeue_only_accepts_failed_entries(repo):
    e = repo.create(entry_data())
    with pytest.raises(ConflictError):
        repo.requeue_failed(e.id)
    with pytest.raises(EntryNotFoundError):
        repo.requeue_failed("00000000-0000-0000-0000-000000000000")


def test_revert_to_pending_only_touches_syncing(repo):
    a = repo.create(entry_data())
    b = repo.create(entry_data())
    repo.mark_syncing([a.id])
    assert repo.revert_to_pending([a.id, b.id]) == 1
    assert _state(repo, a.id) == "pending"


def test_restart_recovers_interrupted_uploads(repo, db_path):
    a = repo.create(entry_data())
    b = repo.create(entry_data())
    repo.mark_syncing([a.id, b.id])

    restarted = EntryRepository(db_path)
    assert restarted.recover_interrupted() == 2
    assert {e.sync_state for e in restarted.list_pending(10)} == {"pending"}


def test_count_pending_counts_everything_not_synced(repo):
    a = repo.create(entry_data())
    b = repo.create(entry_data())
    c = repo.create(entry_data())
    repo.create(entry_data())
    repo.mark_syncing([a.id, b.id, c.id])
    repo.mark_synced(a.id)
    repo.mark_failed(b.id, "rejected")
    # b failed, c syncing, d pending
    assert repo.count_pending() == 3


def test_summary_totals_and_balance(repo):
    other = "22222222-2222-2222-2222-222222222222"
    repo.create(entry_data(type="IN", amount=1000))
    repo.create(entry_data(type="IN", amount=500))
    repo.create(entry_data(type="OUT", amount=300))
    repo.create(entry_data(branch_id=other, type="IN", amount=7))

    s = repo.summary(BRANCH_ID)
    assert s == {
        "total_in": 1500,
        "total_out": 300,
        "balance": 1200,
        "count_in": 2,
        "count_out": 1,
        "unsynced_count": 3,
    }
    assert repo.summary()["total_in"] == 1507


def test_reversal_appends_compensating_entry(repo):
    original = repo.create(entry_data(type="IN", amount=1000))
    rev = repo.create_reversal(original.id, "typo")

    assert rev.id != original.id
    assert rev.type == "OUT"
    assert rev.amount == 1000
    assert rev.reversal_of == original.id
    assert rev.sync_state == "pending"
    assert "typo" in rev.description
    assert repo.get(original.id) == original
    assert repo.summary()["balance"] == 0


def test_reversal_rules(repo):
    original = repo.create(entry_data())
    rev = repo.create_reversal(original.id)
    with pytest.raises(ConflictError):
        repo.create_reversal(original.id)
    with pytest.raises(ConflictError):
        repo.create_reversal(rev.id)
    with pytest.raises(EntryNotFoundError):
        repo.create_reversal("00000000-0000-0000-0000-000000000000")


def test_list_entries_paginates_newest_first(repo):
    ids = [repo.create(entry_data(amount=i + 1)).id for i in range(5)]
    page1, total = repo.list_entries(page=1, limit=2)
    page3, _ = repo.list_entries(page=3, limit=2)
    assert total == 5
    assert [e.id for e in page1] == [ids[4], ids[3]]
    assert [e.id for e in page3] == [ids[0]]

    repo.mark_syncing([ids[0]])
    syncing, total = repo.list_entries(sync_state="syncing")
    assert total == 1
    assert syncing[0].id == ids[0]


def test_heartbeat_keeps_last_successful_sync(db_path):
    repo = EntryRepository(db_path, clock=StepClock())
    online = SyncCycleResult(
        started_at=datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc),
        finished_at=datetime(2026, 1, 1, 9, 0, 5, tzinfo=timezone.utc),
        connectivity="online",
    )
    offline = SyncCycleResult(
        started_at=datetime(2026, 1, 1, 9, 1, tzinfo=timezone.utc),
        finished_at=datetime(2026, 1, 1, 9, 1, 5, tzinfo=timezone.utc),
        connectivity="offline",
        network_error="timed out",
    )
    assert repo.load_heartbeat("LEDGER_SYNC") is None

    repo.record_heartbeat("LEDGER_SYNC", online, {"synced": 3})
    first = repo.load_heartbeat("LEDGER_SYNC")
    assert first["connectivity"] == "online"
    assert first["details"] == {"synced": 3}

    repo.record_heartbeat("LEDGER_SYNC", offline)
    hb = repo.load_heartbeat()
    assert hb["connectivity"] == "offline"
    assert hb["last_error"] == "timed out"
    assert hb["last_successful_sync_at"] == first["last_successful_sync_at"]
    assert hb["last_cycle_at"] != first["last_cycle_at"]
