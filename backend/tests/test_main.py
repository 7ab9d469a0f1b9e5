from backend.app import deps, main
from backend.app.config import settings
from backend.app.repository import EntryRepository

from conftest import entry_data


def test_local_app_exposes_branch_routes_only():
    paths = {getattr(r, "path", "") for r in main.app.routes}
    assert "/entries" in paths
    assert "/system/status" in paths
    assert "/ledger-sync/entries/import" not in paths


def test_db_health_checks_local_store(monkeypatch, db_path, tmp_path):
    monkeypatch.setattr(settings, "role", "local")
    monkeypatch.setattr(settings, "ledger_db_path", db_path)
    assert main._db_health() == (True, None)

    monkeypatch.setattr(settings, "ledger_db_path", str(tmp_path / "missing" / "nested" / "ledger.sqlite"))
    ok, err = main._db_health()
    assert ok is False
    assert err


def test_meta():
    out = main.meta()
    assert out["version"] == settings.api_version
    assert out["role"] == settings.role


def test_startup_without_sync_leaves_in_flight_entries_alone(monkeypatch, db_path):
    monkeypatch.setattr(settings, "role", "local")
    monkeypatch.setattr(settings, "ledger_db_path", db_path)
    monkeypatch.setattr(settings, "sync_enabled", False)
    deps.reset()
    try:
        repo = EntryRepository(db_path)
        e = repo.create(entry_data())
        # A standalone sync worker holds this entry mid-upload.
        repo.mark_syncing([e.id])

        main._startup()
        assert deps.get_synchronizer() is None
        assert repo.get(e.id).sync_state == "syncing"
    finally:
        deps.reset()
