from backend.app.config import Settings


def test_defaults(monkeypatch):
    for name in ("APP_ROLE", "SYNC_INTERVAL_SECONDS", "SYNC_BATCH_SIZE", "CLOUD_SYNC_URL", "CLOUD_SYNC_KEY"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.role == "local"
    assert s.sync_interval_seconds == 30.0
    assert s.sync_batch_size == 50
    assert s.sync_configured is False


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SYNC_BATCH_SIZE", "lots")
    monkeypatch.setenv("SYNC_BACKOFF_BASE_SECONDS", "20")
    monkeypatch.setenv("SYNC_BACKOFF_MAX_SECONDS", "5")
    s = Settings()
    assert s.sync_batch_size == 50
    # The cap can never be below the base delay.
    assert s.sync_backoff_max_seconds == 20.0


def test_sync_configured_needs_url_key_and_switch(monkeypatch):
    monkeypatch.setenv("CLOUD_SYNC_URL", "https://cloud.example.com")
    monkeypatch.setenv("CLOUD_SYNC_KEY", "secret")
    monkeypatch.setenv("SYNC_ENABLED", "true")
    assert Settings().sync_configured is True
    monkeypatch.setenv("SYNC_ENABLED", "off")
    assert Settings().sync_configured is False
