import os
import socket
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # "local" runs at the branch (SQLite ledger + synchronizer);
        # "cloud" is the remote authority receiving uploads.
        self.role = (os.getenv("APP_ROLE") or "local").strip().lower() or "local"
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.log_level = (os.getenv("LOG_LEVEL") or "info").strip().lower() or "info"
        # Comma-separated list of allowed CORS origins for the branch UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )

        # Local store.
        self.ledger_db_path = (os.getenv("LEDGER_DB_PATH") or "").strip() or "./branch_ledger.sqlite"

        # Synchronizer.
        self.cloud_sync_url = (os.getenv("CLOUD_SYNC_URL") or "").strip()
        self.cloud_sync_key = (os.getenv("CLOUD_SYNC_KEY") or "").strip()
        self.branch_node_id = (os.getenv("BRANCH_NODE_ID") or "").strip() or socket.gethostname()
        self.sync_enabled = _truthy(os.getenv("SYNC_ENABLED", "true"))
        self.sync_interval_seconds = max(1.0, _env_float("SYNC_INTERVAL_SECONDS", 30.0))
        self.sync_batch_size = max(1, _env_int("SYNC_BATCH_SIZE", 50))
        self.sync_http_timeout_seconds = max(0.5, _env_float("SYNC_HTTP_TIMEOUT_SECONDS", 10.0))
        self.sync_probe_timeout_seconds = max(0.2, _env_float("SYNC_PROBE_TIMEOUT_SECONDS", 3.0))
        self.sync_backoff_base_seconds = max(1.0, _env_float("SYNC_BACKOFF_BASE_SECONDS", 15.0))
        self.sync_backoff_max_seconds = max(
            self.sync_backoff_base_seconds, _env_float("SYNC_BACKOFF_MAX_SECONDS", 600.0)
        )

        # Remote authority (cloud role only).
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/branch_ledger')
        self.db_pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)

    @property
    def sync_configured(self) -> bool:
        return bool(self.sync_enabled and self.cloud_sync_url and self.cloud_sync_key)


settings = Settings()
