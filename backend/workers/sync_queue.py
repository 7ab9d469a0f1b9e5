from typing import Iterable, Optional

from backend.app.models import FinancialEntry
from backend.app.repository import EntryRepository

MAX_BATCH_SIZE = 500


class SyncQueueSelector:
    """Picks the next bounded, oldest-first batch of entries eligible for upload."""

    def __init__(self, repo: EntryRepository, batch_size: int = 50):
        self.repo = repo
        self.batch_size = max(1, min(int(batch_size or 50), MAX_BATCH_SIZE))

    def next_batch(self, exclude: Optional[Iterable[str]] = None) -> list[FinancialEntry]:
        # `exclude` holds ids already handled earlier in the same cycle (e.g. an
        # entry whose outcome could not be applied); never send them twice.
        skip = set(exclude or [])
        rows = self.repo.list_pending(self.batch_size + len(skip))
        return [e for e in rows if e.id not in skip][: self.batch_size]
