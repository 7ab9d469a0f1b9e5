import threading
from typing import Optional

from .config import settings
from .repository import EntryRepository
from .status import StatusReporter

# Process-wide singletons for the branch API. The synchronizer is only set
# when this process runs the sync loop itself (see main.py startup).
_lock = threading.Lock()
_repo: Optional[EntryRepository] = None
_reporter: Optional[StatusReporter] = None
_synchronizer = None


def get_repository() -> EntryRepository:
    global _repo
    with _lock:
        if _repo is None:
            _repo = EntryRepository(settings.ledger_db_path)
        return _repo


def get_status_reporter() -> StatusReporter:
    global _reporter
    repo = get_repository()
    with _lock:
        if _reporter is None:
            _reporter = StatusReporter(repo)
        return _reporter


def get_synchronizer():
    return _synchronizer


def set_synchronizer(sync) -> None:
    global _synchronizer
    reporter = get_status_reporter()
    with _lock:
        _synchronizer = sync
        reporter.synchronizer = sync


def reset() -> None:
    global _repo, _reporter, _synchronizer
    with _lock:
        _repo = None
        _reporter = None
        _synchronizer = None
