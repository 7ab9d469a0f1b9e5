import os
import sys
from datetime import datetime, timedelta, timezone

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

BRANCH_ID = "11111111-1111-1111-1111-111111111111"


class StepClock:
    """Wall clock that moves one second per call so created_at never ties."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class MonotonicClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


def entry_data(**overrides):
    data = {"branch_id": BRANCH_ID, "type": "IN", "category": "Sales", "amount": 1000, "description": None}
    data.update(overrides)
    return data


@pytest.fixture
def db_path(tmp_path):
    from backend.app.local_store import init_store

    path = str(tmp_path / "ledger.sqlite")
    init_store(path)
    return path


@pytest.fixture
def repo(db_path):
    from backend.app.repository import EntryRepository

    return EntryRepository(db_path, clock=StepClock())
