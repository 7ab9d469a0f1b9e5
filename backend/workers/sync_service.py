#!/usr/bin/env python3
"""
Long-running ledger sync worker.

Runs the same synchronizer the local API starts in-process, for deployments
that keep the API and the sync loop in separate processes. Both share the
SQLite store, and the `mark_syncing` guard keeps them from uploading the same
entry twice. Run the API with SYNC_ENABLED=false when this worker is used:
startup recovery assumes no other synchronizer is mid-upload.

Run: python -m backend.workers.sync_service --db ./branch_ledger.sqlite
"""

import argparse
import signal
import sys

from backend.app.config import settings
from backend.app.local_store import init_store
from backend.app.logs import json_log
from backend.app.repository import EntryRepository
from backend.app.status import StatusReporter

from .cloud_uploader import CloudUploader
from .ledger_sync import Synchronizer


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.ledger_db_path, help="SQLite ledger path")
    parser.add_argument("--cloud-url", default=settings.cloud_sync_url)
    parser.add_argument("--interval", type=float, default=settings.sync_interval_seconds)
    parser.add_argument("--batch-size", type=int, default=settings.sync_batch_size)
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args(argv)

    if not args.cloud_url or not settings.cloud_sync_key:
        json_log("error", "worker.sync.not_configured", cloud_url=args.cloud_url or None)
        return 2

    init_store(args.db)
    repo = EntryRepository(args.db)
    reporter = StatusReporter(repo)
    uploader = CloudUploader(
        args.cloud_url,
        settings.cloud_sync_key,
        settings.branch_node_id,
        timeout=settings.sync_http_timeout_seconds,
        probe_timeout=settings.sync_probe_timeout_seconds,
    )
    sync = Synchronizer(
        repo,
        uploader,
        reporter=reporter,
        batch_size=args.batch_size,
        interval_seconds=args.interval,
        backoff_base_seconds=settings.sync_backoff_base_seconds,
        backoff_max_seconds=settings.sync_backoff_max_seconds,
    )

    if args.once:
        repo.recover_interrupted()
        result = sync.tick()
        json_log("info", "worker.sync.once", result=result.model_dump(mode="json") if result else None)
        return 0 if result is not None and result.network_error is None else 1

    def _shutdown(signum, _frame):
        json_log("info", "worker.sync.shutdown", signal=signum)
        sync.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    sync.start()
    # Keep the main thread alive for signal delivery; the sync thread does the work.
    while sync.is_alive():
        sync.join(1.0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
