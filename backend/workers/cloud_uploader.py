"""
Branch -> cloud uploader.

One POST per batch. Every entry carries its client-generated id, which the
cloud uses as the idempotency key, so re-sending a batch after an ambiguous
failure is always safe.
"""

import json
import socket
import urllib.error
import urllib.request
from typing import Iterable

from backend.app.config import settings
from backend.app.errors import NetworkError
from backend.app.logs import json_log
from backend.app.models import FinancialEntry, UploadOutcome

IMPORT_PATH = "/ledger-sync/entries/import"
HEALTH_PATH = "/health"

# The cloud looked at the request and refused it as a whole.
REJECT_STATUSES = {400, 409, 422}


def _base_url(raw: str) -> str:
    """
    Accept either:
    - CLOUD_SYNC_URL="https://cloud.example.com/ledger-sync/entries/import"
    - CLOUD_SYNC_URL="https://cloud.example.com"
    """
    raw = (raw or "").strip()
    if "/ledger-sync/" in raw:
        raw = raw.split("/ledger-sync/", 1)[0]
    return raw.rstrip("/")


def _http_error_message(ex: urllib.error.HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")
    except Exception:
        body = ""
    msg = f"http {getattr(ex, 'code', None)} {getattr(ex, 'reason', '')}".strip()
    if body:
        msg = f"{msg}: {body[:500]}"
    return msg


def _all(ids: Iterable[str], status: str, reason: str) -> dict[str, UploadOutcome]:
    return {i: UploadOutcome(status=status, reason=reason) for i in ids}


class CloudUploader:
    def __init__(
        self,
        base_url: str,
        sync_key: str,
        node_id: str,
        *,
        timeout: float = 10.0,
        probe_timeout: float = 3.0,
    ):
        self.base_url = _base_url(base_url)
        self.sync_key = (sync_key or "").strip()
        self.node_id = (node_id or "").strip() or socket.gethostname()
        self.timeout = float(timeout)
        self.probe_timeout = float(probe_timeout)

    @classmethod
    def from_settings(cls, s=settings) -> "CloudUploader":
        return cls(
            s.cloud_sync_url,
            s.cloud_sync_key,
            s.branch_node_id,
            timeout=s.sync_http_timeout_seconds,
            probe_timeout=s.sync_probe_timeout_seconds,
        )

    @property
    def import_url(self) -> str:
        return self.base_url + IMPORT_PATH

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Ledger-Sync-Key": self.sync_key,
            "X-Branch-Node-Id": self.node_id,
        }

    def _post_json(self, url: str, payload: dict) -> dict:
        data = json.dumps(payload, default=str).encode("utf-8")
        req = urllib.request.Request(url, data=data, headers=self._headers(), method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8") if resp else ""
        except urllib.error.HTTPError:
            # The server answered; the caller decides what the status means.
            raise
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, OSError) as ex:
            raise NetworkError(f"{type(ex).__name__}: {ex}") from ex
        if not body:
            raise NetworkError("empty response body")
        try:
            out = json.loads(body)
        except ValueError as ex:
            raise NetworkError("invalid response body") from ex
        if not isinstance(out, dict):
            raise NetworkError("invalid response body")
        return out

    def upload(self, entries: list[FinancialEntry]) -> dict[str, UploadOutcome]:
        ids = [e.id for e in entries]
        if not ids:
            return {}
        if not self.base_url:
            return _all(ids, "network_error", "cloud sync url not configured")
        payload = {"source_node_id": self.node_id, "entries": [e.wire() for e in entries]}
        try:
            res = self._post_json(self.import_url, payload)
        except urllib.error.HTTPError as ex:
            msg = _http_error_message(ex)
            if ex.code in REJECT_STATUSES:
                json_log("warning", "ledger.sync.batch_rejected", status_code=ex.code, count=len(ids), error=msg)
                return _all(ids, "rejected", msg)
            json_log("warning", "ledger.sync.network_error", url=self.import_url, status_code=ex.code, error=msg)
            return _all(ids, "network_error", msg)
        except NetworkError as ex:
            json_log("warning", "ledger.sync.network_error", url=self.import_url, error=str(ex))
            return _all(ids, "network_error", str(ex))
        return self._classify(ids, res)

    def _classify(self, ids: list[str], res: dict) -> dict[str, UploadOutcome]:
        accepted = {str(i) for i in (res.get("accepted") or [])}
        rejected = {}
        for r in res.get("rejected") or []:
            if isinstance(r, dict) and r.get("id"):
                rejected[str(r["id"])] = str(r.get("reason") or "rejected")
        out: dict[str, UploadOutcome] = {}
        for i in ids:
            if i in accepted:
                out[i] = UploadOutcome(status="accepted")
            elif i in rejected:
                out[i] = UploadOutcome(status="rejected", reason=rejected[i])
            else:
                # No verdict for this id: retry it rather than guess.
                out[i] = UploadOutcome(status="network_error", reason="missing from cloud response")
        return out

    def probe(self) -> bool:
        if not self.base_url:
            return False
        req = urllib.request.Request(self.base_url + HEALTH_PATH, headers={"X-Branch-Node-Id": self.node_id}, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.probe_timeout) as resp:
                return 200 <= int(getattr(resp, "status", 200)) < 300
        except Exception as ex:
            json_log("debug", "ledger.sync.probe_failed", url=self.base_url + HEALTH_PATH, error=str(ex))
            return False
