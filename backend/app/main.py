from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .config import settings
from .deps import get_repository, get_status_reporter, set_synchronizer, get_synchronizer
from .errors import ConflictError, EntryNotFoundError, StorageError
from .local_store import init_store, ping as store_ping
from .logs import json_log
from .routers.entries import router as entries_router
from .routers.system import router as system_router
from .routers.ledger_sync import router as ledger_sync_router
from .db import get_conn, close_pools, ensure_cloud_schema
from ..workers.ledger_sync import build_synchronizer

app = FastAPI(title="Branch Ledger API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "branch-ledger-cloud" if settings.role == "cloud" else "branch-ledger"


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_content(detail: str, exc: Exception) -> dict:
    content = {"detail": detail}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


@app.exception_handler(StorageError)
def _storage_error(req: Request, exc: Exception):
    # The entry was not recorded; the caller has to retry.
    json_log("error", "ledger.storage_error", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
    return JSONResponse(status_code=503, content=_error_content("ledger store unavailable", exc))


@app.exception_handler(ConflictError)
def _conflict_error(_req: Request, exc: Exception):
    content = _error_content("conflict", exc)
    content["ids"] = getattr(exc, "ids", [])
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(EntryNotFoundError)
def _not_found_error(_req: Request, exc: Exception):
    return JSONResponse(status_code=404, content=_error_content("not found", exc))


# Cloud role: map DB constraint errors to 4xx instead of generic 500s.
@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("invalid reference", exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_error_content("constraint violation", exc))


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)

# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# The branch UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if settings.role == "cloud":
    app.include_router(ledger_sync_router)
else:
    app.include_router(entries_router)
    app.include_router(system_router)


@app.on_event("startup")
def _startup():
    if settings.role == "cloud":
        try:
            ensure_cloud_schema()
            json_log("info", "startup.db_connected", env=settings.env, role=settings.role, version=settings.api_version)
        except Exception as exc:
            json_log("warning", "startup.db_probe_failed", env=settings.env, role=settings.role, error=str(exc))
        return

    init_store(settings.ledger_db_path)
    repo = get_repository()
    json_log("info", "startup.store_ready", env=settings.env, path=settings.ledger_db_path, version=settings.api_version)
    if not settings.sync_configured:
        # Entries keep accumulating as pending. Interrupted uploads belong to
        # whichever process runs the synchronizer, which sweeps them on start.
        json_log("warning", "startup.sync_disabled", cloud_url=settings.cloud_sync_url or None)
        return
    sync = build_synchronizer(repo, get_status_reporter())
    set_synchronizer(sync)
    sync.start()


@app.on_event("shutdown")
def _shutdown():
    sync = get_synchronizer()
    if sync is not None:
        sync.stop(timeout=settings.sync_http_timeout_seconds + 5)
    if settings.role == "cloud":
        close_pools()


def _db_health():
    try:
        if settings.role == "cloud":
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1 AS ok")
                    cur.fetchone()
        else:
            store_ping(settings.ledger_db_path)
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    if not ok:
        content = {
            "status": "degraded",
            "env": settings.env,
            "db": "down",
            "service": SERVICE_NAME,
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": request_id,
        }
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return {
        "status": "ok",
        "env": settings.env,
        "db": "ok",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "role": settings.role,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
