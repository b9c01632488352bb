from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .db import DBConn
from .scour import JobAlreadyRunning, ScourManager, build_manager, build_processor
from .services.sources_service import SourceNotFound, resolve_sources
from .storage import init_db, list_sources
from .utils import configure_logging, log_event

app = FastAPI(title="ScourWatch API")

_MANAGER: ScourManager | None = None
_MANAGER_LOCK = threading.Lock()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("SW_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if header != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_manager() -> ScourManager:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            with _get_conn() as conn:
                config = load_runtime_config(conn)
            _MANAGER = build_manager(
                config, get_state_db_path(), logging.getLogger("scourwatch.scour")
            )
        return _MANAGER


def reset_manager() -> bool:
    """Drop the cached manager so the next request picks up the runtime config."""
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is not None and _MANAGER.has_running_threads():
            return False
        _MANAGER = None
    return True


class ScourRunRequest(BaseModel):
    jobId: str | None = None
    sourceIds: list[str] | None = None
    earlySignalsOnly: bool = False
    batchOffset: int | None = None
    batchSize: int | None = None
    wait: bool | None = None


class WorkerRequest(BaseModel):
    sourceIds: list[str]


class SourcePatchRequest(BaseModel):
    enabled: bool | None = None
    trust_score: float | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "ScourWatch API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/scour/run", dependencies=[Depends(_require_admin_token)])
def scour_run(
    payload: ScourRunRequest, manager: ScourManager = Depends(get_manager)
) -> dict[str, object]:
    logger = logging.getLogger("scourwatch.admin")
    wait = payload.wait if payload.wait is not None else not payload.earlySignalsOnly
    try:
        handle = manager.start(
            job_id=payload.jobId,
            source_ids=payload.sourceIds,
            early_signals=payload.earlySignalsOnly,
            batch_offset=payload.batchOffset,
            batch_size=payload.batchSize,
            background=not wait,
        )
    except JobAlreadyRunning as exc:
        raise HTTPException(
            status_code=409,
            detail={"error": "job_already_running", "jobId": exc.job_id},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(
        logger,
        logging.INFO,
        "scour_run_requested",
        job_id=handle.job_id,
        early_signals=payload.earlySignalsOnly,
        wait=wait,
    )
    if not wait:
        return {"ok": True, "status": "queued", "jobId": handle.job_id}
    job = manager.status(handle.job_id)
    if job is None:
        return {"ok": False, "status": "stopped", "jobId": handle.job_id}
    response: dict[str, object] = {
        "ok": job.status == "done",
        "status": job.status,
        "jobId": job.id,
        "processed": job.processed,
        "total": job.total,
        "created": job.created,
        "duplicatesSkipped": job.duplicates_skipped,
        "lowConfidenceSkipped": job.low_confidence_skipped,
        "errorCount": job.error_count,
        "disabled_source_ids": list(job.disabled_source_ids),
        "fatalError": job.fatal_error,
    }
    if job.batch_window is not None:
        response["batchWindow"] = job.batch_window
    return response


@app.get("/scour/status")
def scour_status(
    jobId: str | None = None, manager: ScourManager = Depends(get_manager)
) -> dict[str, object]:
    if not jobId:
        raise HTTPException(status_code=400, detail="jobId required")
    document = manager.status_document(jobId)
    if document is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"ok": True, "job": document}


@app.get("/scour/logs")
def scour_logs(
    jobId: str | None = None,
    limit: int = 50,
    manager: ScourManager = Depends(get_manager),
) -> dict[str, object]:
    if not jobId:
        raise HTTPException(status_code=400, detail="jobId required")
    entries = manager.logs(jobId, limit=limit)
    if entries is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"ok": True, "logs": [entry.to_dict() for entry in entries]}


@app.post("/force-stop-scour", dependencies=[Depends(_require_admin_token)])
def force_stop_scour(manager: ScourManager = Depends(get_manager)) -> dict[str, object]:
    cleared = manager.force_stop()
    return {
        "ok": True,
        "message": f"Stopped {len(cleared)} scour job(s)",
        "clearedCount": len(cleared),
        "jobIds": cleared,
    }


@app.post("/scour/worker", dependencies=[Depends(_require_admin_token)])
def scour_worker(
    payload: WorkerRequest, manager: ScourManager = Depends(get_manager)
) -> dict[str, object]:
    logger = logging.getLogger("scourwatch.worker")
    db_path = get_state_db_path()
    with _get_conn() as conn:
        config = load_runtime_config(conn)
    processor = build_processor(config, db_path, logger)
    try:
        sources = resolve_sources(manager.registry, payload.sourceIds)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    units = [processor.process_source(source).to_dict() for source in sources]
    log_event(logger, logging.INFO, "worker_batch_processed", sources=len(sources))
    return {"ok": True, "units": units}


@app.get("/sources")
def sources_list(enabled_only: bool = False) -> list[dict[str, object]]:
    with _get_conn() as conn:
        return [source.to_dict() for source in list_sources(conn, enabled_only=enabled_only)]


@app.patch("/sources/{source_id}", dependencies=[Depends(_require_admin_token)])
def sources_update(
    source_id: str,
    payload: SourcePatchRequest,
    manager: ScourManager = Depends(get_manager),
) -> dict[str, object]:
    fields = payload.model_dump(exclude_none=True)
    try:
        source = manager.registry.patch_source(source_id, fields)
    except SourceNotFound as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return source.to_dict()


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    with _get_conn() as conn:
        try:
            cfg = get_runtime_config(conn)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    with _get_conn() as conn:
        try:
            set_runtime_config(conn, payload.config)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "applied": reset_manager()}


def _setup_logging() -> None:
    configure_logging("scourwatch.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("scourwatch")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> DBConn:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
