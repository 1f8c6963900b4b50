#!/usr/bin/env python3
import copy
import json
import logging
import os
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import DEFAULT_CONFIG, load_config, validate_config
from download.resolver import DownloadResolver
from download.strategies import build_strategies
from engine.credentials import CredentialPool, FileCredentialRepository
from engine.errors import ValidationError
from engine.jobs import JobManager, JobStatus, JobStore, parse_job_request
from engine.paths import (
    PUBLIC_DIR,
    build_engine_paths,
    ensure_dir,
    resolve_config_path,
)
from engine.retry import RetryPolicy
from engine.runtime import get_runtime_info
from engine.staging import sweep_stale_workspace

APP_NAME = "Clipstack API"
LOG_FILENAME = "clipstack.log"
SWEEP_JOB_ID = "workspace_sweep"
SWEEP_INTERVAL_MINUTES = 15
_TRUST_PROXY = os.environ.get("CLIPSTACK_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _load_app_config(config_path):
    if not config_path or not os.path.exists(config_path):
        logging.info("No config file at %s; using defaults", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        config = load_config(config_path)
    except (OSError, json.JSONDecodeError) as exc:
        logging.error("Failed to read config %s: %s; using defaults", config_path, exc)
        return copy.deepcopy(DEFAULT_CONFIG)
    errors = validate_config(config)
    if errors:
        logging.error("Invalid config %s: %s; using defaults", config_path, "; ".join(errors))
        return copy.deepcopy(DEFAULT_CONFIG)
    return config


def _error_response(status_code, message, code):
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


# Field semantics (numbers, aliases, mode) are checked by parse_job_request.
class JobSubmitRequest(BaseModel):
    mainSource: str | None = None
    backgroundSource: str | None = None
    mainUrl: str | None = None
    backgroundUrl: str | None = None
    startSeconds: Any = None
    endSeconds: Any = None
    mode: str | None = None


app = FastAPI(
    title=APP_NAME,
    description="Clipstack API for composing vertical clips from remote video segments.",
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = (exc.errors() or [{}])[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg") or "invalid request body"
    if location:
        message = f"{location}: {message}"
    return _error_response(400, message, "INVALID_REQUEST")


def _sweep_workspace():
    manager = app.state.job_manager
    config = manager.config
    max_age = float(config.get("workspace_max_age_minutes", 120)) * 60
    removed = sweep_stale_workspace(
        app.state.paths.work_dir,
        max_age_seconds=max_age,
        active_job_ids=manager.active_job_ids(),
    )
    if removed:
        logging.info("Workspace sweep removed: %s", ", ".join(removed))


@app.on_event("startup")
async def startup():
    app.state.paths = build_engine_paths()
    _setup_logging(app.state.paths.log_dir)
    try:
        app.state.config_path = resolve_config_path(os.environ.get("CLIPSTACK_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        app.state.config_path = resolve_config_path(None)
    config = _load_app_config(app.state.config_path)
    app.state.config = config

    app.state.credential_pool = CredentialPool(FileCredentialRepository(app.state.paths.cookies_dir))
    strategies = build_strategies(config)
    resolver = DownloadResolver(
        strategies,
        app.state.credential_pool,
        RetryPolicy.from_config(config),
    )
    app.state.job_manager = JobManager(
        JobStore(),
        resolver,
        config=config,
        paths=app.state.paths,
    )
    logging.info(
        "Job manager ready: workers=%s strategies=%s credentials=%s",
        config.get("max_workers"),
        ",".join(strategy.name for strategy in strategies),
        app.state.credential_pool.active_count(),
    )

    app.state.scheduler = BackgroundScheduler(timezone="UTC")
    app.state.scheduler.add_job(
        _sweep_workspace,
        IntervalTrigger(minutes=SWEEP_INTERVAL_MINUTES),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)
    manager = getattr(app.state, "job_manager", None)
    if manager:
        manager.shutdown(wait=False)
    logging.shutdown()


@app.get("/api/health")
async def api_health():
    manager = app.state.job_manager
    counts = {status.value: 0 for status in JobStatus}
    for job in manager.list_jobs():
        counts[job.status.value] += 1
    pool = getattr(app.state, "credential_pool", None)
    return {
        "status": "ok",
        "jobs": counts,
        "active_credentials": pool.active_count() if pool else 0,
    }


@app.get("/api/version")
async def api_version():
    return get_runtime_info(getattr(app.state, "config", None))


@app.post("/api/jobs")
async def api_create_job(payload: JobSubmitRequest = Body(...)):
    manager = app.state.job_manager
    try:
        request = parse_job_request(
            payload.model_dump(exclude_none=True),
            max_segment_seconds=manager.max_segment_seconds,
        )
    except ValidationError as exc:
        logging.warning("Job rejected: %s", exc)
        return _error_response(400, str(exc), "INVALID_REQUEST")
    job_id = manager.submit(request)
    return {"jobId": job_id}


@app.get("/api/jobs")
async def api_list_jobs():
    return {"jobs": [job.to_dict() for job in app.state.job_manager.list_jobs()]}


@app.get("/api/jobs/{job_id}")
async def api_get_job(job_id: str):
    job = app.state.job_manager.get_status(job_id)
    if job is None:
        return _error_response(404, "Job not found", "JOB_NOT_FOUND")
    return job.to_dict()


app.mount("/videos", StaticFiles(directory=str(PUBLIC_DIR), check_dir=False), name="videos")


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("CLIPSTACK_HOST", "127.0.0.1")
    port = int(_env_or_default("CLIPSTACK_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
