from __future__ import annotations

import copy
import importlib
from pathlib import Path

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from config.settings import DEFAULT_CONFIG
from engine.jobs import JobManager, JobStore
from engine.paths import EnginePaths


class _Resolver:
    def download(self, source, destination):
        Path(destination).write_bytes(b"segment")
        return []


def _executor(plan, *, ffmpeg_bin, timeout):
    for output in plan.outputs:
        Path(output.path).write_bytes(b"composed")
    return plan.output_paths


def _build_client(engine_paths: EnginePaths):
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["validate_duration"] = False
    manager = JobManager(
        JobStore(),
        _Resolver(),
        config=config,
        paths=engine_paths,
        executor=_executor,
        prober=lambda _path, _bin: None,
    )
    module.app.state.job_manager = manager
    module.app.state.config = config
    return TestClient(module.app), manager


def test_start_not_before_end_is_rejected_without_creating_a_job(engine_paths: EnginePaths) -> None:
    client, manager = _build_client(engine_paths)

    response = client.post(
        "/api/jobs",
        json={"mainSource": "A", "backgroundSource": "B", "startSeconds": 50, "endSeconds": 40},
    )

    assert response.status_code == 400
    assert response.json()["error"]
    assert manager.list_jobs() == []
    manager.shutdown()


def test_non_object_body_is_a_400(engine_paths: EnginePaths) -> None:
    client, manager = _build_client(engine_paths)

    response = client.post("/api/jobs", json=["A", "B"])

    assert response.status_code == 400
    assert "error" in response.json()
    manager.shutdown()


def test_submit_then_query_until_completed(engine_paths: EnginePaths) -> None:
    client, manager = _build_client(engine_paths)

    response = client.post(
        "/api/jobs",
        json={"mainSource": "A", "backgroundSource": "B", "startSeconds": 30, "endSeconds": 45},
    )
    assert response.status_code == 200
    job_id = response.json()["jobId"]

    manager.wait(job_id, timeout=10)
    body = client.get(f"/api/jobs/{job_id}").json()

    assert body["jobId"] == job_id
    assert body["status"] == "completed"
    assert body["outputs"]["combined"]["url"] == f"/videos/combined-{job_id}.mp4"
    assert Path(body["outputs"]["combined"]["path"]).stat().st_size > 0
    assert [job["jobId"] for job in client.get("/api/jobs").json()["jobs"]] == [job_id]
    manager.shutdown()


def test_unknown_job_is_404(engine_paths: EnginePaths) -> None:
    client, manager = _build_client(engine_paths)

    response = client.get("/api/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"] == "Job not found"
    manager.shutdown()


def test_health_reports_job_counts(engine_paths: EnginePaths) -> None:
    client, manager = _build_client(engine_paths)

    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["jobs"]["completed"] == 0
    manager.shutdown()
