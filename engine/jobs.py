"""Job records, the in-memory job table and the worker pool that runs jobs."""

from __future__ import annotations

import concurrent.futures
import copy
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from config.settings import DEFAULT_CONFIG, JOB_MODES
from download.sources import (
    STREAM_AUDIO,
    STREAM_AUDIO_VIDEO,
    STREAM_VIDEO,
    SegmentWindow,
    SourceDescriptor,
)
from engine.errors import ClipstackError, CompositionError, PipelineError, ValidationError
from engine.events import log_event
from engine.publish import publish_outputs
from engine.staging import StagingArea, remove_path
from media.composition import (
    MODE_AUDIO,
    MODE_COMBINED,
    OUTPUT_ROLES,
    ROLE_BACKGROUND,
    ROLE_MAIN,
    CompositionSettings,
    plan_composition,
)
from media.ffmpeg import execute_plan
from media.ffprobe import get_video_size
from media.validation import validate_duration

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPOSING = "composing"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)

_NEXT_STATUS = {
    JobStatus.QUEUED: JobStatus.DOWNLOADING,
    JobStatus.DOWNLOADING: JobStatus.COMPOSING,
    JobStatus.COMPOSING: JobStatus.PUBLISHING,
    JobStatus.PUBLISHING: JobStatus.COMPLETED,
}


class InvalidTransition(ClipstackError):
    pass


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if target is JobStatus.FAILED:
        return True
    return _NEXT_STATUS.get(current) is target


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass
class Job:
    id: str
    mode: str
    sources: dict
    window: SegmentWindow
    status: JobStatus = JobStatus.QUEUED
    outputs: dict = field(default_factory=dict)
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    history: list = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.window.duration

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        payload = {
            "jobId": self.id,
            "status": self.status.value,
            "mode": self.mode,
            "sources": {role: source.reference for role, source in self.sources.items()},
            "startSeconds": self.window.start,
            "endSeconds": self.window.end,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.status is JobStatus.COMPLETED:
            payload["outputs"] = {role: output.to_dict() for role, output in self.outputs.items()}
        if self.status is JobStatus.FAILED:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class JobRequest:
    main_source: str
    background_source: Optional[str]
    start_seconds: float
    end_seconds: float
    mode: str = MODE_COMBINED


def _source_field(payload, *names):
    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{names[0]} must be a string")
        if value.strip():
            return value.strip()
    return None


def _seconds_field(payload, name):
    value = payload.get(name)
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    if isinstance(value, str):
        value = value.strip()
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if not math.isfinite(seconds):
        raise ValidationError(f"{name} must be a finite number")
    return seconds


def parse_job_request(payload, *, max_segment_seconds=None) -> JobRequest:
    """Validate a submission body and return a :class:`JobRequest`.

    Raises :class:`ValidationError` with a user-facing message on the first
    problem found.
    """
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")

    mode = payload.get("mode") or MODE_COMBINED
    if mode not in JOB_MODES:
        raise ValidationError(f"mode must be one of: {', '.join(JOB_MODES)}")

    main_source = _source_field(payload, "mainSource", "mainUrl")
    if not main_source:
        raise ValidationError("mainSource is required")
    background_source = _source_field(payload, "backgroundSource", "backgroundUrl")
    if mode != MODE_AUDIO and not background_source:
        raise ValidationError("backgroundSource is required")

    start = _seconds_field(payload, "startSeconds")
    end = _seconds_field(payload, "endSeconds")
    if start < 0:
        raise ValidationError("startSeconds must not be negative")
    if start >= end:
        raise ValidationError("startSeconds must be less than endSeconds")
    if max_segment_seconds is not None and end - start > max_segment_seconds:
        raise ValidationError(f"segment must not be longer than {max_segment_seconds} seconds")

    return JobRequest(
        main_source=main_source,
        background_source=background_source if mode != MODE_AUDIO else None,
        start_seconds=start,
        end_seconds=end,
        mode=mode,
    )


def build_sources(request: JobRequest, background_window="rebased") -> dict:
    window = SegmentWindow(request.start_seconds, request.end_seconds)
    main_stream = STREAM_AUDIO if request.mode == MODE_AUDIO else STREAM_AUDIO_VIDEO
    sources = {ROLE_MAIN: SourceDescriptor(ROLE_MAIN, request.main_source, window, main_stream)}
    if request.mode != MODE_AUDIO:
        if background_window == "mirror":
            background = window
        else:
            background = SegmentWindow(0.0, window.duration)
        sources[ROLE_BACKGROUND] = SourceDescriptor(
            ROLE_BACKGROUND, request.background_source, background, STREAM_VIDEO
        )
    return sources


class JobStore:
    """Process-wide job table. Readers always get deep copies."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"duplicate job id {job.id}")
            job.history = [job.status]
            self._jobs[job.id] = job
            return copy.deepcopy(job)

    def get(self, job_id) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def list(self) -> list[Job]:
        with self._lock:
            jobs = [copy.deepcopy(job) for job in self._jobs.values()]
        return sorted(jobs, key=lambda job: job.created_at)

    def transition(self, job_id, status: JobStatus, *, outputs=None, error=None) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if not can_transition(job.status, status):
                raise InvalidTransition(f"job {job_id}: {job.status.value} -> {status.value} is not allowed")
            job.status = status
            job.updated_at = utc_now()
            job.history.append(status)
            if outputs is not None:
                job.outputs = dict(outputs)
            if error is not None:
                job.error = error
            return copy.deepcopy(job)


class JobManager:
    def __init__(
        self,
        store: JobStore,
        resolver,
        *,
        config=None,
        paths,
        executor=execute_plan,
        prober=get_video_size,
        publisher=publish_outputs,
        duration_check=validate_duration,
    ):
        self.store = store
        self.resolver = resolver
        self.config = config or copy.deepcopy(DEFAULT_CONFIG)
        self.paths = paths
        self.settings = CompositionSettings.from_config(self.config)
        self._executor = executor
        self._prober = prober
        self._publisher = publisher
        self._duration_check = duration_check
        self._futures: dict[str, concurrent.futures.Future] = {}
        self._futures_lock = threading.Lock()
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=int(self.config.get("max_workers") or 1),
            thread_name_prefix="job-worker",
        )

    @property
    def max_segment_seconds(self):
        return self.config.get("max_segment_seconds")

    def submit(self, request: JobRequest) -> str:
        """Register a job and queue it for processing. Returns immediately."""
        job = Job(
            id=uuid4().hex,
            mode=request.mode,
            sources=build_sources(request, self.config.get("background_window", "rebased")),
            window=SegmentWindow(request.start_seconds, request.end_seconds),
        )
        self.store.add(job)
        log_event(
            logging.INFO,
            "job_queued",
            job_id=job.id,
            mode=job.mode,
            sources={role: source.to_dict() for role, source in job.sources.items()},
        )
        future = self._pool.submit(self._run, job.id)
        with self._futures_lock:
            self._futures[job.id] = future
        future.add_done_callback(lambda _f, job_id=job.id: self._forget(job_id))
        return job.id

    def _forget(self, job_id):
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def get_status(self, job_id) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(self) -> list[Job]:
        return self.store.list()

    def active_job_ids(self) -> list[str]:
        return [job.id for job in self.store.list() if not job.is_terminal]

    def wait(self, job_id, timeout=None) -> Optional[Job]:
        """Block until ``job_id`` finishes (or ``timeout`` elapses) and return its record."""
        with self._futures_lock:
            future = self._futures.get(job_id)
        if future is not None:
            concurrent.futures.wait([future], timeout=timeout)
        return self.store.get(job_id)

    def shutdown(self, wait=True):
        self._pool.shutdown(wait=wait)

    def _advance(self, job_id, status):
        self.store.transition(job_id, status)
        log_event(logging.INFO, "job_status", job_id=job_id, status=status.value)

    def _run(self, job_id):
        try:
            self._process(job_id)
        except PipelineError as exc:
            self._fail(job_id, str(exc) or exc.__class__.__name__)
        except Exception as exc:
            logger.exception("unexpected error processing job_id=%s", job_id)
            self._fail(job_id, f"internal error: {exc}")

    def _fail(self, job_id, message):
        try:
            self.store.transition(job_id, JobStatus.FAILED, error=message)
        except InvalidTransition:
            logger.warning("job_id=%s already terminal, dropping failure: %s", job_id, message)
            return
        log_event(logging.ERROR, "job_failed", job_id=job_id, error=message)

    def _process(self, job_id):
        job = self.store.get(job_id)
        with StagingArea(self.paths.work_dir, job_id) as staging:
            self._advance(job_id, JobStatus.DOWNLOADING)
            local_inputs = {}
            for role, source in job.sources.items():
                destination = staging.path(f"{role}-source")
                self.resolver.download(source, destination)
                local_inputs[role] = str(destination)

            self._advance(job_id, JobStatus.COMPOSING)
            sizes = self._probe_sizes(job, local_inputs)
            output_paths = {role: str(staging.path(role, suffix)) for role, suffix in OUTPUT_ROLES[job.mode]}
            try:
                plan = plan_composition(job, local_inputs, output_paths, self.settings, sizes)
            except ValueError as exc:
                raise CompositionError(f"could not plan composition: {exc}") from exc
            timeouts = self.config.get("timeouts") or {}
            produced = self._executor(
                plan,
                ffmpeg_bin=self.config.get("ffmpeg_bin") or "ffmpeg",
                timeout=timeouts.get("ffmpeg_seconds", 300),
            )
            self._check_durations(job, produced)

            self._advance(job_id, JobStatus.PUBLISHING)
            published = self._publisher(
                job_id,
                produced,
                self.paths.public_dir,
                base_url=self.config.get("public_base_url") or None,
            )
            try:
                self.store.transition(job_id, JobStatus.COMPLETED, outputs=published)
            except Exception:
                for output in published.values():
                    remove_path(output.path)
                raise
        log_event(
            logging.INFO,
            "job_completed",
            job_id=job_id,
            outputs={role: output.url for role, output in published.items()},
        )

    def _probe_sizes(self, job, local_inputs):
        if job.mode == MODE_AUDIO:
            return {}
        ffprobe_bin = self.config.get("ffprobe_bin") or "ffprobe"
        sizes = {}
        for role, path in local_inputs.items():
            try:
                size = self._prober(path, ffprobe_bin)
            except (RuntimeError, ValueError) as exc:
                logger.warning("could not probe %s for job_id=%s: %s", role, job.id, exc)
                continue
            if size:
                sizes[role] = size
        return sizes

    def _check_durations(self, job, produced):
        if not self.config.get("validate_duration"):
            return
        tolerance = float(self.config.get("duration_tolerance_seconds", 1.0))
        ffprobe_bin = self.config.get("ffprobe_bin") or "ffprobe"
        for role, path in produced.items():
            if not self._duration_check(path, job.duration, tolerance, ffprobe_bin=ffprobe_bin):
                log_event(
                    logging.WARNING,
                    "output_duration_mismatch",
                    job_id=job.id,
                    role=role,
                    expected_seconds=job.duration,
                    tolerance_seconds=tolerance,
                )
