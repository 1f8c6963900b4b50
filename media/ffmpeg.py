"""ffmpeg invocation: render composition plans to argv and run them."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from typing import Optional

from engine.errors import CompositionError, RetryableDownloadError
from engine.events import log_event
from media.composition import LAYOUT_VSTACK, CompositionPlan, OutputSpec
from media.validation import is_nonempty_file

logger = logging.getLogger(__name__)

DEFAULT_FFMPEG_TIMEOUT = 300
_STDERR_TAIL_LINES = 8


def format_seconds(value) -> str:
    text = f"{float(value):.3f}".rstrip("0").rstrip(".")
    return text or "0"


def _stderr_tail(stderr):
    lines = [line for line in (stderr or "").strip().splitlines() if line.strip()]
    return "\n".join(lines[-_STDERR_TAIL_LINES:])


def run_cmd(cmd: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    logger.debug("Run command: %s", " ".join(shlex.quote(c) for c in cmd))
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def _input_args(plan: CompositionPlan, indices) -> list[str]:
    args = []
    for index in indices:
        plan_input = plan.inputs[index]
        args += [
            "-ss", format_seconds(plan_input.trim.start),
            "-t", format_seconds(plan_input.trim.duration),
            "-i", plan_input.path,
        ]
    return args


def _video_codec_args(output: OutputSpec) -> list[str]:
    args = ["-c:v", output.video_codec]
    if output.profile:
        args += ["-profile:v", output.profile]
    args += ["-preset", output.preset, "-crf", str(output.crf), "-pix_fmt", output.pix_fmt]
    return args


def _audio_codec_args(output: OutputSpec) -> list[str]:
    args = ["-c:a", output.audio_codec]
    if output.audio_bitrate:
        args += ["-b:a", output.audio_bitrate]
    if output.audio_quality is not None:
        args += ["-q:a", str(output.audio_quality)]
    return args


def build_ffmpeg_argv(plan: CompositionPlan, output: OutputSpec, ffmpeg_bin: str = "ffmpeg") -> list[str]:
    """Render the ffmpeg argv producing ``output`` from ``plan``.

    Local (output-relative) input indices are the position of each plan input
    within ``output.inputs``, which is how ffmpeg numbers them.
    """
    argv = [ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error"]
    argv += _input_args(plan, output.inputs)

    if not output.include_video:
        argv += ["-vn", "-map", "0:a:0", "-avoid_negative_ts", "make_zero"]
        argv += _audio_codec_args(output)
        argv += ["-t", format_seconds(output.duration), output.path]
        return argv

    graph = []
    labels = []
    for local_index, plan_index in enumerate(output.inputs):
        transform = plan.transform_for(plan_index)
        chain = transform.filter_chain() if transform else "setsar=1"
        label = f"v{local_index}"
        graph.append(f"[{local_index}:v]{chain}[{label}]")
        labels.append(label)
    if len(labels) > 1:
        if plan.combine.layout != LAYOUT_VSTACK:
            raise ValueError(f"unsupported combine layout for multi-input output: {plan.combine.layout}")
        stacked = "".join(f"[{label}]" for label in labels)
        graph.append(f"{stacked}vstack=inputs={len(labels)}[v]")
        video_label = "v"
    else:
        video_label = labels[0]
    argv += ["-filter_complex", ";".join(graph), "-map", f"[{video_label}]"]

    audio_local_index = None
    if output.include_audio and plan.combine.audio_from is not None and plan.combine.audio_from in output.inputs:
        audio_local_index = output.inputs.index(plan.combine.audio_from)
    if audio_local_index is not None:
        argv += ["-map", f"{audio_local_index}:a?"]

    argv += _video_codec_args(output)
    if audio_local_index is not None:
        argv += _audio_codec_args(output)
    else:
        argv.append("-an")
    if output.container == "mp4":
        argv += ["-movflags", "+faststart"]
    argv += ["-t", format_seconds(output.duration), output.path]
    return argv


def execute_plan(
    plan: CompositionPlan,
    *,
    ffmpeg_bin: str = "ffmpeg",
    timeout: float = DEFAULT_FFMPEG_TIMEOUT,
    runner=run_cmd,
) -> dict[str, str]:
    """Run ffmpeg once per declared output.

    Success requires exit status 0 and a non-empty file for every output.
    Failures raise :class:`CompositionError` and are never retried.
    """
    produced = {}
    for output in plan.outputs:
        argv = build_ffmpeg_argv(plan, output, ffmpeg_bin)
        log_event(logging.INFO, "ffmpeg_compose_start", role=output.role, argv=argv)
        try:
            completed = runner(argv, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise CompositionError(f"ffmpeg timed out after {timeout}s producing {output.role}") from exc
        except FileNotFoundError as exc:
            raise CompositionError(f"ffmpeg binary not found: {ffmpeg_bin}") from exc
        if completed.returncode != 0:
            tail = _stderr_tail(completed.stderr or completed.stdout)
            logger.error("ffmpeg failed role=%s code=%s: %s", output.role, completed.returncode, tail)
            raise CompositionError(
                f"ffmpeg exited with status {completed.returncode} producing {output.role}: {tail}"
            )
        produced[output.role] = output.path

    empty = [role for role, path in produced.items() if not is_nonempty_file(path)]
    if empty:
        raise CompositionError(f"ffmpeg produced missing or empty output(s): {', '.join(empty)}")
    log_event(logging.INFO, "ffmpeg_compose_done", outputs=sorted(produced))
    return produced


def fetch_stream_segment(
    stream_url: str,
    start: float,
    duration: float,
    destination,
    *,
    ffmpeg_bin: str = "ffmpeg",
    timeout: float = DEFAULT_FFMPEG_TIMEOUT,
    headers: Optional[dict] = None,
    runner=run_cmd,
) -> None:
    """Cut ``[start, start + duration)`` out of a remote stream into ``destination``.

    Stream copy first; re-encode if copy fails. Errors are raised as
    retryable download errors so the resolver classifies them further.
    """
    header_args = []
    if headers:
        header_blob = "".join(f"{key}: {value}\r\n" for key, value in headers.items())
        header_args = ["-headers", header_blob]
    base = [ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error", *header_args,
            "-ss", format_seconds(start), "-t", format_seconds(duration), "-i", stream_url]
    attempts = (
        ["-c", "copy", "-avoid_negative_ts", "make_zero", "-fflags", "+genpts"],
        ["-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-c:a", "aac", "-b:a", "128k",
         "-avoid_negative_ts", "make_zero"],
    )
    last_error = ""
    for codec_args in attempts:
        cmd = [*base, *codec_args, "-f", "mp4", str(destination)]
        completed = runner(cmd, timeout=timeout)
        if completed.returncode == 0 and is_nonempty_file(destination):
            return
        last_error = _stderr_tail(completed.stderr or completed.stdout) or f"exit status {completed.returncode}"
        logger.warning("ffmpeg segment fetch failed (%s): %s", codec_args[1], last_error)
        if os.path.exists(destination):
            os.remove(destination)
    raise RetryableDownloadError(f"ffmpeg could not fetch stream segment: {last_error}")
