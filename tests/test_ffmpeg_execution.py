from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from engine.errors import CompositionError, RetryableDownloadError
from media.composition import CompositionSettings, plan_composition
from media.ffmpeg import build_ffmpeg_argv, execute_plan, fetch_stream_segment, format_seconds


def _combined_plan(tmp_path: Path, *, duration: float = 15.0):
    return plan_composition(
        SimpleNamespace(mode="combined", duration=duration),
        {"main": str(tmp_path / "main.mp4"), "background": str(tmp_path / "bg.mp4")},
        {"combined": str(tmp_path / "combined.mp4")},
        CompositionSettings(),
        {"main": (1920, 1080), "background": (1280, 720)},
    )


class _FakeRunner:
    def __init__(self, returncode: int = 0, stderr: str = "", write: bytes | None = b"media") -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.write = write
        self.calls: list[list[str]] = []

    def __call__(self, cmd, timeout=None):
        self.calls.append(list(cmd))
        if self.write is not None:
            Path(cmd[-1]).write_bytes(self.write)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)


def test_format_seconds_trims_trailing_zeros() -> None:
    assert format_seconds(15) == "15"
    assert format_seconds(1.25) == "1.25"
    assert format_seconds(0) == "0"


def test_combined_argv_stacks_and_maps_main_audio(tmp_path: Path) -> None:
    plan = _combined_plan(tmp_path)

    argv = build_ffmpeg_argv(plan, plan.outputs[0], "ffmpeg")

    graph = argv[argv.index("-filter_complex") + 1]
    assert "[0:v]fps=30,scale=1708:960,crop=1080:960:314:0,setsar=1[v0]" in graph
    assert graph.endswith("[v0][v1]vstack=inputs=2[v]")
    assert argv[argv.index("-map") + 1] == "[v]"
    assert "0:a?" in argv
    assert argv[argv.index("-profile:v") + 1] == "baseline"
    assert argv[argv.index("-movflags") + 1] == "+faststart"
    assert argv[-3:] == ["-t", "15", str(tmp_path / "combined.mp4")]
    assert argv.count("-i") == 2


def test_separate_background_output_has_no_audio(tmp_path: Path) -> None:
    plan = plan_composition(
        SimpleNamespace(mode="separate", duration=5),
        {"main": "m.mp4", "background": "b.mp4"},
        {"main_rendered": "mr.mp4", "background_rendered": "br.mp4"},
        CompositionSettings(),
    )
    outputs = {output.role: output for output in plan.outputs}

    background = build_ffmpeg_argv(plan, outputs["background_rendered"])
    main = build_ffmpeg_argv(plan, outputs["main_rendered"])

    assert "-an" in background
    assert background[background.index("-i") + 1] == "b.mp4"
    assert "0:a?" in main
    assert "vstack" not in " ".join(main)


def test_audio_argv_uses_lame_quality(tmp_path: Path) -> None:
    plan = plan_composition(
        SimpleNamespace(mode="audio", duration=10),
        {"main": "m.m4a"},
        {"audio": "a.mp3"},
        CompositionSettings(),
    )

    argv = build_ffmpeg_argv(plan, plan.outputs[0])

    assert "-vn" in argv
    assert argv[argv.index("-c:a") + 1] == "libmp3lame"
    assert argv[argv.index("-q:a") + 1] == "2"
    assert "-filter_complex" not in argv


def test_execute_plan_returns_outputs_by_role(tmp_path: Path) -> None:
    plan = _combined_plan(tmp_path)
    runner = _FakeRunner()

    produced = execute_plan(plan, ffmpeg_bin="ffmpeg", timeout=5, runner=runner)

    assert produced == {"combined": str(tmp_path / "combined.mp4")}
    assert len(runner.calls) == 1


def test_execute_plan_raises_with_stderr_tail_on_failure(tmp_path: Path) -> None:
    plan = _combined_plan(tmp_path)
    runner = _FakeRunner(returncode=1, stderr="Invalid data found when processing input", write=None)

    with pytest.raises(CompositionError, match="Invalid data found"):
        execute_plan(plan, runner=runner)


def test_execute_plan_rejects_empty_output(tmp_path: Path) -> None:
    plan = _combined_plan(tmp_path)

    with pytest.raises(CompositionError, match="empty"):
        execute_plan(plan, runner=_FakeRunner(write=b""))


def test_execute_plan_maps_timeout_and_missing_binary(tmp_path: Path) -> None:
    plan = _combined_plan(tmp_path)

    def _timeout(cmd, timeout=None):
        raise subprocess.TimeoutExpired(cmd, timeout)

    def _missing(cmd, timeout=None):
        raise FileNotFoundError(cmd[0])

    with pytest.raises(CompositionError, match="timed out"):
        execute_plan(plan, timeout=1, runner=_timeout)
    with pytest.raises(CompositionError, match="not found"):
        execute_plan(plan, runner=_missing)


def test_fetch_stream_segment_falls_back_to_reencode(tmp_path: Path) -> None:
    destination = tmp_path / "seg.mp4"
    calls: list[list[str]] = []

    def _runner(cmd, timeout=None):
        calls.append(list(cmd))
        if "copy" in cmd:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="copy failed")
        Path(cmd[-1]).write_bytes(b"segment")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    fetch_stream_segment("https://cdn.example/v.mp4", 30, 15, destination, runner=_runner, headers={"User-Agent": "ua"})

    assert destination.read_bytes() == b"segment"
    assert len(calls) == 2
    assert calls[1][calls[1].index("-c:v") + 1] == "libx264"
    assert calls[0][calls[0].index("-headers") + 1] == "User-Agent: ua\r\n"


def test_fetch_stream_segment_raises_retryable_when_both_attempts_fail(tmp_path: Path) -> None:
    def _runner(cmd, timeout=None):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="403 Forbidden")

    with pytest.raises(RetryableDownloadError, match="403 Forbidden"):
        fetch_stream_segment("https://cdn.example/v.mp4", 0, 5, tmp_path / "seg.mp4", runner=_runner)
