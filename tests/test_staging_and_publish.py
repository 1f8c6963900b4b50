from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from engine.errors import PublishError
from engine.publish import public_url, publish_outputs
from engine.staging import StagingArea, remove_path, sweep_stale_workspace


def test_issued_paths_are_unique_and_scoped_to_the_job(tmp_path: Path) -> None:
    with StagingArea(tmp_path, "job1") as staging:
        first = staging.path("main-source")
        second = staging.path("main-source")

        assert first != second
        assert first.parent == tmp_path / "job1"
        assert first.name.startswith("main-source-")
        assert first.suffix == ".mp4"


def test_cleanup_removes_issued_files_siblings_and_job_dir(tmp_path: Path) -> None:
    with StagingArea(tmp_path, "job1") as staging:
        issued = staging.path("main-source")
        issued.write_bytes(b"data")
        issued.with_suffix(".webm.part").write_bytes(b"partial")
        issued.with_suffix(".f137.mp4").write_bytes(b"fragment")

    assert not (tmp_path / "job1").exists()


def test_cleanup_runs_when_the_body_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with StagingArea(tmp_path, "job2") as staging:
            staging.path("combined").write_bytes(b"x")
            raise RuntimeError("boom")

    assert list(tmp_path.iterdir()) == []


def test_closed_staging_area_refuses_new_paths(tmp_path: Path) -> None:
    staging = StagingArea(tmp_path, "job3")
    with staging:
        pass

    with pytest.raises(RuntimeError):
        staging.path("late")


def test_remove_path_never_raises(tmp_path: Path) -> None:
    assert remove_path(tmp_path / "missing") is False
    target = tmp_path / "dir"
    target.mkdir()
    (target / "f").write_text("x", encoding="utf-8")
    assert remove_path(target) is True
    assert not target.exists()


def test_sweep_removes_only_stale_inactive_job_dirs(tmp_path: Path) -> None:
    for name in ("stale", "active", "fresh"):
        (tmp_path / name).mkdir()
    old = time.time() - 3600
    os.utime(tmp_path / "stale", (old, old))
    os.utime(tmp_path / "active", (old, old))

    removed = sweep_stale_workspace(tmp_path, max_age_seconds=600, active_job_ids=["active"])

    assert removed == ["stale"]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["active", "fresh"]


def test_publish_moves_outputs_and_builds_urls(tmp_path: Path) -> None:
    work = tmp_path / "work"
    work.mkdir()
    produced = work / "combined-123.mp4"
    produced.write_bytes(b"video")

    published = publish_outputs("abc", {"combined": str(produced)}, tmp_path / "videos", base_url="http://host:8000/")

    output = published["combined"]
    assert output.path == str(tmp_path / "videos" / "combined-abc.mp4")
    assert output.url == "http://host:8000/videos/combined-abc.mp4"
    assert Path(output.path).read_bytes() == b"video"
    assert not produced.exists()


def test_publish_rolls_back_when_an_output_is_empty(tmp_path: Path) -> None:
    good = tmp_path / "main.mp4"
    good.write_bytes(b"video")
    empty = tmp_path / "background.mp4"
    empty.write_bytes(b"")
    public = tmp_path / "videos"

    with pytest.raises(PublishError):
        publish_outputs(
            "abc",
            {"main_rendered": str(good), "background_rendered": str(empty)},
            public,
        )

    assert list(public.iterdir()) == []


def test_public_url_without_base_is_relative() -> None:
    assert public_url("audio-x.mp3") == "/videos/audio-x.mp3"
