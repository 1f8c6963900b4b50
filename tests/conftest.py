import sys
from pathlib import Path

import pytest


# Make the top-level packages importable without installing the project.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.paths import EnginePaths  # noqa: E402


@pytest.fixture
def engine_paths(tmp_path):
    """EnginePaths rooted in tmp_path with every directory created."""
    dirs = {name: tmp_path / name for name in ("logs", "work", "videos", "cookies")}
    for path in dirs.values():
        path.mkdir(exist_ok=True)
    return EnginePaths(
        log_dir=str(dirs["logs"]),
        work_dir=str(dirs["work"]),
        public_dir=str(dirs["videos"]),
        cookies_dir=str(dirs["cookies"]),
    )
