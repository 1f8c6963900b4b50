import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "public": Path("/data/videos"),
            "logs": Path("/logs"),
            "tokens": Path("/tokens"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "public": base / "videos",
        "logs": base / "logs",
        "tokens": base / "tokens",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("CLIPSTACK_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("CLIPSTACK_CONFIG_DIR", _DEFAULTS["config"])).resolve()
PUBLIC_DIR = Path(os.environ.get("CLIPSTACK_PUBLIC_DIR", _DEFAULTS["public"])).resolve()
LOG_DIR = Path(os.environ.get("CLIPSTACK_LOG_DIR", _DEFAULTS["logs"])).resolve()
TOKENS_DIR = Path(os.environ.get("CLIPSTACK_TOKENS_DIR", _DEFAULTS["tokens"])).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    work_dir: str
    public_dir: str
    cookies_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def build_engine_paths(*, data_dir=None, public_dir=None, log_dir=None, tokens_dir=None):
    data_root = Path(data_dir) if data_dir else DATA_DIR
    work_dir = data_root / "work"
    public_root = Path(public_dir) if public_dir else PUBLIC_DIR
    log_root = Path(log_dir) if log_dir else LOG_DIR
    cookies_dir = (Path(tokens_dir) if tokens_dir else TOKENS_DIR) / "cookies"

    # Ensure required directories exist
    for d in (work_dir, public_root, log_root, cookies_dir):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(log_root),
        work_dir=str(work_dir),
        public_dir=str(public_root),
        cookies_dir=str(cookies_dir),
    )
