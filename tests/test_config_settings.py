from __future__ import annotations

import copy
import json
from pathlib import Path

from config.settings import DEFAULT_CONFIG, load_config, merge_config, validate_config


def test_defaults_are_valid() -> None:
    assert validate_config(copy.deepcopy(DEFAULT_CONFIG)) == []


def test_load_config_merges_nested_overrides(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_workers": 4, "retry": {"max_attempts": 5}}), encoding="utf-8")

    config = load_config(path)

    assert config["max_workers"] == 4
    assert config["retry"] == {"max_attempts": 5, "base_delay": 1.0}
    assert config["canvas"] == {"width": 1080, "height": 1920}


def test_merge_config_does_not_mutate_defaults() -> None:
    merged = merge_config(DEFAULT_CONFIG, {"download": {"proxies": ["http://p:1"]}})

    assert merged["download"]["proxies"] == ["http://p:1"]
    assert DEFAULT_CONFIG["download"]["proxies"] == []


def test_validate_config_reports_each_problem() -> None:
    config = merge_config(
        DEFAULT_CONFIG,
        {
            "max_workers": 0,
            "background_window": "sideways",
            "canvas": {"width": 1081},
            "main_zoom": 0.5,
            "retry": {"max_attempts": 0},
            "download": {"strategies": ["ytdlp", "carrier-pigeon"]},
        },
    )

    errors = validate_config(config)

    assert "max_workers must be a positive number" in errors
    assert "background_window must be 'rebased' or 'mirror'" in errors
    assert "canvas.width must be a positive even integer" in errors
    assert "main_zoom must be a number >= 1" in errors
    assert "retry.max_attempts must be an integer >= 1" in errors
    assert "download.strategies[1] unknown strategy 'carrier-pigeon'" in errors


def test_validate_config_requires_an_object() -> None:
    assert validate_config([]) == ["config must be a JSON object"]
