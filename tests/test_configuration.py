"""Tests for the data-directory-aware configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from familysync import configuration
from familysync.sync.queue import QueueSettings


def _prepare_repo_defaults(tmp_path: Path, content: str = "logging:\n  level: INFO\n") -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "10-defaults.yml").write_text(content, encoding="utf-8")
    return config_dir


def _data_dir_with_override(tmp_path: Path, content: str) -> Path:
    data_dir = tmp_path / "data"
    overrides_dir = data_dir / "config"
    overrides_dir.mkdir(parents=True)
    (overrides_dir / "20-overrides.yml").write_text(content, encoding="utf-8")
    return data_dir


def test_resolve_data_dir_uses_env_expansion(tmp_path: Path):
    env = {"FAMILYSYNC_DATA_DIR": str(tmp_path / "data")}
    path = configuration.resolve_data_dir(env=env)
    assert path == tmp_path / "data"


def test_load_runtime_configuration_merges_repo_and_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path, content="remote:\n  operation_timeout: 3.0\n")
    data_dir = _data_dir_with_override(
        tmp_path,
        "remote:\n  operation_timeout: 4.5\nqueue:\n  profile: conservative\n",
    )
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir)

    assert bundle.status == "ready"
    assert bundle.merged["remote"]["operation_timeout"] == 4.5
    assert bundle.merged["remote"]["initial_load_timeout"] == 5.0
    assert bundle.merged["storage"]["snapshot_file"] == "state/app_data.json"
    assert len(bundle.files_loaded) == 2
    assert QueueSettings.from_config(bundle.merged) == QueueSettings.preset("conservative")


def test_load_runtime_configuration_reports_missing_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(tmp_path / "missing")

    assert bundle.status == "missing"
    assert any(diag.level == "error" for diag in bundle.diagnostics)


def test_load_runtime_configuration_handles_bad_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    data_dir = _data_dir_with_override(tmp_path, "remote: [\n")
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir)

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.diagnostics)


def test_invalid_values_are_reported_and_reset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    data_dir = _data_dir_with_override(
        tmp_path,
        "queue:\n  profile: reckless\n  max_retries: true\nstorage:\n  save_debounce: soon\nextra: 1\n",
    )
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir)

    assert bundle.status == "invalid"
    assert bundle.merged["queue"]["profile"] == "default"
    assert "max_retries" not in bundle.merged["queue"]
    assert bundle.merged["storage"]["save_debounce"] == 0.1
    messages = [diag.message for diag in bundle.diagnostics]
    assert any("config.queue.profile" in message for message in messages)
    assert any("Unknown configuration key 'config.extra'" in message for message in messages)


def test_shipped_defaults_are_valid(tmp_path: Path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    bundle = configuration.load_runtime_configuration(data_dir)

    assert bundle.status == "ready"
    assert [diag for diag in bundle.diagnostics if diag.level != "info"] == []
    assert bundle.merged["queue"] == {"profile": "default"}
