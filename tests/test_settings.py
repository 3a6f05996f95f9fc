from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcode_delivery.settings import RuntimeSettings, load_profile


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DELIVERY_STATE_DIR", "DELIVERY_TEST_COMMAND", "DELIVERY_MAX_SIGNOFF_REJECTIONS"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.state_dir == ".dcode"
    assert settings.test_argv == ["pytest", "-q"]
    assert settings.rejection_cap is None


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELIVERY_TEST_COMMAND", "npm test -- --ci")
    monkeypatch.setenv("DELIVERY_MAX_SIGNOFF_REJECTIONS", "2")
    monkeypatch.setenv("DELIVERY_REVIEW_CONCURRENCY", "5")
    settings = RuntimeSettings.from_env()
    assert settings.test_argv == ["npm", "test", "--", "--ci"]
    assert settings.rejection_cap == 2
    assert settings.review_concurrency == 5


def test_non_integer_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELIVERY_TEST_TIMEOUT", "soon")
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_state_dir_must_stay_inside_project() -> None:
    with pytest.raises(ValueError, match="DELIVERY_STATE_DIR"):
        RuntimeSettings(state_dir="../elsewhere").normalized()


def test_status_timeout_cannot_exceed_build_timeout() -> None:
    with pytest.raises(ValueError, match="DELIVERY_STATUS_TIMEOUT"):
        RuntimeSettings(status_timeout=300, build_timeout=100).normalized()


def test_load_profile(tmp_path: Path) -> None:
    path = tmp_path / "profile.json"
    path.write_text(json.dumps({"name": "Dev", "languages": ["python"], "notification_channel": "none"}))
    profile = load_profile(path)
    assert profile.name == "Dev"
    assert profile.notification_timeout == 300


def test_load_profile_missing_and_invalid(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_profile(tmp_path / "absent.json")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"languages": ["python"]}))
    with pytest.raises(ValueError):
        load_profile(bad)
