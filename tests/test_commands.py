from __future__ import annotations

import sys
from pathlib import Path

import pytest

from dcode_delivery.collaborators import DeployOptions
from dcode_delivery.commands import CommandCheckAgent, CommandDeployer, CommandTestRunner, git_changed_files
from dcode_delivery.models import ReviewContext


def _script(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _options(project_dir: Path) -> DeployOptions:
    return DeployOptions(project_dir=project_dir, provider="fly", project_name="demo")


def test_deployer_reports_first_url(project_dir: Path) -> None:
    deployer = CommandDeployer(
        _script("print('Deployed to https://demo.fly.dev ok'); print('Docs at https://fly.io/docs')"),
        timeout=30,
    )
    result = deployer.deploy(_options(project_dir))
    assert result.success
    assert result.provider == "fly"
    assert result.url == "https://demo.fly.dev"


def test_deployer_failure_carries_stderr(project_dir: Path) -> None:
    deployer = CommandDeployer(
        _script("import sys; sys.stderr.write('quota exceeded'); raise SystemExit(2)"),
        timeout=30,
    )
    result = deployer.deploy(_options(project_dir))
    assert not result.success
    assert result.error == "quota exceeded"
    assert result.url is None


def test_deployer_requires_a_command() -> None:
    with pytest.raises(ValueError):
        CommandDeployer([], timeout=30)


def test_test_runner_maps_exit_code(project_dir: Path) -> None:
    assert CommandTestRunner(project_dir, _script("print('3 passed')"), timeout=30).run().passed
    failed = CommandTestRunner(project_dir, _script("raise SystemExit(1)"), timeout=30).run()
    assert not failed.passed


def test_check_agent_without_command_is_skipped(project_dir: Path) -> None:
    context = ReviewContext(project_dir=str(project_dir), epic_number=1, review_dir=str(project_dir))
    result = CommandCheckAgent("qa-smoke", [], timeout=30).run(context)
    assert result.success
    assert result.report == "No command configured; skipped."

    failed = CommandCheckAgent("qa-smoke", _script("raise SystemExit(4)"), timeout=30).run(context)
    assert not failed.success
    assert failed.blocking_issues == ["qa-smoke command exited with 4"]


def test_changed_files_outside_git_is_empty(project_dir: Path) -> None:
    assert git_changed_files(project_dir) == []
