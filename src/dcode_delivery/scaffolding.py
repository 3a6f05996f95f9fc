from __future__ import annotations

import json
import logging
from functools import partial
from pathlib import Path

from .collaborators import DefaultFileGenerator
from .models import DeveloperProfile, GeneratedFile, ScaffoldResult
from .risk_policy import default_risk_policy
from .state_store import atomic_write_text

logger = logging.getLogger(__name__)

STANDARD_DIRECTORIES: tuple[str, ...] = ("src", "tests", "docs")

_GITIGNORE_COMMON = [".env", ".env.*", "*.log", ".DS_Store"]
_GITIGNORE_BY_LANGUAGE: dict[str, list[str]] = {
    "python": ["__pycache__/", "*.py[cod]", ".venv/", ".pytest_cache/", "dist/", "*.egg-info/"],
    "typescript": ["node_modules/", "dist/", "coverage/"],
    "javascript": ["node_modules/", "dist/", "coverage/"],
    "go": ["bin/"],
    "rust": ["target/"],
}


def _is_python(profile: DeveloperProfile) -> bool:
    languages = {language.lower() for language in profile.languages}
    return "python" in languages or profile.package_manager in {"pip", "uv", "poetry"}


def render_gitignore(profile: DeveloperProfile, state_dir: str) -> str:
    entries = list(_GITIGNORE_COMMON)
    for language in profile.languages:
        for entry in _GITIGNORE_BY_LANGUAGE.get(language.lower(), []):
            if entry not in entries:
                entries.append(entry)
    # Run state is per checkout; review artifacts stay tracked.
    entries += [f"{state_dir}/state.json", f"{state_dir}/*.lock"]
    return "\n".join(entries) + "\n"


class ProfileScaffolder:
    """Creates the standard project skeleton. Existing files are never overwritten."""

    def __init__(self, state_dir: str = ".dcode") -> None:
        self.state_dir = state_dir

    def scaffold(self, profile: DeveloperProfile, project_dir: Path) -> ScaffoldResult:
        directories: list[str] = []
        for name in (*STANDARD_DIRECTORIES, self.state_dir):
            target = project_dir / name
            if not target.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                directories.append(name)

        files: list[str] = []
        gitignore = project_dir / ".gitignore"
        if not gitignore.exists():
            atomic_write_text(gitignore, render_gitignore(profile, self.state_dir))
            files.append(".gitignore")
        readme = project_dir / "README.md"
        if not readme.exists():
            atomic_write_text(readme, f"# {project_dir.name}\n")
            files.append("README.md")
        logger.info("scaffolded %d directories and %d files in %s", len(directories), len(files), project_dir)
        return ScaffoldResult(directories=directories, files=files)


# ---------------------------------------------------------------------------
# Default-file generators
# ---------------------------------------------------------------------------


def risk_policy_file(profile: DeveloperProfile, *, state_dir: str = ".dcode") -> list[GeneratedFile]:
    payload = default_risk_policy().model_dump(mode="json")
    return [GeneratedFile(filepath=f"{state_dir}/risk-policy.json", content=json.dumps(payload, indent=2) + "\n")]


def ci_workflow_file(profile: DeveloperProfile) -> list[GeneratedFile]:
    if _is_python(profile):
        setup = [
            "      - uses: actions/setup-python@v5",
            "        with:",
            '          python-version: "3.12"',
            "      - run: pip install -e '.[test]'",
            f"      - run: {profile.test_runner or 'pytest'}",
        ]
    else:
        manager = profile.package_manager if profile.package_manager in {"npm", "pnpm", "yarn"} else "npm"
        setup = [
            "      - uses: actions/setup-node@v4",
            "        with:",
            '          node-version: "20"',
            f"      - run: {manager} install",
            f"      - run: {manager} test",
        ]
    lines = [
        "name: CI",
        "",
        "on:",
        "  push:",
        "    branches: [main]",
        "  pull_request:",
        "",
        "jobs:",
        "  test:",
        "    runs-on: ubuntu-latest",
        "    steps:",
        "      - uses: actions/checkout@v4",
        *setup,
    ]
    return [GeneratedFile(filepath=".github/workflows/ci.yml", content="\n".join(lines) + "\n")]


def default_generators(state_dir: str = ".dcode") -> list[DefaultFileGenerator]:
    return [partial(risk_policy_file, state_dir=state_dir), ci_workflow_file]


def write_generated_file(project_dir: Path, generated: GeneratedFile) -> Path:
    """Write one generated default file, refusing paths outside the project.

    Existing files are left alone so user edits survive re-scaffolding.

    Raises:
        ValueError: If the path escapes the project directory.
        OSError: If the write fails.
    """
    root = project_dir.resolve()
    target = (root / generated.filepath).resolve()
    if root not in target.parents:
        raise ValueError(f"generated file path escapes the project: {generated.filepath}")
    if target.exists():
        logger.debug("keeping existing %s", generated.filepath)
        return target
    atomic_write_text(target, generated.content)
    return target
