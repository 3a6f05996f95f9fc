from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from .models import DeveloperProfile

DEFAULT_PROFILE_PATH = Path.home() / ".dcode" / "profile.json"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_dir: str = ".dcode"
    memory_dir: str = "~/.dcode/memory"
    model_review: str = "gpt-4o"
    model_fix: str = "gpt-4o"
    model_build: str = "gpt-4o"
    recursion_limit: int = 1_000
    status_timeout: int = 10
    build_timeout: int = 600
    test_timeout: int = 300
    deploy_timeout: int = 600
    test_command: str = "pytest -q"
    smoke_command: str = ""
    deploy_command: str = ""
    base_branch: str = "main"
    default_review_iterations: int = 3
    max_signoff_rejections: int = 0
    review_concurrency: int = 3

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file)
        return cls(
            state_dir=os.getenv("DELIVERY_STATE_DIR", ".dcode"),
            memory_dir=os.getenv("DELIVERY_MEMORY_DIR", "~/.dcode/memory"),
            model_review=os.getenv("DELIVERY_MODEL_REVIEW", "gpt-4o"),
            model_fix=os.getenv("DELIVERY_MODEL_FIX", "gpt-4o"),
            model_build=os.getenv("DELIVERY_MODEL_BUILD", "gpt-4o"),
            recursion_limit=_get_env_int("DELIVERY_RECURSION_LIMIT", default=1_000, minimum=25),
            status_timeout=_get_env_int("DELIVERY_STATUS_TIMEOUT", default=10, minimum=1, maximum=300),
            build_timeout=_get_env_int("DELIVERY_BUILD_TIMEOUT", default=600, minimum=10),
            test_timeout=_get_env_int("DELIVERY_TEST_TIMEOUT", default=300, minimum=10),
            deploy_timeout=_get_env_int("DELIVERY_DEPLOY_TIMEOUT", default=600, minimum=10),
            test_command=os.getenv("DELIVERY_TEST_COMMAND", "pytest -q"),
            smoke_command=os.getenv("DELIVERY_SMOKE_COMMAND", ""),
            deploy_command=os.getenv("DELIVERY_DEPLOY_COMMAND", ""),
            base_branch=os.getenv("DELIVERY_BASE_BRANCH", "main"),
            default_review_iterations=_get_env_int("DELIVERY_REVIEW_ITERATIONS", default=3, minimum=1, maximum=20),
            max_signoff_rejections=_get_env_int("DELIVERY_MAX_SIGNOFF_REJECTIONS", default=0, minimum=0, maximum=100),
            review_concurrency=_get_env_int("DELIVERY_REVIEW_CONCURRENCY", default=3, minimum=1, maximum=16),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        for env_name, value in (
            ("DELIVERY_MODEL_REVIEW", self.model_review),
            ("DELIVERY_MODEL_FIX", self.model_fix),
            ("DELIVERY_MODEL_BUILD", self.model_build),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        state_dir = self.state_dir.strip()
        if not state_dir:
            raise ValueError("DELIVERY_STATE_DIR must be non-empty")
        if Path(state_dir).is_absolute() or ".." in Path(state_dir).parts:
            raise ValueError(f"DELIVERY_STATE_DIR must be a relative path inside the project, got: {state_dir!r}")
        if not self.memory_dir.strip():
            raise ValueError("DELIVERY_MEMORY_DIR must be non-empty")
        if not self.test_command.strip():
            raise ValueError("DELIVERY_TEST_COMMAND must be non-empty")
        if not self.base_branch.strip():
            raise ValueError("DELIVERY_BASE_BRANCH must be non-empty")
        if self.status_timeout > self.build_timeout:
            raise ValueError(
                f"DELIVERY_STATUS_TIMEOUT ({self.status_timeout}) must not exceed "
                f"DELIVERY_BUILD_TIMEOUT ({self.build_timeout})"
            )
        return RuntimeSettings(
            state_dir=state_dir,
            memory_dir=self.memory_dir.strip(),
            model_review=self.model_review.strip(),
            model_fix=self.model_fix.strip(),
            model_build=self.model_build.strip(),
            recursion_limit=self.recursion_limit,
            status_timeout=self.status_timeout,
            build_timeout=self.build_timeout,
            test_timeout=self.test_timeout,
            deploy_timeout=self.deploy_timeout,
            test_command=self.test_command.strip(),
            smoke_command=self.smoke_command.strip(),
            deploy_command=self.deploy_command.strip(),
            base_branch=self.base_branch.strip(),
            default_review_iterations=self.default_review_iterations,
            max_signoff_rejections=self.max_signoff_rejections,
            review_concurrency=self.review_concurrency,
        )

    @property
    def rejection_cap(self) -> int | None:
        """Sign-off rejection cap, or None when unbounded."""
        return self.max_signoff_rejections or None

    @property
    def test_argv(self) -> list[str]:
        return shlex.split(self.test_command)

    @property
    def smoke_argv(self) -> list[str]:
        return shlex.split(self.smoke_command)

    @property
    def deploy_argv(self) -> list[str]:
        return shlex.split(self.deploy_command)

    def state_path(self, project_dir: Path) -> Path:
        return project_dir / self.state_dir

    def memory_path(self) -> Path:
        return Path(self.memory_dir).expanduser()


def load_profile(path: Path | None = None) -> DeveloperProfile:
    """Load and validate the developer profile.

    Args:
        path: Profile JSON file. Defaults to ``~/.dcode/profile.json``.

    Returns:
        The validated DeveloperProfile.

    Raises:
        FileNotFoundError: If the profile file does not exist.
        ValueError: If the file fails validation.
    """
    profile_path = path if path is not None else DEFAULT_PROFILE_PATH
    if not profile_path.is_file():
        raise FileNotFoundError(f"developer profile not found: {profile_path}")
    try:
        return DeveloperProfile.model_validate_json(profile_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"developer profile at {profile_path} failed validation: {exc}") from exc


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
