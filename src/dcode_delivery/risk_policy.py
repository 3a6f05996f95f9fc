"""Risk-tiered review policy.

A project may declare ``<state_dir>/risk-policy.json`` mapping path globs to
named tiers (ordered highest risk first). Each changed file is assigned the
tier whose matching glob is the most specific (longest); the review as a
whole runs under the riskiest tier any changed file landed in. Files that
match nothing fall into the last, lowest-risk tier.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError
from wcmatch import glob

from .models import ResolvedRiskTier, RiskPolicy, RiskTier, Severity

logger = logging.getLogger(__name__)

DEFAULT_AGENTS: tuple[str, ...] = ("code-quality", "test-coverage", "security")
FALLBACK_TIER_NAME = "default"
_GLOB_FLAGS = glob.GLOBSTAR | glob.BRACE | glob.FORCEUNIX


def default_risk_policy() -> RiskPolicy:
    """Policy written into new projects by the scaffolding defaults."""
    return RiskPolicy(
        version="1",
        tiers={
            "high": RiskTier(
                paths=["src/api/**", "src/auth/**", "src/middleware/**", "db/**"],
                max_iterations=3,
                min_fix_severity=Severity.MEDIUM,
                agents=list(DEFAULT_AGENTS),
                require_approval=True,
            ),
            "medium": RiskTier(
                paths=["src/components/**", "src/routes/**", "src/pages/**"],
                max_iterations=2,
                min_fix_severity=Severity.HIGH,
                agents=["code-quality", "test-coverage"],
            ),
            "low": RiskTier(
                paths=["**"],
                max_iterations=1,
                min_fix_severity=Severity.CRITICAL,
                agents=["code-quality"],
            ),
        },
    )


def fallback_tier(max_iterations: int = 3) -> ResolvedRiskTier:
    """Tier used when the project declares no policy at all."""
    return ResolvedRiskTier(
        name=FALLBACK_TIER_NAME,
        tier=RiskTier(
            paths=["**"],
            max_iterations=max_iterations,
            min_fix_severity=Severity.HIGH,
            agents=list(DEFAULT_AGENTS),
            require_approval=False,
        ),
    )


def load_risk_policy(path: Path) -> RiskPolicy | None:
    """Load a risk policy file.

    Returns:
        The validated policy, or None when the file does not exist.

    Raises:
        ValueError: If the file exists but is not a valid policy.
    """
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        policy = RiskPolicy.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ValueError(f"risk policy at {path} is invalid: {exc}") from exc
    if not policy.tiers:
        raise ValueError(f"risk policy at {path} declares no tiers")
    return policy


def _normalize(file_path: str) -> str:
    normalized = file_path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def glob_matches(pattern: str, file_path: str) -> bool:
    """Match a repository-relative path against a ``**``-style glob.

    ``*`` stays inside one path segment; only ``**`` spans directories, so
    ``src/*.py`` covers ``src/app.py`` but not ``src/vendor/x.py``. Dotfiles
    only match patterns that name the dot explicitly.
    """
    return glob.globmatch(file_path, pattern, flags=_GLOB_FLAGS)


def _tier_index_for_file(policy: RiskPolicy, names: list[str], file_path: str) -> int:
    best_index = len(names) - 1
    best_length = -1
    for index, name in enumerate(names):
        for pattern in policy.tiers[name].paths:
            if not glob_matches(pattern, file_path):
                continue
            # Longer pattern is more specific; ties go to the riskier tier.
            if len(pattern) > best_length:
                best_length = len(pattern)
                best_index = index
    return best_index


def resolve_risk_tier(policy: RiskPolicy, changed_files: Iterable[str]) -> ResolvedRiskTier:
    names = list(policy.tiers)
    resolved_index = len(names) - 1
    for raw_path in changed_files:
        file_path = _normalize(raw_path)
        if not file_path:
            continue
        resolved_index = min(resolved_index, _tier_index_for_file(policy, names, file_path))
        if resolved_index == 0:
            break
    name = names[resolved_index]
    logger.debug("resolved risk tier %s", name)
    return ResolvedRiskTier(name=name, tier=policy.tiers[name])


def resolve_review_tier(
    policy_path: Path,
    changed_files: Iterable[str],
    *,
    default_iterations: int = 3,
) -> ResolvedRiskTier:
    """Resolve the tier for a review run, falling back when no policy exists."""
    policy = load_risk_policy(policy_path)
    if policy is None:
        return fallback_tier(default_iterations)
    return resolve_risk_tier(policy, changed_files)
