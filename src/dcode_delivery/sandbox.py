"""Command sandbox policy and subprocess execution.

Every external process the pipeline starts (tests, smoke checks, deploys,
git queries) goes through ``run_command``, which evaluates the command
against a ``SandboxPolicy`` and enforces an explicit timeout. Policy
denials raise ``PolicyViolation`` and are never retried or downgraded.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Sequence

logger = logging.getLogger(__name__)


class PolicyViolation(RuntimeError):
    """Raised when a command or path is denied by the sandbox policy."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Sandbox policy denied '{command}': {reason}")


@dataclass(frozen=True)
class SandboxPolicy:
    project_dir: Path
    allowed_paths: tuple[Path, ...] = ()


@dataclass(frozen=True)
class PolicyResult:
    verdict: Literal["allow", "deny"]
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict == "allow"


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

BLOCKED_COMMANDS = frozenset(
    {"shutdown", "reboot", "halt", "poweroff", "init", "systemctl", "mkfs", "fdisk", "dd", "mount", "umount"}
)

BLOCKED_GIT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bpush\b.*--force\b"), "Force push is blocked; it may overwrite remote history"),
    (re.compile(r"\bpush\b.*\s-f\b"), "Force push (-f) is blocked; it may overwrite remote history"),
    (re.compile(r"\breset\b.*--hard\b"), "git reset --hard is blocked; it may discard uncommitted work"),
    (re.compile(r"\bclean\b.*\s-[a-zA-Z]*f"), "git clean -f is blocked; it removes untracked files permanently"),
    (re.compile(r"\bbranch\b.*\s-D\b"), "git branch -D is blocked; it force-deletes branches"),
)

DESTRUCTIVE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\brm\s+(-[a-zA-Z]*r[a-zA-Z]*f|-[a-zA-Z]*f[a-zA-Z]*r|--recursive\b.*--force)\s+/"),
        "Recursive force delete (rm -rf) on absolute paths is blocked",
    ),
    (re.compile(r"\brm\s+-[a-zA-Z]*r[a-zA-Z]*\s+/(?!\S*/)"), "Deleting from the root filesystem is blocked"),
    (
        re.compile(r"\bchmod\s+(-[a-zA-Z]*R[a-zA-Z]*)?\s*(000|777)\s+/"),
        "Recursive permission changes on the root filesystem are blocked",
    ),
    (re.compile(r">\s*/dev/sd[a-z]"), "Writing directly to block devices is blocked"),
)

_ENV_PREFIX_RE = re.compile(r"^(\s*\w+=\S+\s+)+")
_PATH_TOKEN_RE = re.compile(r"(?:^|\s)(/\S+|~/\S+|\.\./\S+)")
_SUDO_FLAGS_WITH_ARGS = frozenset("ugCDRThp")


def create_policy(project_dir: Path, allowed_paths: Sequence[Path] | None = None) -> SandboxPolicy:
    """Build the default policy: the project plus ``~/.dcode`` are writable."""
    defaults = (Path.home() / ".dcode",) if allowed_paths is None else tuple(allowed_paths)
    return SandboxPolicy(
        project_dir=project_dir.resolve(),
        allowed_paths=tuple(path.expanduser().resolve() for path in defaults),
    )


def is_path_allowed(target: str | Path, policy: SandboxPolicy) -> PolicyResult:
    resolved = Path(target).expanduser()
    if not resolved.is_absolute():
        resolved = policy.project_dir / resolved
    resolved = resolved.resolve()
    for root in (policy.project_dir, *policy.allowed_paths):
        if resolved == root or root in resolved.parents:
            return PolicyResult("allow")
    return PolicyResult("deny", f"Path '{resolved}' is outside the allowed directories")


def _strip_command_prefixes(command: str) -> str:
    remainder = _ENV_PREFIX_RE.sub("", command.strip())
    if re.match(r"^sudo\b", remainder):
        remainder = re.sub(r"^sudo\s+", "", remainder)
        while remainder.startswith("-"):
            flag_match = re.match(r"^-(\S+)\s*", remainder)
            if flag_match is None:
                break
            flag = flag_match.group(1)
            remainder = remainder[flag_match.end():]
            if len(flag) == 1 and flag in _SUDO_FLAGS_WITH_ARGS:
                remainder = re.sub(r"^\S+\s*", "", remainder)
    return remainder


def _executable_token(command: str) -> str:
    match = re.match(r"^(\S+)", _strip_command_prefixes(command))
    return match.group(1) if match else ""


def extract_base_command(command: str) -> str:
    """Return the executable name, skipping env assignments and sudo flags."""
    token = _executable_token(command)
    return Path(token).name if token else ""


def evaluate_command(command: str, policy: SandboxPolicy) -> PolicyResult:
    base = extract_base_command(command)
    if base in BLOCKED_COMMANDS:
        return PolicyResult("deny", f"Command '{base}' is blocked by sandbox policy")

    if base == "git":
        for pattern, reason in BLOCKED_GIT_PATTERNS:
            if pattern.search(command):
                return PolicyResult("deny", reason)

    for pattern, reason in DESTRUCTIVE_PATTERNS:
        if pattern.search(command):
            return PolicyResult("deny", reason)

    executable = _executable_token(command)
    for token in _PATH_TOKEN_RE.findall(command):
        if token == executable:
            continue
        result = is_path_allowed(token, policy)
        if not result.allowed:
            return result
    return PolicyResult("allow")


def check_command(command: str, policy: SandboxPolicy) -> None:
    """Raise ``PolicyViolation`` if *command* is denied."""
    result = evaluate_command(command, policy)
    if not result.allowed:
        raise PolicyViolation(command, result.reason or "denied")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path,
    timeout: int,
    policy: SandboxPolicy | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run *argv* in *cwd* with an explicit timeout.

    Args:
        argv: Command and arguments. Never passed through a shell.
        cwd: Working directory; must lie inside the policy's allowed paths.
        timeout: Seconds before the process is killed.
        policy: Sandbox policy; defaults to ``create_policy(cwd)``.
        env: Extra environment variables merged over ``os.environ``.

    Returns:
        CommandResult. Timeouts and missing executables are reported as
        failed results rather than raised.

    Raises:
        PolicyViolation: If the command or working directory is denied.
        ValueError: If *argv* is empty.
    """
    if not argv:
        raise ValueError("argv must be a non-empty sequence")
    active_policy = policy if policy is not None else create_policy(cwd)
    command_text = shlex.join(argv)
    check_command(command_text, active_policy)
    cwd_check = is_path_allowed(cwd, active_policy)
    if not cwd_check.allowed:
        raise PolicyViolation(command_text, cwd_check.reason or "working directory denied")

    merged_env = {**os.environ, **env} if env else None
    logger.debug("running %s (cwd=%s, timeout=%ss)", command_text, cwd, timeout)
    try:
        completed = subprocess.run(
            list(argv),
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=merged_env,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        logger.warning("command timed out after %ss: %s", timeout, command_text)
        return CommandResult(
            argv=list(argv),
            returncode=-1,
            stdout=_decode(exc.stdout),
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    except FileNotFoundError:
        return CommandResult(argv=list(argv), returncode=-1, stderr=f"Command not found: {argv[0]}")
    return CommandResult(
        argv=list(argv),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
