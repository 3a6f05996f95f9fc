from __future__ import annotations

import re
from typing import Any

from .models import DeployResult, utc_now_iso

REDACTED = "[REDACTED]"
MAX_RECORD_OUTPUT_CHARS = 2_000

_URL_CREDENTIALS_RE = re.compile(r"(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*://)[^/\s:@]+:[^/\s@]+@")
_BEARER_RE = re.compile(r"\b(?P<label>bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_ASSIGNMENT_RE = re.compile(
    r"(?P<name>\b[A-Za-z0-9_.-]*(?:api[_.-]?key|token|secret|password|passwd|credential)[A-Za-z0-9_]*)"
    r"(?P<sep>[\"']?\s*[=:]\s*[\"']?)"
    r"(?P<value>[^\s\"',;&]+)",
    re.IGNORECASE,
)
_KNOWN_PREFIX_RE = re.compile(
    r"\b(?:sk-ant-|sk_live_|sk_test_|sk-|ghp_|gho_|github_pat_|vercel_|neon_)[A-Za-z0-9_-]{4,}"
)


def _redact_assignment(match: re.Match[str]) -> str:
    if match.group("value") == REDACTED:
        return match.group(0)
    return f"{match.group('name')}{match.group('sep')}{REDACTED}"


def redact_credentials(text: str) -> str:
    """Replace credential-shaped substrings with a fixed placeholder.

    Covers key/token/secret/password assignments, bearer tokens,
    credentials embedded in URLs, and well-known provider token prefixes.
    """
    if not text:
        return text
    result = _URL_CREDENTIALS_RE.sub(lambda m: f"{m.group('scheme')}{REDACTED}@", text)
    result = _BEARER_RE.sub(lambda m: f"{m.group('label')} {REDACTED}", result)
    result = _ASSIGNMENT_RE.sub(_redact_assignment, result)
    return _KNOWN_PREFIX_RE.sub(REDACTED, result)


def build_deploy_record(result: DeployResult, *, timestamp: str | None = None) -> dict[str, Any]:
    """Build the redacted record persisted after every deploy attempt.

    Output is redacted before truncation so a secret straddling the cut
    is never partially written.
    """
    return {
        "success": result.success,
        "url": redact_credentials(result.url) if result.url else None,
        "provider": result.provider,
        "error": redact_credentials(result.error) if result.error else None,
        "output": redact_credentials(result.output or "")[:MAX_RECORD_OUTPUT_CHARS],
        "timestamp": timestamp or utc_now_iso(),
    }
