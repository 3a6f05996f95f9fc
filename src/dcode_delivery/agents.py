from __future__ import annotations

import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Callable

from deepagents import create_deep_agent
from pydantic import BaseModel, ConfigDict

from .backends import build_project_backend
from .collaborators import SuiteRunner
from .commands import git_commit_all, git_discard_changes, git_is_clean
from .llm import StructuredOutputAdapter, get_chat_model, get_structured_chat_model
from .models import (
    AgentResult,
    BuildOutcome,
    BuildResult,
    FixResult,
    Plan,
    PlanStory,
    ReviewContext,
    ReviewFinding,
    Severity,
    meets_severity,
)
from .sandbox import SandboxPolicy
from .state_store import DeliveryStateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_CHARS = 12_000
DEFAULT_MAX_FILES = 40

REVIEW_FOCUS: dict[str, str] = {
    "code-quality": (
        "Review for correctness bugs, error handling gaps, dead code, duplicated logic, "
        "unclear naming and violations of the project's existing conventions."
    ),
    "test-coverage": (
        "Review for untested behavior: new code paths without tests, missing edge cases, "
        "assertions that cannot fail, and tests that depend on external services."
    ),
    "security": (
        "Review for injection, path traversal, unsafe deserialization, hard-coded secrets, "
        "missing authorization checks and credentials written to logs."
    ),
}


# ---------------------------------------------------------------------------
# Agent output parsing
# ---------------------------------------------------------------------------


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(_content_to_text(item["content"]))
                else:
                    chunks.append(json.dumps(item, sort_keys=True))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Extract the final text content from a deep-agent response.

    Handles ``{"messages": [...]}`` graphs, ``output``/``content`` dicts and
    message objects with a ``content`` attribute.
    """
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if isinstance(response.get("messages"), list) and response["messages"]:
            return extract_agent_text(response["messages"][-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from agent text output.

    Tries the whole text, then a fenced block, then the outermost braces.

    Raises:
        RuntimeError: If no JSON object can be extracted.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Agent returned empty output; expected JSON object")

    candidates = [body]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        candidates.append(fenced.group(1))
    start, end = body.find("{"), body.rfind("}")
    if start != -1 and end > start:
        candidates.append(body[start : end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Agent output did not contain a JSON object: {preview}")


# ---------------------------------------------------------------------------
# Deep-agent invocation
# ---------------------------------------------------------------------------

DeepAgentInvoker = Callable[..., dict[str, Any]]


def invoke_deep_agent(
    *,
    model_name: str,
    project_dir: Path,
    state_dir: str,
    system_prompt: str,
    user_message: str,
    name: str,
    recursion_limit: int = 1_000,
) -> dict[str, Any]:
    """Run one deep agent over the project and return its JSON report.

    The agent edits files through ``build_project_backend``, so the state
    directory and ``.git`` stay out of its reach.

    Raises:
        RuntimeError: If the agent output contains no JSON object or no API key is set.
    """
    model = get_chat_model(model_name=model_name, project_dir=project_dir)
    agent = create_deep_agent(
        model=model,
        tools=[],
        backend=build_project_backend(project_dir, state_dir),
        system_prompt=system_prompt,
        name=name,
    )
    response = agent.invoke(
        {"messages": [{"role": "user", "content": user_message}]},
        config={
            "recursion_limit": recursion_limit,
            "configurable": {"thread_id": f"{name}-{uuid.uuid4().hex[:8]}"},
        },
    )
    return extract_json_payload(extract_agent_text(response))


# ---------------------------------------------------------------------------
# Review agents
# ---------------------------------------------------------------------------


class FindingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    severity: Severity
    file: str | None
    description: str


class AgentFindings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str
    findings: list[FindingPayload]


def read_changed_sources(
    project_dir: Path,
    changed_files: list[str],
    *,
    max_files: int = DEFAULT_MAX_FILES,
    max_chars: int = DEFAULT_MAX_FILE_CHARS,
) -> str:
    """Concatenate the changed files for a review prompt, skipping secrets and binaries."""
    root = project_dir.resolve()
    sections: list[str] = []
    for name in changed_files[:max_files]:
        target = (root / name).resolve()
        base = target.name
        if root not in target.parents or not target.is_file() or base == ".env" or base.startswith(".env."):
            continue
        try:
            text = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if len(text) > max_chars:
            text = text[:max_chars] + "\n... [truncated]"
        sections.append(f"--- {name} ---\n{text}")
    return "\n\n".join(sections)


class LLMReviewAgent:
    """Single-pass structured review of the changed files from one angle."""

    def __init__(
        self,
        name: str,
        *,
        model_name: str,
        focus: str | None = None,
        adapter: StructuredOutputAdapter[AgentFindings] | None = None,
    ) -> None:
        self.name = name
        self.model_name = model_name
        self.focus = focus or REVIEW_FOCUS.get(name, f"Review the changes as the {name} reviewer.")
        self._adapter = adapter

    def _get_adapter(self, project_dir: Path) -> StructuredOutputAdapter[AgentFindings]:
        if self._adapter is None:
            self._adapter = get_structured_chat_model(
                model_name=self.model_name,
                schema=AgentFindings,
                project_dir=project_dir,
            )
        return self._adapter

    def build_prompt(self, context: ReviewContext) -> str:
        sources = read_changed_sources(Path(context.project_dir), context.changed_files)
        parts = [
            f"You are the {self.name} reviewer for epic {context.epic_number}.",
            self.focus,
            "Only report problems you can point to in the code below. Quote identifiers in backticks.",
            "Severity is one of: critical, high, medium, low, info.",
        ]
        rules = context.rules_prompt.get(self.name)
        if rules:
            parts.append(rules)
        parts.append("Changed files:\n\n" + (sources or "(no readable changed files)"))
        return "\n\n".join(parts)

    def run(self, context: ReviewContext) -> AgentResult:
        output = self._get_adapter(Path(context.project_dir)).invoke(self.build_prompt(context))
        findings = [
            ReviewFinding(
                title=item.title,
                severity=item.severity,
                file=item.file,
                description=item.description,
                source=self.name,
            )
            for item in output.findings
        ]
        blocking = [
            f"[{finding.severity.value}] {finding.title}"
            for finding in findings
            if meets_severity(finding.severity, Severity.HIGH)
        ]
        return AgentResult(
            agent=self.name,
            success=not blocking,
            report=output.summary,
            findings=findings,
            blocking_issues=blocking,
        )


# ---------------------------------------------------------------------------
# Fixing and test hardening
# ---------------------------------------------------------------------------

_FIXER_SYSTEM_PROMPT = (
    "You fix one review finding in an existing codebase. Make the smallest change that resolves it "
    "and keep the existing style. When done, reply with only a JSON object: "
    '{"fixed": true|false, "summary": "<what changed or why not>"}'
)

_TASK_SYSTEM_PROMPT = (
    "You work inside an existing codebase. Complete the task, then reply with only a JSON object: "
    '{"success": true|false, "summary": "<what you did>", "blocking_issues": ["..."]}'
)


class DeepAgentFixer:
    """Applies one fix per deep-agent run on top of a committed checkpoint.

    Before each fix any pending work is committed, so ``revert`` only ever
    discards what the last fix changed and ``commit`` keeps it as its own
    commit. Without a clean checkpoint (no git, or the checkpoint commit
    failed) ``revert`` leaves the tree untouched rather than risk earlier
    uncommitted work.
    """

    def __init__(
        self,
        *,
        model_name: str,
        project_dir: Path,
        state_dir: str = ".dcode",
        policy: SandboxPolicy | None = None,
        status_timeout: int = 10,
        recursion_limit: int = 1_000,
        invoker: DeepAgentInvoker = invoke_deep_agent,
    ) -> None:
        self.model_name = model_name
        self.project_dir = project_dir
        self.state_dir = state_dir
        self.policy = policy
        self.status_timeout = status_timeout
        self.recursion_limit = recursion_limit
        self._invoke = invoker
        self._checkpoint_clean = False

    def _git_options(self) -> dict[str, Any]:
        return {"exclude": [self.state_dir], "timeout": self.status_timeout, "policy": self.policy}

    def _checkpoint(self, finding: ReviewFinding) -> bool:
        git_commit_all(
            self.project_dir,
            f"chore(review): checkpoint before {finding.id or finding.title}",
            **self._git_options(),
        )
        return git_is_clean(self.project_dir, **self._git_options()) is True

    def fix(self, finding: ReviewFinding, context: ReviewContext) -> FixResult:
        self._checkpoint_clean = self._checkpoint(finding)
        message = "\n".join(
            [
                f"Finding [{finding.severity.value}] {finding.title}",
                f"File: {finding.file or '(unspecified)'}",
                "",
                finding.description,
            ]
        )
        try:
            payload = self._invoke(
                model_name=self.model_name,
                project_dir=self.project_dir,
                state_dir=self.state_dir,
                system_prompt=_FIXER_SYSTEM_PROMPT,
                user_message=message,
                name="fixer",
                recursion_limit=self.recursion_limit,
            )
        except RuntimeError as exc:
            logger.warning("fix for %s failed: %s", finding.id or finding.title, exc)
            return FixResult(finding=finding, fixed=False, error=str(exc))
        fixed = bool(payload.get("fixed"))
        return FixResult(
            finding=finding,
            fixed=fixed,
            error=None if fixed else str(payload.get("summary") or "agent made no change"),
        )

    def commit(self, finding: ReviewFinding, context: ReviewContext) -> str | None:
        return git_commit_all(
            self.project_dir,
            f"fix(review): {finding.id} - {finding.title}",
            **self._git_options(),
        )

    def revert(self, context: ReviewContext) -> None:
        if not self._checkpoint_clean:
            logger.warning("no clean checkpoint before the last fix in %s; leaving the tree as is", self.project_dir)
            return
        if not git_discard_changes(self.project_dir, **self._git_options()):
            logger.warning("could not discard the last fix in %s", self.project_dir)


class DeepAgentTask:
    """A deep-agent step reported as an agent result (e.g. test hardening)."""

    def __init__(
        self,
        name: str,
        instructions: str,
        *,
        model_name: str,
        project_dir: Path,
        state_dir: str = ".dcode",
        recursion_limit: int = 1_000,
        invoker: DeepAgentInvoker = invoke_deep_agent,
    ) -> None:
        self.name = name
        self.instructions = instructions
        self.model_name = model_name
        self.project_dir = project_dir
        self.state_dir = state_dir
        self.recursion_limit = recursion_limit
        self._invoke = invoker

    def run(self, context: ReviewContext) -> AgentResult:
        files = "\n".join(f"- {name}" for name in context.changed_files) or "- (none listed)"
        try:
            payload = self._invoke(
                model_name=self.model_name,
                project_dir=self.project_dir,
                state_dir=self.state_dir,
                system_prompt=_TASK_SYSTEM_PROMPT,
                user_message=f"{self.instructions}\n\nChanged files:\n{files}",
                name=self.name,
                recursion_limit=self.recursion_limit,
            )
        except RuntimeError as exc:
            return AgentResult(agent=self.name, success=False, report=f"Agent error: {exc}")
        blocking = [str(item) for item in payload.get("blocking_issues") or []]
        return AgentResult(
            agent=self.name,
            success=bool(payload.get("success")) and not blocking,
            report=str(payload.get("summary", "")),
            blocking_issues=blocking,
        )


# ---------------------------------------------------------------------------
# Story building
# ---------------------------------------------------------------------------


def _next_story(plan: Plan) -> PlanStory | None:
    pending = [story for story in plan.stories if not story.passes]
    return min(pending, key=lambda story: story.priority) if pending else None


def _story_message(plan: Plan, story: PlanStory) -> str:
    criteria = "\n".join(f"- {item}" for item in story.acceptance_criteria)
    lines = [
        f"Project: {plan.project} ({plan.description})",
        f"Story {story.id}: {story.title}",
        "",
        story.description,
        "",
        "Acceptance criteria:",
        criteria,
    ]
    if story.notes:
        lines += ["", f"Notes: {story.notes}"]
    return "\n".join(lines)


class DeepAgentStoryBuilder:
    """Builds the highest-priority unfinished story, then gates it on the test suite.

    A story whose tests pass is committed on its own, so later review fixes
    can be reverted without touching it.
    """

    def __init__(
        self,
        *,
        store: DeliveryStateStore,
        test_runner: SuiteRunner,
        recursion_limit: int = 1_000,
        policy: SandboxPolicy | None = None,
        status_timeout: int = 10,
        invoker: DeepAgentInvoker = invoke_deep_agent,
    ) -> None:
        self.store = store
        self.test_runner = test_runner
        self.policy = policy
        self.status_timeout = status_timeout
        self.recursion_limit = recursion_limit
        self._invoke = invoker

    def run_one(self, project_dir: Path, plan_path: Path, model: str, epic_number: int) -> BuildResult:
        plan = self.store.read_plan(plan_path)
        if not plan.stories:
            return BuildResult(outcome=BuildOutcome.NO_STORIES)
        story = _next_story(plan)
        if story is None:
            return BuildResult(outcome=BuildOutcome.ALL_COMPLETE, all_complete=True)

        logger.info("building story %s for epic %d", story.id, epic_number)
        try:
            payload = self._invoke(
                model_name=model,
                project_dir=project_dir,
                state_dir=self.store.state_dir,
                system_prompt=_TASK_SYSTEM_PROMPT,
                user_message=_story_message(plan, story),
                name="story-builder",
                recursion_limit=self.recursion_limit,
            )
        except RuntimeError as exc:
            return BuildResult(outcome=BuildOutcome.FAILED, story=story, error=str(exc))
        if not payload.get("success"):
            error = str(payload.get("summary") or "agent reported failure")
            return BuildResult(outcome=BuildOutcome.FAILED, story=story, error=error)

        suite = self.test_runner.run()
        if not suite.passed:
            return BuildResult(
                outcome=BuildOutcome.FAILED,
                story=story,
                error=f"Tests failed after story {story.id}:\n{suite.output[-1_000:]}",
            )

        sha = git_commit_all(
            project_dir,
            f"feat: [{story.id}] - {story.title}",
            exclude=[self.store.state_dir],
            timeout=self.status_timeout,
            policy=self.policy,
        )
        if sha is None:
            logger.warning("story %s passed but was not committed", story.id)
        story.passes = True
        self.store.write_plan(plan, plan_path)
        return BuildResult(outcome=BuildOutcome.PASSED, all_complete=_next_story(plan) is None, story=story)
