"""Remote messaging channel used for notifications, approvals, and sign-off.

The dispatcher wraps one ``ChannelAdapter``. It is started before the epic
loop and stopped in the runner's cleanup block, so the adapter's background
listener never outlives a pipeline run.
"""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Protocol

from .models import DeveloperProfile, utc_now_iso

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4_000
_TELEGRAM_API = "https://api.telegram.org"
_HTTP_TIMEOUT_SECONDS = 30
_POLL_SECONDS = 20

MessageType = Literal["status", "summary", "question", "error"]


@dataclass(frozen=True)
class OutboundMessage:
    text: str
    type: MessageType = "status"


@dataclass(frozen=True)
class InboundMessage:
    text: str
    channel: str
    received_at: str


@dataclass(frozen=True)
class AskResult:
    replied: bool
    text: str = ""
    reason: Literal["replied", "timeout", "no-channel", "disabled"] = "replied"


@dataclass(frozen=True)
class MessagingConfig:
    channel: str = "none"
    telegram_chat_id: str | None = None
    telegram_bot_token: str | None = None
    reply_timeout: int = 300


class ChannelAdapter(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def send(self, message: OutboundMessage) -> None: ...

    def wait_for_reply(self, timeout: float | None) -> InboundMessage | None: ...


class PipelineEvent(str, Enum):
    BUILD_STARTED = "build-started"
    BUILD_COMPLETE = "build-complete"
    REVIEW_COMPLETE = "review-complete"
    SIGN_OFF_READY = "sign-off-ready"
    DEPLOYMENT_STARTED = "deployment-started"
    DEPLOYMENT_COMPLETE = "deployment-complete"
    DEPLOYMENT_FAILED = "deployment-failed"
    RETROSPECTIVE_COMPLETE = "retrospective-complete"
    EPIC_COMPLETE = "epic-complete"
    ERROR = "error"


_EVENT_TEMPLATES: dict[PipelineEvent, str] = {
    PipelineEvent.BUILD_STARTED: "Build started for Epic {epic}.",
    PipelineEvent.BUILD_COMPLETE: "Build complete for Epic {epic}. Starting review phase.",
    PipelineEvent.REVIEW_COMPLETE: "Review complete for Epic {epic}. {detail}",
    PipelineEvent.SIGN_OFF_READY: "Epic {epic} is ready for sign-off.\n\n{detail}",
    PipelineEvent.DEPLOYMENT_STARTED: "Deploying Epic {epic}...",
    PipelineEvent.DEPLOYMENT_COMPLETE: "Deployment complete for Epic {epic}! {detail}",
    PipelineEvent.DEPLOYMENT_FAILED: "Deployment failed for Epic {epic}: {detail}",
    PipelineEvent.RETROSPECTIVE_COMPLETE: "Retrospective complete for Epic {epic}. Project insights saved.",
    PipelineEvent.EPIC_COMPLETE: "Epic {epic} approved and complete!",
    PipelineEvent.ERROR: "Error in pipeline: {detail}",
}

_EVENT_DEFAULT_DETAIL: dict[PipelineEvent, str] = {
    PipelineEvent.REVIEW_COMPLETE: "Ready for sign-off.",
    PipelineEvent.SIGN_OFF_READY: "Reply 'approve' or provide feedback to reject.",
    PipelineEvent.DEPLOYMENT_FAILED: "Unknown error",
    PipelineEvent.ERROR: "Unknown error",
}

_CREDENTIAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"\bclient[_\s-]?secret\b", re.IGNORECASE),
    re.compile(r"\bsecret[_\s-]?key\b", re.IGNORECASE),
    re.compile(r"api[_.\s-]?key", re.IGNORECASE),
    re.compile(r"\b(?:auth|api|access|bearer|bot|refresh)[_\s-]?token\b", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"private[_.\s-]?key", re.IGNORECASE),
)

CREDENTIAL_NOTICE = (
    "The pipeline needs configuration that may involve sensitive data. "
    "Please provide credentials locally in ~/.dcode/profile.json or the project's .env file.\n\n"
    "Never send passwords, tokens, or API keys over messaging channels."
)


def sanitize_for_messaging(text: str) -> str:
    """Replace any message that talks about credentials with a local-only notice."""
    if any(pattern.search(text) for pattern in _CREDENTIAL_PATTERNS):
        return CREDENTIAL_NOTICE
    return text


def format_event(event: PipelineEvent, *, epic: int | None = None, detail: str | None = None) -> str:
    template = _EVENT_TEMPLATES[event]
    return template.format(
        epic=epic if epic is not None else "?",
        detail=detail or _EVENT_DEFAULT_DETAIL.get(event, ""),
    ).strip()


def messaging_config_from_profile(profile: DeveloperProfile | None) -> MessagingConfig:
    if profile is None:
        return MessagingConfig()
    return MessagingConfig(
        channel=profile.notification_channel,
        telegram_chat_id=profile.telegram_chat_id,
        telegram_bot_token=profile.telegram_bot_token,
        reply_timeout=profile.notification_timeout,
    )


# ---------------------------------------------------------------------------
# Telegram adapter
# ---------------------------------------------------------------------------


def _telegram_call(token: str, method: str, payload: dict[str, Any], timeout: int) -> dict[str, Any]:
    """POST a Bot API method and return the decoded response body.

    Raises:
        RuntimeError: If the request fails or the API reports an error.
    """
    request = urllib.request.Request(
        f"{_TELEGRAM_API}/bot{token}/{method}",
        method="POST",
        headers={"Content-Type": "application/json"},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        raise RuntimeError(f"Telegram {method} failed with HTTP {exc.code}") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise RuntimeError(f"Telegram {method} request failed: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Telegram {method} returned invalid JSON") from exc
    if not body.get("ok"):
        raise RuntimeError(f"Telegram {method} error: {body.get('description', 'unknown')}")
    return body


class TelegramAdapter:
    """Telegram Bot API channel with a long-polling listener thread."""

    def __init__(self, *, token: str, chat_id: str) -> None:
        self._token = token
        self._chat_id = str(chat_id)
        self._replies: queue.Queue[InboundMessage] = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._offset = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="telegram-listener", daemon=True)
        self._thread.start()
        logger.info("telegram listener started")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=_POLL_SECONDS + 5)
        self._thread = None
        logger.info("telegram listener stopped")

    def send(self, message: OutboundMessage) -> None:
        _telegram_call(
            self._token,
            "sendMessage",
            {"chat_id": self._chat_id, "text": message.text},
            timeout=_HTTP_TIMEOUT_SECONDS,
        )

    def wait_for_reply(self, timeout: float | None) -> InboundMessage | None:
        try:
            return self._replies.get(timeout=timeout)
        except queue.Empty:
            return None

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                body = _telegram_call(
                    self._token,
                    "getUpdates",
                    {"offset": self._offset, "timeout": _POLL_SECONDS, "allowed_updates": ["message"]},
                    timeout=_POLL_SECONDS + _HTTP_TIMEOUT_SECONDS,
                )
            except RuntimeError as exc:
                logger.warning("telegram polling error: %s", exc)
                self._stop.wait(5)
                continue
            for update in body.get("result", []):
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                message = update.get("message") or {}
                chat = message.get("chat") or {}
                text = message.get("text")
                if str(chat.get("id")) != self._chat_id or not isinstance(text, str):
                    continue
                self._replies.put(InboundMessage(text=text, channel="telegram", received_at=utc_now_iso()))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class MessagingDispatcher:
    """Routes pipeline messages to the configured channel, if any."""

    def __init__(self, config: MessagingConfig, adapter: ChannelAdapter | None = None) -> None:
        self.config = config
        self.adapter = adapter
        self.started = False
        if self.adapter is None:
            self._init_adapter()

    def _init_adapter(self) -> None:
        if self.config.channel == "telegram" and self.config.telegram_bot_token and self.config.telegram_chat_id:
            self.adapter = TelegramAdapter(
                token=self.config.telegram_bot_token,
                chat_id=self.config.telegram_chat_id,
            )
        elif self.config.channel not in ("none", ""):
            logger.warning("messaging channel %r is not fully configured; messaging disabled", self.config.channel)

    @property
    def enabled(self) -> bool:
        return self.config.channel != "none" and self.adapter is not None

    @property
    def active(self) -> bool:
        return self.enabled and self.started

    def start(self) -> None:
        if not self.enabled or self.started or self.adapter is None:
            return
        self.adapter.start()
        self.started = True

    def stop(self) -> None:
        if self.adapter is None or not self.started:
            return
        try:
            self.adapter.stop()
        finally:
            self.started = False

    def notify(self, event: PipelineEvent, *, epic: int | None = None, detail: str | None = None) -> None:
        if not self.active:
            return
        self._deliver(OutboundMessage(text=format_event(event, epic=epic, detail=detail), type="status"))

    def send(self, message: OutboundMessage) -> None:
        if not self.active:
            return
        self._deliver(message)

    def send_summary(self, epic_number: int, markdown: str) -> None:
        if not self.active:
            return
        text = f"Epic {epic_number} Review Summary\n\n{markdown}"
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[: MAX_MESSAGE_LENGTH - 100] + "\n\n... (truncated, see full summary in .dcode/reviews/)"
        self._deliver(OutboundMessage(text=text, type="summary"), sanitize=False)

    def ask(self, question: str) -> AskResult:
        """Send *question* (if any) and block until a reply or the reply timeout."""
        if not self.active or self.adapter is None:
            reason: Literal["disabled", "no-channel"] = "disabled" if self.config.channel == "none" else "no-channel"
            return AskResult(replied=False, reason=reason)
        if question:
            self._deliver(OutboundMessage(text=question, type="question"))
        timeout = float(self.config.reply_timeout) if self.config.reply_timeout > 0 else None
        reply = self.adapter.wait_for_reply(timeout)
        if reply is None:
            return AskResult(replied=False, reason="timeout")
        return AskResult(replied=True, text=reply.text)

    def _deliver(self, message: OutboundMessage, *, sanitize: bool = True) -> None:
        if self.adapter is None:
            return
        text = sanitize_for_messaging(message.text) if sanitize else message.text
        self.adapter.send(OutboundMessage(text=text, type=message.type))
