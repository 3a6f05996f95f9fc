from __future__ import annotations

from dcode_delivery.messaging import (
    CREDENTIAL_NOTICE,
    MAX_MESSAGE_LENGTH,
    InboundMessage,
    MessagingConfig,
    MessagingDispatcher,
    OutboundMessage,
    PipelineEvent,
    format_event,
    messaging_config_from_profile,
    sanitize_for_messaging,
)
from dcode_delivery.models import DeveloperProfile


class RecordingAdapter:
    def __init__(self, replies: list[str] | None = None) -> None:
        self.sent: list[OutboundMessage] = []
        self.replies = list(replies or [])
        self.started = False
        self.stopped = False
        self.timeouts: list[float | None] = []

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def send(self, message: OutboundMessage) -> None:
        self.sent.append(message)

    def wait_for_reply(self, timeout: float | None) -> InboundMessage | None:
        self.timeouts.append(timeout)
        if not self.replies:
            return None
        return InboundMessage(text=self.replies.pop(0), channel="fake", received_at="now")


def _dispatcher(adapter: RecordingAdapter, *, timeout: int = 30) -> MessagingDispatcher:
    dispatcher = MessagingDispatcher(MessagingConfig(channel="telegram", reply_timeout=timeout), adapter=adapter)
    dispatcher.start()
    return dispatcher


def test_sanitize_replaces_credential_talk() -> None:
    assert sanitize_for_messaging("Please send your API key") == CREDENTIAL_NOTICE
    assert sanitize_for_messaging("Build complete for Epic 1.") == "Build complete for Epic 1."


def test_format_event_fills_epic_and_default_detail() -> None:
    assert format_event(PipelineEvent.BUILD_STARTED, epic=2) == "Build started for Epic 2."
    assert format_event(PipelineEvent.DEPLOYMENT_FAILED, epic=1) == "Deployment failed for Epic 1: Unknown error"
    assert format_event(PipelineEvent.ERROR, detail="boom") == "Error in pipeline: boom"


def test_disabled_dispatcher_is_silent() -> None:
    dispatcher = MessagingDispatcher(MessagingConfig())
    dispatcher.start()
    assert not dispatcher.enabled
    dispatcher.notify(PipelineEvent.BUILD_STARTED, epic=1)
    result = dispatcher.ask("anyone there?")
    assert not result.replied
    assert result.reason == "disabled"


def test_unconfigured_telegram_disables_messaging() -> None:
    dispatcher = MessagingDispatcher(MessagingConfig(channel="telegram"))
    assert dispatcher.adapter is None
    assert not dispatcher.enabled


def test_notify_and_ask_through_adapter() -> None:
    adapter = RecordingAdapter(replies=["approve"])
    dispatcher = _dispatcher(adapter)
    dispatcher.notify(PipelineEvent.BUILD_STARTED, epic=1)
    result = dispatcher.ask("Approve?")
    assert adapter.started
    assert [message.text for message in adapter.sent] == ["Build started for Epic 1.", "Approve?"]
    assert result.replied and result.text == "approve"
    assert adapter.timeouts == [30.0]

    dispatcher.stop()
    assert adapter.stopped
    assert not dispatcher.active


def test_ask_times_out_and_zero_timeout_waits_forever() -> None:
    adapter = RecordingAdapter()
    result = _dispatcher(adapter, timeout=0).ask("")
    assert not result.replied
    assert result.reason == "timeout"
    assert adapter.timeouts == [None]
    assert adapter.sent == []


def test_send_summary_is_truncated() -> None:
    adapter = RecordingAdapter()
    _dispatcher(adapter).send_summary(3, "x" * (MAX_MESSAGE_LENGTH * 2))
    text = adapter.sent[0].text
    assert text.startswith("Epic 3 Review Summary")
    assert len(text) < MAX_MESSAGE_LENGTH
    assert "truncated" in text


def test_config_from_profile() -> None:
    profile = DeveloperProfile(
        name="Dev",
        notification_channel="telegram",
        telegram_chat_id="42",
        telegram_bot_token="abc",
        notification_timeout=10,
    )
    config = messaging_config_from_profile(profile)
    assert config.channel == "telegram"
    assert config.telegram_chat_id == "42"
    assert config.reply_timeout == 10
    assert messaging_config_from_profile(None).channel == "none"
