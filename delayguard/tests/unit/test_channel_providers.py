from __future__ import annotations

import json

import httpx
import pytest

from delayguard.core.config import get_settings
from delayguard.core.errors import ChannelConfigError
from delayguard.domain.notifications import Channel, EmailMessage, JobState, SendFailure, SendSuccess, SmsMessage
from delayguard.providers.channels.base import is_retryable_http_error
from delayguard.providers.channels.factory import get_channel_sender
from delayguard.providers.channels.fake import FakeEmailSender, FakeSmsSender
from delayguard.providers.channels.sendgrid_email import SendGridEmailSender
from delayguard.providers.channels.twilio_sms import TwilioSmsSender
from delayguard.services.notifications.dispatcher import ChannelDispatcher
from delayguard.services.notifications.queue import enqueue_notification_job
from delayguard.services.telemetry import external_call_summary
from delayguard.tests.utils.factories import sms_payload

SMS = SmsMessage(to_phone="+15555550100", body="Hi Ada, your order #1001 is delayed.")
EMAIL = EmailMessage(
    to_email="ada@example.com",
    subject="Update on your order #1001",
    text_body="Your order is late.",
    template_id="d-delay-notification-template",
    template_data={"orderNumber": "1001"},
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://provider.test")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status_code, request=request))


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_status_error(500), True),
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(408), True),
        (_status_error(400), False),
        (_status_error(401), False),
        (httpx.ReadTimeout("slow"), True),
        (httpx.ConnectError("down"), True),
        (ValueError("bad"), False),
    ],
)
def test_http_error_classification(exc, expected) -> None:
    assert is_retryable_http_error(exc) is expected


@pytest.fixture
def twilio_env(monkeypatch) -> None:
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setenv("TWILIO_FROM_NUMBER", "+15555550000")


@pytest.mark.asyncio
async def test_twilio_sender_posts_form_and_returns_sid(twilio_env) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM42"})

    sender = TwilioSmsSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await sender.send(SMS)

    assert result == SendSuccess(provider_message_id="SM42")
    assert seen[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    assert b"To=%2B15555550100" in seen[0].content
    assert external_call_summary(60)["sms.twilio"]["count"] == 1


@pytest.mark.asyncio
async def test_twilio_sender_classifies_failures(twilio_env) -> None:
    responses = iter([httpx.Response(503), httpx.Response(400, json={"message": "invalid number"})])
    transport = httpx.MockTransport(lambda request: next(responses))
    sender = TwilioSmsSender(client=httpx.AsyncClient(transport=transport))

    assert await sender.send(SMS) == SendFailure(error="twilio:http_503", retryable=True)
    assert await sender.send(SMS) == SendFailure(error="twilio:http_400", retryable=False)


@pytest.mark.asyncio
async def test_twilio_accepted_send_with_unreadable_body_is_not_resent(twilio_env, session_factory, clock) -> None:
    posts: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        return httpx.Response(201, content=b"<html>ok</html>")

    sender = TwilioSmsSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert await sender.send(SMS) == SendSuccess(provider_message_id=None)

    posts.clear()
    async with session_factory() as session:
        await enqueue_notification_job(session=session, delay_signature="delay:twilio-html", payload=sms_payload())
    dispatcher = ChannelDispatcher(sender=sender, session_factory=session_factory)

    assert await dispatcher.dispatch_once() == JobState.SUCCEEDED.value
    assert await dispatcher.dispatch_once() is None
    assert len(posts) == 1


def test_twilio_sender_requires_credentials() -> None:
    with pytest.raises(ChannelConfigError):
        TwilioSmsSender()


@pytest.mark.asyncio
async def test_sendgrid_sender_uses_dynamic_template(monkeypatch) -> None:
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.key")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, headers={"x-message-id": "msg-1"})

    sender = SendGridEmailSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await sender.send(EMAIL)

    assert result == SendSuccess(provider_message_id="msg-1")
    assert seen[0].headers["authorization"] == "Bearer SG.key"
    body = json.loads(seen[0].content)
    assert body["template_id"] == "d-delay-notification-template"
    assert body["from"] == {"email": "noreply@delayguard.app"}
    assert body["personalizations"][0]["dynamic_template_data"] == {"orderNumber": "1001"}


@pytest.mark.asyncio
async def test_sendgrid_timeout_is_retryable(monkeypatch) -> None:
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.key")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    sender = SendGridEmailSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await sender.send(EMAIL)
    assert result == SendFailure(error="sendgrid:timeout", retryable=True)


def test_factory_selects_configured_providers(monkeypatch) -> None:
    assert isinstance(get_channel_sender(Channel.SMS), FakeSmsSender)
    assert isinstance(get_channel_sender(Channel.EMAIL), FakeEmailSender)
    monkeypatch.setenv("SMS_PROVIDER", "none")
    monkeypatch.setenv("EMAIL_PROVIDER", "pigeon")
    get_settings.cache_clear()
    with pytest.raises(ChannelConfigError):
        get_channel_sender(Channel.SMS)
    with pytest.raises(ChannelConfigError):
        get_channel_sender(Channel.EMAIL)
