from __future__ import annotations

from collections import deque
from typing import Deque, Iterable
from uuid import uuid4

from delayguard.domain.notifications import (
    Channel,
    EmailMessage,
    SendFailure,
    SendResult,
    SendSuccess,
    SmsMessage,
)
from delayguard.providers.channels.base import is_retryable_http_error


class _FakeSender:
    channel: Channel

    def __init__(self, outcomes: Iterable[SendResult | Exception] | None = None) -> None:
        # Scripted outcomes are consumed in order; once exhausted every send succeeds.
        self._outcomes: Deque[SendResult | Exception] = deque(outcomes or ())
        self.sent: list[SmsMessage | EmailMessage] = []

    def script(self, *outcomes: SendResult | Exception) -> None:
        self._outcomes.extend(outcomes)

    async def send(self, message: SmsMessage | EmailMessage) -> SendResult:
        self.sent.append(message)
        if self._outcomes:
            outcome = self._outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendSuccess(provider_message_id=f"fake-{uuid4().hex[:12]}")

    def is_retryable(self, exc: Exception) -> bool:
        return is_retryable_http_error(exc)


class FakeSmsSender(_FakeSender):
    channel = Channel.SMS


class FakeEmailSender(_FakeSender):
    channel = Channel.EMAIL


def transient_failure(error: str = "fake_transient") -> SendFailure:
    return SendFailure(error=error, retryable=True)


def permanent_failure(error: str = "fake_permanent") -> SendFailure:
    return SendFailure(error=error, retryable=False)
