from __future__ import annotations

from typing import Protocol

import httpx

from delayguard.domain.notifications import Channel, EmailMessage, SendResult, SmsMessage

_NON_TERMINAL_HTTP_4XX = {408, 429}


class ChannelSender(Protocol):
    channel: Channel

    async def send(self, message: SmsMessage | EmailMessage) -> SendResult:
        ...

    def is_retryable(self, exc: Exception) -> bool:
        ...


def is_retryable_http_error(exc: Exception) -> bool:
    # Timeouts, network errors, throttling and 5xx are transient; other 4xx are permanent.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        if 400 <= status_code < 500:
            return status_code in _NON_TERMINAL_HTTP_4XX
        return status_code >= 500
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    return False


def http_error_reason(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"http_{int(exc.response.status_code)}"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    return type(exc).__name__
