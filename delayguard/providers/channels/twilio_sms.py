from __future__ import annotations

import logging
import time

import httpx

from delayguard.core.config import get_settings
from delayguard.core.errors import ChannelConfigError
from delayguard.domain.notifications import Channel, SendFailure, SendResult, SendSuccess, SmsMessage
from delayguard.providers.channels.base import http_error_reason, is_retryable_http_error
from delayguard.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


def _message_sid(response: httpx.Response) -> str | None:
    # A 2xx means Twilio accepted the message; an unreadable body must not turn it into a failure.
    try:
        body = response.json() if response.content else {}
    except ValueError:
        logger.warning("twilio_response_unparseable status=%s", response.status_code)
        return None
    return body.get("sid") if isinstance(body, dict) else None


class TwilioSmsSender:
    channel = Channel.SMS

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        if not (
            self._settings.twilio_account_sid
            and self._settings.twilio_auth_token
            and self._settings.twilio_from_number
        ):
            raise ChannelConfigError("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER are required")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per sender for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def is_retryable(self, exc: Exception) -> bool:
        return is_retryable_http_error(exc)

    async def send(self, message: SmsMessage) -> SendResult:
        settings = self._settings
        url = f"{settings.twilio_base_url.rstrip('/')}/2010-04-01/Accounts/{settings.twilio_account_sid}/Messages.json"
        start = time.monotonic()
        try:
            response = await self._get_client().post(
                url,
                data={"To": message.to_phone, "From": settings.twilio_from_number, "Body": message.body},
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            record_external_call(
                integration="sms.twilio",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("twilio_send_failed reason=%s", http_error_reason(exc))
            return SendFailure(error=f"twilio:{http_error_reason(exc)}", retryable=self.is_retryable(exc))
        record_external_call(
            integration="sms.twilio",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return SendSuccess(provider_message_id=_message_sid(response))
