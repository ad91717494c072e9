from __future__ import annotations

import logging
import time

import httpx

from delayguard.core.config import get_settings
from delayguard.core.errors import ChannelConfigError
from delayguard.domain.notifications import Channel, EmailMessage, SendFailure, SendResult, SendSuccess
from delayguard.providers.channels.base import http_error_reason, is_retryable_http_error
from delayguard.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class SendGridEmailSender:
    channel = Channel.EMAIL

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        if not self._settings.sendgrid_api_key:
            raise ChannelConfigError("SENDGRID_API_KEY is required for SendGrid email")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def is_retryable(self, exc: Exception) -> bool:
        return is_retryable_http_error(exc)

    def _request_body(self, message: EmailMessage) -> dict:
        # Prefer the dynamic template when configured; fall back to a plain-text body.
        body: dict = {
            "personalizations": [{"to": [{"email": message.to_email}]}],
            "from": {"email": self._settings.email_from_address},
        }
        if message.template_id:
            body["template_id"] = message.template_id
            body["personalizations"][0]["dynamic_template_data"] = message.template_data
        else:
            body["subject"] = message.subject
            body["content"] = [{"type": "text/plain", "value": message.text_body}]
        return body

    async def send(self, message: EmailMessage) -> SendResult:
        url = f"{self._settings.sendgrid_base_url.rstrip('/')}/v3/mail/send"
        headers = {"Authorization": f"Bearer {self._settings.sendgrid_api_key}"}
        start = time.monotonic()
        try:
            response = await self._get_client().post(url, json=self._request_body(message), headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            record_external_call(
                integration="email.sendgrid",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("sendgrid_send_failed reason=%s", http_error_reason(exc))
            return SendFailure(error=f"sendgrid:{http_error_reason(exc)}", retryable=self.is_retryable(exc))
        record_external_call(
            integration="email.sendgrid",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        # SendGrid returns 202 with the message id only in a response header.
        return SendSuccess(provider_message_id=response.headers.get("x-message-id"))
