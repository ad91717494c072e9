from __future__ import annotations

from delayguard.core.config import get_settings
from delayguard.core.errors import ChannelConfigError
from delayguard.domain.notifications import Channel
from delayguard.providers.channels.base import ChannelSender
from delayguard.providers.channels.fake import FakeEmailSender, FakeSmsSender
from delayguard.providers.channels.sendgrid_email import SendGridEmailSender
from delayguard.providers.channels.twilio_sms import TwilioSmsSender


def get_channel_sender(channel: Channel) -> ChannelSender:
    settings = get_settings()
    channel = Channel(channel)
    if channel == Channel.SMS:
        provider = (settings.sms_provider or "none").lower()
        if provider == "fake":
            return FakeSmsSender()
        if provider == "twilio":
            return TwilioSmsSender()
    else:
        provider = (settings.email_provider or "none").lower()
        if provider == "fake":
            return FakeEmailSender()
        if provider == "sendgrid":
            return SendGridEmailSender()
    if provider == "none":
        # Stable error so the worker can skip starting a dispatcher for this channel.
        raise ChannelConfigError(f"{channel.value.upper()}_PROVIDER is set to none")
    raise ChannelConfigError(f"Unsupported {channel.value} provider: {provider}")
