from __future__ import annotations


class DelayGuardError(Exception):
    """Base error for DelayGuard."""


class TrackingPayloadError(DelayGuardError):
    """Carrier tracking payload is missing required identity fields."""


class DuplicateJobError(DelayGuardError):
    """A notification job already exists for this delay signature and channel."""

    def __init__(self, delay_signature: str, channel: str) -> None:
        super().__init__(f"notification job already exists for {delay_signature} on {channel}")
        self.delay_signature = delay_signature
        self.channel = channel


class JobNotFoundError(DelayGuardError):
    """Referenced notification job does not exist."""


class JobStateError(DelayGuardError):
    """Job is not in a state that permits the requested transition, or the lease is stale."""


class StorageUnavailableError(DelayGuardError):
    """Durable storage could not be reached; the current operation did not commit."""


class TemplateRenderError(DelayGuardError):
    """Notification payload is missing values required to render a message."""


class ChannelConfigError(DelayGuardError):
    """Missing or invalid channel provider configuration."""
