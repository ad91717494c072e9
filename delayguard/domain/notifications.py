from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class JobState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    DEAD = "dead"


CLAIMABLE_STATES = (JobState.PENDING, JobState.FAILED_RETRYABLE)
TERMINAL_STATES = (JobState.SUCCEEDED, JobState.DEAD)


class DelayTemplateVars(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_name: str
    order_number: str
    tracking_number: str
    tracking_url: str
    new_delivery_date: str | None = None
    delay_days: int = 0
    delay_reason: str


class SmsPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: Literal["sms"] = "sms"
    order_id: str
    to_phone: str
    template_vars: DelayTemplateVars


class EmailPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: Literal["email"] = "email"
    order_id: str
    to_email: str
    template_vars: DelayTemplateVars


NotificationPayload = Annotated[Union[SmsPayload, EmailPayload], Field(discriminator="channel")]
_payload_adapter: TypeAdapter[SmsPayload | EmailPayload] = TypeAdapter(NotificationPayload)


def parse_notification_payload(payload_json: dict[str, Any]) -> SmsPayload | EmailPayload:
    # Decode stored payloads through the tagged union so unknown channels fail loudly.
    return _payload_adapter.validate_python(payload_json)


def payload_channel(payload: SmsPayload | EmailPayload) -> Channel:
    return Channel(payload.channel)


@dataclass(frozen=True)
class SmsMessage:
    to_phone: str
    body: str


@dataclass(frozen=True)
class EmailMessage:
    to_email: str
    subject: str
    text_body: str
    template_id: str | None
    template_data: dict[str, Any]


@dataclass(frozen=True)
class SendSuccess:
    provider_message_id: str | None = None


@dataclass(frozen=True)
class SendFailure:
    error: str
    retryable: bool


SendResult = Union[SendSuccess, SendFailure]


@dataclass(frozen=True)
class ClaimedJob:
    # Detached view of an IN_FLIGHT job; holders must present lease_token on ack/nack.
    id: str
    channel: Channel
    delay_signature: str
    order_id: str
    payload_json: dict[str, Any]
    attempt: int
    lease_token: str
    lease_expires_at: datetime
