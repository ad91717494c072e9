from __future__ import annotations

from functools import singledispatch

from delayguard.core.config import get_settings
from delayguard.core.errors import TemplateRenderError
from delayguard.domain.notifications import (
    DelayTemplateVars,
    EmailMessage,
    EmailPayload,
    SmsMessage,
    SmsPayload,
)
from delayguard.domain.tracking import DelayReason, DelayVerdict, TrackingSnapshot

_REASON_LABELS = {
    DelayReason.DATE_SLIP.value: "Carrier delay",
    DelayReason.DELAYED_STATUS.value: "Carrier reported delay",
    DelayReason.EXCEPTION_STATUS.value: "Delivery exception",
}
_DEFAULT_CUSTOMER_NAME = "there"


def default_tracking_url(tracking_number: str) -> str:
    return get_settings().tracking_url_template.format(tracking_number=tracking_number)


def build_template_vars(
    *,
    snapshot: TrackingSnapshot,
    verdict: DelayVerdict,
    customer_name: str | None,
    order_number: str,
) -> DelayTemplateVars:
    # Freeze everything a message needs at enqueue time so retries render identical content.
    new_date = snapshot.estimated_delivery_date
    return DelayTemplateVars(
        customer_name=(customer_name or "").strip() or _DEFAULT_CUSTOMER_NAME,
        order_number=order_number,
        tracking_number=snapshot.tracking_number,
        tracking_url=snapshot.tracking_url or default_tracking_url(snapshot.tracking_number),
        new_delivery_date=new_date.isoformat() if new_date is not None else None,
        delay_days=verdict.delay_days,
        delay_reason=verdict.delay_reason.value,
    )


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise TemplateRenderError(f"missing template value: {name}")
    return str(value).strip()


def _delivery_phrase(template_vars: DelayTemplateVars) -> str:
    return template_vars.new_delivery_date or "to be confirmed"


@singledispatch
def render_message(payload: object) -> SmsMessage | EmailMessage:
    raise TemplateRenderError(f"no renderer for payload type {type(payload).__name__}")


@render_message.register(SmsPayload)
def _render_sms(payload: SmsPayload) -> SmsMessage:
    tv = payload.template_vars
    body = (
        f"Hi {tv.customer_name}, your order #{_require(tv.order_number, 'order_number')} is delayed. "
        f"New delivery: {_delivery_phrase(tv)}. Track: {_require(tv.tracking_url, 'tracking_url')}"
    )
    return SmsMessage(to_phone=_require(payload.to_phone, "to_phone"), body=body)


@render_message.register(EmailPayload)
def _render_email(payload: EmailPayload) -> EmailMessage:
    settings = get_settings()
    tv = payload.template_vars
    order_number = _require(tv.order_number, "order_number")
    tracking_url = _require(tv.tracking_url, "tracking_url")
    reason = _REASON_LABELS.get(tv.delay_reason, "Carrier delay")
    text_body = "\n".join(
        [
            f"Hi {tv.customer_name},",
            "",
            f"Your order #{order_number} is running late ({reason.lower()}).",
            f"New estimated delivery: {_delivery_phrase(tv)}.",
            f"Tracking number: {tv.tracking_number}",
            f"Track your package: {tracking_url}",
        ]
    )
    return EmailMessage(
        to_email=_require(payload.to_email, "to_email"),
        subject=f"Update on your order #{order_number}",
        text_body=text_body,
        template_id=settings.sendgrid_template_id,
        template_data={
            "customerName": tv.customer_name,
            "orderNumber": order_number,
            "newDeliveryDate": tv.new_delivery_date,
            "trackingNumber": tv.tracking_number,
            "trackingUrl": tracking_url,
            "delayDays": tv.delay_days,
            "delayReason": reason,
        },
    )
