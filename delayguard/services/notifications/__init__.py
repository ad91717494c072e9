from delayguard.services.notifications.dispatcher import ChannelDispatcher
from delayguard.services.notifications.ledger import (
    first_seen,
    has_notified,
    notified_channels,
    record_notified,
    register_delay_event,
)
from delayguard.services.notifications.pipeline import (
    CustomerContact,
    OrderContext,
    PipelineOutcome,
    process_tracking_update,
)
from delayguard.services.notifications.queue import (
    QueuePolicy,
    ack_notification_job,
    claim_notification_job,
    default_queue_policy,
    enqueue_notification_job,
    nack_notification_job,
    reclaim_expired_leases,
    retry_backoff_ms,
)
from delayguard.services.notifications.templates import build_template_vars, render_message

__all__ = [
    "ChannelDispatcher",
    "CustomerContact",
    "OrderContext",
    "PipelineOutcome",
    "process_tracking_update",
    "register_delay_event",
    "has_notified",
    "record_notified",
    "first_seen",
    "notified_channels",
    "QueuePolicy",
    "default_queue_policy",
    "retry_backoff_ms",
    "enqueue_notification_job",
    "claim_notification_job",
    "ack_notification_job",
    "nack_notification_job",
    "reclaim_expired_leases",
    "build_template_vars",
    "render_message",
]
