"""Alert lifecycle layer - transitions, signatures, delivery and the daily heartbeat."""

from position_sentinel.alerts.engine import (
    ALERT_TYPE_LOAN,
    ALERT_TYPE_LP_RANGE,
    AlertCycleStats,
    AlertEngine,
    AlertEvaluation,
    AlertOutcome,
    Transition,
)
from position_sentinel.alerts.formatter import format_alert_message, numbered_chunks, split_message
from position_sentinel.alerts.heartbeat import HeartbeatJob, HeartbeatResult, build_heartbeat_message
from position_sentinel.alerts.notifier import (
    DeliveryStatus,
    DiscordNotifier,
    LoggingNotifier,
    Notifier,
    classify_discord_response,
)
from position_sentinel.alerts.signature import frac_bucket, make_signature, stable_json

__all__ = [
    "ALERT_TYPE_LOAN",
    "ALERT_TYPE_LP_RANGE",
    "AlertCycleStats",
    "AlertEngine",
    "AlertEvaluation",
    "AlertOutcome",
    "DeliveryStatus",
    "DiscordNotifier",
    "HeartbeatJob",
    "HeartbeatResult",
    "LoggingNotifier",
    "Notifier",
    "Transition",
    "build_heartbeat_message",
    "classify_discord_response",
    "format_alert_message",
    "frac_bucket",
    "make_signature",
    "numbered_chunks",
    "split_message",
    "stable_json",
]
