"""Metric definitions for the realtime layer."""

from __future__ import annotations

from .registry import registry

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of websocket connections registered on this node.",
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Realtime events processed, by event name and direction.",
    label_names=("event", "direction"),
)

realtime_handler_errors_total = registry.counter(
    "realtime_handler_errors_total",
    "Inbound realtime events whose handler failed.",
    label_names=("event", "kind"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failures while publishing realtime events to the cross-node transport.",
    label_names=("topic", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Recoveries of the cross-node realtime transport.",
    label_names=("backend", "reason"),
)

push_notifications_total = registry.counter(
    "push_notifications_total",
    "Push notification attempts, by outcome.",
    label_names=("outcome",),
)
