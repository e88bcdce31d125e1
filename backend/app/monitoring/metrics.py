"""Metric definitions for the realtime coordinator."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the gateway and its components.",
    label_names=("topic", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of websocket sessions currently registered.",
)

realtime_delivery_failures_total = registry.counter(
    "realtime_delivery_failures_total",
    "Server to client events that could not be delivered.",
    label_names=("event", "reason"),
)

realtime_active_calls = registry.gauge(
    "realtime_active_calls",
    "Number of non-terminal call sessions tracked in memory.",
)

call_transitions_total = registry.counter(
    "call_transitions_total",
    "Call state machine transitions applied by the coordinator.",
    label_names=("status",),
)

realtime_reaper_actions_total = registry.counter(
    "realtime_reaper_actions_total",
    "Entries cleaned up by the stale state reaper.",
    label_names=("sweep",),
)
