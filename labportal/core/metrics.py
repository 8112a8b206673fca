"""Prometheus counters for the reservation and handoff flows."""

from prometheus_client import Counter

reservation_outcomes = Counter(
    "labportal_reservation_outcomes_total",
    "Slot reservation attempts by outcome",
    ["outcome"],
)

handoff_events = Counter(
    "labportal_handoff_events_total",
    "Live-chat handoff queue transitions",
    ["event"],
)
