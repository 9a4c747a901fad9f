"""Metric definitions used across the ticket core."""
from __future__ import annotations

from dataclasses import dataclass

TRANSITIONS_TOTAL = "ticket_transitions_total"
TRANSITION_FAILURES_TOTAL = "ticket_transition_failures_total"
TRANSITION_DURATION_SECONDS = "ticket_transition_duration_seconds"
SWEEP_RUNS_TOTAL = "auto_close_sweep_runs_total"
SWEEP_CLOSED_TOTAL = "auto_close_sweep_closed_total"
SWEEP_FAILURES_TOTAL = "auto_close_sweep_failures_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=TRANSITIONS_TOTAL,
        metric_type="counter",
        description="Committed ticket transitions.",
        label_names=("transition",),
    ),
    MetricDefinition(
        name=TRANSITION_FAILURES_TOTAL,
        metric_type="counter",
        description="Rejected or lost ticket transitions by error type.",
        label_names=("transition", "error"),
    ),
    MetricDefinition(
        name=TRANSITION_DURATION_SECONDS,
        metric_type="distribution",
        description="Time spent validating and committing a transition.",
        label_names=("transition",),
    ),
    MetricDefinition(
        name=SWEEP_RUNS_TOTAL,
        metric_type="counter",
        description="Auto-close sweep runs.",
    ),
    MetricDefinition(
        name=SWEEP_CLOSED_TOTAL,
        metric_type="counter",
        description="Tickets closed by the auto-close sweep.",
    ),
    MetricDefinition(
        name=SWEEP_FAILURES_TOTAL,
        metric_type="counter",
        description="Tickets the auto-close sweep failed to close.",
    ),
)
