"""Metrics recorded by the ticket workflow service."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

WORKFLOW_OPERATIONS = "ticket_workflow_operations_total"
WORKFLOW_DURATION = "ticket_workflow_duration_seconds"
NOTIFICATION_ENQUEUE_FAILURES = "ticket_notification_enqueue_failures_total"

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_REJECTED = "rejected"
OUTCOME_PERSIST_FAILED = "persist_failed"


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=WORKFLOW_OPERATIONS,
        metric_type="counter",
        description="Ticket workflow operations by activity and outcome.",
        label_names=("activity", "outcome"),
    ),
    MetricDefinition(
        name=WORKFLOW_DURATION,
        metric_type="distribution",
        description="Duration of ticket workflow operations in seconds.",
        label_names=("activity",),
    ),
    MetricDefinition(
        name=NOTIFICATION_ENQUEUE_FAILURES,
        metric_type="counter",
        description="Ticket events whose notification could not be queued.",
    ),
)
