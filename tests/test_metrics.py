import pytest

from helpdesk.metrics import MetricsRegistry, register_default_metrics
from helpdesk.metrics.base import track_duration
from helpdesk.metrics.definitions import WORKFLOW_DURATION, WORKFLOW_OPERATIONS


def test_counter_requires_declared_labels():
    registry = MetricsRegistry()
    counter = registry.counter("ops_total", label_names=["activity"])

    counter.inc(labels={"activity": "Resolve"})
    counter.inc(2, labels={"activity": "Resolve"})

    assert counter.value(labels={"activity": "Resolve"}) == 3
    with pytest.raises(ValueError):
        counter.inc(labels={"activity": "Resolve", "extra": "x"})
    with pytest.raises(ValueError):
        counter.inc(labels={})
    with pytest.raises(ValueError):
        counter.inc(-1, labels={"activity": "Resolve"})


def test_registry_rejects_kind_conflicts():
    registry = MetricsRegistry()
    registry.counter("shared")

    assert registry.counter("shared") is registry.get("shared")
    with pytest.raises(TypeError):
        registry.distribution("shared")


def test_track_duration_observes_once():
    registry = MetricsRegistry()
    metric = registry.distribution("duration")

    with track_duration(metric):
        pass

    stats = metric.snapshot()[()]
    assert stats["count"] == 1.0
    assert stats["min"] >= 0.0


def test_default_metrics_registered():
    registry = register_default_metrics(MetricsRegistry())

    assert registry.get(WORKFLOW_OPERATIONS).label_names == ("activity", "outcome")
    assert registry.get(WORKFLOW_DURATION).kind == "distribution"
