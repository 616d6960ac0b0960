"""
Tests for the Prometheus metrics recorder.
"""
from unittest.mock import patch

from infra.metrics import MetricsRecorder, PassStats


def test_singleton():
    assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)


def test_observe_pass():
    metrics = MetricsRecorder(enabled=False)
    metrics.observe_pass(PassStats(name="reconcile", status="ok", duration_seconds=0.5, counts={"updated": 4}))
    metrics.observe_pass(PassStats(name="reconcile", status="aborted", duration_seconds=0.1))

    assert metrics.sample("favfund_pass_total", {"pass_name": "reconcile", "status": "ok"}) == 1.0
    assert metrics.sample("favfund_pass_total", {"pass_name": "reconcile", "status": "aborted"}) == 1.0
    assert metrics.sample("favfund_pass_duration_seconds_count", {"pass_name": "reconcile"}) == 2.0
    assert metrics.sample("favfund_pass_count", {"pass_name": "reconcile", "count": "updated"}) == 4.0
    assert metrics.last_pass("reconcile").status == "aborted"


def test_guard_and_stop_loss_counters():
    metrics = MetricsRecorder(enabled=False)
    metrics.record_guard_rejection("hard_cap")
    metrics.record_guard_rejection("hard_cap")
    metrics.record_stop_loss(sold=1, data_errors=2)

    assert metrics.sample("favfund_guard_rejections_total", {"guard": "hard_cap"}) == 2.0
    assert metrics.sample("favfund_stop_loss_exits_total") == 1.0
    assert metrics.sample("favfund_data_quality_holds_total") == 2.0


def test_disabled_never_starts_server():
    with patch("infra.metrics.start_http_server") as server:
        MetricsRecorder(enabled=False).start()
    server.assert_not_called()


def test_port_in_use_disables():
    with patch("infra.metrics.start_http_server", side_effect=OSError("in use")):
        metrics = MetricsRecorder(enabled=True, port=9999)
        metrics.start()
    assert not metrics.is_enabled()
