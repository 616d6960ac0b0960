"""
Tests for webhook alerting of pass outcomes.
"""
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from infra.alerting import AlertConfig, AlertService, AlertSeverity


def dry_run_service(min_severity=AlertSeverity.INFO, dedupe_seconds=60.0) -> AlertService:
    return AlertService(AlertConfig(
        enabled=True,
        webhook_url=None,
        min_severity=min_severity,
        dry_run=True,
        dedupe_seconds=dedupe_seconds,
    ))


def pass_result(name="reconcile", errors=(), alerts=(), aborted=False):
    return SimpleNamespace(name=name, errors=list(errors), alerts=list(alerts), aborted=aborted, counts={"updated": 1})


def test_dry_run_records_payload():
    service = dry_run_service()
    assert service.notify(AlertSeverity.WARNING, "reconcile error", "MKT-A: lookup failed")
    assert service.sent == [{"text": "[WARNING] reconcile error | MKT-A: lookup failed"}]


def test_below_min_severity_dropped():
    service = dry_run_service(min_severity=AlertSeverity.WARNING)
    assert not service.notify(AlertSeverity.INFO, "allocate alert", "No candidates funded")
    assert service.sent == []


def test_identical_alerts_deduped():
    service = dry_run_service()
    assert service.notify(AlertSeverity.CRITICAL, "t", "m")
    assert not service.notify(AlertSeverity.CRITICAL, "t", "m")
    assert service.notify(AlertSeverity.CRITICAL, "t", "other")


def test_old_fingerprints_pruned():
    service = dry_run_service(dedupe_seconds=60.0)
    with patch("infra.alerting.time.monotonic", side_effect=[0.0, 10.0, 100.0, 110.0]):
        assert service.notify(AlertSeverity.WARNING, "t", "first")
        assert service.notify(AlertSeverity.WARNING, "t", "second")
        assert service.notify(AlertSeverity.WARNING, "t", "third")
        assert len(service._last_sent) == 1
        assert service.notify(AlertSeverity.WARNING, "t", "first")
    assert len(service.sent) == 4


def test_disabled_without_webhook(monkeypatch):
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    service = AlertService.from_config(True, {"min_severity": "info"})
    assert not service.is_enabled()
    assert not service.notify(AlertSeverity.CRITICAL, "t", "m")


def test_webhook_from_environment(monkeypatch):
    monkeypatch.setenv("FAVFUND_HOOK", "https://hooks.example.com/abc")
    service = AlertService.from_config(True, {"webhook_env": "FAVFUND_HOOK"})
    assert service.is_enabled()


def test_webhook_post():
    service = AlertService(AlertConfig(
        enabled=True,
        webhook_url="https://hooks.example.com/abc",
        min_severity=AlertSeverity.INFO,
        dry_run=False,
    ))
    response = MagicMock()
    response.status = 200
    response.__enter__.return_value = response

    with patch("infra.alerting.urllib.request.urlopen", return_value=response) as urlopen:
        assert service.notify(AlertSeverity.CRITICAL, "stop_loss pass aborted", "positions")

    request = urlopen.call_args.args[0]
    assert request.full_url == "https://hooks.example.com/abc"
    assert json.loads(request.data)["text"].startswith("[CRITICAL] stop_loss pass aborted")


class TestNotifyPass:

    def test_aborted_pass_is_single_critical(self):
        service = dry_run_service()
        delivered = service.notify_pass(pass_result(errors=["positions"], alerts=["ignored"], aborted=True))
        assert delivered == 1
        assert service.sent[0]["text"].startswith("[CRITICAL] reconcile pass aborted | positions")

    def test_errors_and_alerts_forwarded(self):
        service = dry_run_service()
        delivered = service.notify_pass(pass_result(errors=["e1"], alerts=["a1", "a2"]))
        assert delivered == 3
        assert [p["text"].split("]")[0] for p in service.sent] == ["[WARNING", "[INFO", "[INFO"]

    def test_severity_from_string(self):
        assert AlertSeverity.from_string("Critical") == AlertSeverity.CRITICAL
        assert AlertSeverity.from_string("nonsense") == AlertSeverity.WARNING
