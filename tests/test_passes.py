"""
End-to-end tests for the pass runner against the in-memory exchange:
allocate -> submit -> reconcile, plus abort handling and the audit, alert
and metrics hooks every pass publishes to.
"""
import pytest
from requests.exceptions import ConnectionError

from core.allocator import Candidate
from core.audit_log import AuditLogger
from core.order_state import BlacklistEntry, Order, PlacementState
from core.passes import PassRunner
from core.snapshot import Fill, Position
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from tests.helpers import resting_order

POLICY = {
    "execution": {"order_delay_seconds": 0},
    "reconcile": {"check_market_results": False},
}


def candidate(market_id, price, event_id=None) -> Candidate:
    return Candidate(
        market_id=market_id,
        event_id=event_id or f"EV-{market_id}",
        side="yes",
        price_cents=price,
        open_interest=50000,
        volume_24h=5000,
        orderbook_depth_at_price=1000,
        spread_cents=2,
    )


CANDIDATES = [candidate("A", 90), candidate("B", 95, "EV-BC"), candidate("C", 92, "EV-BC")]


@pytest.fixture
def alerts():
    return AlertService(AlertConfig(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True))


@pytest.fixture
def runner(exchange, ledger, alerts, tmp_path, no_sleep):
    return PassRunner(
        exchange,
        ledger,
        policy=POLICY,
        mode="LIVE",
        alerts=alerts,
        metrics=MetricsRecorder(enabled=False),
        audit=AuditLogger(str(tmp_path / "audit")),
        sleep=no_sleep,
    )


class TestAllocatePass:

    def test_creates_batch_of_pending_orders(self, runner, ledger):
        result = runner.allocate(CANDIDATES, batch_key="2026-10-19")

        assert result.status == "ok"
        assert result.counts["funded"] == 2
        assert result.counts["hard_cap"] == 3000
        assert result.counts["total_cost"] == 33 * 90 + 31 * 95
        batch = ledger.get_batch_by_key("2026-10-19")
        assert {o.market_id for o in ledger.batch_orders(batch.id)} == {"A", "B"}
        assert all(o.placement_state == PlacementState.PENDING.value for o in ledger.orders())

    def test_same_key_is_idempotent(self, runner, ledger):
        runner.allocate(CANDIDATES, batch_key="k")
        result = runner.allocate(CANDIDATES, batch_key="k")

        assert result.counts["duplicate"] == 1
        assert len(ledger.orders()) == 2

    def test_blacklisted_market_not_funded(self, runner, ledger):
        ledger.blacklist_market(BlacklistEntry(market_id="A", reason="unfilled"))

        result = runner.allocate(CANDIDATES, batch_key="k")

        assert result.counts["funded"] == 1
        assert result.actions[0]["rejections"]["A"] == "blacklisted"

    def test_resting_buys_reduce_headroom(self, runner, exchange):
        exchange.orders = [resting_order("ex-old", "A", 90, 30)]

        result = runner.allocate([candidate("A", 90)], batch_key="k")

        line = result.actions[0]["lines"][0]
        assert line["units"] == 3

    def test_nothing_funded_alerts(self, runner, alerts):
        result = runner.allocate([candidate("LOW", 80)], batch_key="k")

        assert result.counts["funded"] == 0
        assert "No candidates funded" in result.alerts
        assert any("No candidates funded" in p["text"] for p in alerts.sent)

    def test_balance_unavailable_aborts(self, runner, exchange, alerts, ledger):
        exchange.fail["get_balance"] = ConnectionError("down")

        result = runner.allocate(CANDIDATES, batch_key="k")

        assert result.aborted
        assert result.status == "aborted"
        assert ledger.orders() == []
        assert alerts.sent[0]["text"].startswith("[CRITICAL] allocate pass aborted")
        assert runner.metrics.sample("favfund_pass_total", {"pass_name": "allocate", "status": "aborted"}) == 1.0


class TestLifecycle:

    def test_allocate_submit_reconcile(self, runner, ledger, exchange):
        runner.allocate(CANDIDATES, batch_key="k")

        submitted = runner.submit_pending()
        assert submitted.counts["placed"] == 2
        assert submitted.counts["batches"] == 1

        by_market = {o.market_id: o for o in ledger.orders()}
        exchange.fills = [
            Fill(order_id=by_market["A"].external_order_id, market_id="A", count=33, price=90, side="yes", action="buy"),
            Fill(order_id=by_market["B"].external_order_id, market_id="B", count=31, price=94, side="yes", action="buy"),
        ]

        reconciled = runner.reconcile()

        assert reconciled.counts["confirmed"] == 2
        stored = {o.market_id: o for o in ledger.orders()}
        assert stored["A"].cost == 2970
        assert stored["B"].cost == 31 * 94

    def test_queued_order_placed_when_headroom_returns(self, runner, ledger, exchange):
        runner.allocate([candidate("A", 90)], batch_key="k")
        exchange.positions = [Position("A", "yes", 1, 100)]

        first = runner.submit_pending()

        assert first.counts["queued"] == 1
        batch = ledger.get_batch_by_key("k")
        assert ledger.get_batch(batch.id).executed_at is None
        assert ledger.batch_orders(batch.id)[0].placement_state == PlacementState.QUEUE.value

        exchange.positions = []
        second = runner.submit_pending()

        assert second.counts["batches"] == 1
        assert ledger.batch_orders(batch.id)[0].placement_state == PlacementState.PLACED.value
        assert ledger.get_batch(batch.id).executed_at is not None

    def test_unknown_batch_reported(self, runner):
        result = runner.submit_pending(batch_id="missing")
        assert result.status == "partial"
        assert result.errors == ["Unknown batch missing"]

    def test_paused_batch_alert(self, runner, ledger, exchange):
        runner.allocate(CANDIDATES, batch_key="k")
        batch = ledger.get_batch_by_key("k")
        ledger.set_paused(batch.id, True)

        result = runner.submit_pending()

        assert f"Batch {batch.id} is paused" in result.alerts
        assert exchange.placed == []

    def test_guard_rejections_counted(self, runner, ledger, exchange):
        runner.allocate(CANDIDATES, batch_key="k")
        # Operator edit pushes one allocated order under the floor
        batch = ledger.get_batch_by_key("k")
        order = ledger.batch_orders(batch.id)[0]
        order.limit_price = 85
        ledger.upsert_order(order)

        result = runner.submit_pending(batch.id)

        assert result.counts["cancelled"] == 1
        assert runner.metrics.sample("favfund_guard_rejections_total", {"guard": "min_price"}) == 1.0

    def test_stale_cancel_alerted(self, runner, ledger, exchange):
        order = Order(market_id="A", event_id="EV-A", side="yes", limit_price=92, units=10,
                      placement_state=PlacementState.PLACED.value, external_order_id="ex-A")
        ledger.upsert_order(order)
        exchange.orders = [resting_order("ex-A", "A", 92, 10, age_minutes=300)]

        result = runner.rebalance()

        assert result.counts["cancelled"] == 1
        assert result.alerts == ["Cancelled stale order in A: Unfilled for 300 minutes"]
        assert ledger.is_blacklisted("A")

    def test_not_found_orders_alerted(self, runner, ledger):
        ledger.upsert_order(Order(market_id="A", event_id="EV-A", side="yes", limit_price=92, units=10,
                                  placement_state=PlacementState.PLACED.value, external_order_id="ex-gone"))

        result = runner.reconcile()

        assert result.counts["not_found"] == 1
        assert result.alerts[0].startswith("1 orders unknown to the exchange")

    def test_orders_missing_from_ledger_alerted(self, runner, exchange, alerts):
        exchange.orders = [resting_order("ex-stray", "A", 92, 10)]

        result = runner.reconcile()

        assert result.counts["orphaned"] == 1
        assert result.alerts == ["1 exchange orders missing from the ledger: ex-stray"]
        assert any("ex-stray" in p["text"] for p in alerts.sent)


class TestPublishing:

    def test_every_pass_audited(self, runner):
        runner.reconcile()
        runner.monitor_stop_loss()

        names = [entry["name"] for entry in runner.audit.get_recent_passes()]
        assert names == ["stop_loss", "reconcile"]

    def test_metrics_observe_counts(self, runner):
        runner.allocate(CANDIDATES, batch_key="k")
        assert runner.metrics.sample("favfund_pass_count", {"pass_name": "allocate", "count": "funded"}) == 2.0
        assert runner.metrics.last_pass("allocate").status == "ok"

    def test_dry_run_mode_never_sells(self, exchange, ledger, no_sleep):
        runner = PassRunner(exchange, ledger, policy=POLICY, mode="DRY_RUN", sleep=no_sleep)
        assert runner.stop_loss.config.dry_run is True
