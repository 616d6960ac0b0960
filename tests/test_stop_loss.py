"""
Tests for the stop-loss monitor and its data-quality gate.

Threshold is 75c on our side. Suspicious readings never sell; low-confidence
readings must survive a re-fetch first.
"""

import pytest
from requests.exceptions import ConnectionError

from core.audit_log import AuditLogger
from core.exceptions import CriticalDataUnavailable
from core.order_state import Order, PlacementState
from core.snapshot import Position
from core.stop_loss import (
    Confidence,
    StopLossConfig,
    StopLossMonitor,
    assess_data_quality,
    classify_confidence,
)
from tests.helpers import make_book, make_quote


def open_position(ledger, exchange, market_id="MKT-A", side="yes", contracts=10, quote=None):
    order = Order(
        market_id=market_id,
        event_id=f"EV-{market_id}",
        side=side,
        limit_price=92,
        units=contracts,
        cost=92 * contracts,
        filled_units=contracts,
        executed_price=92,
        placement_state=PlacementState.CONFIRMED.value,
        external_order_id=f"ex-{market_id}",
    )
    ledger.upsert_order(order)
    exchange.positions.append(Position(market_id, side, contracts, 92 * contracts))
    if quote is not None:
        exchange.markets[market_id] = quote
    return order


@pytest.fixture
def monitor(exchange, ledger, no_sleep):
    return StopLossMonitor(exchange, ledger, policy={}, sleep=no_sleep)


class TestDataQuality:

    def test_clean_quote_is_high_confidence(self):
        validation = assess_data_quality(make_quote("M", 58, 62, last_price=60), None, StopLossConfig())
        assert validation.confidence == Confidence.HIGH
        assert validation.price == 58
        assert validation.method == "market_yes_bid"

    def test_orderbook_bid_preferred(self):
        book = make_book("M", yes=((60, 10),))
        validation = assess_data_quality(make_quote("M", 58, 62, last_price=60), book, StopLossConfig())
        assert validation.price == 60
        assert validation.method == "orderbook_best_bid"

    def test_known_bad_price_is_suspicious(self):
        validation = assess_data_quality(make_quote("M", 50, 52, last_price=51), None, StopLossConfig())
        assert validation.confidence == Confidence.SUSPICIOUS
        assert not validation.is_valid

    def test_last_price_fallback_lowers_confidence(self):
        quote = make_quote("M", 0, 0, last_price=60)
        validation = assess_data_quality(quote, None, StopLossConfig())
        assert validation.price == 60
        assert validation.method == "last_price"
        assert validation.confidence == Confidence.LOW

    def test_no_quote_is_suspicious(self):
        assert assess_data_quality(None, None, StopLossConfig()).confidence == Confidence.SUSPICIOUS

    def test_confidence_ladder(self):
        assert classify_confidence([]) == Confidence.HIGH
        assert classify_confidence(["a"]) == Confidence.MEDIUM
        assert classify_confidence(["a", "b"]) == Confidence.LOW
        assert classify_confidence(["a", "b", "c"]) == Confidence.SUSPICIOUS
        assert classify_confidence([], suspicious=True) == Confidence.SUSPICIOUS


class TestExit:

    def test_sells_below_threshold(self, monitor, ledger, exchange):
        order = open_position(ledger, exchange, quote=make_quote("MKT-A", 58, 62, last_price=60))

        summary = monitor.run()

        assert summary.sold == 1
        sell = exchange.placed[0]
        assert sell["action"] == "sell"
        assert sell["order_type"] == "market"
        assert sell["count"] == 10
        assert sell["client_order_id"].startswith("stoploss_MKT-A_")
        assert ledger.get_order(order.id).exit_reason == "stop_loss"

    def test_no_side_uses_complement_price(self, monitor, ledger, exchange):
        # YES at 30 puts NO at 70, under the threshold
        open_position(ledger, exchange, side="no", quote=make_quote("MKT-A", 30, 32, last_price=31))

        summary = monitor.run()

        assert summary.sold == 1
        assert exchange.placed[0]["side"] == "no"

    def test_holds_above_threshold(self, monitor, ledger, exchange):
        open_position(ledger, exchange, quote=make_quote("MKT-A", 90, 92, last_price=91))

        summary = monitor.run()

        assert summary.held == 1
        assert exchange.placed == []

    def test_dry_run_never_sells(self, exchange, ledger, no_sleep):
        monitor = StopLossMonitor(exchange, ledger, policy={"stop_loss": {"dry_run": True}}, sleep=no_sleep)
        order = open_position(ledger, exchange, quote=make_quote("MKT-A", 58, 62, last_price=60))

        summary = monitor.run()

        assert exchange.placed == []
        assert summary.sells[0]["dry_run"] is True
        assert ledger.get_order(order.id).exit_reason is None

    def test_exited_position_not_checked_again(self, monitor, ledger, exchange):
        open_position(ledger, exchange, quote=make_quote("MKT-A", 58, 62, last_price=60))
        monitor.run()

        summary = monitor.run()

        assert summary.positions_checked == 0
        assert len(exchange.placed) == 1


class TestDataGate:

    def test_suspicious_price_blocks_sale(self, monitor, ledger, exchange):
        open_position(ledger, exchange, quote=make_quote("MKT-A", 50, 52, last_price=51))

        summary = monitor.run()

        assert summary.data_errors == 1
        assert summary.details[0]["action"] == "error"
        assert any("MKT-A" in alert for alert in summary.alerts)
        assert exchange.placed == []

    def test_low_confidence_sells_when_refetch_agrees(self, monitor, ledger, exchange):
        # Diverging last price and thin volume: two issues
        shaky = make_quote("MKT-A", 58, 62, last_price=80, volume_24h=5)
        open_position(ledger, exchange)
        exchange.market_sequence["MKT-A"] = [shaky, shaky]

        summary = monitor.run()

        assert summary.sold == 1
        assert exchange.calls.count("get_market") == 2

    def test_low_confidence_holds_when_refetch_disagrees(self, monitor, ledger, exchange):
        shaky = make_quote("MKT-A", 58, 62, last_price=80, volume_24h=5)
        moved = make_quote("MKT-A", 70, 72, last_price=71)
        open_position(ledger, exchange)
        exchange.market_sequence["MKT-A"] = [shaky, moved]

        summary = monitor.run()

        assert summary.sold == 0
        assert summary.data_errors == 1
        assert "data unstable" in summary.details[0]["reason"]

    def test_low_confidence_recovery_on_refetch_alerts(self, monitor, ledger, exchange):
        shaky = make_quote("MKT-A", 72, 74, last_price=90, volume_24h=5)
        recovered = make_quote("MKT-A", 76, 78, last_price=77)
        open_position(ledger, exchange)
        exchange.market_sequence["MKT-A"] = [shaky, recovered]

        summary = monitor.run()

        assert summary.sold == 0
        assert summary.details[0]["action"] == "hold"
        assert summary.alerts == ["MKT-A: skipped sell, Odds recovered to 76c on re-fetch (was 72c)"]
        assert exchange.placed == []

    def test_identical_improbable_prices_flagged(self, monitor, ledger, exchange):
        for market_id in ("MKT-A", "MKT-B", "MKT-C"):
            open_position(ledger, exchange, market_id=market_id, quote=make_quote(market_id, 30, 32, last_price=31))

        summary = monitor.run()

        assert summary.data_errors == 3
        assert summary.sold == 0
        assert any(alert.startswith("SUSPICIOUS: 3 positions") for alert in summary.alerts)

    def test_market_fetch_failure_is_data_error(self, monitor, ledger, exchange):
        open_position(ledger, exchange)  # no quote registered: 404

        summary = monitor.run()

        assert summary.data_errors == 1
        assert exchange.placed == []


class TestPositions:

    def test_nothing_open(self, monitor, exchange):
        summary = monitor.run()
        assert summary.alerts == ["No open positions to monitor"]
        assert exchange.calls == []

    def test_position_missing_on_exchange_skipped(self, monitor, ledger, exchange):
        open_position(ledger, exchange, quote=make_quote("MKT-A", 58, 62, last_price=60))
        exchange.positions = []

        summary = monitor.run()

        assert summary.positions_checked == 0
        assert exchange.placed == []

    def test_positions_unavailable_aborts(self, monitor, ledger, exchange):
        open_position(ledger, exchange)
        exchange.fail["get_positions"] = ConnectionError("down")

        with pytest.raises(CriticalDataUnavailable):
            monitor.run()


class TestOddsHistory:

    def test_readings_and_exits_audited(self, exchange, ledger, tmp_path, no_sleep):
        audit = AuditLogger(str(tmp_path / "audit"))
        monitor = StopLossMonitor(exchange, ledger, policy={}, audit=audit, sleep=no_sleep)
        open_position(ledger, exchange, quote=make_quote("MKT-A", 58, 62, last_price=60))

        monitor.run()

        reading = audit.get_odds_history("MKT-A")[0]
        assert reading["our_side_price"] == 58
        assert reading["drop_alert"] is True
        assert reading["data_quality"] == "high"
        assert reading["action"] == "sell"
        assert (tmp_path / "audit" / "exits.jsonl").exists()
