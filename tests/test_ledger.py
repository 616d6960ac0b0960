"""
Tests for the JSON order ledger.
"""

import json

import pytest

from core.exceptions import CriticalDataUnavailable
from core.order_state import (
    Batch,
    BlacklistEntry,
    Order,
    OrderStateMachine,
    PlacementState,
    ResultState,
    SettlementState,
)
from infra.ledger import LedgerStore, get_ledger


def make_order(market_id="MKT-A", **overrides) -> Order:
    fields = dict(market_id=market_id, event_id=f"EV-{market_id}", side="yes", limit_price=92, units=10)
    fields.update(overrides)
    return Order(**fields)


class TestOrders:

    def test_missing_file_is_empty(self, ledger):
        assert ledger.orders() == []
        assert ledger.write_count == 0

    def test_upsert_and_reload(self, ledger, tmp_path):
        order = make_order()
        ledger.upsert_order(order)

        reopened = LedgerStore(ledger_file=str(tmp_path / "ledger.json"))
        assert reopened.get_order(order.id) == order
        assert ledger.write_count == 1

    def test_filter_by_state_and_predicate(self, ledger):
        a = make_order("A")
        b = make_order("B", placement_state=PlacementState.PLACED.value)
        ledger.upsert_orders([a, b])

        placed = ledger.orders(placement_states=[PlacementState.PLACED.value])
        assert [o.market_id for o in placed] == ["B"]
        assert [o.market_id for o in ledger.orders(predicate=lambda o: o.market_id == "A")] == ["A"]

    def test_upsert_orders_empty_does_not_write(self, ledger):
        ledger.upsert_orders([])
        assert ledger.write_count == 0

    def test_corrupt_file_aborts(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("{not json")
        with pytest.raises(CriticalDataUnavailable):
            LedgerStore(ledger_file=str(path)).orders()

    def test_atomic_write_leaves_valid_json(self, ledger, tmp_path):
        ledger.upsert_order(make_order())
        data = json.loads((tmp_path / "ledger.json").read_text())
        assert set(data) >= {"orders", "batches", "blacklist", "updated_at"}
        assert not list(tmp_path.glob(".ledger_*"))


class TestStaleWrites:

    def settled_copies(self, ledger):
        order = make_order(placement_state=PlacementState.CONFIRMED.value, filled_units=10)
        ledger.upsert_order(order)
        older, newer = ledger.get_order(order.id), ledger.get_order(order.id)

        machine = OrderStateMachine()
        machine.record_result(newer, won=True)
        machine.record_settlement(newer, fee=7)
        ledger.upsert_order(newer)
        return older, newer

    def test_stale_copy_cannot_undo_settlement(self, ledger):
        older, newer = self.settled_copies(ledger)
        older.filled_units = 9

        ledger.upsert_order(older)

        stored = ledger.get_order(older.id)
        assert stored.filled_units == 9
        assert stored.result_state == ResultState.WON.value
        assert stored.settlement_state == SettlementState.SUCCESS.value
        assert stored.pnl == newer.pnl
        assert stored.fee == 7

    def test_batch_write_also_guarded(self, ledger):
        older, _ = self.settled_copies(ledger)

        ledger.upsert_orders([older])

        assert ledger.get_order(older.id).settlement_state == SettlementState.SUCCESS.value

    def test_lost_result_kept(self, ledger):
        order = make_order(placement_state=PlacementState.CONFIRMED.value, filled_units=10)
        ledger.upsert_order(order)
        older, newer = ledger.get_order(order.id), ledger.get_order(order.id)
        OrderStateMachine().record_result(newer, won=False)
        ledger.upsert_order(newer)

        ledger.upsert_order(older)

        stored = ledger.get_order(order.id)
        assert stored.result_state == ResultState.LOST.value
        assert stored.settlement_state == SettlementState.CLOSED.value

    def test_fee_backfill_still_applied(self, ledger):
        _, newer = self.settled_copies(ledger)
        OrderStateMachine().record_settlement(newer, fee=9)

        ledger.upsert_order(newer)

        assert ledger.get_order(newer.id).fee == 9


class TestBatches:

    def test_create_batch_links_orders(self, ledger):
        orders = [make_order("A"), make_order("B")]
        batch = ledger.create_batch(Batch(batch_key="2026-10-19"), orders)

        assert batch.order_ids == [o.id for o in orders]
        assert {o.batch_id for o in ledger.batch_orders(batch.id)} == {batch.id}

    def test_same_key_returns_existing_without_write(self, ledger):
        first = ledger.create_batch(Batch(batch_key="k"), [make_order("A")])
        writes = ledger.write_count

        second = ledger.create_batch(Batch(batch_key="k"), [make_order("B")])

        assert second.id == first.id
        assert ledger.write_count == writes
        assert len(ledger.orders()) == 1

    def test_pause_and_resume(self, ledger):
        batch = ledger.create_batch(Batch(batch_key="k"), [make_order()])
        assert ledger.set_paused(batch.id, True).is_paused is True
        assert ledger.get_batch(batch.id).is_paused is True
        assert ledger.set_paused(batch.id, False).is_paused is False

    def test_pause_unknown_batch(self, ledger):
        with pytest.raises(KeyError):
            ledger.set_paused("nope", True)


class TestBlacklist:

    def test_blacklist_and_clear(self, ledger):
        ledger.blacklist_market(BlacklistEntry(market_id="A", reason="unfilled"))
        ledger.blacklist_market(BlacklistEntry(market_id="B", reason="unfilled"))

        assert ledger.is_blacklisted("A")
        assert ledger.blacklisted_markets() == {"A", "B"}
        assert ledger.clear_blacklist("A") == 1
        assert ledger.blacklisted_markets() == {"B"}
        assert ledger.clear_blacklist() == 1
        assert ledger.blacklist_entries() == []


class TestSingleton:

    def test_get_ledger_reuses_instance(self, tmp_path):
        first = get_ledger(str(tmp_path / "l.json"))
        assert get_ledger() is first
