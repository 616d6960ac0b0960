"""
favfund Core: Reconciliation Engine

Makes the ledger agree with exchange truth after any submission, crash or
missed update.

Per ledger order with an exchange id:
1. fills exist → CONFIRMED, cost = VWAP x max(fill count, order filled_count)
2. exchange order resting → PLACED (stale CONFIRMED is downgraded)
3. exchange order cancelled/expired → settlement CLOSED
4. unknown to the exchange → not_found warning, left for operator review

Buy fills and exchange orders with no ledger record are reported as orphaned.

Then settlements (and, optionally, market results) finalize WON/LOST,
payout, fee and PnL. Running twice with no new exchange data writes nothing.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

from requests import exceptions as requests_exceptions

from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.order_state import Order, OrderStateMachine, PlacementState, ResultState
from core.snapshot import NO, YES, ExchangeOrder, Fill, Settlement
from infra.ledger import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    total_ledger_orders: int = 0
    confirmed: int = 0
    placed_resting: int = 0
    cancelled: int = 0
    not_found: int = 0
    never_sent: int = 0
    updated: int = 0
    results_recorded: int = 0
    settled_won: int = 0
    settled_lost: int = 0
    fees_updated: int = 0
    total_fills: int = 0
    total_exchange_orders: int = 0
    total_settlements: int = 0
    orphaned: int = 0
    not_found_orders: List[str] = field(default_factory=list)
    orphaned_orders: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            key: value for key, value in self.__dict__.items()
            if isinstance(value, int)
        }


def fill_totals(fills: List[Fill]) -> Tuple[int, int]:
    """
    Total filled contracts and their volume-weighted average price.

    Returns:
        (count, vwap_cents); vwap is 0 when nothing filled
    """
    count = sum(f.count for f in fills)
    if count <= 0:
        return 0, 0
    notional = sum(f.count * f.price for f in fills)
    return count, int(round(notional / count))


class ReconciliationEngine:
    """
    Aligns ledger orders with exchange orders, fills and settlements.

    Every write goes through the ledger and happens only when a record
    actually changed.
    """

    def __init__(self, exchange, ledger: LedgerStore, policy: Optional[Dict] = None,
                 sleep=time.sleep):
        self.exchange = exchange
        self.ledger = ledger
        self.policy = policy or {}
        self.state_machine = OrderStateMachine()
        self._sleep = sleep

        reconcile_config = self.policy.get("reconcile", {})
        self.check_market_results = bool(reconcile_config.get("check_market_results", True))
        self.market_delay_seconds = float(reconcile_config.get("market_delay_seconds", 0.1))

    def reconcile(self) -> ReconcileSummary:
        """
        Full pass: orders and fills, then settlements and market results.

        Raises:
            CriticalDataUnavailable: any exchange list cannot be fetched
        """
        summary = ReconcileSummary()
        try:
            fills = self.exchange.list_fills()
            exchange_orders = self.exchange.list_orders()
            settlements = self.exchange.list_settlements()
        except (ExchangeError, requests_exceptions.RequestException) as e:
            raise CriticalDataUnavailable("exchange_history", e) from e

        summary.total_fills = len(fills)
        summary.total_exchange_orders = len(exchange_orders)
        summary.total_settlements = len(settlements)

        self.reconcile_orders(fills, exchange_orders, summary)
        self.reconcile_settlements(settlements, summary)
        if self.check_market_results:
            self.reconcile_market_results(settlements, summary)

        logger.info(
            "Reconcile: %d ledger orders, %d confirmed, %d resting, %d cancelled, "
            "%d not found, %d orphaned, %d never sent, %d updated, %d errors",
            summary.total_ledger_orders, summary.confirmed, summary.placed_resting,
            summary.cancelled, summary.not_found, summary.orphaned, summary.never_sent, summary.updated,
            len(summary.errors),
        )
        return summary

    def reconcile_orders(self, fills: List[Fill], exchange_orders: List[ExchangeOrder],
                         summary: ReconcileSummary) -> None:
        fills_by_order: Dict[str, List[Fill]] = defaultdict(list)
        for fill in fills:
            if fill.action == "buy":
                fills_by_order[fill.order_id].append(fill)
        orders_by_id = {o.order_id: o for o in exchange_orders}

        ledger_orders = self.ledger.orders()
        summary.total_ledger_orders = len(ledger_orders)

        for order in ledger_orders:
            if not order.external_order_id:
                if order.is_submittable():
                    summary.never_sent += 1
                continue
            try:
                action, changed = self._reconcile_order(
                    order,
                    fills_by_order.get(order.external_order_id, []),
                    orders_by_id.get(order.external_order_id),
                    summary,
                )
            except ValueError as e:
                logger.warning("Reconcile of %s (%s) failed: %s", order.id, order.market_id, e)
                summary.errors.append(f"{order.market_id}: {e}")
                continue

            if changed:
                self.ledger.upsert_order(order)
                summary.updated += 1
            summary.details.append({
                "order_id": order.id,
                "market_id": order.market_id,
                "external_order_id": order.external_order_id,
                "placement_state": order.placement_state,
                "action": action,
            })

        self._find_orphans(fills_by_order, exchange_orders, ledger_orders, summary)

    def _find_orphans(self, fills_by_order: Dict[str, List[Fill]], exchange_orders: List[ExchangeOrder],
                      ledger_orders: List[Order], summary: ReconcileSummary) -> None:
        """Buy fills and exchange orders that no ledger order accounts for."""
        known = {o.external_order_id for o in ledger_orders if o.external_order_id}
        orphans: Dict[str, str] = {}
        for order_id, order_fills in fills_by_order.items():
            if order_id not in known:
                orphans[order_id] = order_fills[0].market_id
        for exchange_order in exchange_orders:
            if exchange_order.action == "buy" and exchange_order.order_id not in known:
                orphans.setdefault(exchange_order.order_id, exchange_order.market_id)

        for order_id, market_id in orphans.items():
            logger.warning("Exchange order %s (%s) has no ledger record", order_id, market_id)
            summary.orphaned_orders.append(order_id)
        summary.orphaned = len(orphans)

    def _reconcile_order(self, order: Order, fills: List[Fill], exchange_order: Optional[ExchangeOrder],
                         summary: ReconcileSummary) -> Tuple[str, bool]:
        """Returns (action taken, whether the order changed)."""
        if fills:
            fill_count, vwap = fill_totals(fills)
            reported = exchange_order.filled_count if exchange_order else 0
            # Fill reporting can lag the order record; trust the larger count
            units = max(fill_count, reported)
            summary.confirmed += 1
            return "confirmed", self.state_machine.confirm_fill(order, units, vwap)

        if exchange_order is None:
            summary.not_found += 1
            summary.not_found_orders.append(order.id)
            logger.warning(
                "Order %s (%s) has exchange id %s unknown to the exchange",
                order.id, order.market_id, order.external_order_id,
            )
            return "not_found", False

        if exchange_order.is_resting:
            summary.placed_resting += 1
            if order.placement_state == PlacementState.CONFIRMED.value:
                return "downgraded_to_placed", self.state_machine.downgrade_to_placed(order)
            if order.is_submittable():
                return "placed", self.state_machine.transition(order, PlacementState.PLACED)
            return "resting", False

        if exchange_order.is_cancelled:
            summary.cancelled += 1
            changed = self.state_machine.close_unfilled(order, reason=f"exchange status {exchange_order.status}")
            return "cancelled", changed

        if exchange_order.is_executed and exchange_order.filled_count > 0:
            # Executed, fills not visible yet
            summary.confirmed += 1
            changed = self.state_machine.confirm_fill(
                order, exchange_order.filled_count, exchange_order.price or order.limit_price
            )
            return "executed_no_fills", changed

        return "none", False

    def reconcile_settlements(self, settlements: List[Settlement], summary: ReconcileSummary) -> None:
        """Finalize confirmed orders whose market has a settlement record."""
        by_market = {s.market_id: s for s in settlements}
        candidates = self.ledger.orders(
            placement_states=[PlacementState.CONFIRMED.value],
            predicate=lambda o: o.market_id in by_market and o.exit_reason is None,
        )

        groups: Dict[str, List[Order]] = defaultdict(list)
        for order in candidates:
            groups[order.market_id].append(order)

        for market_id, orders in groups.items():
            settlement = by_market[market_id]
            if settlement.result_side not in (YES, NO):
                logger.warning("Settlement for %s has no usable result (%r)", market_id, settlement.result_side)
                summary.errors.append(f"{market_id}: settlement result {settlement.result_side!r}")
                continue

            for order, fee in zip(orders, self._split_fee(settlement.fee, orders)):
                won = order.side == settlement.result_side
                decided = order.result_state != ResultState.UNDECIDED.value
                if decided and won != (order.result_state == ResultState.WON.value):
                    logger.warning(
                        "Settlement for %s (%s) contradicts recorded result %s",
                        order.id, market_id, order.result_state,
                    )
                    summary.errors.append(f"{market_id}: settlement contradicts result {order.result_state}")
                    continue
                changed = False
                fee_before = order.fee
                settled_before = order.settlement_state
                if self.state_machine.record_result(order, won):
                    summary.results_recorded += 1
                    changed = True
                if self.state_machine.record_settlement(order, fee):
                    changed = True
                    if order.fee != fee_before:
                        summary.fees_updated += 1
                if changed:
                    if settled_before != order.settlement_state:
                        if order.result_state == ResultState.WON.value:
                            summary.settled_won += 1
                        else:
                            summary.settled_lost += 1
                    self.ledger.upsert_order(order)
                    summary.updated += 1

    @staticmethod
    def _split_fee(fee: int, orders: List[Order]) -> List[int]:
        """Spread one market's settlement fee over its ledger orders by contracts held."""
        if len(orders) == 1:
            return [fee]
        total_units = sum(o.held_units for o in orders) or len(orders)
        shares = [fee * (o.held_units or 1) // total_units for o in orders]
        shares[-1] += fee - sum(shares)
        return shares

    def reconcile_market_results(self, settlements: List[Settlement], summary: ReconcileSummary) -> None:
        """
        Record WON/LOST from finalized markets that have no settlement yet.

        WON stays at settlement PENDING until the payout shows up as a settlement.
        """
        settled_markets = {s.market_id for s in settlements}
        open_orders = self.ledger.orders(
            placement_states=[PlacementState.CONFIRMED.value],
            predicate=lambda o: o.is_open_position() and o.market_id not in settled_markets,
        )
        by_market: Dict[str, List[Order]] = defaultdict(list)
        for order in open_orders:
            by_market[order.market_id].append(order)

        for index, (market_id, orders) in enumerate(by_market.items()):
            if index:
                self._sleep(self.market_delay_seconds)
            try:
                quote = self.exchange.get_market(market_id)
            except (ExchangeError, requests_exceptions.RequestException) as e:
                logger.warning("Market lookup for %s failed: %s", market_id, e)
                summary.errors.append(f"{market_id}: {e}")
                continue
            if quote.result not in (YES, NO):
                continue
            for order in orders:
                if self.state_machine.record_result(order, order.side == quote.result):
                    summary.results_recorded += 1
                    self.ledger.upsert_order(order)
                    summary.updated += 1
