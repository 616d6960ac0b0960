"""
favfund Core: Execution Engine

Drives ledger orders through submission, cancellation and resting-order
management.

Before any live submission two guards must pass:
- min-price guard: limit price below the floor cancels the order
- hard-cap guard: market and event exposure, re-read from the exchange at
  guard time, plus this order's cost must stay within the hard cap;
  violation queues the order for a later pass

Client order ids are assigned once and persisted before the first send, so a
retried submission cannot create a second exchange order.
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from requests import exceptions as requests_exceptions

from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.order_state import (
    Batch,
    BlacklistEntry,
    Order,
    OrderStateMachine,
    PlacementState,
)
from core.snapshot import ExchangeOrder, event_exposure, market_exposure, resting_buy_cost
from infra.ledger import LedgerStore

logger = logging.getLogger(__name__)

MODES = ("DRY_RUN", "PAPER", "LIVE")


@dataclass
class ExecutionResult:
    """Outcome of one order action"""
    order_id: str
    market_id: str
    action: str  # "placed" | "confirmed" | "cancelled" | "queued" | "failed" | "improved" | "dry_run" | "skipped"
    success: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    guard: Optional[str] = None  # "min_price" | "hard_cap" when a guard blocked the order
    external_order_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "market_id": self.market_id,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "error": self.error,
            "external_order_id": self.external_order_id,
            "guard": self.guard,
        }


@dataclass
class GuardResult:
    passed: bool
    guard: Optional[str] = None
    state: Optional[PlacementState] = None
    reason: Optional[str] = None
    hard_cap: int = 0
    market_exposure: int = 0
    event_exposure: int = 0


class ExecutionEngine:
    """
    Order execution engine.

    Responsibilities:
    - Pre-submission guards (min price, hard cap on live exposure)
    - Limit order submission with persisted client ids
    - Cancel-then-mark cancellation
    - Resting order price improvement and stale-order blacklisting

    Safety:
    - DRY_RUN mode never touches the exchange or the ledger
    - Guards re-read balance, positions and resting orders for every order
    """

    def __init__(self, mode: str = "DRY_RUN", exchange=None, policy: Optional[Dict] = None,
                 ledger: Optional[LedgerStore] = None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize execution engine.

        Args:
            mode: "DRY_RUN" | "PAPER" | "LIVE"
            exchange: KalshiExchange (or compatible) instance
            policy: Policy configuration dict
            ledger: Order ledger
        """
        self.mode = mode.upper()
        if self.mode not in MODES:
            raise ValueError(f"Unknown execution mode {mode!r}; expected one of {MODES}")
        self.exchange = exchange
        self.policy = policy or {}
        self.ledger = ledger
        self.state_machine = OrderStateMachine()
        self._sleep = sleep

        allocator_config = self.policy.get("allocator", {})
        execution_config = self.policy.get("execution", {})
        rebalance_config = self.policy.get("rebalance", {})

        self.min_price_cents = int(allocator_config.get("min_price_cents", 90))
        self.max_price_cents = int(allocator_config.get("max_price_cents", 99))
        self.max_position_pct = float(allocator_config.get("max_position_pct", 0.03))

        self.order_delay_seconds = float(execution_config.get("order_delay_seconds", 0.2))
        self.client_id_prefix = execution_config.get("client_id_prefix", "live")

        self.improve_after_minutes = float(rebalance_config.get("improve_after_minutes", 60))
        self.cancel_after_minutes = float(rebalance_config.get("cancel_after_minutes", 240))
        self.price_improvement_cents = int(rebalance_config.get("price_improvement_cents", 1))

        logger.info(
            "ExecutionEngine initialized (mode=%s, min_price=%dc, max_position_pct=%.3f)",
            self.mode, self.min_price_cents, self.max_position_pct,
        )

    # Guards

    def _event_map(self) -> Dict[str, str]:
        """market_id -> event_id for every market the ledger has touched"""
        return {o.market_id: o.event_id for o in self.ledger.orders()}

    def check_guards(self, order: Order, cost: Optional[int] = None,
                     event_of: Optional[Dict[str, str]] = None,
                     exclude_external_id: Optional[str] = None) -> GuardResult:
        """
        Evaluate both submission guards against live exchange state.

        Raises:
            CriticalDataUnavailable: balance or positions cannot be fetched
        """
        if order.limit_price < self.min_price_cents:
            return GuardResult(
                passed=False,
                guard="min_price",
                state=PlacementState.CANCELLED,
                reason=f"Price {order.limit_price}c below minimum {self.min_price_cents}c",
            )

        cost = order.planned_cost if cost is None else cost
        event_of = event_of if event_of is not None else self._event_map()

        try:
            balance = self.exchange.get_balance()
            positions = self.exchange.get_positions()
        except (ExchangeError, requests_exceptions.RequestException) as e:
            raise CriticalDataUnavailable("positions", e) from e

        try:
            resting = [
                o for o in self.exchange.list_orders(status="resting")
                if o.order_id != exclude_external_id
            ]
        except (ExchangeError, requests_exceptions.RequestException) as e:
            raise CriticalDataUnavailable("resting_orders", e) from e

        hard_cap = int(math.floor(balance.total * self.max_position_pct))
        event_markets = {m for m, e in event_of.items() if e == order.event_id} | {order.market_id}

        market_exp = market_exposure(positions, order.market_id) + resting_buy_cost(resting, [order.market_id])
        event_exp = (
            event_exposure(positions, lambda m: event_of.get(m, m), order.event_id)
            + resting_buy_cost(resting, event_markets)
        )

        guard = GuardResult(
            passed=True,
            hard_cap=hard_cap,
            market_exposure=market_exp,
            event_exposure=event_exp,
        )
        if market_exp + cost > hard_cap:
            guard.passed = False
            guard.guard = "hard_cap"
            guard.state = PlacementState.QUEUE
            guard.reason = f"Market exposure {market_exp}c + {cost}c exceeds hard cap {hard_cap}c"
        elif event_exp + cost > hard_cap:
            guard.passed = False
            guard.guard = "hard_cap"
            guard.state = PlacementState.QUEUE
            guard.reason = f"Event {order.event_id} exposure {event_exp}c + {cost}c exceeds hard cap {hard_cap}c"
        return guard

    # Submission

    def submit_pending(self, batch: Batch) -> List[ExecutionResult]:
        """
        Send every pending or queued order of a batch that passes the guards.

        Raises:
            CriticalDataUnavailable: live exposure cannot be read
        """
        if batch.is_paused:
            logger.info("Batch %s is paused; nothing submitted", batch.id)
            return []

        orders = [o for o in self.ledger.batch_orders(batch.id) if o.is_submittable()]
        event_of = self._event_map()
        results: List[ExecutionResult] = []

        for index, order in enumerate(orders):
            if index:
                self._sleep(self.order_delay_seconds)

            guard = self.check_guards(order, event_of=event_of)
            if not guard.passed:
                results.append(self._apply_guard_violation(order, guard))
                continue

            results.append(self.submit_order(order))

        if self.mode != "DRY_RUN":
            self._mark_batch_executed(batch)
        return results

    def _apply_guard_violation(self, order: Order, guard: GuardResult) -> ExecutionResult:
        action = "cancelled" if guard.state == PlacementState.CANCELLED else "queued"
        logger.warning("Guard blocked %s (%s): %s", order.id, order.market_id, guard.reason)
        if self.mode == "DRY_RUN":
            return ExecutionResult(order.id, order.market_id, "dry_run", False, reason=guard.reason, guard=guard.guard)

        changed = self.state_machine.transition(order, guard.state, reason=guard.reason)
        if changed:
            self.ledger.upsert_order(order)
        return ExecutionResult(order.id, order.market_id, action, False, reason=guard.reason, guard=guard.guard)

    def submit_order(self, order: Order, price: Optional[int] = None) -> ExecutionResult:
        """Submit one limit buy and record the exchange's answer on the ledger."""
        price = order.limit_price if price is None else price

        if self.mode == "DRY_RUN":
            logger.info("DRY_RUN: would buy %dx %s %s @ %dc", order.units, order.side, order.market_id, price)
            return ExecutionResult(order.id, order.market_id, "dry_run", True, reason=f"{order.units}x @ {price}c")

        if order.units <= 0:
            self.state_machine.transition(order, PlacementState.CANCELLED, reason="zero units allocated")
            self.ledger.upsert_order(order)
            return ExecutionResult(order.id, order.market_id, "cancelled", False, reason="zero units allocated")

        if not order.client_order_id:
            order.client_order_id = f"{self.client_id_prefix}_{order.id}_{int(time.time() * 1000)}"
            self.ledger.upsert_order(order)

        try:
            placed = self.exchange.place_order(
                market_id=order.market_id,
                side=order.side,
                count=order.units,
                client_order_id=order.client_order_id,
                action="buy",
                order_type="limit",
                price=price,
            )
        except ExchangeError as e:
            logger.error("Exchange rejected %s (%s): %s", order.id, order.market_id, e)
            self.state_machine.transition(order, PlacementState.FAILED, reason=str(e))
            self.ledger.upsert_order(order)
            return ExecutionResult(order.id, order.market_id, "failed", False, error=str(e))
        except requests_exceptions.RequestException as e:
            # Outcome unknown; the persisted client id keeps a retry idempotent
            logger.error("Submission of %s (%s) failed after retries: %s", order.id, order.market_id, e)
            return ExecutionResult(order.id, order.market_id, "skipped", False, error=str(e))

        return self._record_submission(order, placed, price)

    def _record_submission(self, order: Order, placed: ExchangeOrder, price: int) -> ExecutionResult:
        order.external_order_id = placed.order_id
        order.limit_price = price

        if placed.is_executed or placed.filled_count > 0:
            filled = placed.filled_count or order.units
            self.state_machine.confirm_fill(order, filled, placed.price or price)
            action = "confirmed"
        elif placed.is_resting:
            self.state_machine.transition(order, PlacementState.PLACED)
            order.cost = order.planned_cost
            action = "placed"
        elif placed.is_cancelled:
            self.state_machine.close_unfilled(order, reason=f"exchange returned {placed.status}")
            action = "cancelled"
        else:
            self.state_machine.transition(order, PlacementState.PLACED)
            action = "placed"
            logger.warning("Unexpected order status %r for %s; treating as placed", placed.status, order.id)

        self.ledger.upsert_order(order)
        logger.info("Order %s (%s) %s: %dx @ %dc -> %s", order.id, order.market_id, action, order.units, price, placed.order_id)
        return ExecutionResult(order.id, order.market_id, action, True, external_order_id=placed.order_id)

    def _mark_batch_executed(self, batch: Batch) -> None:
        fresh = self.ledger.get_batch(batch.id) or batch
        if fresh.executed_at is not None:
            return
        # Queued orders wait for headroom, so the batch stays open for them
        remaining = [o for o in self.ledger.batch_orders(batch.id) if o.is_submittable()]
        if not remaining:
            fresh.executed_at = datetime.now(timezone.utc)
            self.ledger.save_batch(fresh)
            batch.executed_at = fresh.executed_at

    # Cancellation

    def cancel_order(self, order: Order, reason: str) -> ExecutionResult:
        """
        Cancel on the exchange first; mark cancelled locally only on success.

        If the exchange reports the order gone (already filled or cancelled),
        the ledger is left for the reconciliation pass to resolve.
        """
        if order.placement_state in (PlacementState.PENDING.value, PlacementState.QUEUE.value):
            if self.mode != "DRY_RUN" and self.state_machine.transition(order, PlacementState.CANCELLED, reason=reason):
                self.ledger.upsert_order(order)
            return ExecutionResult(order.id, order.market_id, "cancelled", True, reason=reason)

        if order.placement_state != PlacementState.PLACED.value or not order.external_order_id:
            return ExecutionResult(order.id, order.market_id, "skipped", False,
                                   reason=f"not cancellable in state {order.placement_state}")

        if self.mode == "DRY_RUN":
            logger.info("DRY_RUN: would cancel %s (%s)", order.external_order_id, order.market_id)
            return ExecutionResult(order.id, order.market_id, "dry_run", True, reason=reason)

        response = self.exchange.cancel_order(order.external_order_id)
        if not response.get("success"):
            error = "order not found on exchange" if response.get("not_found") else response.get("error")
            logger.warning("Cancel of %s (%s) did not succeed: %s", order.id, order.market_id, error)
            return ExecutionResult(order.id, order.market_id, "cancelled", False, reason=reason, error=error)

        self.state_machine.transition(order, PlacementState.CANCELLED, reason=reason)
        self.ledger.upsert_order(order)
        return ExecutionResult(order.id, order.market_id, "cancelled", True, reason=reason,
                               external_order_id=order.external_order_id)

    # Resting order management

    def manage_resting_orders(self, now: Optional[datetime] = None) -> List[ExecutionResult]:
        """
        Walk placed orders still resting on the exchange.

        - resting past cancel_after_minutes: cancel and blacklist the market
        - resting past improve_after_minutes: re-price +1c (capped) if the
          hard cap still allows it
        """
        now = now or datetime.now(timezone.utc)
        placed = self.ledger.orders(placement_states=[PlacementState.PLACED.value])
        if not placed:
            return []

        try:
            live = {o.order_id: o for o in self.exchange.list_orders(status="resting")}
        except (ExchangeError, requests_exceptions.RequestException) as e:
            raise CriticalDataUnavailable("resting_orders", e) from e

        event_of = self._event_map()
        results: List[ExecutionResult] = []
        for index, order in enumerate(placed):
            exchange_order = live.get(order.external_order_id)
            if exchange_order is None:
                # Filled, cancelled or unknown: reconciliation decides
                continue
            if index:
                self._sleep(self.order_delay_seconds)

            since = exchange_order.created_time or order.placed_at or order.created_at
            minutes = (now - since).total_seconds() / 60.0

            try:
                if minutes >= self.cancel_after_minutes:
                    results.append(self._cancel_stale(order, minutes))
                elif minutes >= self.improve_after_minutes:
                    results.append(self._improve_price(order, exchange_order, event_of))
            except (ExchangeError, requests_exceptions.RequestException) as e:
                logger.warning("Resting order action for %s failed: %s", order.id, e)
                results.append(ExecutionResult(order.id, order.market_id, "failed", False, error=str(e)))
        return results

    def _cancel_stale(self, order: Order, minutes: float) -> ExecutionResult:
        reason = f"Unfilled for {round(minutes)} minutes"
        result = self.cancel_order(order, reason)
        if result.success and self.mode != "DRY_RUN":
            self.ledger.blacklist_market(BlacklistEntry(
                market_id=order.market_id,
                event_id=order.event_id,
                title=order.title,
                reason=f"Order unfilled for {round(minutes)} minutes",
                original_order_id=order.id,
            ))
        return result

    def _improve_price(self, order: Order, exchange_order: ExchangeOrder, event_of: Dict[str, str]) -> ExecutionResult:
        current = exchange_order.price or order.limit_price
        new_price = min(current + self.price_improvement_cents, self.max_price_cents)
        if new_price <= current:
            return ExecutionResult(order.id, order.market_id, "skipped", False, reason=f"already at {current}c")

        # Exposure without the order being replaced
        guard = self.check_guards(
            order,
            cost=order.units * new_price,
            event_of=event_of,
            exclude_external_id=order.external_order_id,
        )
        if not guard.passed:
            return ExecutionResult(order.id, order.market_id, "skipped", False, reason=guard.reason)

        if self.mode == "DRY_RUN":
            return ExecutionResult(order.id, order.market_id, "dry_run", True, reason=f"{current}c -> {new_price}c")

        cancelled = self.cancel_order(order, reason=f"re-pricing {current}c -> {new_price}c")
        if not cancelled.success:
            return cancelled

        # Same ledger row goes back out under a fresh client id
        if not self.state_machine.reopen_for_reprice(order, f"improve_{order.id}_{int(time.time() * 1000)}"):
            return ExecutionResult(order.id, order.market_id, "skipped", False, reason="could not reopen order")
        self.ledger.upsert_order(order)

        result = self.submit_order(order, price=new_price)
        if result.success:
            result.action = "improved"
            result.reason = f"{current}c -> {new_price}c"
        return result
