"""
favfund Core: Order State Machine

Explicit lifecycle management for ledger orders.

Placement: PENDING → (PLACED | CONFIRMED | CANCELLED | QUEUE | FAILED)
Result:    UNDECIDED → (WON | LOST)            (only once CONFIRMED)
Settlement: PENDING → (SUCCESS | CLOSED)       (SUCCESS only when WON)

Provides:
- Order / Batch / BlacklistEntry records with (de)serialization
- Placement transition validation
- Result and settlement recording with no-regression checks
"""

from enum import Enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging
import uuid

from core.snapshot import normalize_side

logger = logging.getLogger(__name__)


class PlacementState(Enum):
    """Where the order stands with the exchange"""
    PENDING = "pending"        # Created by the allocator, not yet sent
    PLACED = "placed"          # Resting on the exchange book
    CONFIRMED = "confirmed"    # Filled (fully or partially)
    CANCELLED = "cancelled"    # Cancelled locally or on the exchange
    QUEUE = "queue"            # Held back by the hard-cap guard, retried later
    FAILED = "failed"          # Rejected by the exchange


class ResultState(Enum):
    UNDECIDED = "undecided"
    WON = "won"
    LOST = "lost"


class SettlementState(Enum):
    PENDING = "pending"
    CLOSED = "closed"
    SUCCESS = "success"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class _Record:
    """Shared JSON round-tripping for ledger records."""

    _datetime_fields: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in self._datetime_fields:
                value = _to_iso(value)
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in cls._datetime_fields:
            if name in kwargs:
                kwargs[name] = _from_iso(kwargs[name])
        return cls(**kwargs)


@dataclass
class Order(_Record):
    """
    One attempted or realized position in one market.

    `cost` holds the planned spend (units x limit price) until a fill is seen,
    then executed price x filled units.
    """
    market_id: str
    event_id: str
    side: str
    limit_price: int
    units: int

    id: str = field(default_factory=_new_id)
    batch_id: Optional[str] = None
    title: str = ""

    # Money (integer cents)
    cost: int = 0
    potential_payout: int = 0
    executed_price: Optional[int] = None
    filled_units: int = 0
    fee: int = 0
    actual_payout: int = 0
    pnl: Optional[int] = None

    # State
    placement_state: str = PlacementState.PENDING.value
    result_state: str = ResultState.UNDECIDED.value
    settlement_state: str = SettlementState.PENDING.value

    # Exchange identifiers
    external_order_id: Optional[str] = None
    client_order_id: Optional[str] = None

    # Metadata
    cancel_reason: Optional[str] = None
    queue_reason: Optional[str] = None
    error: Optional[str] = None
    exit_reason: Optional[str] = None

    # Timestamps
    created_at: datetime = field(default_factory=_now)
    placed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    result_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None

    _datetime_fields = ("created_at", "placed_at", "cancelled_at", "result_at", "settled_at", "exited_at")

    def __post_init__(self):
        """Validate initial state"""
        if not self.market_id:
            raise ValueError("Order market_id is required")
        self.side = normalize_side(self.side)
        if not 1 <= int(self.limit_price) <= 99:
            raise ValueError(f"Order limit_price must be 1-99 cents, got {self.limit_price}")
        if self.units < 0:
            raise ValueError("Order units must be >= 0")
        if self.cost < 0:
            raise ValueError("Order cost must be >= 0")
        if not self.potential_payout:
            self.potential_payout = self.units * 100
        if not self.cost and self.placement_state == PlacementState.PENDING.value:
            self.cost = self.units * self.limit_price

    @property
    def planned_cost(self) -> int:
        return self.units * self.limit_price

    @property
    def held_units(self) -> int:
        """Contracts actually owned once confirmed."""
        return self.filled_units or self.units

    def is_open_position(self) -> bool:
        """Confirmed and still waiting for the market to resolve"""
        return (
            self.placement_state == PlacementState.CONFIRMED.value
            and self.result_state == ResultState.UNDECIDED.value
            and self.exit_reason is None
        )

    def is_submittable(self) -> bool:
        return self.placement_state in (PlacementState.PENDING.value, PlacementState.QUEUE.value)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        reference = self.placed_at or self.created_at
        return ((now or _now()) - reference).total_seconds()


@dataclass
class Batch(_Record):
    """A cohort of orders produced by one allocation run."""
    batch_key: str
    id: str = field(default_factory=_new_id)
    order_ids: List[str] = field(default_factory=list)
    total_cost: int = 0
    total_potential_payout: int = 0
    unallocated: int = 0
    hard_cap: int = 0
    is_paused: bool = False
    created_at: datetime = field(default_factory=_now)
    executed_at: Optional[datetime] = None

    _datetime_fields = ("created_at", "executed_at")


@dataclass
class BlacklistEntry(_Record):
    """A market flagged as illiquid or unfillable."""
    market_id: str
    reason: str
    event_id: str = ""
    title: str = ""
    original_order_id: Optional[str] = None
    blacklisted_at: datetime = field(default_factory=_now)

    _datetime_fields = ("blacklisted_at",)


class OrderStateMachine:
    """
    Order state machine with transition validation.

    Operates on ledger Order records in place. Every mutator returns True only
    when it changed something, so callers write to the ledger only on change.
    """

    # Valid placement transitions
    VALID_TRANSITIONS = {
        PlacementState.PENDING: {
            PlacementState.PLACED,
            PlacementState.CONFIRMED,
            PlacementState.CANCELLED,
            PlacementState.QUEUE,
            PlacementState.FAILED,
        },
        PlacementState.QUEUE: {
            PlacementState.PENDING,
            PlacementState.PLACED,
            PlacementState.CONFIRMED,
            PlacementState.CANCELLED,
            PlacementState.FAILED,
        },
        PlacementState.PLACED: {PlacementState.CONFIRMED, PlacementState.CANCELLED},
        # Reconciliation downgrade when the exchange still shows the order resting
        PlacementState.CONFIRMED: {PlacementState.PLACED},
        PlacementState.CANCELLED: set(),
        PlacementState.FAILED: set(),
    }

    def transition(
        self,
        order: Order,
        new_state: PlacementState,
        reason: Optional[str] = None,
        allow_override: bool = False,
    ) -> bool:
        """
        Move an order to a new placement state.

        Returns:
            True if the state changed, False for a no-op or a refused transition
        """
        current = PlacementState(order.placement_state)
        if current == new_state:
            return False

        override_allowed = allow_override or self._should_allow_override(current, new_state)
        if new_state not in self.VALID_TRANSITIONS.get(current, set()):
            if not override_allowed:
                logger.warning(
                    "Invalid transition for %s: %s → %s",
                    order.id, current.value, new_state.value,
                )
                return False
            logger.info("Override transition for %s: %s → %s", order.id, current.value, new_state.value)

        if new_state != PlacementState.CONFIRMED and order.result_state != ResultState.UNDECIDED.value:
            logger.warning("Refusing to downgrade %s: result already %s", order.id, order.result_state)
            return False

        now = _now()
        order.placement_state = new_state.value
        if new_state == PlacementState.PLACED:
            order.placed_at = order.placed_at or now
        elif new_state == PlacementState.CANCELLED:
            order.cancelled_at = now
            if reason:
                order.cancel_reason = reason
        elif new_state == PlacementState.QUEUE:
            order.queue_reason = reason
        elif new_state == PlacementState.FAILED:
            order.error = reason

        logger.info("Order %s (%s) transitioned: %s → %s", order.id, order.market_id, current.value, new_state.value)
        return True

    @staticmethod
    def _should_allow_override(current: PlacementState, new: PlacementState) -> bool:
        """Fills reported after a local cancel or failure always win."""
        return new == PlacementState.CONFIRMED and current in {PlacementState.CANCELLED, PlacementState.FAILED}

    def confirm_fill(self, order: Order, filled_units: int, avg_price: int) -> bool:
        """
        Record a fill: CONFIRMED with cost from the executed price, never the limit.
        """
        if filled_units <= 0:
            return False
        if not 1 <= avg_price <= 99:
            raise ValueError(f"Executed price must be 1-99 cents, got {avg_price}")

        changed = self.transition(order, PlacementState.CONFIRMED)
        cost = avg_price * filled_units
        if (order.executed_price, order.filled_units, order.cost) != (avg_price, filled_units, cost):
            order.executed_price = avg_price
            order.filled_units = filled_units
            order.cost = cost
            order.potential_payout = filled_units * 100
            changed = True
        if changed:
            order.placed_at = order.placed_at or _now()
        return changed

    def downgrade_to_placed(self, order: Order) -> bool:
        """Exchange shows the order still resting: clear fill data."""
        if order.placement_state != PlacementState.CONFIRMED.value:
            return False
        if not self.transition(order, PlacementState.PLACED):
            return False
        order.executed_price = None
        order.filled_units = 0
        order.cost = order.planned_cost
        order.potential_payout = order.units * 100
        return True

    def record_result(self, order: Order, won: bool) -> bool:
        """Set WON/LOST the first time the market result is observed."""
        if order.placement_state != PlacementState.CONFIRMED.value:
            logger.warning("Cannot record result for %s in placement state %s", order.id, order.placement_state)
            return False
        if order.result_state != ResultState.UNDECIDED.value:
            return False

        order.result_state = ResultState.WON.value if won else ResultState.LOST.value
        order.result_at = _now()
        if not won:
            self._set_settlement(order, SettlementState.CLOSED)
        elif order.settlement_state == SettlementState.CLOSED.value:
            order.settlement_state = SettlementState.PENDING.value
        logger.info("Order %s (%s) result: %s", order.id, order.market_id, order.result_state)
        return True

    def record_settlement(self, order: Order, fee: int) -> bool:
        """
        Finalize payout, fee and PnL once the exchange reports settlement.

        WON → SUCCESS with payout units x 100, LOST → CLOSED with payout 0.
        The fee is rewritten whenever the exchange reports a different value.
        """
        if order.result_state == ResultState.UNDECIDED.value:
            return False

        won = order.result_state == ResultState.WON.value
        changed = self._set_settlement(order, SettlementState.SUCCESS if won else SettlementState.CLOSED)
        payout = order.held_units * 100 if won else 0

        if order.fee != fee:
            logger.info("Fee update for %s: %s → %s", order.id, order.fee, fee)
            order.fee = fee
            changed = True
        if order.actual_payout != payout:
            order.actual_payout = payout
            changed = True

        pnl = payout - order.cost - order.fee
        if order.pnl != pnl:
            order.pnl = pnl
            changed = True
        return changed

    def close_unfilled(self, order: Order, reason: Optional[str] = None) -> bool:
        """Exchange cancelled or expired the order with nothing filled."""
        if order.result_state != ResultState.UNDECIDED.value:
            return False
        changed = False
        if order.placement_state not in (PlacementState.CANCELLED.value, PlacementState.FAILED.value):
            # A stale local CONFIRMED is overridden: the exchange saw no fill
            changed = self.transition(
                order,
                PlacementState.CANCELLED,
                reason=reason or "cancelled on exchange",
                allow_override=order.placement_state == PlacementState.CONFIRMED.value,
            )
            if changed:
                order.executed_price = None
                order.filled_units = 0
        return self._set_settlement(order, SettlementState.CLOSED) or changed

    def reopen_for_reprice(self, order: Order, client_order_id: str) -> bool:
        """A cancelled resting order goes back to PENDING to be re-sent at a better price."""
        if order.placement_state != PlacementState.CANCELLED.value or order.filled_units:
            logger.warning("Cannot reopen %s in state %s", order.id, order.placement_state)
            return False
        order.placement_state = PlacementState.PENDING.value
        order.cancel_reason = None
        order.cancelled_at = None
        order.external_order_id = None
        order.client_order_id = client_order_id
        logger.info("Order %s (%s) reopened for re-pricing", order.id, order.market_id)
        return True

    def mark_exited(self, order: Order, reason: str) -> bool:
        if order.exit_reason == reason:
            return False
        order.exit_reason = reason
        order.exited_at = _now()
        return True

    def _set_settlement(self, order: Order, new_state: SettlementState) -> bool:
        current = SettlementState(order.settlement_state)
        if current == new_state:
            return False
        if current == SettlementState.SUCCESS:
            logger.warning("Refusing settlement regression for %s: success → %s", order.id, new_state.value)
            return False
        if new_state == SettlementState.SUCCESS and order.result_state != ResultState.WON.value:
            logger.warning("Refusing SUCCESS for %s with result %s", order.id, order.result_state)
            return False
        if new_state == SettlementState.CLOSED and order.result_state == ResultState.WON.value:
            logger.warning("Refusing CLOSED for won order %s", order.id)
            return False

        order.settlement_state = new_state.value
        order.settled_at = _now()
        return True

    @staticmethod
    def get_summary(orders: List[Order]) -> Dict[str, Any]:
        """Counts per placement/result/settlement state"""
        summary: Dict[str, Any] = {"total_orders": len(orders)}
        for enum_cls, attr in (
            (PlacementState, "placement_state"),
            (ResultState, "result_state"),
            (SettlementState, "settlement_state"),
        ):
            summary[attr] = {
                state.value: sum(1 for o in orders if getattr(o, attr) == state.value)
                for state in enum_cls
            }
        return summary
