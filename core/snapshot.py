"""
favfund Core: Quote/Position Snapshot

Normalizes raw exchange records (balance, positions, orders, fills,
settlements, market quotes, order books) into the frozen shapes the rest of
the core consumes. All money is integer cents, all prices integer cents 1-99.

Exposure is always derived from a freshly fetched list of positions. Nothing
in this module caches or accumulates a running total.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

YES = "yes"
NO = "no"

RESTING_STATUSES = {"resting", "pending"}
CANCELLED_STATUSES = {"canceled", "cancelled", "expired"}
EXECUTED_STATUSES = {"executed", "filled"}


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return default


def _dollars_to_cents(value: Any) -> int:
    """Settlement fees arrive as dollar strings ("0.07")."""
    if value is None or value == "":
        return 0
    try:
        return int(round(float(value) * 100))
    except (TypeError, ValueError):
        return 0


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_side(value: Any) -> str:
    side = str(value or "").strip().lower()
    if side not in (YES, NO):
        raise ValueError(f"Unknown market side: {value!r}")
    return side


def opposite_price(price: int) -> int:
    """Price of the other side of a binary contract."""
    return 100 - price


@dataclass(frozen=True)
class Balance:
    cash: int
    position_value: int

    @property
    def total(self) -> int:
        return self.cash + self.position_value


@dataclass(frozen=True)
class Position:
    market_id: str
    side: str
    net_contracts: int
    exposure_cost: int


@dataclass(frozen=True)
class ExchangeOrder:
    order_id: str
    market_id: str
    status: str
    side: str
    action: str
    price: int
    filled_count: int
    remaining_count: int
    client_order_id: Optional[str] = None
    created_time: Optional[datetime] = None

    @property
    def is_resting(self) -> bool:
        return self.status in RESTING_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status in CANCELLED_STATUSES

    @property
    def is_executed(self) -> bool:
        return self.status in EXECUTED_STATUSES


@dataclass(frozen=True)
class Fill:
    order_id: str
    market_id: str
    count: int
    price: int
    side: str
    action: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Settlement:
    market_id: str
    result_side: str
    revenue: int
    fee: int
    settled_time: Optional[datetime] = None


@dataclass(frozen=True)
class MarketQuote:
    market_id: str
    event_id: str
    title: str
    yes_bid: int
    yes_ask: int
    no_bid: int
    no_ask: int
    last_price: int
    volume_24h: int
    open_interest: int
    status: str = ""
    result: str = ""

    @property
    def has_bid_ask(self) -> bool:
        return self.yes_bid > 0 and self.yes_ask > 0

    @property
    def spread(self) -> int:
        return max(self.yes_ask - self.yes_bid, 0)

    @property
    def midpoint(self) -> float:
        return (self.yes_bid + self.yes_ask) / 2.0


@dataclass(frozen=True)
class Orderbook:
    """Bids per side as (price, count) levels, best price first."""
    market_id: str
    yes: Tuple[Tuple[int, int], ...] = ()
    no: Tuple[Tuple[int, int], ...] = ()

    def levels(self, side: str) -> Tuple[Tuple[int, int], ...]:
        return self.yes if side == YES else self.no

    def best_bid(self, side: str) -> Optional[int]:
        levels = self.levels(side)
        if not levels:
            return None
        return max(price for price, _ in levels)

    def spread(self) -> int:
        best_yes = self.best_bid(YES) or 0
        best_no = self.best_bid(NO) or 0
        return abs(100 - best_yes - best_no)

    def depth_at_or_below(self, side: str, price: int) -> int:
        """Contracts resting at or better than our limit price."""
        return sum(count for level_price, count in self.levels(side) if level_price <= price)


@dataclass
class Snapshot:
    """One pass's view of the exchange. Refreshed per pass, never persisted."""
    balance: Balance
    positions: List[Position] = field(default_factory=list)
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def position_for(self, market_id: str) -> Optional[Position]:
        for position in self.positions:
            if position.market_id == market_id:
                return position
        return None


def take_snapshot(exchange) -> Snapshot:
    """Fresh balance and positions; exchange errors propagate to the caller."""
    return Snapshot(balance=exchange.get_balance(), positions=list(exchange.get_positions()))


def normalize_balance(raw: Dict[str, Any]) -> Balance:
    return Balance(
        cash=_int(raw.get("balance")),
        position_value=_int(raw.get("portfolio_value")),
    )


def normalize_position(raw: Dict[str, Any]) -> Optional[Position]:
    """Positions with zero contracts are dropped."""
    net = _int(raw.get("position"))
    if net == 0:
        return None
    return Position(
        market_id=str(raw.get("ticker", "")),
        side=YES if net > 0 else NO,
        net_contracts=abs(net),
        exposure_cost=abs(_int(raw.get("market_exposure", raw.get("position_cost")))),
    )


def normalize_positions(raw_positions: Iterable[Dict[str, Any]]) -> List[Position]:
    positions = []
    for raw in raw_positions:
        position = normalize_position(raw)
        if position is not None:
            positions.append(position)
    return positions


def normalize_order(raw: Dict[str, Any]) -> ExchangeOrder:
    side = str(raw.get("side", YES)).lower()
    price_key = "yes_price" if side == YES else "no_price"
    return ExchangeOrder(
        order_id=str(raw.get("order_id", "")),
        market_id=str(raw.get("ticker", "")),
        status=str(raw.get("status", "")).lower(),
        side=side,
        action=str(raw.get("action", "buy")).lower(),
        price=_int(raw.get(price_key)),
        filled_count=_int(raw.get("filled_count", raw.get("fill_count"))),
        remaining_count=_int(raw.get("remaining_count")),
        client_order_id=raw.get("client_order_id"),
        created_time=_parse_ts(raw.get("created_time")),
    )


def normalize_fill(raw: Dict[str, Any]) -> Fill:
    side = str(raw.get("side", YES)).lower()
    price = raw.get("price")
    if price is None:
        price = raw.get("yes_price") if side == YES else raw.get("no_price")
    return Fill(
        order_id=str(raw.get("order_id", "")),
        market_id=str(raw.get("ticker", "")),
        count=_int(raw.get("count")),
        price=_int(price),
        side=side,
        action=str(raw.get("action", "buy")).lower(),
        timestamp=_parse_ts(raw.get("created_time")),
    )


def normalize_settlement(raw: Dict[str, Any]) -> Settlement:
    return Settlement(
        market_id=str(raw.get("ticker", "")),
        result_side=str(raw.get("market_result", "")).lower(),
        revenue=_int(raw.get("revenue")),
        fee=_dollars_to_cents(raw.get("fee_cost")),
        settled_time=_parse_ts(raw.get("settled_time")),
    )


def normalize_market(raw: Dict[str, Any]) -> MarketQuote:
    return MarketQuote(
        market_id=str(raw.get("ticker", "")),
        event_id=str(raw.get("event_ticker", "")),
        title=str(raw.get("title", "")),
        yes_bid=_int(raw.get("yes_bid")),
        yes_ask=_int(raw.get("yes_ask")),
        no_bid=_int(raw.get("no_bid")),
        no_ask=_int(raw.get("no_ask")),
        last_price=_int(raw.get("last_price")),
        volume_24h=_int(raw.get("volume_24h")),
        open_interest=_int(raw.get("open_interest")),
        status=str(raw.get("status", "")).lower(),
        result=str(raw.get("result", "") or "").lower(),
    )


def normalize_orderbook(market_id: str, raw: Dict[str, Any]) -> Orderbook:
    book = raw.get("orderbook", raw) or {}

    def _levels(entries) -> Tuple[Tuple[int, int], ...]:
        levels = [(_int(p), _int(c)) for p, c in (entries or [])]
        return tuple(sorted(levels, key=lambda level: level[0], reverse=True))

    return Orderbook(market_id=market_id, yes=_levels(book.get("yes")), no=_levels(book.get("no")))


def market_exposure(positions: Iterable[Position], market_id: str) -> int:
    """Cost basis currently held in one market."""
    return sum(p.exposure_cost for p in positions if p.market_id == market_id)


def event_exposure(
    positions: Iterable[Position],
    event_of: Callable[[str], Optional[str]],
    event_id: str,
) -> int:
    """Cost basis held across every market of one event."""
    return sum(p.exposure_cost for p in positions if event_of(p.market_id) == event_id)


def resting_buy_cost(orders: Iterable[ExchangeOrder], market_ids: Iterable[str]) -> int:
    """Capital committed by resting buy orders that have not filled yet."""
    wanted = set(market_ids)
    return sum(
        o.remaining_count * o.price
        for o in orders
        if o.is_resting and o.action == "buy" and o.market_id in wanted
    )


__all__ = [
    "YES",
    "NO",
    "Balance",
    "Position",
    "ExchangeOrder",
    "Fill",
    "Settlement",
    "MarketQuote",
    "Orderbook",
    "Snapshot",
    "take_snapshot",
    "normalize_side",
    "opposite_price",
    "normalize_balance",
    "normalize_position",
    "normalize_positions",
    "normalize_order",
    "normalize_fill",
    "normalize_settlement",
    "normalize_market",
    "normalize_orderbook",
    "market_exposure",
    "event_exposure",
    "resting_buy_cost",
]
