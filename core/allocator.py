"""
favfund Core: Capital Allocator

Decides how many units of each candidate market to buy under hard caps.

Pipeline: blacklist → event dedup → liquidity score → price band →
per-market/per-event caps → spread-first, cap-second distribution.

NO allocation ever exceeds hard_cap per market or per event (existing plus
new exposure), and total cost never exceeds available capital.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import logging
import math

from core.snapshot import YES, NO, MarketQuote, Orderbook, normalize_side, opposite_price

logger = logging.getLogger(__name__)

# Used when the order book cannot be read
FALLBACK_DEPTH = 1
FALLBACK_SPREAD_CENTS = 10


@dataclass
class AllocatorConfig:
    max_position_pct: float = 0.03
    min_price_cents: int = 90
    max_price_cents: int = 99
    min_liquidity_score: float = 10.0
    dedupe_events: bool = True

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "AllocatorConfig":
        cfg = policy.get("allocator", {}) or {}
        return cls(
            max_position_pct=float(cfg.get("max_position_pct", cls.max_position_pct)),
            min_price_cents=int(cfg.get("min_price_cents", cls.min_price_cents)),
            max_price_cents=int(cfg.get("max_price_cents", cls.max_price_cents)),
            min_liquidity_score=float(cfg.get("min_liquidity_score", cls.min_liquidity_score)),
            dedupe_events=bool(cfg.get("dedupe_events", cls.dedupe_events)),
        )


@dataclass
class Candidate:
    """A market the allocator may fund, priced on its favorite side."""
    market_id: str
    event_id: str
    side: str
    price_cents: int
    open_interest: int = 0
    volume_24h: int = 0
    orderbook_depth_at_price: int = 0
    spread_cents: int = FALLBACK_SPREAD_CENTS
    title: str = ""

    def __post_init__(self):
        self.side = normalize_side(self.side)

    @property
    def max_fillable_units(self) -> int:
        """Book depth, or roughly a tenth of daily volume, at least one contract"""
        return max(self.orderbook_depth_at_price, self.volume_24h // 10, 1)


@dataclass
class AllocationLine:
    candidate: Candidate
    liquidity_score: float
    cap: int
    units: int = 0
    cost: int = 0

    @property
    def max_cost(self) -> int:
        return min(self.cap, self.candidate.max_fillable_units * self.candidate.price_cents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.candidate.market_id,
            "event_id": self.candidate.event_id,
            "side": self.candidate.side,
            "price_cents": self.candidate.price_cents,
            "liquidity_score": self.liquidity_score,
            "cap": self.cap,
            "units": self.units,
            "cost": self.cost,
        }


@dataclass
class AllocationResult:
    available_capital: int
    total_portfolio_value: int
    hard_cap: int
    lines: List[AllocationLine] = field(default_factory=list)
    rejections: Dict[str, str] = field(default_factory=dict)  # market_id -> reason

    @property
    def total_cost(self) -> int:
        return sum(line.cost for line in self.lines)

    @property
    def unallocated(self) -> int:
        return self.available_capital - self.total_cost

    @property
    def funded(self) -> List[AllocationLine]:
        return [line for line in self.lines if line.units > 0]


def liquidity_score(depth: int, volume_24h: int, open_interest: int, spread_cents: int) -> float:
    """
    0-100 execution-quality score.

    depth 40% (10 contracts per point), volume 25%, open interest 20%,
    spread 15% (each cent of spread costs 10 points).
    """
    depth_score = min(depth / 10, 100)
    volume_score = min(volume_24h / 100, 100)
    oi_score = min(open_interest / 10000, 100)
    spread_score = max(0, 100 - spread_cents * 10)
    score = depth_score * 0.4 + volume_score * 0.25 + oi_score * 0.2 + spread_score * 0.15
    return round(score, 2)


def build_candidate(quote: MarketQuote, orderbook: Optional[Orderbook] = None) -> Candidate:
    """
    Price a market on its favorite side from the last trade.

    Depth counts contracts at or below our price; without a book the
    conservative fallback (depth 1, spread 10c) is used.
    """
    yes_price = quote.last_price
    side = YES if yes_price >= opposite_price(yes_price) else NO
    price = yes_price if side == YES else opposite_price(yes_price)

    if orderbook is not None:
        depth = orderbook.depth_at_or_below(side, price)
        spread = orderbook.spread()
    else:
        depth, spread = FALLBACK_DEPTH, FALLBACK_SPREAD_CENTS

    return Candidate(
        market_id=quote.market_id,
        event_id=quote.event_id or quote.market_id,
        side=side,
        price_cents=price,
        open_interest=quote.open_interest,
        volume_24h=quote.volume_24h,
        orderbook_depth_at_price=depth,
        spread_cents=spread,
        title=quote.title,
    )


def dedupe_by_event(candidates: Iterable[Candidate]) -> Tuple[List[Candidate], List[Candidate]]:
    """
    Keep one market per event, the one with the higher favorite price.

    Returns:
        (kept, dropped)
    """
    best: Dict[str, Candidate] = {}
    dropped: List[Candidate] = []
    for candidate in candidates:
        current = best.get(candidate.event_id)
        if current is None:
            best[candidate.event_id] = candidate
        elif candidate.price_cents > current.price_cents:
            dropped.append(current)
            best[candidate.event_id] = candidate
        else:
            dropped.append(candidate)
    return list(best.values()), dropped


class CapitalAllocator:
    """
    Spread-first, cap-second capital distribution.

    Existing exposure (by market and by event) must come from a freshly
    fetched position snapshot; it reduces each market's headroom.
    """

    def __init__(self, config: Optional[AllocatorConfig] = None):
        self.config = config or AllocatorConfig()

    def hard_cap(self, total_portfolio_value: int) -> int:
        return int(math.floor(total_portfolio_value * self.config.max_position_pct))

    def allocate(
        self,
        available_capital: int,
        total_portfolio_value: int,
        candidates: Iterable[Candidate],
        market_exposure: Optional[Dict[str, int]] = None,
        event_exposure: Optional[Dict[str, int]] = None,
        blacklist: Optional[Set[str]] = None,
    ) -> AllocationResult:
        cfg = self.config
        available_capital = max(int(available_capital), 0)
        market_exposure = market_exposure or {}
        event_exposure = event_exposure or {}
        blacklist = blacklist or set()

        hard_cap = self.hard_cap(total_portfolio_value)
        result = AllocationResult(
            available_capital=available_capital,
            total_portfolio_value=int(total_portfolio_value),
            hard_cap=hard_cap,
        )

        pool: List[Candidate] = []
        for candidate in candidates:
            if candidate.market_id in blacklist:
                result.rejections[candidate.market_id] = "blacklisted"
                continue
            pool.append(candidate)

        if cfg.dedupe_events:
            pool, dropped = dedupe_by_event(pool)
            for candidate in dropped:
                result.rejections[candidate.market_id] = f"duplicate event {candidate.event_id}"

        scored: List[Tuple[Candidate, float]] = []
        for candidate in pool:
            score = liquidity_score(
                candidate.orderbook_depth_at_price,
                candidate.volume_24h,
                candidate.open_interest,
                candidate.spread_cents,
            )
            if score < cfg.min_liquidity_score:
                result.rejections[candidate.market_id] = f"liquidity score {score} < {cfg.min_liquidity_score}"
                continue
            if candidate.price_cents < cfg.min_price_cents:
                result.rejections[candidate.market_id] = f"price {candidate.price_cents}c below minimum {cfg.min_price_cents}c"
                continue
            if candidate.price_cents > cfg.max_price_cents:
                result.rejections[candidate.market_id] = f"price {candidate.price_cents}c above maximum {cfg.max_price_cents}c"
                continue
            scored.append((candidate, score))

        if not scored:
            logger.info("No candidates survived filtering (%d rejected)", len(result.rejections))
            return result

        result.lines = self._build_lines(scored, hard_cap, market_exposure, event_exposure)
        for line in result.lines:
            if line.cap <= 0:
                result.rejections.setdefault(line.candidate.market_id, "no headroom under hard cap")

        self._distribute(result.lines, available_capital, hard_cap)

        logger.info(
            "Allocated %d¢ of %d¢ across %d/%d markets (hard cap %d¢)",
            result.total_cost, available_capital, len(result.funded), len(result.lines), hard_cap,
        )
        return result

    @staticmethod
    def _build_lines(
        scored: List[Tuple[Candidate, float]],
        hard_cap: int,
        market_exposure: Dict[str, int],
        event_exposure: Dict[str, int],
    ) -> List[AllocationLine]:
        """Per-market caps: halved for multi-market events, minus existing exposure"""
        group_sizes: Dict[str, int] = {}
        for candidate, _ in scored:
            group_sizes[candidate.event_id] = group_sizes.get(candidate.event_id, 0) + 1

        lines = []
        for candidate, score in scored:
            size = group_sizes[candidate.event_id]
            market_cap = hard_cap // 2 if size > 1 else hard_cap
            market_room = market_cap - market_exposure.get(candidate.market_id, 0)
            event_room = (hard_cap - event_exposure.get(candidate.event_id, 0)) // size
            lines.append(AllocationLine(candidate=candidate, liquidity_score=score, cap=max(min(market_room, event_room), 0)))

        lines.sort(key=lambda line: line.liquidity_score, reverse=True)
        return lines

    @staticmethod
    def _distribute(lines: List[AllocationLine], available_capital: int, hard_cap: int) -> None:
        even_split = available_capital // len(lines)
        target = min(even_split, hard_cap)
        remaining = available_capital

        for line in lines:
            price = line.candidate.price_cents
            budget = min(target, line.max_cost, remaining)
            units = max(budget, 0) // price
            line.units = units
            line.cost = units * price
            remaining -= line.cost

        if remaining <= 0 or even_split >= hard_cap:
            return

        # Top up toward the hard cap one unit at a time, best score first
        allocated = True
        while allocated:
            allocated = False
            for line in lines:
                price = line.candidate.price_cents
                if remaining < price:
                    continue
                if line.cost + price <= line.max_cost:
                    line.units += 1
                    line.cost += price
                    remaining -= price
                    allocated = True
