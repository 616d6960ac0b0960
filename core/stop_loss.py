"""
Protective Exit: Stop-Loss Monitor with Data-Quality Gating

Evaluates live odds for every open (confirmed, undecided) position and sells
when our side drops below the stop-loss threshold, but only on data it can
trust. A suspicious reading never triggers a sale; a low-confidence reading
is re-fetched once and must agree with the first before acting.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from requests import exceptions as requests_exceptions

from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.order_state import Order, OrderStateMachine, PlacementState
from core.snapshot import YES, MarketQuote, Orderbook, opposite_price
from infra.ledger import LedgerStore

logger = logging.getLogger(__name__)

EXIT_REASON = "stop_loss"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SUSPICIOUS = "suspicious"


@dataclass
class StopLossConfig:
    threshold: float = 0.75
    max_spread_cents: int = 30
    max_price_divergence: int = 10
    min_volume: int = 10
    orderbook_tolerance: int = 5
    suspicious_prices: Tuple[int, ...] = (50,)
    max_positions_at_same_price: int = 3
    improbable_below: int = 40
    improbable_above: int = 95
    refetch_delay_seconds: float = 1.0
    refetch_tolerance: int = 5
    orderbook_depth: int = 5
    market_delay_seconds: float = 0.2
    dry_run: bool = False

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "StopLossConfig":
        cfg = dict(policy.get("stop_loss", {}) or {})
        cfg.pop("enabled", None)
        if "suspicious_prices" in cfg:
            cfg["suspicious_prices"] = tuple(int(p) for p in cfg["suspicious_prices"])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in cfg.items() if k in known})

    @property
    def threshold_cents(self) -> float:
        return self.threshold * 100


@dataclass
class DataValidation:
    """Data-quality verdict for one market reading."""
    confidence: Confidence
    issues: List[str] = field(default_factory=list)
    price: Optional[int] = None  # YES price in cents
    method: str = "none"

    @property
    def is_valid(self) -> bool:
        return self.confidence != Confidence.SUSPICIOUS and self.price is not None

    def mark_suspicious(self, issue: str) -> None:
        self.issues.append(issue)
        self.confidence = Confidence.SUSPICIOUS


@dataclass
class PositionCheck:
    market_id: str
    side: str
    contracts: int
    position_cost: int
    validation: DataValidation
    title: str = ""
    event_id: str = ""
    order_ids: List[str] = field(default_factory=list)
    action: str = "hold"  # "hold" | "sell" | "error"
    reason: str = ""

    @property
    def our_side_price(self) -> Optional[int]:
        price = self.validation.price
        if price is None:
            return None
        return price if self.side == YES else opposite_price(price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "side": self.side,
            "contracts": self.contracts,
            "position_cost": self.position_cost,
            "yes_price": self.validation.price,
            "our_side_price": self.our_side_price,
            "confidence": self.validation.confidence.value,
            "method": self.validation.method,
            "issues": list(self.validation.issues),
            "action": self.action,
            "reason": self.reason,
        }


@dataclass
class StopLossSummary:
    positions_checked: int = 0
    sold: int = 0
    held: int = 0
    data_errors: int = 0
    alerts: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)
    sells: List[Dict[str, Any]] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "positions_checked": self.positions_checked,
            "sold": self.sold,
            "held": self.held,
            "data_errors": self.data_errors,
        }


def classify_confidence(issues: List[str], suspicious: bool = False) -> Confidence:
    """
    No failed check is HIGH, one MEDIUM, two LOW; three or more, or any
    suspicious finding, is SUSPICIOUS.
    """
    if suspicious or len(issues) >= 3:
        return Confidence.SUSPICIOUS
    if not issues:
        return Confidence.HIGH
    if len(issues) == 1:
        return Confidence.MEDIUM
    return Confidence.LOW


def assess_data_quality(
    quote: Optional[MarketQuote],
    orderbook: Optional[Orderbook],
    config: StopLossConfig,
    fetch_issues: Optional[List[str]] = None,
) -> DataValidation:
    """
    Cross-check the market quote against the order book and pick a price.

    Price source order: order book best YES bid, quote YES bid, last trade.
    """
    issues = list(fetch_issues or [])
    if quote is None:
        issues.append("Market data returned null")
        return DataValidation(confidence=Confidence.SUSPICIOUS, issues=issues)

    has_bid_ask = any(p > 0 for p in (quote.yes_bid, quote.yes_ask, quote.no_bid, quote.no_ask))
    if not has_bid_ask:
        issues.append("No bid/ask data available")
    else:
        yes_spread = quote.yes_ask - quote.yes_bid
        no_spread = quote.no_ask - quote.no_bid
        if yes_spread > config.max_spread_cents or no_spread > config.max_spread_cents:
            issues.append(f"Wide spread (yes {yes_spread}c, no {no_spread}c)")
        midpoint = (quote.yes_bid + quote.yes_ask) / 2.0
        if abs(quote.last_price - midpoint) > config.max_price_divergence:
            issues.append(f"Last price {quote.last_price}c diverges from midpoint {midpoint:.0f}c")

    if quote.volume_24h < config.min_volume:
        issues.append(f"Low 24h volume {quote.volume_24h} (need {config.min_volume}+)")

    book_bid = orderbook.best_bid(YES) if orderbook is not None else None
    if book_bid and quote.yes_bid and abs(book_bid - quote.yes_bid) > config.orderbook_tolerance:
        issues.append(f"Order book yes bid {book_bid}c differs from quote yes bid {quote.yes_bid}c")

    if book_bid:
        price, method = book_bid, "orderbook_best_bid"
    elif quote.yes_bid > 0:
        price, method = quote.yes_bid, "market_yes_bid"
    elif quote.last_price > 0:
        price, method = quote.last_price, "last_price"
        issues.append("Using last_price as fallback, may be stale")
    else:
        issues.append("Could not determine price from any source")
        return DataValidation(confidence=Confidence.SUSPICIOUS, issues=issues)

    suspicious = price in config.suspicious_prices
    if suspicious:
        issues.append(f"Price is exactly {price}c, a known bad-data value")

    return DataValidation(
        confidence=classify_confidence(issues, suspicious=suspicious),
        issues=issues,
        price=price,
        method=method,
    )


class StopLossMonitor:
    """
    Protective-exit monitor.

    Responsibilities:
    - Read live contracts per open ledger position from the exchange
    - Score data quality from the quote and the order book
    - Flag feeds where many positions show the same improbable price
    - Sell below threshold only on trustworthy data
    - Append every reading to the odds history
    """

    def __init__(self, exchange, ledger: LedgerStore, policy: Optional[Dict] = None,
                 audit=None, sleep=time.sleep):
        """
        Args:
            exchange: KalshiExchange (or compatible) instance
            ledger: Order ledger
            policy: Policy config dict
            audit: AuditLogger for odds history and exits (optional)
        """
        self.exchange = exchange
        self.ledger = ledger
        self.policy = policy or {}
        self.config = StopLossConfig.from_policy(self.policy)
        self.audit = audit
        self.state_machine = OrderStateMachine()
        self._sleep = sleep

        logger.info(
            "StopLossMonitor initialized: threshold=%.2f, dry_run=%s",
            self.config.threshold, self.config.dry_run,
        )

    def fetch_validation(self, market_id: str) -> Tuple[Optional[MarketQuote], DataValidation]:
        """Two independent reads (quote, order book) combined into one verdict"""
        fetch_issues: List[str] = []
        try:
            quote = self.exchange.get_market(market_id)
        except (ExchangeError, requests_exceptions.RequestException) as e:
            logger.warning("Market fetch for %s failed: %s", market_id, e)
            return None, DataValidation(confidence=Confidence.SUSPICIOUS, issues=[f"Market fetch failed: {e}"])

        orderbook = None
        try:
            orderbook = self.exchange.get_orderbook(market_id, depth=self.config.orderbook_depth)
        except (ExchangeError, requests_exceptions.RequestException) as e:
            fetch_issues.append(f"Order book fetch failed: {e}")

        return quote, assess_data_quality(quote, orderbook, self.config, fetch_issues)

    def run(self) -> StopLossSummary:
        """
        Check every open position once.

        Raises:
            CriticalDataUnavailable: positions cannot be fetched
        """
        summary = StopLossSummary()
        checks = self._collect_checks(summary)
        if not checks:
            summary.alerts.append("No open positions to monitor")
            return summary

        self._flag_price_anomalies(checks, summary)

        for check in checks:
            try:
                self._decide(check, summary)
            except (ExchangeError, requests_exceptions.RequestException, ValueError) as e:
                check.action = "error"
                check.reason = f"Unexpected failure: {e}"
                summary.errors.append(f"{check.market_id}: {e}")
                logger.exception("Stop-loss decision for %s failed", check.market_id)
            if check.action == "hold":
                summary.held += 1
            summary.details.append(check.to_dict())
            if self.audit is not None:
                self.audit.log_odds(check, self.config.threshold_cents)

        logger.info(
            "Stop-loss pass: %d checked, %d sold, %d held, %d data errors",
            summary.positions_checked, summary.sold, summary.held, summary.data_errors,
        )
        return summary

    def _collect_checks(self, summary: StopLossSummary) -> List[PositionCheck]:
        open_orders = self.ledger.orders(
            placement_states=[PlacementState.CONFIRMED.value],
            predicate=lambda o: o.is_open_position(),
        )
        if not open_orders:
            return []

        try:
            positions = {p.market_id: p for p in self.exchange.get_positions()}
        except (ExchangeError, requests_exceptions.RequestException) as e:
            raise CriticalDataUnavailable("positions", e) from e

        by_market: Dict[str, List[Order]] = defaultdict(list)
        for order in open_orders:
            by_market[order.market_id].append(order)

        checks = []
        for index, (market_id, orders) in enumerate(by_market.items()):
            position = positions.get(market_id)
            if position is None:
                logger.warning("Ledger shows an open position in %s but the exchange holds none", market_id)
                continue
            if position.side != orders[0].side:
                logger.warning(
                    "Side mismatch for %s: ledger %s, exchange %s; using exchange",
                    market_id, orders[0].side, position.side,
                )
            if index:
                self._sleep(self.config.market_delay_seconds)

            quote, validation = self.fetch_validation(market_id)
            checks.append(PositionCheck(
                market_id=market_id,
                side=position.side,
                contracts=position.net_contracts,
                position_cost=position.exposure_cost,
                validation=validation,
                title=(quote.title if quote else "") or orders[0].title,
                event_id=orders[0].event_id,
                order_ids=[o.id for o in orders],
            ))
        summary.positions_checked = len(checks)
        return checks

    def _flag_price_anomalies(self, checks: List[PositionCheck], summary: StopLossSummary) -> None:
        """Many positions at one improbable price points at a broken feed."""
        by_price: Dict[int, List[PositionCheck]] = defaultdict(list)
        for check in checks:
            if check.validation.price is not None:
                by_price[check.validation.price].append(check)

        cfg = self.config
        for price, group in by_price.items():
            improbable = (
                price in cfg.suspicious_prices
                or price < cfg.improbable_below
                or price > cfg.improbable_above
            )
            if len(group) >= cfg.max_positions_at_same_price and improbable:
                alert = f"SUSPICIOUS: {len(group)} positions all showing {price}c, possible data error"
                logger.error(alert)
                summary.alerts.append(alert)
                for check in group:
                    check.validation.mark_suspicious("Multiple positions showing identical improbable price")

    def _decide(self, check: PositionCheck, summary: StopLossSummary) -> None:
        cfg = self.config
        validation = check.validation

        if not validation.is_valid:
            # Suspicious data blocks the exit regardless of price
            check.action = "error"
            check.reason = f"Data validation failed: {'; '.join(validation.issues)}"
            summary.data_errors += 1
            summary.alerts.append(f"{check.market_id}: {check.reason}")
            return

        our_side = check.our_side_price
        if our_side >= cfg.threshold_cents:
            check.action = "hold"
            check.reason = f"Odds {our_side}c at or above {cfg.threshold_cents:.0f}c threshold"
            return

        if validation.confidence == Confidence.LOW:
            logger.info("Low confidence for %s, re-fetching...", check.market_id)
            self._sleep(cfg.refetch_delay_seconds)
            _, revalidation = self.fetch_validation(check.market_id)
            if not revalidation.is_valid:
                check.action = "error"
                check.reason = f"Re-validation failed: {'; '.join(revalidation.issues)}"
                summary.data_errors += 1
                summary.alerts.append(f"{check.market_id}: skipped sell due to re-validation failure")
                return

            again = revalidation.price if check.side == YES else opposite_price(revalidation.price)
            if abs(again - our_side) > cfg.refetch_tolerance:
                check.action = "error"
                check.reason = f"Odds changed on re-fetch ({our_side}c → {again}c), data unstable"
                summary.data_errors += 1
                summary.alerts.append(f"{check.market_id}: {check.reason}")
                return
            if again >= cfg.threshold_cents:
                check.action = "hold"
                check.reason = f"Odds recovered to {again}c on re-fetch"
                summary.alerts.append(f"{check.market_id}: skipped sell, {check.reason} (was {our_side}c)")
                return

        check.action = "sell"
        check.reason = (
            f"Odds dropped to {our_side}c (below {cfg.threshold_cents:.0f}c threshold). "
            f"Confidence: {validation.confidence.value}"
        )
        self._execute_sell(check, summary)

    def _execute_sell(self, check: PositionCheck, summary: StopLossSummary) -> None:
        client_order_id = f"stoploss_{check.market_id}_{int(time.time() * 1000)}"

        if self.config.dry_run:
            logger.info("DRY_RUN stop-loss: would sell %dx %s %s", check.contracts, check.side, check.market_id)
            summary.sells.append({"market_id": check.market_id, "contracts": check.contracts, "dry_run": True})
            summary.alerts.append(f"DRY RUN: would sell {check.market_id}: {check.reason}")
            return

        logger.warning("Stop-loss selling %dx %s on %s: %s", check.contracts, check.side, check.market_id, check.reason)
        try:
            placed = self.exchange.place_order(
                market_id=check.market_id,
                side=check.side,
                count=check.contracts,
                client_order_id=client_order_id,
                action="sell",
                order_type="market",
            )
        except (ExchangeError, requests_exceptions.RequestException) as e:
            check.action = "error"
            check.reason = f"Sell failed: {e}"
            summary.errors.append(f"{check.market_id}: sell failed: {e}")
            summary.alerts.append(f"FAILED to sell {check.market_id}: {e}")
            summary.sells.append({"market_id": check.market_id, "contracts": check.contracts, "success": False, "error": str(e)})
            return

        summary.sold += 1
        summary.sells.append({
            "market_id": check.market_id,
            "contracts": check.contracts,
            "success": True,
            "external_order_id": placed.order_id,
        })
        summary.alerts.append(f"SOLD {check.market_id}: {check.reason}")

        exited = []
        for order_id in check.order_ids:
            order = self.ledger.get_order(order_id)
            if order is not None and self.state_machine.mark_exited(order, EXIT_REASON):
                exited.append(order)
        self.ledger.upsert_orders(exited)
        if self.audit is not None:
            self.audit.log_exit(check, placed.order_id)
