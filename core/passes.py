"""
Betting Passes - Shared Entry Points

Each pass is a one-shot, idempotent unit of work run by the CLI or a
scheduler:
- allocate: candidates -> batch of pending orders
- submit_pending: guarded submission of pending/queued orders
- rebalance: resting-order price improvement and stale cancellation
- reconcile: ledger <- exchange orders, fills, settlements
- monitor_stop_loss: protective exits on trusted data

Only CriticalDataUnavailable aborts a pass; everything else is recorded per
item in the PassResult.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import time

from requests import exceptions as requests_exceptions

from core.allocator import AllocatorConfig, Candidate, CapitalAllocator
from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.execution import ExecutionEngine, ExecutionResult
from core.order_state import Batch, Order
from core.reconcile import ReconciliationEngine
from core.snapshot import resting_buy_cost, take_snapshot
from core.stop_loss import StopLossMonitor
from infra.ledger import LedgerStore
from infra.metrics import PassStats

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Outcome of one pass"""
    name: str
    counts: Dict[str, int] = field(default_factory=dict)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    aborted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if self.aborted:
            return "aborted"
        return "partial" if self.errors else "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "counts": dict(self.counts),
            "actions": list(self.actions),
            "alerts": list(self.alerts),
            "errors": list(self.errors),
            "aborted": self.aborted,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _count_actions(results: Iterable[ExecutionResult]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for result in results:
        counts[result.action] = counts.get(result.action, 0) + 1
    return counts


class PassRunner:
    """
    Wires the exchange, ledger and engines together and runs passes.

    Every finished pass (aborted or not) is written to the audit trail,
    forwarded to alerting and observed by metrics when those are configured.
    """

    def __init__(self,
                 exchange,
                 ledger: LedgerStore,
                 policy: Optional[Dict] = None,
                 mode: str = "DRY_RUN",
                 alerts=None,
                 metrics=None,
                 audit=None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            exchange: KalshiExchange (or compatible) instance
            ledger: Order ledger
            policy: Policy configuration dict
            mode: "DRY_RUN" | "PAPER" | "LIVE"
            alerts: AlertService (optional)
            metrics: MetricsRecorder (optional)
            audit: AuditLogger (optional)
        """
        self.exchange = exchange
        self.ledger = ledger
        self.policy = policy or {}
        self.mode = mode.upper()
        self.alerts = alerts
        self.metrics = metrics
        self.audit = audit

        self.allocator = CapitalAllocator(AllocatorConfig.from_policy(self.policy))
        self.execution = ExecutionEngine(mode=self.mode, exchange=exchange, policy=self.policy,
                                         ledger=ledger, sleep=sleep)
        self.reconciler = ReconciliationEngine(exchange, ledger, policy=self.policy, sleep=sleep)
        self.stop_loss = StopLossMonitor(exchange, ledger, policy=self.policy, audit=audit, sleep=sleep)
        if self.mode == "DRY_RUN":
            self.stop_loss.config.dry_run = True

    # Plumbing

    def _run(self, name: str, body: Callable[[PassResult], None]) -> PassResult:
        result = PassResult(name=name)
        started = time.monotonic()
        try:
            body(result)
        except CriticalDataUnavailable as e:
            result.aborted = True
            result.errors.append(str(e))
            logger.error("%s pass aborted: %s", name, e)
        result.duration_seconds = time.monotonic() - started
        self._publish(result)
        logger.info(
            "%s pass %s in %.2fs: %s",
            name, result.status, result.duration_seconds, result.counts,
        )
        return result

    def _publish(self, result: PassResult) -> None:
        if self.audit is not None:
            self.audit.log_pass(result)
        if self.alerts is not None:
            self.alerts.notify_pass(result)
        if self.metrics is not None:
            self.metrics.observe_pass(PassStats(
                name=result.name,
                status=result.status,
                duration_seconds=result.duration_seconds,
                counts=result.counts,
            ))

    def _record_execution(self, result: PassResult, results: List[ExecutionResult]) -> None:
        for item in results:
            result.actions.append(item.to_dict())
            if item.error:
                result.errors.append(f"{item.market_id}: {item.error}")
            if item.guard and self.metrics is not None:
                self.metrics.record_guard_rejection(item.guard)
        for action, count in _count_actions(results).items():
            result.counts[action] = result.counts.get(action, 0) + count

    # Passes

    def allocate(self, candidates: List[Candidate], capital: Optional[int] = None,
                 batch_key: Optional[str] = None) -> PassResult:
        """
        Size a batch of pending orders from candidates.

        Available capital defaults to the live cash balance; the hard cap is
        taken from total portfolio value. Existing exposure comes from a fresh
        position snapshot plus live resting buys.
        """
        def body(result: PassResult) -> None:
            try:
                snapshot = take_snapshot(self.exchange)
                resting = self.exchange.list_orders(status="resting")
            except (ExchangeError, requests_exceptions.RequestException) as e:
                raise CriticalDataUnavailable("positions", e) from e

            event_of = {o.market_id: o.event_id for o in self.ledger.orders()}
            event_of.update({c.market_id: c.event_id for c in candidates})

            market_exp: Dict[str, int] = {}
            for position in snapshot.positions:
                market_exp[position.market_id] = market_exp.get(position.market_id, 0) + position.exposure_cost
            for market_id in {o.market_id for o in resting}:
                market_exp[market_id] = market_exp.get(market_id, 0) + resting_buy_cost(resting, [market_id])
            event_exp: Dict[str, int] = {}
            for market_id, exposure in market_exp.items():
                event_id = event_of.get(market_id, market_id)
                event_exp[event_id] = event_exp.get(event_id, 0) + exposure

            available = snapshot.balance.cash if capital is None else int(capital)
            allocation = self.allocator.allocate(
                available_capital=available,
                total_portfolio_value=snapshot.balance.total,
                candidates=candidates,
                market_exposure=market_exp,
                event_exposure=event_exp,
                blacklist=self.ledger.blacklisted_markets(),
            )

            funded = allocation.funded
            result.counts.update({
                "candidates": len(candidates),
                "funded": len(funded),
                "rejected": len(allocation.rejections),
                "total_cost": allocation.total_cost,
                "unallocated": allocation.unallocated,
                "hard_cap": allocation.hard_cap,
            })
            if not funded:
                result.alerts.append("No candidates funded")
                return

            key = batch_key or datetime.now(timezone.utc).strftime("%Y-%m-%d")
            orders = [
                Order(
                    market_id=line.candidate.market_id,
                    event_id=line.candidate.event_id,
                    side=line.candidate.side,
                    limit_price=line.candidate.price_cents,
                    units=line.units,
                    title=line.candidate.title,
                )
                for line in funded
            ]
            batch = Batch(
                batch_key=key,
                total_cost=allocation.total_cost,
                total_potential_payout=sum(o.potential_payout for o in orders),
                unallocated=allocation.unallocated,
                hard_cap=allocation.hard_cap,
            )
            stored = self.ledger.create_batch(batch, orders)
            if stored.id != batch.id:
                result.alerts.append(f"Batch for {key} already exists ({stored.id}); nothing created")
                result.counts["duplicate"] = 1

            result.actions.append({
                "batch": stored.to_dict(),
                "lines": [line.to_dict() for line in allocation.lines],
                "rejections": dict(allocation.rejections),
            })

        return self._run("allocate", body)

    def submit_pending(self, batch_id: Optional[str] = None) -> PassResult:
        """Submit one batch, or every batch not yet fully executed."""
        def body(result: PassResult) -> None:
            if batch_id is not None:
                batch = self.ledger.get_batch(batch_id)
                if batch is None:
                    result.errors.append(f"Unknown batch {batch_id}")
                    return
                batches = [batch]
            else:
                batches = [b for b in self.ledger.batches() if b.executed_at is None]

            result.counts["batches"] = len(batches)
            for batch in batches:
                if batch.is_paused:
                    result.alerts.append(f"Batch {batch.id} is paused")
                    continue
                self._record_execution(result, self.execution.submit_pending(batch))

        return self._run("submit_pending", body)

    def rebalance(self) -> PassResult:
        """Improve or cancel placed orders that keep resting unfilled."""
        def body(result: PassResult) -> None:
            results = self.execution.manage_resting_orders()
            self._record_execution(result, results)
            for item in results:
                if item.action == "cancelled" and item.success:
                    result.alerts.append(f"Cancelled stale order in {item.market_id}: {item.reason}")

        return self._run("rebalance", body)

    def reconcile(self) -> PassResult:
        def body(result: PassResult) -> None:
            summary = self.reconciler.reconcile()
            result.counts.update(summary.counts())
            result.actions.extend(summary.details)
            result.errors.extend(summary.errors)
            if summary.not_found_orders:
                result.alerts.append(
                    f"{len(summary.not_found_orders)} orders unknown to the exchange: "
                    + ", ".join(summary.not_found_orders)
                )
            if summary.orphaned_orders:
                result.alerts.append(
                    f"{len(summary.orphaned_orders)} exchange orders missing from the ledger: "
                    + ", ".join(summary.orphaned_orders)
                )

        return self._run("reconcile", body)

    def monitor_stop_loss(self) -> PassResult:
        def body(result: PassResult) -> None:
            summary = self.stop_loss.run()
            result.counts.update(summary.counts())
            result.actions.extend(summary.details)
            result.actions.extend({"sell": sell} for sell in summary.sells)
            result.alerts.extend(summary.alerts)
            result.errors.extend(summary.errors)
            if self.metrics is not None:
                self.metrics.record_stop_loss(summary.sold, summary.data_errors)

        return self._run("stop_loss", body)
