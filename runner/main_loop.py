"""
favfund Runner: Command Line Passes

Every subcommand runs one pass (or, with --loop, repeats it on an interval):

    allocate        size a batch of favorite bets from candidates
    submit          guarded submission of pending/queued orders
    rebalance       improve or cancel long-resting orders
    reconcile       align the ledger with exchange orders, fills, settlements
    stop-loss       protective exits on trusted data
    cycle           reconcile, rebalance, submit, stop-loss in that order

Operator commands: validate-config, pause, resume, clear-blacklist, summary.
"""

import argparse
import json
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from requests import exceptions as requests_exceptions

from core.allocator import Candidate, build_candidate
from core.audit_log import AuditLogger
from core.exceptions import ConfigError, ExchangeError
from core.exchange_kalshi import KALSHI_DEMO_BASE, KalshiExchange
from core.order_state import OrderStateMachine
from core.passes import PassResult, PassRunner
from infra.alerting import AlertService
from infra.ledger import LedgerStore
from infra.metrics import MetricsRecorder
from tools.config_validator import load_policy, validate_policy

logger = logging.getLogger(__name__)

LOG_FILE = "logs/favfund.log"


def configure_logging(level: str = "INFO", log_file: str = LOG_FILE) -> None:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )


def load_candidates(path: str) -> List[Candidate]:
    """Candidates from a JSON list of objects with Candidate fields."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of candidates")
    return [Candidate(**item) for item in raw]


class BotRunner:
    """
    Builds collaborators from policy.yaml and runs passes.

    Responsibilities:
    - Load and validate config
    - Pick exchange endpoint and write access from the mode
    - Run single passes or a repeating loop
    - Stop cleanly on SIGINT/SIGTERM between passes
    """

    def __init__(self, config_dir: str = "config", mode: str = "DRY_RUN", exchange=None):
        self.config_dir = Path(config_dir)
        self.policy = load_policy(self.config_dir)
        self.mode = mode.upper()

        if exchange is None:
            exchange_cfg = self.policy.get("exchange", {})
            base_url = exchange_cfg.get("base_url")
            if self.mode == "PAPER" and not base_url:
                base_url = KALSHI_DEMO_BASE
            exchange = KalshiExchange(
                base_url=base_url,
                read_only=self.mode == "DRY_RUN",
                min_interval=exchange_cfg.get("min_interval", 0.1),
                max_retries=exchange_cfg.get("max_retries", 3),
                timeout=exchange_cfg.get("timeout", 20.0),
            )
        self.exchange = exchange

        ledger_cfg = self.policy.get("ledger", {})
        self.ledger = LedgerStore(ledger_file=ledger_cfg.get("file"))
        self.audit = AuditLogger(audit_dir=ledger_cfg.get("audit_dir"))

        alerts_cfg = self.policy.get("alerts", {})
        self.alerts = AlertService.from_config(bool(alerts_cfg.get("enabled")), alerts_cfg)

        metrics_cfg = self.policy.get("metrics", {})
        self.metrics = MetricsRecorder(enabled=bool(metrics_cfg.get("enabled")), port=int(metrics_cfg.get("port", 9100)))
        self.metrics.start()

        self.passes = PassRunner(
            exchange=self.exchange,
            ledger=self.ledger,
            policy=self.policy,
            mode=self.mode,
            alerts=self.alerts,
            metrics=self.metrics,
            audit=self.audit,
        )

        self._running = True
        logger.info("Initialized BotRunner in %s mode (ledger=%s)", self.mode, self.ledger.ledger_file)

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received; stopping after the current pass")
        self._running = False

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def discover_candidates(self, market_ids: List[str]) -> List[Candidate]:
        """Price each market on its favorite side from live quote and book."""
        candidates = []
        for market_id in market_ids:
            try:
                quote = self.exchange.get_market(market_id)
            except (ExchangeError, requests_exceptions.RequestException) as e:
                logger.warning("Skipping %s: market lookup failed: %s", market_id, e)
                continue
            try:
                orderbook = self.exchange.get_orderbook(market_id)
            except (ExchangeError, requests_exceptions.RequestException) as e:
                logger.warning("Order book for %s unavailable, using fallback depth: %s", market_id, e)
                orderbook = None
            candidates.append(build_candidate(quote, orderbook))
        return candidates

    def run_pass(self, command: str, args: argparse.Namespace) -> List[PassResult]:
        if command == "allocate":
            if args.candidates:
                candidates = load_candidates(args.candidates)
            else:
                candidates = self.discover_candidates(args.markets or [])
            return [self.passes.allocate(candidates, capital=args.capital, batch_key=args.batch_key)]
        if command == "submit":
            return [self.passes.submit_pending(batch_id=args.batch_id)]
        if command == "rebalance":
            return [self.passes.rebalance()]
        if command == "reconcile":
            return [self.passes.reconcile()]
        if command == "stop-loss":
            return [self.passes.monitor_stop_loss()]
        if command == "cycle":
            results = [self.passes.reconcile(), self.passes.rebalance(), self.passes.submit_pending()]
            if self.policy.get("stop_loss", {}).get("enabled", True):
                results.append(self.passes.monitor_stop_loss())
            return results
        raise ValueError(f"Unknown pass {command!r}")

    def run_forever(self, command: str, args: argparse.Namespace, interval_seconds: float) -> None:
        interval = max(float(interval_seconds), 1.0)
        logger.info("Starting continuous %s loop (interval=%ss)", command, interval)
        while self._running:
            start = time.monotonic()
            self.run_pass(command, args)
            elapsed = time.monotonic() - start
            sleep_for = max(1.0, interval - elapsed)
            logger.info("%s took %.2fs, sleeping %.2fs", command, elapsed, sleep_for)
            while self._running and sleep_for > 0:
                step = min(sleep_for, 1.0)
                time.sleep(step)
                sleep_for -= step
        logger.info("Loop stopped cleanly.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="favfund: fixed-risk favorite bets on Kalshi")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", default="DRY_RUN", choices=["DRY_RUN", "PAPER", "LIVE"], help="Execution mode")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--loop", action="store_true", help="Repeat the pass until stopped")
    parser.add_argument("--interval", type=float, default=300, help="Seconds between passes with --loop (default: 300)")

    sub = parser.add_subparsers(dest="command", required=True)

    allocate = sub.add_parser("allocate", help="Create a batch of pending orders")
    source = allocate.add_mutually_exclusive_group(required=True)
    source.add_argument("--candidates", help="JSON file with a list of candidates")
    source.add_argument("--markets", nargs="+", help="Market tickers to price from live data")
    allocate.add_argument("--capital", type=int, default=None, help="Capital to allocate in cents (default: cash balance)")
    allocate.add_argument("--batch-key", default=None, help="Idempotency key (default: UTC date)")

    submit = sub.add_parser("submit", help="Submit pending and queued orders")
    submit.add_argument("--batch-id", default=None, help="Only this batch")

    sub.add_parser("rebalance", help="Improve or cancel resting orders")
    sub.add_parser("reconcile", help="Reconcile ledger with the exchange")
    sub.add_parser("stop-loss", help="Run the protective-exit monitor")
    sub.add_parser("cycle", help="Reconcile, rebalance, submit, stop-loss")
    sub.add_parser("validate-config", help="Validate policy.yaml and exit")
    sub.add_parser("summary", help="Print ledger state counts")

    pause = sub.add_parser("pause", help="Pause a batch")
    pause.add_argument("batch_id")
    resume = sub.add_parser("resume", help="Resume a paused batch")
    resume.add_argument("batch_id")

    clear = sub.add_parser("clear-blacklist", help="Remove markets from the blacklist")
    clear.add_argument("--market", default=None, help="Only this market (default: all)")
    return parser


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "validate-config":
        errors = validate_policy(args.config_dir)
        if errors:
            print("\nConfiguration Validation Failed:\n")
            for error in errors:
                print(f"  • {error}")
            return 1
        print("policy.yaml is valid")
        return 0

    try:
        runner = BotRunner(config_dir=args.config_dir, mode=args.mode)
    except ConfigError as e:
        for error in e.errors:
            logger.error("Config: %s", error)
        return 1

    if args.command == "pause" or args.command == "resume":
        try:
            batch = runner.ledger.set_paused(args.batch_id, args.command == "pause")
        except KeyError as e:
            logger.error("%s", e)
            return 1
        _print(batch.to_dict())
        return 0
    if args.command == "clear-blacklist":
        removed = runner.ledger.clear_blacklist(args.market)
        _print({"removed": removed})
        return 0
    if args.command == "summary":
        summary: Dict[str, Any] = OrderStateMachine.get_summary(runner.ledger.orders())
        summary["blacklisted_markets"] = sorted(runner.ledger.blacklisted_markets())
        _print(summary)
        return 0

    if args.loop:
        runner.install_signal_handlers()
        runner.run_forever(args.command, args, args.interval)
        return 0

    results = runner.run_pass(args.command, args)
    _print([result.to_dict() for result in results])
    return 1 if any(result.aborted for result in results) else 0


if __name__ == "__main__":
    sys.exit(main())
