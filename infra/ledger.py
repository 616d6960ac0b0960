"""
favfund Infrastructure: Order Ledger

Persistent record of every local order, batch and blacklisted market.
JSON file with atomic writes (temp file + rename). The ledger is re-read from
disk on every operation so overlapping passes see each other's writes.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
import logging

from core.exceptions import CriticalDataUnavailable
from core.order_state import Batch, BlacklistEntry, Order, ResultState, SettlementState

logger = logging.getLogger(__name__)


DEFAULT_LEDGER = {
    "orders": {},  # order id -> Order dict
    "batches": {},  # batch id -> Batch dict
    "blacklist": {},  # market id -> BlacklistEntry dict
    "updated_at": None,
}

RESULT_FIELDS = ("result_state", "result_at")
SETTLEMENT_FIELDS = ("settlement_state", "settled_at", "actual_payout", "fee", "pnl")


def _merge_order(stored: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply an order write without letting a stale copy undo a final state.

    A decided result never goes back to undecided, and a successful
    settlement never leaves success. The stored values win for those fields.
    """
    if not stored:
        return incoming

    merged = dict(incoming)
    decided = (ResultState.WON.value, ResultState.LOST.value)
    if stored.get("result_state") in decided and incoming.get("result_state") not in decided:
        logger.warning(
            "Refusing result regression for %s: %s → %s",
            stored.get("id"), stored.get("result_state"), incoming.get("result_state"),
        )
        for name in RESULT_FIELDS + SETTLEMENT_FIELDS:
            merged[name] = stored.get(name)
    elif (stored.get("settlement_state") == SettlementState.SUCCESS.value
          and incoming.get("settlement_state") != SettlementState.SUCCESS.value):
        logger.warning(
            "Refusing settlement regression for %s: success → %s",
            stored.get("id"), incoming.get("settlement_state"),
        )
        for name in SETTLEMENT_FIELDS:
            merged[name] = stored.get(name)
    return merged


class LedgerStore:
    """
    Durable storage for Order, Batch and BlacklistEntry records.

    Features:
    - Atomic writes (temp file + rename)
    - Writes keyed by id, safe to apply out of order
    - Stale order copies cannot undo a decided result or a successful settlement
    - One batch per allocation key
    - write_count for observing idempotent passes
    """

    def __init__(self, ledger_file: Optional[str] = None):
        """
        Initialize ledger store.

        Args:
            ledger_file: Path to ledger JSON file (default: $LEDGER_FILE or data/ledger.json)
        """
        self.ledger_file = Path(ledger_file or os.getenv("LEDGER_FILE", "data/ledger.json"))
        self.ledger_file.parent.mkdir(parents=True, exist_ok=True)
        self.write_count = 0
        self._lock = threading.RLock()

    def load(self) -> Dict[str, Any]:
        """
        Load the ledger from disk.

        A missing file is an empty ledger. An unreadable one aborts the pass
        rather than being silently replaced by an empty ledger on the next save.
        """
        if not self.ledger_file.exists():
            logger.debug("No ledger file found, starting empty")
            return json.loads(json.dumps(DEFAULT_LEDGER))

        try:
            with open(self.ledger_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load ledger %s: %s", self.ledger_file, e)
            raise CriticalDataUnavailable("ledger", e) from e

        if not isinstance(data, dict):
            raise CriticalDataUnavailable("ledger", ValueError("ledger root must be an object"))
        return {**json.loads(json.dumps(DEFAULT_LEDGER)), **data}

    def save(self, data: Dict[str, Any]) -> None:
        """Save the ledger atomically."""
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.ledger_file.parent,
            prefix=".ledger_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.ledger_file)
        except OSError:
            logger.exception("Failed to save ledger %s", self.ledger_file)
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        self.write_count += 1
        logger.debug("Saved ledger (%d writes this process)", self.write_count)

    def _mutate(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        with self._lock:
            data = self.load()
            result = fn(data)
            self.save(data)
            return result

    # Orders

    def get_order(self, order_id: str) -> Optional[Order]:
        raw = self.load()["orders"].get(order_id)
        return Order.from_dict(raw) if raw else None

    def orders(
        self,
        placement_states: Optional[Iterable[str]] = None,
        predicate: Optional[Callable[[Order], bool]] = None,
    ) -> List[Order]:
        """All orders, optionally filtered, oldest first."""
        wanted = set(placement_states) if placement_states else None
        result = []
        for raw in self.load()["orders"].values():
            order = Order.from_dict(raw)
            if wanted is not None and order.placement_state not in wanted:
                continue
            if predicate is not None and not predicate(order):
                continue
            result.append(order)
        result.sort(key=lambda o: o.created_at)
        return result

    def upsert_order(self, order: Order) -> None:
        def _apply(data):
            data["orders"][order.id] = _merge_order(data["orders"].get(order.id), order.to_dict())

        self._mutate(_apply)

    def upsert_orders(self, orders: Iterable[Order]) -> None:
        orders = list(orders)
        if not orders:
            return

        def _apply(data):
            for order in orders:
                data["orders"][order.id] = _merge_order(data["orders"].get(order.id), order.to_dict())

        self._mutate(_apply)

    # Batches

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        raw = self.load()["batches"].get(batch_id)
        return Batch.from_dict(raw) if raw else None

    def get_batch_by_key(self, batch_key: str) -> Optional[Batch]:
        for raw in self.load()["batches"].values():
            if raw.get("batch_key") == batch_key:
                return Batch.from_dict(raw)
        return None

    def batches(self) -> List[Batch]:
        batches = [Batch.from_dict(raw) for raw in self.load()["batches"].values()]
        batches.sort(key=lambda b: b.created_at)
        return batches

    def save_batch(self, batch: Batch) -> None:
        def _apply(data):
            data["batches"][batch.id] = batch.to_dict()

        self._mutate(_apply)

    def create_batch(self, batch: Batch, orders: List[Order]) -> Batch:
        """
        Persist a new batch with its orders in one write.

        If a batch with the same key already exists it is returned unchanged
        and nothing is written.
        """
        with self._lock:
            data = self.load()
            for raw in data["batches"].values():
                if raw.get("batch_key") == batch.batch_key:
                    logger.warning("Batch for key %s already exists (%s)", batch.batch_key, raw.get("id"))
                    return Batch.from_dict(raw)

            batch.order_ids = [order.id for order in orders]
            for order in orders:
                order.batch_id = batch.id
                data["orders"][order.id] = order.to_dict()
            data["batches"][batch.id] = batch.to_dict()
            self.save(data)
            logger.info("Created batch %s (%s) with %d orders", batch.id, batch.batch_key, len(orders))
            return batch

    def batch_orders(self, batch_id: str) -> List[Order]:
        return self.orders(predicate=lambda o: o.batch_id == batch_id)

    def set_paused(self, batch_id: str, paused: bool) -> Batch:
        def _apply(data):
            raw = data["batches"].get(batch_id)
            if raw is None:
                raise KeyError(f"Unknown batch {batch_id}")
            raw["is_paused"] = bool(paused)
            return Batch.from_dict(raw)

        return self._mutate(_apply)

    # Blacklist

    def blacklist_market(self, entry: BlacklistEntry) -> None:
        def _apply(data):
            data["blacklist"][entry.market_id] = entry.to_dict()

        self._mutate(_apply)
        logger.info("Blacklisted %s: %s", entry.market_id, entry.reason)

    def is_blacklisted(self, market_id: str) -> bool:
        return market_id in self.load()["blacklist"]

    def blacklisted_markets(self) -> Set[str]:
        return set(self.load()["blacklist"].keys())

    def blacklist_entries(self) -> List[BlacklistEntry]:
        return [BlacklistEntry.from_dict(raw) for raw in self.load()["blacklist"].values()]

    def clear_blacklist(self, market_id: Optional[str] = None) -> int:
        """Remove one market (or every market) from the blacklist."""
        def _apply(data):
            if market_id is None:
                removed = len(data["blacklist"])
                data["blacklist"] = {}
            else:
                removed = 1 if data["blacklist"].pop(market_id, None) else 0
            return removed

        return self._mutate(_apply)


# Singleton instance
_ledger: Optional[LedgerStore] = None


def get_ledger(ledger_file: Optional[str] = None) -> LedgerStore:
    """Get singleton ledger instance"""
    global _ledger
    if _ledger is None:
        _ledger = LedgerStore(ledger_file=ledger_file)
    return _ledger
