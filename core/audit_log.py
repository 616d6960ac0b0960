"""
favfund Core: Audit Logger

Structured JSONL trail of pass outcomes, odds readings and protective exits.
The odds history doubles as the record of which prices the stop-loss monitor
saw and how much it trusted them.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Streams (one JSON object per line):
    - passes.jsonl: every pass result
    - odds_history.jsonl: every stop-loss price reading
    - exits.jsonl: every protective sell
    """

    def __init__(self, audit_dir: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_dir: Directory for audit files (default: logs/audit)
        """
        self.audit_dir = Path(audit_dir or "logs/audit")
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.passes_file = self.audit_dir / "passes.jsonl"
        self.odds_file = self.audit_dir / "odds_history.jsonl"
        self.exits_file = self.audit_dir / "exits.jsonl"
        logger.info(f"Initialized AuditLogger at {self.audit_dir}")

    def _append(self, path: Path, entry: Dict[str, Any]) -> None:
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log {path}: {e}")

    def log_pass(self, result: Any) -> None:
        """Log a PassResult (or any object with to_dict)"""
        entry = result.to_dict() if hasattr(result, "to_dict") else dict(result)
        self._append(self.passes_file, entry)
        logger.debug(f"Audited pass: {entry.get('name')}")

    def log_odds(self, check: Any, threshold_cents: float) -> None:
        """Log one stop-loss reading"""
        our_side = check.our_side_price
        self._append(self.odds_file, {
            "market_id": check.market_id,
            "event_id": check.event_id,
            "side": check.side,
            "yes_price": check.validation.price,
            "our_side_price": our_side,
            "drop_alert": our_side is not None and our_side < threshold_cents,
            "data_quality": check.validation.confidence.value,
            "method": check.validation.method,
            "action": check.action,
        })

    def log_exit(self, check: Any, external_order_id: Optional[str]) -> None:
        self._append(self.exits_file, {
            "market_id": check.market_id,
            "side": check.side,
            "contracts": check.contracts,
            "our_side_price": check.our_side_price,
            "confidence": check.validation.confidence.value,
            "reason": check.reason,
            "order_ids": list(check.order_ids),
            "external_order_id": external_order_id,
        })

    @staticmethod
    def _read(path: Path, n: int) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log {path}: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))  # Most recent first

    def get_recent_passes(self, n: int = 10) -> List[Dict[str, Any]]:
        return self._read(self.passes_file, n)

    def get_odds_history(self, market_id: Optional[str] = None, n: int = 500) -> List[Dict[str, Any]]:
        """
        Most recent odds readings, optionally for one market.
        """
        entries = self._read(self.odds_file, n)
        if market_id is not None:
            entries = [e for e in entries if e.get("market_id") == market_id]
        return entries
