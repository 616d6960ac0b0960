"""
Configuration Validation Module

Validates policy.yaml against Pydantic schemas and runs logical sanity
checks before any pass touches the exchange.

Usage:
    from tools.config_validator import validate_policy

    errors = validate_policy("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import ConfigError

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class AllocatorSection(BaseModel):
    """Capital allocation parameters"""
    max_position_pct: float = Field(default=0.03, gt=0, le=1, description="Hard cap as fraction of portfolio value")
    min_price_cents: int = Field(default=90, ge=1, le=99, description="Price floor for favorites (cents)")
    max_price_cents: int = Field(default=99, ge=1, le=99, description="Price ceiling (cents)")
    min_liquidity_score: float = Field(default=10.0, ge=0, le=100, description="Minimum liquidity score")
    dedupe_events: bool = Field(default=True, description="Keep one market per event")

    @field_validator('max_price_cents')
    @classmethod
    def validate_price_band(cls, v: int, info) -> int:
        """Ensure max_price_cents >= min_price_cents"""
        min_price = info.data.get('min_price_cents', 1)
        if v < min_price:
            raise ValueError(f"max_price_cents ({v}) must be >= min_price_cents ({min_price})")
        return v


class ExecutionSection(BaseModel):
    """Submission parameters"""
    order_delay_seconds: float = Field(default=0.2, ge=0, description="Pause between order submissions")
    client_id_prefix: str = Field(default="live", min_length=1, pattern="^[A-Za-z0-9_-]+$", description="Client order id prefix")


class RebalanceSection(BaseModel):
    """Resting-order management"""
    improve_after_minutes: float = Field(default=60, gt=0, description="Re-price resting orders after (minutes)")
    cancel_after_minutes: float = Field(default=240, gt=0, description="Cancel and blacklist after (minutes)")
    price_improvement_cents: int = Field(default=1, ge=1, le=10, description="Cents added per re-price")

    @field_validator('cancel_after_minutes')
    @classmethod
    def validate_windows(cls, v: float, info) -> float:
        improve = info.data.get('improve_after_minutes', 0)
        if v <= improve:
            raise ValueError(f"cancel_after_minutes ({v}) must be > improve_after_minutes ({improve})")
        return v


class ReconcileSection(BaseModel):
    check_market_results: bool = Field(default=True, description="Look up finalized markets without settlements")
    market_delay_seconds: float = Field(default=0.1, ge=0, description="Pause between market lookups")


class StopLossSection(BaseModel):
    """Protective exit and data-quality gating"""
    enabled: bool = Field(default=True)
    threshold: float = Field(default=0.75, gt=0, lt=1, description="Exit below this probability of our side")
    max_spread_cents: int = Field(default=30, ge=0, le=100)
    max_price_divergence: int = Field(default=10, ge=0, le=100)
    min_volume: int = Field(default=10, ge=0)
    orderbook_tolerance: int = Field(default=5, ge=0, le=100)
    suspicious_prices: List[int] = Field(default_factory=lambda: [50], description="Known bad-data prices")
    max_positions_at_same_price: int = Field(default=3, ge=2)
    improbable_below: int = Field(default=40, ge=0, le=100)
    improbable_above: int = Field(default=95, ge=0, le=100)
    refetch_delay_seconds: float = Field(default=1.0, ge=0)
    refetch_tolerance: int = Field(default=5, ge=0, le=100)
    orderbook_depth: int = Field(default=5, ge=1)
    market_delay_seconds: float = Field(default=0.2, ge=0)
    dry_run: bool = Field(default=False)

    @field_validator('suspicious_prices')
    @classmethod
    def validate_prices(cls, v: List[int]) -> List[int]:
        for price in v:
            if not 0 <= price <= 100:
                raise ValueError(f"suspicious price must be 0-100 cents, got {price}")
        return v


class ExchangeSection(BaseModel):
    base_url: Optional[str] = Field(default=None, description="Overrides KALSHI_BASE_URL")
    min_interval: float = Field(default=0.1, ge=0, description="Minimum seconds between API calls")
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout: float = Field(default=20.0, gt=0)


class AlertsSection(BaseModel):
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MetricsSection(BaseModel):
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, ge=1, le=65535)


class LedgerSection(BaseModel):
    file: str = Field(default="data/ledger.json", min_length=1)
    audit_dir: str = Field(default="logs/audit", min_length=1)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    allocator: AllocatorSection = Field(default_factory=AllocatorSection)
    execution: ExecutionSection = Field(default_factory=ExecutionSection)
    rebalance: RebalanceSection = Field(default_factory=RebalanceSection)
    reconcile: ReconcileSection = Field(default_factory=ReconcileSection)
    stop_loss: StopLossSection = Field(default_factory=StopLossSection)
    exchange: ExchangeSection = Field(default_factory=ExchangeSection)
    alerts: AlertsSection = Field(default_factory=AlertsSection)
    metrics: MetricsSection = Field(default_factory=MetricsSection)
    ledger: LedgerSection = Field(default_factory=LedgerSection)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_sanity_checks(policy: PolicySchema) -> List[str]:
    """
    Logical consistency checks the per-field schema cannot express.
    """
    errors = []
    stop_loss = policy.stop_loss
    allocator = policy.allocator

    if stop_loss.improbable_below >= stop_loss.improbable_above:
        errors.append(
            f"CONTRADICTION: stop_loss.improbable_below ({stop_loss.improbable_below}) must be "
            f"< improbable_above ({stop_loss.improbable_above})"
        )

    if stop_loss.threshold * 100 >= allocator.min_price_cents:
        errors.append(
            f"UNSAFE: stop_loss.threshold ({stop_loss.threshold}) would exit every new position "
            f"bought at or above min_price_cents ({allocator.min_price_cents}c)"
        )

    if policy.alerts.enabled and not policy.alerts.webhook_url and not policy.alerts.dry_run:
        logger.warning("alerts.enabled without webhook_url; falling back to $%s", policy.alerts.webhook_env)

    return errors


def _read_policy(config_dir: Union[str, Path]) -> Tuple[Optional[Dict[str, Any]], List[str]]:
    errors = []
    policy_path = Path(config_dir) / "policy.yaml"

    try:
        config = load_yaml_file(policy_path)
        policy = PolicySchema(**config)
    except FileNotFoundError as e:
        return None, [f"policy.yaml: {e}"]
    except yaml.YAMLError as e:
        return None, [f"policy.yaml: Invalid YAML - {e}"]
    except TypeError as e:
        return None, [f"policy.yaml: top level must be a mapping ({e})"]
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"policy.yaml: {field}: {error['msg']}")
        return None, errors

    errors.extend(validate_sanity_checks(policy))
    return policy.model_dump(), errors


def validate_policy(config_dir: Union[str, Path] = "config") -> List[str]:
    """
    Validate policy.yaml against schema and sanity checks.

    Args:
        config_dir: Path to config directory

    Returns:
        List of error messages (empty if valid)
    """
    _, errors = _read_policy(config_dir)
    if not errors:
        logger.info("policy.yaml validation passed")
    else:
        logger.error(f"{len(errors)} validation error(s) found")
    return errors


def load_policy(config_dir: Union[str, Path] = "config") -> Dict[str, Any]:
    """
    Load the validated policy with defaults filled in.

    Raises:
        ConfigError: policy.yaml is missing, malformed or invalid
    """
    policy, errors = _read_policy(config_dir)
    if errors:
        raise ConfigError(errors)
    return policy


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_policy(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
