"""
Strategy configuration validation.

Runs at create time, before a record is persisted or a Runner exists.
Checks:
- Required fields are present
- Bounds, leverage, spacing, sizes and polling interval are within range
- Exactly one of grid_count / grid_step
- Risky but legal settings produce warnings, not errors
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, List, Mapping, Optional

from gridengine.core.json_utils import dumps

logger = logging.getLogger("gridengine")

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125
MAX_LEVELS_WARN = 200
HIGH_LEVERAGE_WARN = 20

_SYMBOL_RE = re.compile(r"^[A-Z0-9]{2,20}(USDT|USDC)$")


class ValidationSeverity(Enum):
    ERROR = auto()    # Rejects the strategy
    WARNING = auto()  # Logged, strategy accepted


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigurationError(ValueError):
    """A strategy definition that must never reach a Runner."""

    def __init__(self, issues: List[ValidationIssue]) -> None:
        self.issues = issues
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues) or "invalid configuration"
        super().__init__(summary)


def _num(raw: Mapping[str, Any], key: str) -> Optional[float]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return math.nan
    return num


class StrategyValidator:
    """
    Validates a raw strategy mapping (YAML entry or control-surface payload).

    Usage:
        result = StrategyValidator().validate(raw)
        if not result.valid:
            raise ConfigurationError(result.get_errors())
    """

    REQUIRED_STRINGS = ("symbol", "position_side", "api_key", "api_secret")

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Mapping[str, Any]], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Mapping[str, Any]], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, raw: Mapping[str, Any]) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required(raw))
        issues.extend(self._validate_symbol_and_side(raw))
        issues.extend(self._validate_bounds(raw))
        issues.extend(self._validate_spacing(raw))
        issues.extend(self._validate_sizes(raw))
        issues.extend(self._validate_leverage(raw))
        issues.extend(self._validate_polling(raw))
        for validator in self._custom_validators:
            issues.extend(validator(raw) or [])
        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_required(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        issues = []
        for name in self.REQUIRED_STRINGS:
            value = raw.get(name)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(name, f"'{name}' is missing or empty", value=value))
        return issues

    def _validate_symbol_and_side(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        issues = []
        symbol = raw.get("symbol")
        if symbol and not _SYMBOL_RE.match(str(symbol).upper()):
            issues.append(ValidationIssue(
                "symbol",
                f"'{symbol}' is not a USDT-M futures symbol",
                value=symbol,
                suggestion="Use the exchange form, e.g. BTCUSDT",
            ))
        side = raw.get("position_side")
        if side and str(side).upper() not in ("LONG", "SHORT"):
            issues.append(ValidationIssue("position_side", "must be LONG or SHORT", value=side))
        return issues

    def _validate_bounds(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        issues = []
        lo, hi = _num(raw, "price_min"), _num(raw, "price_max")
        for name, value in (("price_min", lo), ("price_max", hi)):
            if value is None:
                issues.append(ValidationIssue(name, f"'{name}' is required"))
            elif math.isnan(value) or value <= 0:
                issues.append(ValidationIssue(name, f"'{name}' must be a positive number", value=raw.get(name)))
        if lo and hi and not math.isnan(lo) and not math.isnan(hi) and lo >= hi:
            issues.append(ValidationIssue(
                "price_min",
                f"price_min {lo} must be below price_max {hi}",
                value=lo,
            ))
        return issues

    def _validate_spacing(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        count, step = _num(raw, "grid_count"), _num(raw, "grid_step")
        if (count is None) == (step is None):
            issues.append(ValidationIssue(
                "grid_step",
                "exactly one of grid_count or grid_step must be set",
                suggestion="Set grid_step for a fixed price gap, or grid_count to split the range evenly",
            ))
            return issues
        if count is not None and (math.isnan(count) or count < 1 or count != int(count)):
            issues.append(ValidationIssue("grid_count", "grid_count must be a positive integer", value=raw.get("grid_count")))
            return issues
        if step is not None and (math.isnan(step) or step <= 0):
            issues.append(ValidationIssue("grid_step", "grid_step must be > 0", value=raw.get("grid_step")))
            return issues

        lo, hi = _num(raw, "price_min"), _num(raw, "price_max")
        if lo and hi and not math.isnan(lo) and not math.isnan(hi) and hi > lo:
            spacing = step if step is not None else (hi - lo) / count
            levels = int(math.floor((hi - lo) / spacing + 1e-9)) + 1
            if levels < 2:
                issues.append(ValidationIssue(
                    "grid_step",
                    f"grid_step {spacing} leaves a single level in [{lo}, {hi}]",
                    value=spacing,
                ))
            elif levels > MAX_LEVELS_WARN:
                issues.append(ValidationIssue(
                    "grid_step",
                    f"{levels} levels may exhaust the open-order limit",
                    severity=ValidationSeverity.WARNING,
                    value=spacing,
                ))
        return issues

    def _validate_sizes(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        issues = []
        size = _num(raw, "order_size")
        if size is None or math.isnan(size) or size <= 0:
            issues.append(ValidationIssue("order_size", "order_size must be > 0", value=raw.get("order_size")))
        cap = _num(raw, "max_position_quantity")
        if cap is not None:
            if math.isnan(cap) or cap <= 0:
                issues.append(ValidationIssue(
                    "max_position_quantity", "must be > 0 when set", value=raw.get("max_position_quantity")
                ))
            elif size and not math.isnan(size) and cap < size:
                issues.append(ValidationIssue(
                    "max_position_quantity",
                    "cap is below one order; no open order can ever be placed",
                    severity=ValidationSeverity.WARNING,
                    value=cap,
                ))
        for name in ("open_quantity", "close_quantity", "min_position_quantity"):
            value = _num(raw, name)
            if value is not None and (math.isnan(value) or value <= 0):
                issues.append(ValidationIssue(name, "must be > 0 when set", value=raw.get(name)))
        floor_qty = _num(raw, "min_position_quantity")
        if floor_qty and cap and not math.isnan(floor_qty) and not math.isnan(cap) and floor_qty >= cap:
            issues.append(ValidationIssue(
                "min_position_quantity",
                f"min_position_quantity {floor_qty} must be below max_position_quantity {cap}",
                value=floor_qty,
            ))
        return issues

    def _validate_polling(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        interval = _num(raw, "polling_interval_sec")
        if interval is None:
            return []
        if math.isnan(interval) or interval <= 0:
            return [ValidationIssue("polling_interval_sec", "must be > 0 when set", value=raw.get("polling_interval_sec"))]
        if interval < 1:
            return [ValidationIssue(
                "polling_interval_sec",
                f"{interval}s polling burns the request budget shared by this key",
                severity=ValidationSeverity.WARNING,
                value=interval,
            )]
        return []

    def _validate_leverage(self, raw: Mapping[str, Any]) -> List[ValidationIssue]:
        lev = _num(raw, "leverage")
        if lev is None:
            return []
        if math.isnan(lev) or lev != int(lev) or not MIN_LEVERAGE <= lev <= MAX_LEVERAGE:
            return [ValidationIssue(
                "leverage",
                f"leverage must be an integer in [{MIN_LEVERAGE}, {MAX_LEVERAGE}]",
                value=raw.get("leverage"),
            )]
        if lev > HIGH_LEVERAGE_WARN:
            return [ValidationIssue(
                "leverage",
                f"{int(lev)}x is high for grid trading",
                severity=ValidationSeverity.WARNING,
                value=lev,
            )]
        return []


def validate_or_raise(raw: Mapping[str, Any], validator: Optional[StrategyValidator] = None) -> ValidationResult:
    """Validate and log warnings; raise ConfigurationError on any error."""
    result = (validator or StrategyValidator()).validate(raw)
    for issue in result.get_warnings():
        logger.warning(dumps({
            "event": "strategy_config_warning",
            "symbol": raw.get("symbol"),
            "field": issue.field,
            "msg": issue.message,
        }))
    if not result.valid:
        raise ConfigurationError(result.get_errors())
    return result
