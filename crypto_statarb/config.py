"""
config.py -- strategy / backtest configuration

One flat dataclass shared by the analyzer, strategy, backtest, discovery and
live loop. Defaults reproduce the research setup (z entry 2.0 / exit 0.5 /
stop 3.5 over a 100-bar lookback, 50% of capital per trade, 10bps fees).

Per-pair overrides live in pair_specific_params, keyed "SYM1_SYM2":
    {"ID/USDT_HOOK/USDT": {"lookback_period": 120, "entry_threshold": 2.5}}
"""

import json
from dataclasses import dataclass, field, fields, replace, asdict
from enum import Enum
from pathlib import Path
from typing import Optional


class StrategyType(str, Enum):
    SPOT = "spot"          # short leg = sell spot
    FUTURES = "futures"    # short leg on a perpetual contract


@dataclass
class StrategyConfig:
    # --- signals ---
    entry_threshold: float = 2.0         # |z| to open
    exit_threshold: float = 0.5          # |z| to close (mean reversion)
    stop_loss_threshold: float = 3.5     # adverse z to stop out
    lookback_period: int = 100           # bars in the z-score window
    # --- pair filter ---
    min_correlation: float = 0.7
    enforce_correlation: bool = True     # False = test mode, trade any pair
    max_stability: Optional[float] = 0.05  # max std of monthly correlation
    max_pairs: int = 300
    # --- capital ---
    initial_capital: float = 10_000.0
    position_size: float = 0.5           # fraction of capital per trade
    commission: float = 0.001            # per side, per leg
    # --- instruments ---
    strategy_type: StrategyType = StrategyType.SPOT
    leverage: float = 1.0
    margin_type: str = "cross"
    use_contract_for_short: bool = True  # futures only: short leg on a contract
    # --- data ---
    timeframe: str = "1h"                # correlation analysis / live bars
    backtest_timeframe: str = "15m"
    correlation_analysis_months: int = 6
    correlation_period_hours: float = 720  # backtest window when no dates given
    backtest_start_date: Optional[str] = None
    backtest_end_date: Optional[str] = None
    # --- live ---
    scan_interval: float = 60.0          # seconds between live cycles
    trade_amount: float = 1000.0         # capital per live pair trade
    auto_trade: bool = False             # False = signals only, no orders
    # --- reporting ---
    max_reports: int = 3
    pair_specific_params: dict = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.strategy_type, str):
            try:
                self.strategy_type = StrategyType(self.strategy_type)
            except ValueError:
                raise ValueError(
                    f"unknown strategy_type '{self.strategy_type}' "
                    f"(expected one of {[s.value for s in StrategyType]})")

    def validate(self) -> "StrategyConfig":
        """Raise ValueError on settings the engine cannot run with."""
        if not (0 <= self.exit_threshold < self.entry_threshold
                < self.stop_loss_threshold):
            raise ValueError(
                f"thresholds must satisfy 0 <= exit < entry < stop_loss, got "
                f"exit={self.exit_threshold} entry={self.entry_threshold} "
                f"stop_loss={self.stop_loss_threshold}")
        if self.lookback_period < 2:
            raise ValueError(f"lookback_period must be >= 2, got {self.lookback_period}")
        if self.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {self.initial_capital}")
        if not 0 < self.position_size <= 1:
            raise ValueError(f"position_size must be in (0, 1], got {self.position_size}")
        if self.commission < 0:
            raise ValueError(f"commission must be >= 0, got {self.commission}")
        if self.leverage < 1:
            raise ValueError(f"leverage must be >= 1, got {self.leverage}")
        return self

    def for_pair(self, symbol1: str, symbol2: str) -> "StrategyConfig":
        """Copy of this config with any pair-specific overrides applied."""
        overrides = self.pair_specific_params.get(f"{symbol1}_{symbol2}")
        if not overrides:
            return self
        _check_keys(overrides, f"pair_specific_params[{symbol1}_{symbol2}]")
        return replace(self, **overrides)

    def strategy_params(self) -> dict:
        """Parameters echoed into backtest reports."""
        return {
            "entry_threshold": self.entry_threshold,
            "exit_threshold": self.exit_threshold,
            "stop_loss_threshold": self.stop_loss_threshold,
            "position_size": self.position_size,
            "initial_capital": self.initial_capital,
            "lookback_period": self.lookback_period,
            "min_correlation": self.min_correlation,
            "strategy_type": self.strategy_type.value,
        }

    def to_dict(self) -> dict:
        d = asdict(self)
        d["strategy_type"] = self.strategy_type.value
        return d


def _check_keys(values: dict, where: str):
    known = {f.name for f in fields(StrategyConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"unknown config keys in {where}: {unknown}")


def load_config(path: str, **overrides) -> StrategyConfig:
    """Read a JSON config file; keyword overrides win over file values."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"config file not found: {p}")
    with open(p) as f:
        values = json.load(f)
    if not isinstance(values, dict):
        raise ValueError(f"config file {p} must hold a JSON object")
    values.update({k: v for k, v in overrides.items() if v is not None})
    _check_keys(values, str(p))
    return StrategyConfig(**values).validate()
