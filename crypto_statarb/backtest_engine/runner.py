"""
runner.py -- bar-by-bar replay of one pair through PairsStrategy

At bar i the strategy only ever sees the window [i-lookback, i] (inclusive),
so nothing after bar i can leak into the signal. The z-score of bar i is
computed against the lookback bars BEFORE it (see analyzer.rolling_zscore).

Accounting:
  - capital starts at config.initial_capital
  - each entry commits capital * position_size, split 50/50 across legs
  - on close, fees on entry and exit notional are deducted from gross P&L
    and the net is added to capital
  - one equity / drawdown point per traded bar (bars skipped by the
    correlation gate add nothing)
  - anything still open after the last bar is closed at the last prices

Usage:
    bt = Backtest(StrategyConfig(lookback_period=100))
    result = bt.run("ID/USDT", "HOOK/USDT", p1, p2, ts)
    result.summary()
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from ..config import StrategyConfig, StrategyType
from .analyzer import StatisticalAnalyzer
from .costs import CommissionModel
from .metrics import compute_report, print_summary
from .models import (
    FORCED_CLOSE_REASON, Action, PairKey, PositionStatus, Signal, Trade,
)
from .reporting import plot_pair_backtest, plot_pnl_by_reason, print_trade_log
from .strategy import PairsStrategy

log = logging.getLogger(__name__)

DEFAULT_TIMEFRAME_MINUTES = 15


@dataclass
class BacktestResult:
    symbol1: str
    symbol2: str
    equity: list[float]
    drawdown: list[float]          # percent below running peak
    timestamps: list[int]          # input bars (ms), not aligned with equity
    trades: list[Trade]
    final_capital: float
    total_trades: int
    correlation: float
    report: dict
    chart_path: Optional[str] = None
    config: dict = field(default_factory=dict)

    @property
    def total_return(self) -> float:
        return self.report.get("total_return", 0.0)

    def equity_df(self) -> pd.DataFrame:
        return pd.DataFrame({"equity": self.equity, "drawdown": self.drawdown})

    def trade_log_df(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_dict() for t in self.trades])

    def summary(self):
        print_summary(self.report, title=f"Backtest {self.symbol1} / {self.symbol2}")

    def to_dict(self) -> dict:
        """JSON-friendly summary (no equity curve)."""
        return {
            "symbol1": self.symbol1,
            "symbol2": self.symbol2,
            "correlation": self.correlation,
            "final_capital": self.final_capital,
            "total_trades": self.total_trades,
            "report": self.report,
            "chart_path": self.chart_path,
            "trades": [t.to_dict() for t in self.trades],
        }


def get_timeframe_minutes(timestamps) -> int:
    """Bar size in minutes, averaged over the first (up to 9) intervals."""
    if timestamps is None or len(timestamps) < 2:
        return DEFAULT_TIMEFRAME_MINUTES
    head = np.asarray(timestamps[:10], dtype=np.float64)
    return int(round(float(np.mean(np.diff(head))) / 60_000))


def _fmt_ts(ms: int) -> str:
    return pd.Timestamp(int(ms), unit="ms").strftime("%Y-%m-%d %H:%M")


class Backtest:
    """Replays one pair; reusable across runs (strategy is reset each run)."""

    def __init__(
        self,
        config: Optional[StrategyConfig] = None,
        strategy: Optional[PairsStrategy] = None,
        analyzer: Optional[StatisticalAnalyzer] = None,
        logger: Optional[logging.Logger] = None,
        output_dir: str = "./output",
    ):
        self.config = (config or StrategyConfig()).validate()
        self.log = logger or log
        self.analyzer = analyzer or StatisticalAnalyzer(logger=self.log)
        self.strategy = strategy or PairsStrategy(
            self.config, analyzer=self.analyzer, logger=self.log)
        self.commission = CommissionModel(self.config.commission)
        self.initial_capital = self.config.initial_capital
        self.position_size = self.config.position_size
        self.output_dir = output_dir

    def run(self, symbol1: str, symbol2: str, prices1, prices2, timestamps,
            generate_report: bool = True) -> BacktestResult:
        p1 = np.asarray(prices1, dtype=np.float64)
        p2 = np.asarray(prices2, dtype=np.float64)
        ts = np.asarray(timestamps, dtype=np.int64)
        n = len(p1)
        if not (n == len(p2) == len(ts)):
            raise ValueError(
                f"series length mismatch: prices1={n} prices2={len(p2)} "
                f"timestamps={len(ts)}")

        lookback = self.strategy.lookback_period
        if n <= lookback:
            raise ValueError(f"need more than {lookback} bars, got {n}")

        verbose = generate_report
        entry = self.strategy.entry_threshold
        pair_key = PairKey(symbol1, symbol2)
        correlation = self.analyzer.correlation(p1, p2)
        t_start = time.time()

        if verbose:
            self._log_header(symbol1, symbol2, p1, p2, ts, correlation, lookback)

        self.strategy.reset()
        capital = self.initial_capital
        peak = capital
        equity = [capital]
        drawdown = [0.0]
        trades: list[Trade] = []
        trade_count = 0

        for i in range(lookback, n):
            w1 = p1[i - lookback:i + 1]
            w2 = p2[i - lookback:i + 1]
            analysis = self.strategy.analyze_pair(symbol1, symbol2, w1, w2, pair_key)

            if not analysis.viable:
                if verbose:
                    spread = self.analyzer.spread(w1, w2, "normalized_ratio")
                    z_tmp = self.analyzer.rolling_zscore(spread, lookback)[-1]
                    if np.isfinite(z_tmp) and abs(z_tmp) > entry:
                        self.log.warning(
                            f"[{_fmt_ts(ts[i])}] bar {i}: Z={z_tmp:.3f} past entry "
                            f"but skipped ({analysis.reason})")
                continue

            price1, price2 = float(p1[i]), float(p2[i])
            signal = analysis.signal

            if self.strategy.get_position(pair_key) is not None:
                updated = self.strategy.update_position(
                    pair_key, price1, price2, analysis.z_score, int(ts[i]))
                if updated is not None and updated.status is PositionStatus.CLOSED:
                    trade_count += 1
                    capital = self._book_trade(
                        trades, trade_count, capital, price1, price2, verbose)
            elif signal.action.is_open:
                if verbose:
                    self.log.info(
                        f"[{_fmt_ts(ts[i])}] {signal.action.value} Z={signal.z_score:.2f} "
                        f"capital ${capital:,.2f}")
                self.strategy.open_position(
                    pair_key, signal, price1, price2,
                    capital * self.position_size, int(ts[i]))

            equity.append(capital)
            peak = max(peak, capital)
            drawdown.append((peak - capital) / peak * 100)

        # force-close whatever is still open at the last bar
        for pos in self.strategy.get_all_positions():
            last1, last2 = float(p1[-1]), float(p2[-1])
            m = min(lookback + 1, n)
            z_last = self.analyzer.rolling_zscore(
                self.analyzer.spread(p1[-m:], p2[-m:]), lookback)[-1]
            z_last = None if math.isnan(z_last) else float(z_last)

            closed = self.strategy.close_position(
                pos.pair_key, last1, last2,
                Signal(Action.CLOSE, z_last, FORCED_CLOSE_REASON, forced=True),
                int(ts[-1]))
            if closed is not None:
                trade_count += 1
                capital = self._book_trade(
                    trades, trade_count, capital, last1, last2, verbose)

        report = compute_report(
            trades, equity, drawdown, self.initial_capital, capital,
            self.config.strategy_params())
        if verbose:
            # diagnostic only, entries are gated by the CV proxy
            report["engle_granger_pvalue"] = self.analyzer.engle_granger_pvalue(p1, p2)

        self.log.info(
            f"backtest {symbol1}/{symbol2} done in {time.time() - t_start:.2f}s: "
            f"{trade_count} trades, capital ${self.initial_capital:,.2f} -> "
            f"${capital:,.2f}")

        result = BacktestResult(
            symbol1=symbol1, symbol2=symbol2,
            equity=equity, drawdown=drawdown, timestamps=ts.tolist(),
            trades=trades, final_capital=capital, total_trades=trade_count,
            correlation=correlation, report=report,
            config=self.config.to_dict(),
        )

        if verbose:
            result.summary()
            print_trade_log(result.trade_log_df())
            result.chart_path = self._chart(result, p1, p2)
        return result

    # -------------------------------------------------------------------
    #  Internals
    # -------------------------------------------------------------------

    def _book_trade(self, trades: list[Trade], trade_number: int, capital: float,
                    exit1: float, exit2: float, verbose: bool) -> float:
        """Apply fees to the strategy's last closed trade and add it to capital."""
        gross = self.strategy.trades[-1]
        fees = self.commission.details(gross, exit1, exit2, gross.pnl)
        capital += fees.net_pnl
        trades.append(replace(
            gross, net_pnl=fees.net_pnl, capital_after=capital,
            trade_number=trade_number, commission=fees))

        if verbose:
            self.log.info(
                f"trade #{trade_number} {gross.pair_key} {gross.exit_type} | "
                f"{_fmt_ts(gross.entry_time)} -> {_fmt_ts(gross.exit_time)} "
                f"({gross.duration_minutes:.0f} min) | gross {fees.pnl_before_fee:+.2f} "
                f"fees {fees.total_fee:.2f} (in {fees.entry_fee:.2f} / out {fees.exit_fee:.2f}) "
                f"net {fees.net_pnl:+.2f} ({fees.net_pnl / gross.capital * 100:+.2f}%) | "
                f"capital ${capital:,.2f}")
        return capital

    def _log_header(self, symbol1, symbol2, p1, p2, ts, correlation, lookback):
        self.log.info("=" * 60)
        self.log.info(f"backtest {symbol1} vs {symbol2}")
        if self.config.strategy_type is StrategyType.FUTURES:
            self.log.info(f"  futures variant: leverage {self.config.leverage}x, "
                          f"margin {self.config.margin_type}")
        else:
            self.log.info("  spot variant: short leg is a spot sale")
        if not self.config.enforce_correlation:
            self.log.info("  correlation gate DISABLED (test mode)")
        self.log.info(f"  data {_fmt_ts(ts[0])} -> {_fmt_ts(ts[-1])}, {len(p1)} bars, "
                      f"correlation {correlation:.3f}")
        self.log.info(f"  capital ${self.initial_capital:,.2f}, first prices "
                      f"{p1[0]:.8f} / {p2[0]:.8f} (ratio {p1[0] / p2[0]:.6f})")
        warmup_min = lookback * get_timeframe_minutes(ts)
        self.log.info(f"  warm-up {lookback} bars (~{warmup_min / 60:.1f}h), "
                      f"trading from {_fmt_ts(ts[lookback])}")
        self.log.info("=" * 60)

    def _chart(self, result: BacktestResult, p1, p2) -> Optional[str]:
        stem = (f"backtest_{result.symbol1}_{result.symbol2}_"
                f"{int(time.time() * 1000)}").replace("/", "-")
        outdir = Path(self.output_dir)
        try:
            path = plot_pair_backtest(
                result.symbol1, result.symbol2, p1, p2, result.timestamps,
                result.trades, result.equity, result.drawdown,
                outdir / f"{stem}.png")
            if result.trades:
                plot_pnl_by_reason(result.trade_log_df(), outdir / f"{stem}_exits.png")
        except (OSError, ValueError) as e:
            self.log.error(f"chart generation failed: {e}")
            return None
        self.log.info(f"chart saved: {path}")
        return str(path)
