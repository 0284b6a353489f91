"""
batch.py -- backtest many pairs, rank them, report on the best few

Two passes:
  1. every pair with data, quiet (no per-trade logs, no charts), optionally
     in parallel with joblib -- each worker builds its own Backtest
  2. the top max_reports pairs by total return again, with full reports

Usage:
    results = run_multiple_pairs(cfg, [("ID/USDT", "HOOK/USDT")],
                                 matrix.prices, matrix.timestamps, n_jobs=-1)
    print(rank_results(results).head(10))
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ..config import StrategyConfig
from .reporting import plot_comparison, save_backtest_results
from .runner import Backtest, BacktestResult

log = logging.getLogger(__name__)


@dataclass
class PairResult:
    symbol1: str
    symbol2: str
    total_return: float        # percent
    total_trades: int
    win_rate: float            # percent
    final_capital: float
    max_drawdown: float        # percent
    sharpe_ratio: float
    correlation: float
    report: dict = field(default_factory=dict)
    chart_path: Optional[str] = None

    @property
    def pair(self) -> str:
        return f"{self.symbol1}_{self.symbol2}"

    @classmethod
    def from_result(cls, result: BacktestResult) -> "PairResult":
        r = result.report
        return cls(
            symbol1=result.symbol1, symbol2=result.symbol2,
            total_return=r.get("total_return", 0.0),
            total_trades=result.total_trades,
            win_rate=r.get("win_rate", 0.0),
            final_capital=result.final_capital,
            max_drawdown=r.get("max_drawdown", 0.0),
            sharpe_ratio=r.get("sharpe_ratio", 0.0),
            correlation=result.correlation,
            report=r,
            chart_path=result.chart_path,
        )

    def to_dict(self) -> dict:
        return {
            "pair": self.pair,
            "symbol1": self.symbol1,
            "symbol2": self.symbol2,
            "total_return": self.total_return,
            "total_trades": self.total_trades,
            "win_rate": self.win_rate,
            "final_capital": self.final_capital,
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": self.sharpe_ratio,
            "correlation": self.correlation,
            "chart_path": self.chart_path,
            "report": self.report,
        }


def _aligned(prices1, prices2, timestamps):
    """Drop bars where either leg is missing (None / NaN)."""
    a = np.array([np.nan if v is None else v for v in prices1], dtype=np.float64)
    b = np.array([np.nan if v is None else v for v in prices2], dtype=np.float64)
    ts = np.asarray(timestamps, dtype=np.int64)
    if not (len(a) == len(b) == len(ts)):
        raise ValueError(f"series length mismatch: {len(a)} / {len(b)} / {len(ts)}")
    ok = np.isfinite(a) & np.isfinite(b)
    return a[ok], b[ok], ts[ok]


def _run_pair(config: StrategyConfig, symbol1: str, symbol2: str,
              prices1, prices2, timestamps, generate_report: bool,
              output_dir: str) -> Optional[BacktestResult]:
    """One isolated backtest. Module-level so joblib workers can pickle it."""
    try:
        p1, p2, ts = _aligned(prices1, prices2, timestamps)
        bt = Backtest(config.for_pair(symbol1, symbol2), output_dir=output_dir)
        return bt.run(symbol1, symbol2, p1, p2, ts, generate_report=generate_report)
    except Exception:
        log.exception(f"backtest failed for {symbol1}/{symbol2}")
        return None


def run_multiple_pairs(
    config: StrategyConfig,
    pairs: list[tuple[str, str]],
    price_matrix: dict,
    timestamps,
    max_reports: int = 3,
    n_jobs: int = 1,
    output_dir: str = "./output",
    save_results: bool = True,
    logger: Optional[logging.Logger] = None,
) -> list[PairResult]:
    """
    price_matrix: {symbol: prices aligned to timestamps, None for gaps}.
    Returns PairResults sorted by total return, best first.
    """
    lg = logger or log
    t0 = time.time()

    jobs = []
    for s1, s2 in pairs:
        p1, p2 = price_matrix.get(s1), price_matrix.get(s2)
        if p1 is None or p2 is None:
            lg.warning(f"skipping {s1}/{s2}: missing price data")
            continue
        jobs.append((s1, s2, p1, p2))

    lg.info(f"pass 1: backtesting {len(jobs)} pairs (n_jobs={n_jobs})")
    if n_jobs != 1 and len(jobs) > 1:
        raw = Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(_run_pair)(config, s1, s2, p1, p2, timestamps, False, output_dir)
            for s1, s2, p1, p2 in jobs
        )
    else:
        raw = []
        for k, (s1, s2, p1, p2) in enumerate(jobs, 1):
            lg.info(f"  [{k}/{len(jobs)}] ({k / len(jobs) * 100:.1f}%) {s1} / {s2}")
            raw.append(_run_pair(config, s1, s2, p1, p2, timestamps, False, output_dir))

    results = [PairResult.from_result(r) for r in raw if r is not None]
    results.sort(key=lambda r: r.total_return, reverse=True)
    lg.info(f"pass 1 done: {len(results)}/{len(jobs)} pairs in {time.time() - t0:.1f}s")

    by_pair = {(s1, s2): (p1, p2) for s1, s2, p1, p2 in jobs}
    top = results[:max_reports]
    if top:
        lg.info(f"pass 2: detailed reports for top {len(top)} pairs")
    for res in top:
        p1, p2 = by_pair[(res.symbol1, res.symbol2)]
        detailed = _run_pair(config, res.symbol1, res.symbol2, p1, p2,
                             timestamps, True, output_dir)
        if detailed is not None:
            res.chart_path = detailed.chart_path
            res.report = detailed.report

    if results:
        print_pair_rankings(results)

    if save_results and results:
        save_backtest_results([r.to_dict() for r in results], output_dir)
        chart = plot_comparison(
            results, Path(output_dir) / f"pair_comparison_{int(time.time() * 1000)}.png")
        if chart is not None:
            lg.info(f"comparison chart saved: {chart}")

    return results


def rank_results(results: list[PairResult]) -> pd.DataFrame:
    """Ranking table, best total return first, 1-based rank index."""
    cols = ["pair", "total_return", "total_trades", "win_rate", "max_drawdown",
            "sharpe_ratio", "correlation", "final_capital"]
    if not results:
        return pd.DataFrame(columns=cols)
    df = pd.DataFrame([r.to_dict() for r in results])[cols]
    df = df.sort_values("total_return", ascending=False).reset_index(drop=True)
    df.index = df.index + 1
    df.index.name = "rank"
    return df


def recommend_pairs(results: list[PairResult], n: int = 3,
                    min_win_rate: float = 50.0) -> list[PairResult]:
    """Best n pairs that made money with a win rate above min_win_rate."""
    ranked = sorted(results, key=lambda r: r.total_return, reverse=True)
    return [r for r in ranked
            if r.total_return > 0 and r.win_rate > min_win_rate][:n]


def print_pair_rankings(results: list[PairResult], n: int = 10):
    print(f"\n{'='*90}")
    print(f"  TOP {min(n, len(results))} PAIRS (by total return)")
    print(f"{'='*90}")
    print(f"  {'Pair':30s} {'Return':>9s} {'Trades':>7s} {'WR':>6s} "
          f"{'MaxDD':>7s} {'Sharpe':>8s} {'Corr':>6s}")
    print(f"  {'-'*85}")
    for r in results[:n]:
        print(f"  {r.pair:30s} {r.total_return:>8.2f}% {r.total_trades:>7d} "
              f"{r.win_rate:>5.0f}% {r.max_drawdown:>6.2f}% {r.sharpe_ratio:>8.2f} "
              f"{r.correlation:>6.3f}")
    print()
