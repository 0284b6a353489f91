"""
optimize.py -- parameter sweeps for one pair

Both sweeps replay the same price history through quiet backtests (no
trade logs, no charts) and rank the runs by score_result:

  - threshold_grid: entry x exit x stop-loss; combinations that break
    0 <= exit < entry < stop are skipped before anything runs
  - lookback_sweep: one run per lookback_period

Usage:
    grid = threshold_grid(cfg, "FIL/USDT", "OP/USDT", p1, p2, ts, n_jobs=-1)
    print_sweep(grid, THRESHOLD_PARAMS, title="FIL/USDT / OP/USDT thresholds")
"""

import logging
import time
from dataclasses import replace
from itertools import product
from typing import Optional

import pandas as pd
from joblib import Parallel, delayed

from ..config import StrategyConfig
from .runner import Backtest

log = logging.getLogger(__name__)

DEFAULT_ENTRY = (1.5, 1.7, 1.9, 2.1, 2.3, 2.5, 2.7, 2.9, 3.1, 3.3, 3.5, 3.7, 3.9)
DEFAULT_EXIT = (0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 1.1, 1.2)
DEFAULT_STOP = (3.0, 3.25, 3.5, 3.75, 4.0, 4.25, 4.5, 4.75, 5.0, 5.25, 5.5)
DEFAULT_LOOKBACKS = tuple(sorted(set(range(20, 301, 10)) | {75}))

THRESHOLD_PARAMS = ["entry_threshold", "exit_threshold", "stop_loss_threshold"]
LOOKBACK_PARAMS = ["lookback_period"]

GRID_TRADE_BAND = (5, 50)       # trade counts that earn the full trade term
LOOKBACK_TRADE_BAND = (5, 30)

_METRIC_COLS = ["score", "total_return", "sharpe_ratio", "win_rate",
                "total_trades", "max_drawdown", "final_capital"]


def score_result(report: dict, trade_band: tuple[int, int] = GRID_TRADE_BAND) -> float:
    """
    0.4 x return% + 3 x sharpe + 0.2 x (win rate% - 50) + 0.1 x trade term.

    The trade term is +5 for a trade count inside trade_band, otherwise
    minus the distance to the nearest edge of the band.
    """
    lo, hi = trade_band
    n = report.get("total_trades", 0)
    if lo <= n <= hi:
        trade_term = 5.0
    elif n < lo:
        trade_term = float(n - lo)
    else:
        trade_term = float(hi - n)

    return (report.get("total_return", 0.0) * 0.4
            + report.get("sharpe_ratio", 0.0) * 10 * 0.3
            + (report.get("win_rate", 0.0) - 50) * 0.2
            + trade_term * 0.1)


def threshold_combinations(entries, exits, stops) -> list[dict]:
    """Every (entry, exit, stop) the strategy can run with, in grid order."""
    return [
        {"entry_threshold": e, "exit_threshold": x, "stop_loss_threshold": s}
        for e, x, s in product(entries, exits, stops)
        if 0 <= x < e < s
    ]


def _run_params(config: StrategyConfig, overrides: dict, symbol1: str, symbol2: str,
                prices1, prices2, timestamps,
                trade_band: tuple[int, int]) -> Optional[dict]:
    """One quiet backtest with overrides applied. Module-level so joblib can pickle it."""
    try:
        bt = Backtest(replace(config, **overrides))
        result = bt.run(symbol1, symbol2, prices1, prices2, timestamps,
                        generate_report=False)
    except ValueError as e:
        log.warning(f"skipping {overrides}: {e}")
        return None

    r = result.report
    return {
        **overrides,
        "score": score_result(r, trade_band),
        "total_return": r.get("total_return", 0.0),
        "sharpe_ratio": r.get("sharpe_ratio", 0.0),
        "win_rate": r.get("win_rate", 0.0),
        "total_trades": result.total_trades,
        "max_drawdown": r.get("max_drawdown", 0.0),
        "final_capital": result.final_capital,
    }


def _sweep(config, combos, symbol1, symbol2, prices1, prices2, timestamps,
           trade_band, param_cols, n_jobs, lg) -> pd.DataFrame:
    t0 = time.time()
    lg.info(f"sweeping {len(combos)} parameter sets for {symbol1}/{symbol2} "
            f"(n_jobs={n_jobs})")
    if n_jobs != 1 and len(combos) > 1:
        rows = Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(_run_params)(config, c, symbol1, symbol2,
                                 prices1, prices2, timestamps, trade_band)
            for c in combos
        )
    else:
        rows = []
        for k, c in enumerate(combos, 1):
            lg.debug(f"  [{k}/{len(combos)}] {c}")
            rows.append(_run_params(config, c, symbol1, symbol2,
                                    prices1, prices2, timestamps, trade_band))

    ranked = rank_sweep([r for r in rows if r is not None], param_cols)
    lg.info(f"sweep done: {len(ranked)}/{len(combos)} runs in {time.time() - t0:.1f}s")
    return ranked


def rank_sweep(rows: list[dict], param_cols: list[str]) -> pd.DataFrame:
    """Best score first, 1-based rank index."""
    cols = param_cols + _METRIC_COLS
    if not rows:
        return pd.DataFrame(columns=cols)
    df = pd.DataFrame(rows)[cols]
    df = df.sort_values("score", ascending=False, kind="stable").reset_index(drop=True)
    df.index = df.index + 1
    df.index.name = "rank"
    return df


def threshold_grid(
    config: StrategyConfig,
    symbol1: str,
    symbol2: str,
    prices1,
    prices2,
    timestamps,
    entries=DEFAULT_ENTRY,
    exits=DEFAULT_EXIT,
    stops=DEFAULT_STOP,
    n_jobs: int = 1,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """Grid search over entry / exit / stop-loss, ranked by score."""
    combos = threshold_combinations(entries, exits, stops)
    return _sweep(config, combos, symbol1, symbol2, prices1, prices2, timestamps,
                  GRID_TRADE_BAND, THRESHOLD_PARAMS, n_jobs, logger or log)


def lookback_sweep(
    config: StrategyConfig,
    symbol1: str,
    symbol2: str,
    prices1,
    prices2,
    timestamps,
    lookbacks=DEFAULT_LOOKBACKS,
    n_jobs: int = 1,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """One run per lookback_period; lookbacks the series cannot warm up are skipped."""
    combos = [{"lookback_period": int(lb)} for lb in sorted(set(lookbacks))]
    return _sweep(config, combos, symbol1, symbol2, prices1, prices2, timestamps,
                  LOOKBACK_TRADE_BAND, LOOKBACK_PARAMS, n_jobs, logger or log)


def best_params(ranked: pd.DataFrame) -> dict:
    """Parameter columns of the top row, {} for an empty sweep."""
    if ranked.empty:
        return {}
    params = [c for c in ranked.columns if c not in _METRIC_COLS]
    return {c: ranked[c].iloc[0].item() for c in params}


def print_sweep(ranked: pd.DataFrame, param_cols: list[str], n: int = 10,
                title: str = "Parameter sweep"):
    print(f"\n{'='*90}")
    print(f"  {title}: top {min(n, len(ranked))} of {len(ranked)}")
    print(f"{'='*90}")
    if ranked.empty:
        print("  no runs completed\n")
        return

    head = "  ".join(f"{c:>20s}" for c in param_cols)
    print(f"  {head} {'Score':>8s} {'Return':>9s} {'Sharpe':>8s} {'WR':>6s} "
          f"{'Trades':>7s} {'MaxDD':>7s}")
    print(f"  {'-'*85}")
    for _, row in ranked.head(n).iterrows():
        vals = "  ".join(f"{row[c]:>20g}" for c in param_cols)
        print(f"  {vals} {row['score']:>8.2f} {row['total_return']:>8.2f}% "
              f"{row['sharpe_ratio']:>8.2f} {row['win_rate']:>5.0f}% "
              f"{int(row['total_trades']):>7d} {row['max_drawdown']:>6.2f}%")
    print()


def print_return_bars(ranked: pd.DataFrame, param: str = "lookback_period",
                      width: int = 50):
    """Return per parameter value as a text bar chart, in parameter order."""
    if ranked.empty:
        return
    df = ranked.sort_values(param)
    lo, hi = df["total_return"].min(), df["total_return"].max()
    span = (hi - lo) or 1.0
    print(f"\n  {param} vs total return")
    for _, row in df.iterrows():
        bar = "#" * int(round((row["total_return"] - lo) / span * width))
        print(f"  {row[param]:>6g} | {row['total_return']:>7.2f}% | {bar}")
    print()
