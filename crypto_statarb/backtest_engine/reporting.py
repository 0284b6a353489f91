"""
reporting.py -- backtest charts, result export and console trade log
"""

import json
import time
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.dates as mdates
import matplotlib.ticker as mticker


def _save(fig, save_path) -> Path:
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    plt.tight_layout()
    fig.savefig(save_path, dpi=150, bbox_inches="tight",
                facecolor="white", edgecolor="none")
    plt.close(fig)
    return save_path


def _to_dates(timestamps) -> pd.DatetimeIndex:
    return pd.to_datetime(np.asarray(timestamps, dtype=np.int64), unit="ms")


# -----------------------------------------------------------------------
#  Single pair
# -----------------------------------------------------------------------

def plot_pair_backtest(symbol1: str, symbol2: str, prices1, prices2,
                       timestamps, trades, equity, drawdown,
                       save_path) -> Path:
    """
    Three panels: rebased prices with entry/exit markers, equity curve,
    drawdown. Equity has one point per traded bar, so it is plotted
    against step index.
    """
    p1 = np.asarray(prices1, dtype=float)
    p2 = np.asarray(prices2, dtype=float)
    ts = _to_dates(timestamps)

    fig, axes = plt.subplots(3, 1, figsize=(14, 11), sharex=False,
                             gridspec_kw={"height_ratios": [3, 2, 1]})
    ax_p, ax_eq, ax_dd = axes

    base1 = p1[0] if p1[0] != 0 else 1.0
    base2 = p2[0] if p2[0] != 0 else 1.0
    ax_p.plot(ts, p1 / base1, color="#1f77b4", linewidth=1.0, label=symbol1)
    ax_p.plot(ts, p2 / base2, color="#ff7f0e", linewidth=1.0, label=symbol2)

    ts_ms = np.asarray(timestamps, dtype=np.int64)
    for t in trades:
        i_in = int(np.searchsorted(ts_ms, t.entry_time))
        i_out = int(np.searchsorted(ts_ms, t.exit_time))
        i_in, i_out = min(i_in, len(ts) - 1), min(i_out, len(ts) - 1)
        color = "#2ca02c" if t.final_pnl > 0 else "#d62728"
        marker = "^" if t.type.value == "OPEN_LONG" else "v"
        ax_p.scatter(ts[i_in], p1[i_in] / base1, marker=marker, color=color,
                     s=60, zorder=4)
        ax_p.scatter(ts[i_out], p1[i_out] / base1, marker="x", color=color,
                     s=60, zorder=4)
        ax_p.axvspan(ts[i_in], ts[i_out], color=color, alpha=0.06)

    ax_p.set_title(f"{symbol1} / {symbol2}  ({len(trades)} trades)",
                   fontsize=13, fontweight="bold")
    ax_p.set_ylabel("Rebased price")
    ax_p.legend(loc="upper left", fontsize=9, framealpha=0.8)
    ax_p.grid(True, alpha=0.15)
    ax_p.xaxis.set_major_formatter(mdates.DateFormatter("%Y-%m-%d"))

    eq = np.asarray(equity, dtype=float)
    ax_eq.plot(np.arange(len(eq)), eq, color="#1f77b4", linewidth=1.3)
    ax_eq.axhline(eq[0], color="gray", linestyle="--", linewidth=0.7, alpha=0.5)
    ax_eq.set_ylabel("Capital ($)")
    ax_eq.yaxis.set_major_formatter(mticker.StrMethodFormatter("${x:,.0f}"))
    ax_eq.grid(True, alpha=0.15)

    dd = np.asarray(drawdown, dtype=float)
    ax_dd.fill_between(np.arange(len(dd)), -dd, 0, color="#d62728", alpha=0.3)
    ax_dd.set_ylabel("Drawdown (%)")
    ax_dd.set_xlabel("Step")
    ax_dd.grid(True, alpha=0.15)

    return _save(fig, save_path)


def plot_pnl_by_reason(trade_log: pd.DataFrame, save_path) -> Optional[Path]:
    """Total net P/L per exit type, with trade counts."""
    if trade_log is None or len(trade_log) == 0 or "exit_type" not in trade_log.columns:
        return None
    pnl_col = "net_pnl" if "net_pnl" in trade_log.columns else "gross_pnl"

    grouped = trade_log.groupby("exit_type").agg(
        total_pnl=(pnl_col, "sum"),
        n_trades=(pnl_col, "count"),
    ).sort_values("total_pnl", ascending=True)

    fig, ax = plt.subplots(figsize=(10, 5))
    colors = ["#2ca02c" if v >= 0 else "#d62728" for v in grouped["total_pnl"]]
    bars = ax.barh(grouped.index, grouped["total_pnl"], color=colors,
                   edgecolor="white", linewidth=0.5)
    ax.set_title("Total P/L by Exit Type", fontsize=12, fontweight="bold")
    ax.set_xlabel("Total Net P/L ($)")
    ax.axvline(0, color="gray", linewidth=0.7)
    for bar, (_, row) in zip(bars, grouped.iterrows()):
        ax.text(bar.get_width(), bar.get_y() + bar.get_height() / 2,
                f"  n={int(row['n_trades'])}",
                va="center", fontsize=9, color="#555555")
    ax.grid(True, axis="x", alpha=0.2)
    return _save(fig, save_path)


# -----------------------------------------------------------------------
#  Batch / discovery
# -----------------------------------------------------------------------

def plot_comparison(results, save_path, n: int = 30) -> Optional[Path]:
    """Horizontal bars of total return for the best n pairs."""
    if not results:
        return None
    top = results[:n][::-1]
    labels = [r.pair for r in top]
    values = [r.total_return for r in top]

    fig, ax = plt.subplots(figsize=(10, max(3, 0.35 * len(top) + 1)))
    colors = ["#2ca02c" if v >= 0 else "#d62728" for v in values]
    ax.barh(labels, values, color=colors, edgecolor="white", linewidth=0.5)
    ax.axvline(0, color="gray", linewidth=0.7)
    ax.set_title("Total Return by Pair", fontsize=12, fontweight="bold")
    ax.set_xlabel("Total return (%)")
    ax.xaxis.set_major_formatter(mticker.FormatStrFormatter("%.1f%%"))
    ax.grid(True, axis="x", alpha=0.2)
    return _save(fig, save_path)


def plot_correlation_heatmap(matrix: dict, save_path,
                             title: str = "Average correlation") -> Path:
    symbols = list(matrix)
    values = np.array([[matrix[a].get(b, np.nan) for b in symbols] for a in symbols])

    size = max(6, 0.4 * len(symbols) + 2)
    fig, ax = plt.subplots(figsize=(size, size))
    im = ax.imshow(values, cmap="RdYlGn", vmin=-1, vmax=1)
    ax.set_xticks(range(len(symbols)))
    ax.set_yticks(range(len(symbols)))
    ax.set_xticklabels(symbols, rotation=90, fontsize=7)
    ax.set_yticklabels(symbols, fontsize=7)
    ax.set_title(title, fontsize=12, fontweight="bold")
    fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    return _save(fig, save_path)


# -----------------------------------------------------------------------
#  Export / console
# -----------------------------------------------------------------------

def _json_default(obj):
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    raise TypeError(f"not JSON serializable: {type(obj).__name__}")


def save_backtest_results(summaries: list[dict], output_dir: str = "./output") -> Path:
    """Write per-pair summaries to backtest_results_{ms}.json."""
    outdir = Path(output_dir)
    outdir.mkdir(parents=True, exist_ok=True)
    path = outdir / f"backtest_results_{int(time.time() * 1000)}.json"
    with open(path, "w") as f:
        json.dump(summaries, f, indent=2, default=_json_default)
    print(f"  [report] Backtest results: {path} ({len(summaries)} pairs)")
    return path


def print_trade_log(trade_log: pd.DataFrame, n: int = 20):
    """Pretty-print the last n trades."""
    if trade_log is None or len(trade_log) == 0:
        print("  No trades.")
        return

    df = trade_log.tail(n) if n > 0 else trade_log
    cols = [
        "trade_number", "pair", "type", "exit_type", "duration_min",
        "entry_z", "exit_z", "gross_pnl", "total_fee", "net_pnl",
        "capital_after",
    ]
    cols = [c for c in cols if c in df.columns]

    print(f"\n  Trade Log ({len(df)} trades shown):")
    print(f"  {'-'*100}")
    print(df[cols].to_string(index=False, max_colwidth=25))
    print()
