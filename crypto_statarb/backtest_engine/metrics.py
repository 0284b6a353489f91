"""
metrics.py -- backtest report and trade statistics from equity curve + trades
"""

import numpy as np

TRADING_DAYS = 252


def _pnls(trades) -> np.ndarray:
    return np.array([t.final_pnl for t in trades], dtype=np.float64)


def sharpe_ratio(equity) -> float:
    """
    Per-step equity returns, population std, annualized with sqrt(252).

    Steps are bars, not days, so this is only comparable between runs on
    the same timeframe.
    """
    eq = np.asarray(equity, dtype=np.float64)
    if len(eq) < 2:
        return 0.0
    returns = np.diff(eq) / eq[:-1]
    std = returns.std()
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(returns.mean() / std * np.sqrt(TRADING_DAYS))


def trade_statistics(trades) -> dict:
    """Win/loss counts and P&L moments over closed trades (net when available)."""
    if not trades:
        return {
            "total_trades": 0, "winning_trades": 0, "losing_trades": 0,
            "win_rate": 0.0, "total_pnl": 0.0, "avg_pnl": 0.0,
            "max_pnl": 0.0, "min_pnl": 0.0, "avg_win": 0.0, "avg_loss": 0.0,
        }

    pnls = _pnls(trades)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    return {
        "total_trades": len(pnls),
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": len(wins) / len(pnls) * 100,
        "total_pnl": float(pnls.sum()),
        "avg_pnl": float(pnls.mean()),
        "max_pnl": float(pnls.max()),
        "min_pnl": float(pnls.min()),
        "avg_win": float(wins.mean()) if len(wins) else 0.0,
        "avg_loss": float(losses.mean()) if len(losses) else 0.0,
    }


def compute_report(trades, equity, drawdown, initial_capital: float,
                   final_capital: float, strategy_params: dict) -> dict:
    """
    Summary report for one backtest run.

    Trade P&L is net of fees. avg_loss is reported as a positive number and
    profit_factor is avg_win / avg_loss (0 when there are no losses).

    A position liquidated after the last bar adds no equity point, so its
    P&L is in final_capital and total_return but not in max_drawdown or
    sharpe_ratio.
    """
    if not trades:
        return {"total_trades": 0, "message": "no trades generated"}

    pnls = _pnls(trades)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]

    total_pnl = float(pnls.sum())
    avg_win = float(wins.mean()) if len(wins) else 0.0
    avg_loss = abs(float(losses.mean())) if len(losses) else 0.0
    durations = [t.duration_minutes for t in trades]

    return {
        "initial_capital": initial_capital,
        "final_capital": final_capital,
        "total_pnl": total_pnl,
        "total_return": (final_capital - initial_capital) / initial_capital * 100,

        "total_trades": len(pnls),
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": len(wins) / len(pnls) * 100,

        "avg_pnl": total_pnl / len(pnls),
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "profit_factor": avg_win / avg_loss if avg_loss != 0 else 0.0,
        "max_win": float(pnls.max()),
        "max_loss": float(pnls.min()),

        "max_drawdown": float(max(drawdown)) if len(drawdown) else 0.0,
        "sharpe_ratio": sharpe_ratio(equity),

        "avg_trade_duration": float(np.mean(durations)),

        "strategy_params": dict(strategy_params),
    }


def print_summary(report: dict, title: str = "Backtest Results"):
    """Pretty print a compute_report() dict."""
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}")

    if report.get("total_trades", 0) == 0:
        print(f"\n  {report.get('message', 'no trades generated')}")
        print(f"{'='*60}\n")
        return

    sections = {
        "Returns": ["total_pnl", "total_return"],
        "Trading": ["total_trades", "winning_trades", "losing_trades", "win_rate",
                    "avg_pnl", "avg_win", "avg_loss", "profit_factor",
                    "max_win", "max_loss"],
        "Risk": ["max_drawdown", "sharpe_ratio"],
        "Holding": ["avg_trade_duration"],
        "Diagnostics": ["engle_granger_pvalue"],
    }

    for section, keys in sections.items():
        present = [k for k in keys if k in report]
        if not present:
            continue
        print(f"\n  {section}:")
        for key in present:
            val = report[key]
            if isinstance(val, float):
                if any(k in key for k in ["sharpe", "factor", "pvalue"]):
                    print(f"    {key:30s} {val:>12.3f}")
                elif "rate" in key or "return" in key or "drawdown" in key:
                    print(f"    {key:30s} {val:>11.2f}%")
                elif "duration" in key:
                    print(f"    {key:30s} {val:>8.0f} min")
                else:
                    print(f"    {key:30s} {val:>12.2f}")
            elif isinstance(val, int):
                print(f"    {key:30s} {val:>12d}")
            else:
                print(f"    {key:30s} {str(val):>12s}")

    params = report.get("strategy_params")
    if params:
        print("\n  Parameters:")
        for key, val in params.items():
            print(f"    {key:30s} {str(val):>12s}")

    print(f"\n  Capital: ${report['initial_capital']:,.2f} → ${report['final_capital']:,.2f}")
    print(f"{'='*60}\n")
