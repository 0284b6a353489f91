"""
backtest_engine -- z-score pairs trading: analytics, strategy, backtester
"""

from .analyzer import StatisticalAnalyzer, SPREAD_METHODS
from .models import (
    Action, PositionStatus, InstrumentType, OrderSide, LegDirection,
    PairKey, Signal, LegSpec, PositionSizing, PnLBreakdown,
    CointegrationResult, CorrelatedPair, PairAnalysis, Position,
    CommissionDetails, Trade,
)
from .legs import SpotLegs, FuturesLegs, leg_model_for, leg_pnl
from .strategy import PairsStrategy
from .costs import CommissionModel, get_commission_rate, VENUE_FEES
from .metrics import compute_report, print_summary, trade_statistics
from .runner import Backtest, BacktestResult, get_timeframe_minutes
from .batch import PairResult, run_multiple_pairs, rank_results, recommend_pairs
from .optimize import (
    threshold_grid, lookback_sweep, score_result, threshold_combinations,
    rank_sweep, best_params,
)
from .reporting import (
    plot_pair_backtest, plot_pnl_by_reason, plot_comparison,
    plot_correlation_heatmap, save_backtest_results, print_trade_log,
)
