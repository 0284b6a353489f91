"""
data_collect -- exchange OHLCV download and correlation-based pair discovery
"""

from .collector import (
    DataCollector, OHLCVCache, PriceMatrix,
    timeframe_to_ms, calculate_backtest_limit,
)
from .discovery import (
    CorrelationDiscovery, DiscoveryResult, MultiMonthCorrelation,
    MonthlyCorrelation, correlation_history, load_correlation_data,
    save_correlation_data, month_windows,
)
