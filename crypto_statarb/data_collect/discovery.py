"""
discovery.py -- find tradeable pairs from multi-month correlation

A single correlation number over a long window hides regime changes: two
coins can be 0.95 correlated over six months because of one shared crash
and uncorrelated the rest of the time. So correlation is computed per
calendar month and averaged; the std across months ("stability") filters
out pairs whose relationship comes and goes.

Per month:
  - fetch every symbol that has not failed yet (no cache)
  - a symbol with <= 80% of the expected candles, or a fetch error, is
    dropped for all remaining months
  - months with fewer than 2 usable symbols are skipped

Only completed months are used; the current month would never reach 80%
coverage.

Output file (camelCase keys, read back by load_correlation_data()):
    output/correlation_data_{ms}.json

Usage:
    disc = CorrelationDiscovery(collector, config=cfg)
    found = disc.find_pairs(["BTC/USDT", "ETH/USDT", "SOL/USDT"])
    pairs = load_correlation_data(found.output_path, max_stability=0.05)
"""

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import ccxt
import numpy as np

from ..backtest_engine.analyzer import StatisticalAnalyzer
from ..backtest_engine.models import CorrelatedPair
from ..backtest_engine.reporting import plot_correlation_heatmap
from ..config import StrategyConfig
from .collector import DataCollector, timeframe_to_ms

log = logging.getLogger(__name__)

MIN_COVERAGE = 0.8            # fraction of expected candles a month needs
SYMBOL_DELAY = 0.1            # seconds between symbol fetches
MONTH_DELAY = 0.3             # seconds between months
STABLE_STD = 0.15             # correlation_history(): std below this is stable
HIGH_CORRELATION = 0.7        # correlation_history(): mean above this is high


# ---------------------------------------------------------------------------
# Month windows
# ---------------------------------------------------------------------------
def month_windows(months: int, now: Optional[datetime] = None) -> list[tuple[int, int, int, int]]:
    """
    (year, month, start_ms, end_ms) for the last `months` completed
    calendar months (UTC), most recent first. end_ms is exclusive.
    """
    now = now or datetime.now(timezone.utc)
    out = []
    y, m = now.year, now.month
    for _ in range(months):
        y, m = (y - 1, 12) if m == 1 else (y, m - 1)
        start = datetime(y, m, 1, tzinfo=timezone.utc)
        end = (datetime(y + 1, 1, 1, tzinfo=timezone.utc) if m == 12
               else datetime(y, m + 1, 1, tzinfo=timezone.utc))
        out.append((y, m, int(start.timestamp() * 1000), int(end.timestamp() * 1000)))
    return out


def month_limit(start_ms: int, end_ms: int, timeframe: str) -> int:
    return math.ceil((end_ms - start_ms) / timeframe_to_ms(timeframe))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass
class MonthlyCorrelation:
    year: int
    month: int
    symbols: list[str]
    matrix: dict[str, dict[str, float]]

    @property
    def date(self) -> str:
        return f"{self.year}-{self.month:02d}"

    def get(self, symbol1: str, symbol2: str) -> Optional[float]:
        if symbol1 not in self.symbols or symbol2 not in self.symbols:
            return None
        return self.matrix.get(symbol1, {}).get(symbol2)


@dataclass
class MultiMonthCorrelation:
    avg_matrix: dict[str, dict[str, float]]
    stability: dict[str, dict[str, float]]     # population std across months
    successful_symbols: list[str]
    failed_symbols: list[str]
    monthly: list[MonthlyCorrelation]


@dataclass
class DiscoveryResult:
    pairs: list[CorrelatedPair]
    correlation: MultiMonthCorrelation
    output_path: Optional[Path] = None
    heatmap_path: Optional[Path] = None
    symbols_requested: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
class CorrelationDiscovery:

    def __init__(
        self,
        collector: DataCollector,
        analyzer: Optional[StatisticalAnalyzer] = None,
        config: Optional[StrategyConfig] = None,
        logger: Optional[logging.Logger] = None,
        output_dir: str = "./output",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.collector = collector
        self.log = logger or log
        self.analyzer = analyzer or StatisticalAnalyzer(logger=self.log)
        self.config = config or StrategyConfig()
        self.output_dir = Path(output_dir)
        self._sleep = sleep

    def _fetch_month(self, symbol: str, timeframe: str, limit: int,
                     since: int) -> Optional[list]:
        """Candles for one month, or None when the symbol should be dropped."""
        try:
            data = self.collector.fetch_ohlcv(symbol, timeframe, limit, since,
                                              use_cache=False)
        except ccxt.BaseError as e:
            self.log.error(f"  {symbol}: fetch failed ({e})")
            return None
        if len(data) <= limit * MIN_COVERAGE:
            self.log.warning(f"  {symbol}: incomplete data ({len(data)}/{limit} candles)")
            return None
        return data

    def multi_month_correlation(self, symbols: list[str], months: Optional[int] = None,
                                timeframe: Optional[str] = None,
                                now: Optional[datetime] = None) -> MultiMonthCorrelation:
        months = months or self.config.correlation_analysis_months
        timeframe = timeframe or self.config.timeframe

        active = list(dict.fromkeys(symbols))
        failed: list[str] = []
        monthly: list[MonthlyCorrelation] = []
        windows = month_windows(months, now)

        for k, (year, month, start_ms, end_ms) in enumerate(windows, 1):
            limit = month_limit(start_ms, end_ms, timeframe)
            self.log.info(f"[{k}/{months}] {year}-{month:02d}: fetching {len(active)} "
                          f"symbols ({limit} x {timeframe})")

            month_data = {}
            for symbol in list(active):
                data = self._fetch_month(symbol, timeframe, limit, start_ms)
                if data is None:
                    active.remove(symbol)
                    failed.append(symbol)
                else:
                    month_data[symbol] = data
                self._sleep(SYMBOL_DELAY)

            if len(month_data) < 2:
                self.log.warning(f"  {year}-{month:02d}: fewer than 2 usable symbols, skipping month")
                continue

            matrix = self.collector.get_price_matrix(month_data)
            corr = self.analyzer.correlation_matrix(matrix.prices)
            monthly.append(MonthlyCorrelation(year, month, matrix.symbols, corr))
            self.log.info(f"  {year}-{month:02d}: correlation done ({len(month_data)} symbols)")
            self._sleep(MONTH_DELAY)

        if not monthly:
            raise RuntimeError("no usable month of data for correlation analysis")
        self.log.info(f"usable months: {len(monthly)}/{months}")

        avg: dict[str, dict[str, float]] = {s: {} for s in active}
        stab: dict[str, dict[str, float]] = {s: {} for s in active}
        for s1 in active:
            for s2 in active:
                values = [v for v in (mc.get(s1, s2) for mc in monthly) if v is not None]
                if values:
                    arr = np.asarray(values, dtype=np.float64)
                    avg[s1][s2] = float(arr.mean())
                    stab[s1][s2] = float(arr.std())
                else:
                    avg[s1][s2] = 1.0 if s1 == s2 else 0.0
                    stab[s1][s2] = 0.0

        return MultiMonthCorrelation(
            avg_matrix=avg, stability=stab, successful_symbols=active,
            failed_symbols=failed, monthly=monthly)

    def find_pairs(self, symbols: list[str], save: bool = True,
                   now: Optional[datetime] = None) -> DiscoveryResult:
        """Aggregate, filter by min_correlation / max_stability, write JSON + heatmap."""
        cfg = self.config
        self.log.info("=" * 60)
        self.log.info(f"pair discovery: {len(symbols)} symbols, "
                      f"{cfg.correlation_analysis_months} months of {cfg.timeframe}")
        self.log.info("=" * 60)

        mm = self.multi_month_correlation(symbols, now=now)
        if mm.failed_symbols:
            self.log.warning(f"excluded {len(mm.failed_symbols)} symbols: {mm.failed_symbols}")
        if len(mm.successful_symbols) < 2:
            raise RuntimeError(
                f"need at least 2 symbols with data, got {len(mm.successful_symbols)}")

        pairs = self.analyzer.find_highly_correlated_pairs(
            mm.avg_matrix, cfg.min_correlation, mm.stability, cfg.max_stability)

        self.log.info(f"found {len(pairs)} pairs (|corr| >= {cfg.min_correlation}, "
                      f"sigma <= {cfg.max_stability})")
        for i, p in enumerate(pairs[:100], 1):
            stab = f", sigma={p.stability:.3f}" if p.stability is not None else ""
            self.log.info(f"  {i}. {p.pair[0]} / {p.pair[1]}: {p.correlation:.3f}{stab}")

        result = DiscoveryResult(pairs=pairs, correlation=mm,
                                 symbols_requested=list(symbols))
        if save:
            ms = int(time.time() * 1000)
            result.output_path = save_correlation_data(
                mm, pairs, cfg, self.output_dir / f"correlation_data_{ms}.json")
            self.log.info(f"correlation data saved: {result.output_path}")
            try:
                result.heatmap_path = plot_correlation_heatmap(
                    mm.avg_matrix, self.output_dir / f"correlation_matrix_{ms}.png",
                    title=f"Average correlation ({len(mm.monthly)} months, {cfg.timeframe})")
            except (OSError, ValueError) as e:
                self.log.error(f"heatmap generation failed: {e}")
        return result

    def pair_history(self, symbol1: str, symbol2: str, months: int = 12,
                     timeframe: str = "1h", now: Optional[datetime] = None) -> dict:
        """Month-by-month correlation of one pair plus correlation_history() stats."""
        rows = []
        for year, month, start_ms, end_ms in month_windows(months, now):
            limit = month_limit(start_ms, end_ms, timeframe)
            try:
                d1 = self.collector.fetch_ohlcv(symbol1, timeframe, limit, start_ms, use_cache=False)
                d2 = self.collector.fetch_ohlcv(symbol2, timeframe, limit, start_ms, use_cache=False)
            except ccxt.BaseError as e:
                self.log.error(f"{year}-{month:02d}: fetch failed ({e})")
                continue

            matrix = self.collector.get_price_matrix({symbol1: d1, symbol2: d2})
            if symbol1 not in matrix.prices or symbol2 not in matrix.prices:
                self.log.warning(f"{year}-{month:02d}: no data")
                continue
            _, p1, p2 = matrix.pair(symbol1, symbol2)
            if len(p1) < 2:
                self.log.warning(f"{year}-{month:02d}: not enough overlapping bars")
                continue
            rows.append({
                "date": f"{year}-{month:02d}",
                "correlation": self.analyzer.correlation(p1, p2),
                "data_points": len(p1),
            })
            self._sleep(MONTH_DELAY)

        rows.reverse()  # oldest first
        stats = correlation_history([r["correlation"] for r in rows]) if rows else None
        return {"symbol1": symbol1, "symbol2": symbol2, "months": rows, "stats": stats}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def correlation_history(monthly: list[float]) -> dict:
    """Summary of a pair's monthly correlations: level, spread, suitability."""
    if not monthly:
        raise ValueError("correlation_history needs at least one monthly value")
    arr = np.asarray(monthly, dtype=np.float64)
    mean, std = float(arr.mean()), float(arr.std())
    lo, hi = float(arr.min()), float(arr.max())
    is_stable = std < STABLE_STD
    is_high = mean > HIGH_CORRELATION
    return {
        "mean": mean,
        "std": std,
        "min": lo,
        "max": hi,
        "range": hi - lo,
        "stability_score": max(0.0, 100 - std * 100),
        "is_stable": is_stable,
        "is_high_correlation": is_high,
        "is_suitable": is_stable and is_high,
    }


def save_correlation_data(mm: MultiMonthCorrelation, pairs: list[CorrelatedPair],
                          config: StrategyConfig, path) -> Path:
    now = datetime.now(timezone.utc)
    payload = {
        "timestamp": int(now.timestamp() * 1000),
        "date": now.isoformat(),
        "analysisMonths": config.correlation_analysis_months,
        "timeframe": config.timeframe,
        "minCorrelation": config.min_correlation,
        "symbols": mm.successful_symbols,
        "correlationMatrix": mm.avg_matrix,
        "correlationStability": mm.stability,
        "monthlyDetails": [
            {"year": mc.year, "month": mc.month, "date": mc.date, "symbols": mc.symbols}
            for mc in mm.monthly
        ],
        "pairs": [
            {
                "pair": list(p.pair),
                "correlation": p.correlation,
                "stability": p.stability,
                "monthlyCorrelations": [
                    {"date": mc.date, "correlation": mc.get(*p.pair)}
                    for mc in mm.monthly if mc.get(*p.pair) is not None
                ],
            }
            for p in pairs
        ],
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
    return path


def load_correlation_data(path, max_stability: Optional[float] = None,
                          logger: Optional[logging.Logger] = None) -> list[CorrelatedPair]:
    """
    Pairs from a saved correlation file, re-filtered by max_stability.
    Pairs saved without a stability value are kept.
    """
    lg = logger or log
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"correlation data file not found: {path}")
    with open(path) as f:
        data = json.load(f)
    if "pairs" not in data:
        raise ValueError(f"{path} has no 'pairs' entry")

    lg.info(f"loaded correlation data: {len(data.get('symbols', []))} symbols, "
            f"{len(data['pairs'])} pairs, {data.get('analysisMonths')} months")

    pairs = []
    n_unstable = 0
    for p in data["pairs"]:
        stab = p.get("stability")
        if max_stability is not None and stab is not None and stab > max_stability:
            n_unstable += 1
            continue
        corr = float(p["correlation"])
        pairs.append(CorrelatedPair(pair=tuple(p["pair"]), correlation=corr,
                                    abs_correlation=abs(corr), stability=stab))
    if n_unstable:
        lg.info(f"stability filter removed {n_unstable} pairs (sigma > {max_stability})")
    return pairs
