"""Tests for multi-month correlation discovery.

A fake exchange serves hourly candles from fixed series indexed by hour,
so every month of a symbol comes from the same underlying path:
  BTC/USDT   random walk
  ETH/USDT   BTC * 0.05 plus small noise (tracks BTC)
  DOGE/USDT  white noise around 0.1 (unrelated)
  THIN/USDT  only 100 candles per request (fails coverage)
  GONE/USDT  BadSymbol
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import ccxt
import numpy as np
import pytest

from crypto_statarb.config import StrategyConfig
from crypto_statarb.data_collect.collector import DataCollector
from crypto_statarb.data_collect.discovery import (
    CorrelationDiscovery, MonthlyCorrelation, correlation_history,
    load_correlation_data, month_limit, month_windows, save_correlation_data,
)

HOUR_MS = 3_600_000
EPOCH_MS = int(datetime(2023, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)
NOW = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


@pytest.fixture
def series():
    np.random.seed(7)
    n = 24 * 500
    btc = 30_000 + np.cumsum(np.random.randn(n) * 50)
    return {
        "BTC/USDT": btc,
        "ETH/USDT": btc * 0.05 + np.random.randn(n) * 0.5,
        "DOGE/USDT": 0.1 + np.random.randn(n) * 0.001,
    }


@pytest.fixture
def exchange(series):
    def fetch(symbol, timeframe, since, limit):
        if symbol == "GONE/USDT":
            raise ccxt.BadSymbol(f"{symbol} not listed")
        start = (since - EPOCH_MS) // HOUR_MS
        if symbol == "THIN/USDT":
            return [[since + i * HOUR_MS, 1.0, 1.0, 1.0, 1.0 + i, 1.0] for i in range(100)]
        closes = series[symbol][start:start + limit]
        return [[since + i * HOUR_MS, c, c, c, c, 1.0] for i, c in enumerate(closes)]

    ex = MagicMock()
    ex.fetch_ohlcv.side_effect = fetch
    return ex


@pytest.fixture
def discovery(exchange, tmp_path):
    collector = DataCollector(exchange, sleep=lambda s: None)
    cfg = StrategyConfig(correlation_analysis_months=2)
    return CorrelationDiscovery(collector, config=cfg, output_dir=str(tmp_path),
                                sleep=lambda s: None)


# ===========================================================================
# Month windows
# ===========================================================================


class TestMonthWindows:

    def test_completed_months_most_recent_first(self):
        windows = month_windows(3, NOW)
        assert [(y, m) for y, m, _, _ in windows] == [(2024, 2), (2024, 1), (2023, 12)]

    def test_bounds_cover_whole_month(self):
        y, m, start, end = month_windows(1, NOW)[0]
        assert start == int(datetime(2024, 2, 1, tzinfo=timezone.utc).timestamp() * 1000)
        assert end == int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp() * 1000)
        assert month_limit(start, end, "1h") == 29 * 24

    def test_year_wraps(self):
        windows = month_windows(2, datetime(2024, 1, 5, tzinfo=timezone.utc))
        assert [(y, m) for y, m, _, _ in windows] == [(2023, 12), (2023, 11)]


# ===========================================================================
# Multi-month correlation
# ===========================================================================


class TestMultiMonthCorrelation:

    def test_averages_and_stability(self, discovery):
        mm = discovery.multi_month_correlation(
            ["BTC/USDT", "ETH/USDT", "DOGE/USDT"], now=NOW)
        assert len(mm.monthly) == 2
        assert mm.failed_symbols == []
        assert mm.avg_matrix["BTC/USDT"]["ETH/USDT"] > 0.95
        assert mm.stability["BTC/USDT"]["ETH/USDT"] < 0.05
        assert abs(mm.avg_matrix["BTC/USDT"]["DOGE/USDT"]) < 0.3
        assert mm.avg_matrix["ETH/USDT"]["ETH/USDT"] == pytest.approx(1.0)

    def test_incomplete_and_failing_symbols_dropped(self, discovery, exchange):
        mm = discovery.multi_month_correlation(
            ["BTC/USDT", "THIN/USDT", "ETH/USDT", "GONE/USDT"], now=NOW)
        assert mm.failed_symbols == ["THIN/USDT", "GONE/USDT"]
        assert mm.successful_symbols == ["BTC/USDT", "ETH/USDT"]
        assert "THIN/USDT" not in mm.avg_matrix
        # dropped symbols are not requested again in the second month
        requested = [c[0][0] for c in exchange.fetch_ohlcv.call_args_list]
        assert requested.count("THIN/USDT") == 1
        assert requested.count("GONE/USDT") == 1

    def test_no_usable_month(self, discovery):
        with pytest.raises(RuntimeError, match="no usable month"):
            discovery.multi_month_correlation(["BTC/USDT", "GONE/USDT"], now=NOW)

    def test_monthly_lookup(self):
        mc = MonthlyCorrelation(2024, 2, ["A", "B"], {"A": {"B": 0.8}, "B": {"A": 0.8}})
        assert mc.date == "2024-02"
        assert mc.get("A", "B") == 0.8
        assert mc.get("A", "C") is None


class TestFindPairs:

    def test_finds_tracking_pair_and_saves(self, discovery, tmp_path):
        found = discovery.find_pairs(["BTC/USDT", "ETH/USDT", "DOGE/USDT"], now=NOW)

        assert [p.pair for p in found.pairs] == [("BTC/USDT", "ETH/USDT")]
        assert found.output_path.exists()
        assert found.heatmap_path.exists()

        data = json.loads(found.output_path.read_text())
        assert data["analysisMonths"] == 2
        assert data["symbols"] == ["BTC/USDT", "ETH/USDT", "DOGE/USDT"]
        assert data["pairs"][0]["pair"] == ["BTC/USDT", "ETH/USDT"]
        assert [m["date"] for m in data["pairs"][0]["monthlyCorrelations"]] == [
            "2024-02", "2024-01"]

    def test_saved_file_loads_back(self, discovery):
        found = discovery.find_pairs(["BTC/USDT", "ETH/USDT", "DOGE/USDT"], now=NOW)
        pairs = load_correlation_data(found.output_path, max_stability=0.05)
        assert [p.pair for p in pairs] == [("BTC/USDT", "ETH/USDT")]
        assert pairs[0].abs_correlation == pytest.approx(found.pairs[0].abs_correlation)

    def test_no_save(self, discovery, tmp_path):
        found = discovery.find_pairs(["BTC/USDT", "ETH/USDT"], save=False, now=NOW)
        assert found.output_path is None
        assert list(tmp_path.iterdir()) == []

    def test_needs_two_symbols(self, discovery):
        """A single symbol can never form a usable month."""
        with pytest.raises(RuntimeError):
            discovery.find_pairs(["BTC/USDT"], now=NOW)


class TestPairHistory:

    def test_history_oldest_first(self, discovery):
        hist = discovery.pair_history("BTC/USDT", "ETH/USDT", months=2, now=NOW)
        assert [r["date"] for r in hist["months"]] == ["2024-01", "2024-02"]
        assert hist["months"][1]["data_points"] == 29 * 24
        assert hist["stats"]["is_suitable"]

    def test_fetch_error_skips_month(self, discovery):
        hist = discovery.pair_history("BTC/USDT", "GONE/USDT", months=2, now=NOW)
        assert hist["months"] == []
        assert hist["stats"] is None


# ===========================================================================
# Helpers
# ===========================================================================


class TestCorrelationHistory:

    def test_stable_high(self):
        stats = correlation_history([0.9, 0.92, 0.88])
        assert stats["mean"] == pytest.approx(0.9)
        assert stats["range"] == pytest.approx(0.04)
        assert stats["is_suitable"]
        assert stats["stability_score"] > 95

    def test_unstable(self):
        stats = correlation_history([0.95, 0.2, 0.9, 0.1])
        assert not stats["is_stable"]
        assert not stats["is_suitable"]

    def test_empty(self):
        with pytest.raises(ValueError):
            correlation_history([])


class TestLoadCorrelationData:

    def write(self, tmp_path, payload):
        path = tmp_path / "corr.json"
        path.write_text(json.dumps(payload))
        return path

    def test_stability_refilter(self, tmp_path):
        path = self.write(tmp_path, {"pairs": [
            {"pair": ["A", "B"], "correlation": 0.9, "stability": 0.01},
            {"pair": ["A", "C"], "correlation": -0.8, "stability": 0.2},
            {"pair": ["B", "C"], "correlation": 0.75},
        ]})
        pairs = load_correlation_data(path, max_stability=0.05)
        assert [p.pair for p in pairs] == [("A", "B"), ("B", "C")]
        assert pairs[1].stability is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_correlation_data(tmp_path / "none.json")

    def test_no_pairs_key(self, tmp_path):
        with pytest.raises(ValueError):
            load_correlation_data(self.write(tmp_path, {"symbols": []}))

    def test_save_creates_parent(self, tmp_path, discovery):
        mm = discovery.multi_month_correlation(["BTC/USDT", "ETH/USDT"], now=NOW)
        path = save_correlation_data(mm, [], StrategyConfig(), tmp_path / "sub" / "c.json")
        assert json.loads(path.read_text())["pairs"] == []
