"""Tests for the command line front-end (no network)."""

import argparse
from unittest.mock import MagicMock

import pytest

from crypto_statarb.cli import _parse_pair, backtest_window, build_parser, cmd_optimize, main
from crypto_statarb.config import StrategyConfig

from tests.conftest import shock_prices

HOUR_MS = 3_600_000


class TestBacktestWindow:

    def test_date_range(self):
        cfg = StrategyConfig(backtest_start_date="2024-01-01",
                             backtest_end_date="2024-01-31")
        since, limit, hours = backtest_window(cfg)
        assert hours == 30 * 24
        assert limit == 30 * 24 * 4
        assert since == 1_704_067_200_000

    def test_rolling_window(self):
        cfg = StrategyConfig(correlation_period_hours=48, backtest_timeframe="1h")
        now = 1_704_067_200_000
        since, limit, hours = backtest_window(cfg, now_ms=now)
        assert since == now - 48 * HOUR_MS
        assert limit == 48

    def test_reversed_dates(self):
        cfg = StrategyConfig(backtest_start_date="2024-02-01",
                             backtest_end_date="2024-01-01")
        with pytest.raises(ValueError, match="not after"):
            backtest_window(cfg)


class TestParser:

    def test_pairs(self):
        assert _parse_pair("ID/USDT:HOOK/USDT") == ("ID/USDT", "HOOK/USDT")
        with pytest.raises(argparse.ArgumentTypeError):
            _parse_pair("ID/USDT")

    def test_live_args(self):
        args = build_parser().parse_args(
            ["live", "--pairs", "A/USDT:B/USDT", "C/USDT:D/USDT", "--max-cycles", "3"])
        assert args.pairs == [("A/USDT", "B/USDT"), ("C/USDT", "D/USDT")]
        assert args.max_cycles == 3
        assert args.auto_trade is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:

    def test_missing_config_file(self, tmp_path):
        assert main(["--config", str(tmp_path / "none.json"),
                     "pair-history", "A/USDT", "B/USDT"]) == 1

    def test_backtest_needs_a_source(self, tmp_path):
        assert main(["--output-dir", str(tmp_path), "backtest"]) == 1

    def test_missing_correlation_file(self, tmp_path):
        assert main(["backtest", "--correlation-file", str(tmp_path / "c.json")]) == 1


class TestOptimizeCommand:

    def test_parser(self):
        args = build_parser().parse_args(
            ["optimize", "A/USDT", "B/USDT", "--sweep", "lookback", "--n-jobs", "2"])
        assert (args.symbol1, args.symbol2) == ("A/USDT", "B/USDT")
        assert args.sweep == "lookback"
        assert args.n_jobs == 2
        assert build_parser().parse_args(["optimize", "A", "B"]).sweep == "thresholds"

    def test_unknown_sweep_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["optimize", "A", "B", "--sweep", "leverage"])

    def test_lookback_sweep_prints_best(self, capsys):
        p1, p2, ts = shock_prices(n=160)
        collector = MagicMock()
        collector.fetch_multiple_ohlcv.return_value = {"A/USDT": [1], "B/USDT": [1]}
        collector.get_price_matrix.return_value.pair.return_value = (ts, p1, p2)
        args = build_parser().parse_args(
            ["optimize", "A/USDT", "B/USDT", "--sweep", "lookback"])

        assert cmd_optimize(args, StrategyConfig(enforce_correlation=False), collector) == 0
        out = capsys.readouterr().out
        assert "A/USDT / B/USDT lookback" in out
        assert "best: {'lookback_period':" in out
        assert '"A/USDT_B/USDT"' in out

    def test_missing_leg_data(self):
        collector = MagicMock()
        collector.fetch_multiple_ohlcv.return_value = {"A/USDT": [1], "B/USDT": None}
        args = build_parser().parse_args(["optimize", "A/USDT", "B/USDT"])
        with pytest.raises(RuntimeError, match="could not fetch"):
            cmd_optimize(args, StrategyConfig(), collector)
