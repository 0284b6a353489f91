"""Tests for multi-pair backtesting and ranking."""

import json

import numpy as np
import pytest

from crypto_statarb.backtest_engine.batch import (
    PairResult, _aligned, rank_results, recommend_pairs, run_multiple_pairs,
)
from crypto_statarb.config import StrategyConfig

from tests.conftest import shock_prices


def make_result(symbol1, total_return, win_rate=60.0, trades=3):
    return PairResult(
        symbol1=symbol1, symbol2="USDC/USDT", total_return=total_return,
        total_trades=trades, win_rate=win_rate, final_capital=10_000 * (1 + total_return / 100),
        max_drawdown=1.0, sharpe_ratio=0.5, correlation=0.9)


@pytest.fixture
def price_matrix():
    p1, p2, ts = shock_prices(n=160, shock_bar=150)
    quiet = p1.copy()
    quiet[150] = 100.1
    return {
        "A/USDT": list(p1),
        "B/USDT": list(p2),
        "C/USDT": list(quiet),
    }, ts


class TestAligned:

    def test_drops_gaps(self):
        p1, p2, ts = _aligned([1.0, None, 3.0, 4.0], [1.0, 2.0, float("nan"), 4.0], [1, 2, 3, 4])
        assert p1.tolist() == [1.0, 4.0]
        assert p2.tolist() == [1.0, 4.0]
        assert ts.tolist() == [1, 4]

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            _aligned([1.0], [1.0, 2.0], [1, 2])


class TestRunMultiplePairs:

    def test_ranked_best_first(self, test_config, price_matrix, tmp_path):
        prices, ts = price_matrix
        results = run_multiple_pairs(
            test_config, [("C/USDT", "B/USDT"), ("A/USDT", "B/USDT")], prices, ts,
            max_reports=1, output_dir=str(tmp_path))

        assert [r.pair for r in results] == ["A/USDT_B/USDT", "C/USDT_B/USDT"]
        assert results[0].total_trades == 1
        assert results[0].total_return > 0
        assert results[1].total_trades == 0

    def test_top_pairs_get_reports(self, test_config, price_matrix, tmp_path):
        prices, ts = price_matrix
        results = run_multiple_pairs(
            test_config, [("A/USDT", "B/USDT"), ("C/USDT", "B/USDT")], prices, ts,
            max_reports=1, output_dir=str(tmp_path))

        assert results[0].chart_path is not None
        assert results[1].chart_path is None
        saved = list(tmp_path.glob("backtest_results_*.json"))
        assert len(saved) == 1
        rows = json.loads(saved[0].read_text())
        assert rows[0]["pair"] == "A/USDT_B/USDT"
        assert list(tmp_path.glob("pair_comparison_*.png"))

    def test_missing_data_skipped(self, test_config, price_matrix, tmp_path):
        prices, ts = price_matrix
        results = run_multiple_pairs(
            test_config, [("A/USDT", "B/USDT"), ("X/USDT", "B/USDT")], prices, ts,
            max_reports=0, output_dir=str(tmp_path), save_results=False)
        assert [r.symbol1 for r in results] == ["A/USDT"]
        assert list(tmp_path.iterdir()) == []

    def test_failing_pair_isolated(self, test_config, price_matrix, tmp_path):
        """Too few bars after alignment fails one pair, not the batch."""
        prices, ts = price_matrix
        prices = dict(prices)
        prices["S/USDT"] = [None] * 100 + [1.0] * 60
        results = run_multiple_pairs(
            test_config, [("S/USDT", "B/USDT"), ("A/USDT", "B/USDT")], prices, ts,
            max_reports=0, output_dir=str(tmp_path), save_results=False)
        assert [r.symbol1 for r in results] == ["A/USDT"]

    def test_parallel_matches_serial(self, test_config, price_matrix, tmp_path):
        prices, ts = price_matrix
        pairs = [("A/USDT", "B/USDT"), ("C/USDT", "B/USDT")]
        serial = run_multiple_pairs(test_config, pairs, prices, ts, max_reports=0,
                                    output_dir=str(tmp_path), save_results=False)
        parallel = run_multiple_pairs(test_config, pairs, prices, ts, max_reports=0,
                                      n_jobs=2, output_dir=str(tmp_path), save_results=False)
        assert [r.total_return for r in parallel] == pytest.approx(
            [r.total_return for r in serial])

    def test_pair_overrides_used(self, price_matrix, tmp_path):
        cfg = StrategyConfig(enforce_correlation=False, pair_specific_params={
            "A/USDT_B/USDT": {"entry_threshold": 3.0, "stop_loss_threshold": 200.0}})
        prices, ts = price_matrix
        results = run_multiple_pairs(cfg, [("A/USDT", "B/USDT")], prices, ts, max_reports=0,
                                     output_dir=str(tmp_path), save_results=False)
        assert results[0].report["strategy_params"]["entry_threshold"] == 3.0


class TestRanking:

    def test_rank_table(self):
        df = rank_results([make_result("A", 1.0), make_result("B", 5.0)])
        assert df.index.tolist() == [1, 2]
        assert df.index.name == "rank"
        assert df["pair"].tolist() == ["B_USDC/USDT", "A_USDC/USDT"]

    def test_rank_empty(self):
        assert rank_results([]).empty

    def test_recommend_needs_profit_and_win_rate(self):
        results = [
            make_result("A", 5.0, win_rate=40.0),
            make_result("B", 3.0, win_rate=70.0),
            make_result("C", -1.0, win_rate=90.0),
            make_result("D", 2.0, win_rate=55.0),
            make_result("E", 1.0, win_rate=51.0),
        ]
        assert [r.symbol1 for r in recommend_pairs(results)] == ["B", "D", "E"]
        assert [r.symbol1 for r in recommend_pairs(results, n=1)] == ["B"]

    def test_result_dict(self):
        d = make_result("A", 1.0).to_dict()
        assert d["pair"] == "A_USDC/USDT"
        assert np.isclose(d["final_capital"], 10_100.0)
