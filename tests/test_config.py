"""Tests for StrategyConfig validation, overrides and file loading."""

import json

import pytest

from crypto_statarb.config import StrategyConfig, StrategyType, load_config


class TestDefaults:

    def test_research_defaults(self):
        cfg = StrategyConfig()
        assert (cfg.entry_threshold, cfg.exit_threshold, cfg.stop_loss_threshold) == (2.0, 0.5, 3.5)
        assert cfg.lookback_period == 100
        assert cfg.position_size == 0.5
        assert cfg.commission == 0.001
        assert cfg.strategy_type is StrategyType.SPOT
        assert cfg.auto_trade is False

    def test_strategy_type_from_string(self):
        assert StrategyConfig(strategy_type="futures").strategy_type is StrategyType.FUTURES

    def test_unknown_strategy_type(self):
        with pytest.raises(ValueError, match="unknown strategy_type"):
            StrategyConfig(strategy_type="options")


class TestValidate:

    @pytest.mark.parametrize("kwargs", [
        {"entry_threshold": 4.0},                 # entry above stop
        {"exit_threshold": 2.5},                  # exit above entry
        {"exit_threshold": -0.1},
        {"lookback_period": 1},
        {"initial_capital": 0},
        {"position_size": 1.5},
        {"commission": -0.01},
        {"leverage": 0.5},
    ])
    def test_rejects(self, kwargs):
        with pytest.raises(ValueError):
            StrategyConfig(**kwargs).validate()

    def test_returns_self(self):
        cfg = StrategyConfig()
        assert cfg.validate() is cfg


class TestPairOverrides:

    def test_override_applied_to_copy(self):
        cfg = StrategyConfig(pair_specific_params={
            "ID/USDT_HOOK/USDT": {"lookback_period": 120, "entry_threshold": 2.5}})
        pair_cfg = cfg.for_pair("ID/USDT", "HOOK/USDT")
        assert pair_cfg.lookback_period == 120
        assert pair_cfg.entry_threshold == 2.5
        assert cfg.lookback_period == 100

    def test_order_matters(self):
        cfg = StrategyConfig(pair_specific_params={"A_B": {"lookback_period": 50}})
        assert cfg.for_pair("B", "A") is cfg

    def test_unknown_override_key(self):
        cfg = StrategyConfig(pair_specific_params={"A_B": {"lookbak": 50}})
        with pytest.raises(ValueError, match="unknown config keys"):
            cfg.for_pair("A", "B")


class TestLoadConfig:

    def test_load_with_overrides(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"entry_threshold": 2.2, "strategy_type": "futures"}))
        cfg = load_config(str(path), lookback_period=80, leverage=None)
        assert cfg.entry_threshold == 2.2
        assert cfg.lookback_period == 80
        assert cfg.leverage == 1.0
        assert cfg.strategy_type is StrategyType.FUTURES

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.json"))

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"entry": 2.0}))
        with pytest.raises(ValueError, match="unknown config keys"):
            load_config(str(path))

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="JSON object"):
            load_config(str(path))

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"exit_threshold": 3.0}))
        with pytest.raises(ValueError, match="thresholds"):
            load_config(str(path))

    def test_to_dict_is_json_ready(self):
        d = StrategyConfig(strategy_type="futures").to_dict()
        assert d["strategy_type"] == "futures"
        json.dumps(d)
