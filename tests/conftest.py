"""
Shared pytest fixtures for pairs trading tests.
"""

from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from crypto_statarb.backtest_engine.models import (
    Action, InstrumentType, LegDirection, LegSpec, OrderSide, PairKey, Trade,
)
from crypto_statarb.config import StrategyConfig

HOUR_MS = 3_600_000
BAR_MS = 15 * 60_000
START_MS = int(pd.Timestamp("2025-01-01", tz="UTC").timestamp() * 1000)


def alternating(n, base=100.0, step=0.1):
    """base +/- step on even/odd bars: std 0.1 around a fixed mean."""
    return np.array([base + step if i % 2 == 0 else base - step for i in range(n)])


def shock_prices(n=160, shock_bar=150, shock_price=110.0, revert=True):
    """
    Leg 1 alternates around 100, jumps to shock_price at shock_bar and
    (with revert) goes back to the pattern on the next bar. Leg 2 is flat
    at 50, so the spread is driven by leg 1 only.
    """
    p1 = alternating(n)
    p1[shock_bar] = shock_price
    if not revert:
        p1[shock_bar:] = shock_price
    p2 = np.full(n, 50.0)
    ts = START_MS + np.arange(n, dtype=np.int64) * BAR_MS
    return p1, p2, ts


def make_candles(closes, start_ms=START_MS, step_ms=HOUR_MS):
    """ccxt-style OHLCV rows [ts, o, h, l, c, v] from close prices."""
    return [[start_ms + i * step_ms, c, c, c, c, 1.0] for i, c in enumerate(closes)]


def make_trade(pnl, net_pnl=None, duration_min=60, close_action=Action.CLOSE,
               close_reason="spread reverted to mean", pair=("A/USDT", "B/USDT"),
               forced_close=False):
    """Closed spot trade with the given P&L; prices and sizes are placeholders."""
    return Trade(
        pair_key=PairKey(*pair), type=Action.OPEN_LONG,
        entry_time=START_MS, exit_time=START_MS + duration_min * 60_000,
        entry_z=-2.5, exit_z=0.1,
        entry_price1=100.0, entry_price2=50.0,
        exit_price1=101.0, exit_price2=50.0,
        quantity1=25.0, quantity2=50.0,
        capital=5000.0, price_ratio=2.0,
        leg1=LegSpec(InstrumentType.SPOT, OrderSide.BUY),
        leg2=LegSpec(InstrumentType.SPOT, OrderSide.SELL),
        leverage=1.0, margin_type="cross",
        pnl=pnl, pnl_pct=pnl / 5000.0 * 100, pnl1=pnl, pnl2=0.0,
        side1=LegDirection.LONG, side2=LegDirection.SHORT,
        close_action=close_action, close_reason=close_reason,
        forced_close=forced_close,
        net_pnl=net_pnl,
    )


@pytest.fixture
def test_config():
    """Default thresholds with the correlation gate off."""
    return StrategyConfig(enforce_correlation=False)


@pytest.fixture
def cointegrated_pair():
    """500 hourly bars of two legs sharing one random walk."""
    np.random.seed(42)
    n = 500
    dates = pd.date_range(start="2025-01-01", periods=n, freq="1h", tz="UTC")
    common = 100 + np.cumsum(np.random.randn(n) * 0.5)
    p1 = common + np.random.randn(n) * 0.3
    p2 = 0.5 * common + np.random.randn(n) * 0.15
    ts = (dates.asi8 // 1_000_000).astype(np.int64)
    return p1, p2, ts


@pytest.fixture
def mock_exchange():
    ex = MagicMock()
    ex.fetch_ohlcv.return_value = []
    ex.create_order.return_value = {"id": "1", "average": 100.0}
    return ex
