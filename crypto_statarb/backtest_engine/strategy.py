"""
strategy.py -- z-score pairs strategy: signal state machine + position book

Per pair the strategy is a small state machine:

    FLAT --z > entry--> OPEN_SHORT --|z| < exit--> FLAT
    FLAT --z < -entry-> OPEN_LONG  --|z| < exit--> FLAT
    OPEN_LONG  --z < -stop--> FLAT (stop loss)
    OPEN_SHORT --z > +stop--> FLAT (stop loss)

Stop-loss is direction-aware: a long-spread position is only stopped out
when z keeps falling, never when it reverts through zero to the other side.

Leg instruments and P&L signs come from a leg model (see legs.py), so the
spot and futures variants share this class unchanged.
"""

import logging
import math
from typing import Optional

import numpy as np

from ..config import StrategyConfig, StrategyType
from .analyzer import StatisticalAnalyzer
from .legs import leg_model_for
from .metrics import trade_statistics
from .models import (
    Action, PairAnalysis, PairKey, PnLBreakdown, Position, PositionSizing,
    PositionStatus, Signal, Trade,
)

log = logging.getLogger(__name__)

MIN_PRICE = 0.00001              # below this, quantities lose precision
MAX_QUANTITY_VALUE = 1_000_000   # per-leg notional cap (quote currency)


class PairsStrategy:
    """Owns the open-position map and the trade history for a set of pairs."""

    def __init__(
        self,
        config: Optional[StrategyConfig] = None,
        analyzer: Optional[StatisticalAnalyzer] = None,
        leg_model=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or StrategyConfig()
        self.log = logger or log
        self.analyzer = analyzer or StatisticalAnalyzer(logger=self.log)
        self.legs = leg_model or leg_model_for(self.config)

        self.entry_threshold = self.config.entry_threshold
        self.exit_threshold = self.config.exit_threshold
        self.stop_loss_threshold = self.config.stop_loss_threshold
        self.lookback_period = self.config.lookback_period
        self.min_correlation = self.config.min_correlation
        self.enforce_correlation = self.config.enforce_correlation

        self.positions: dict[PairKey, Position] = {}
        self.trades: list[Trade] = []

    @property
    def strategy_type(self):
        return self.legs.strategy_type

    # -------------------------------------------------------------------
    #  Analysis
    # -------------------------------------------------------------------

    def analyze_pair(self, symbol1: str, symbol2: str,
                     prices1, prices2,
                     pair_key: Optional[PairKey] = None) -> PairAnalysis:
        """
        Correlation gate, then spread / z-score / half-life and the signal
        for the last bar of the window. pair_key makes the signal
        position-aware.
        """
        n = min(len(prices1), len(prices2))
        if n < 2:
            return PairAnalysis(
                viable=False, reason=f"insufficient data: {n} bars in window")

        try:
            corr = self.analyzer.correlation(prices1, prices2)
            if self.enforce_correlation and abs(corr) < self.min_correlation:
                return PairAnalysis(
                    viable=False, correlation=corr,
                    reason=f"insufficient correlation: {corr:.3f}")

            coint = self.analyzer.cointegration(prices1, prices2)
            spread = self.analyzer.spread(prices1, prices2, "normalized_ratio")
            z_scores = self.analyzer.rolling_zscore(spread, self.lookback_period)
            z_now = float(z_scores[-1]) if len(z_scores) else float("nan")
            z_now = None if math.isnan(z_now) else z_now
            half_life = self.analyzer.half_life(spread)
        except ValueError as e:
            self.log.error(f"pair analysis failed [{symbol1}, {symbol2}]: {e}")
            return PairAnalysis(viable=False, reason=str(e))

        position_type = None
        if pair_key is not None:
            pos = self.positions.get(pair_key)
            if pos is not None:
                position_type = pos.type

        return PairAnalysis(
            viable=True,
            pair=(symbol1, symbol2),
            correlation=corr,
            cointegration=coint,
            spread_current=float(spread[-1]),
            spread_mean=float(np.mean(spread)),
            spread_std=float(np.std(spread)),
            spread=spread,
            z_score=z_now,
            z_scores=z_scores,
            half_life=half_life,
            signal=self.generate_signal(z_now, position_type),
        )

    def generate_signal(self, z: Optional[float],
                        position_type: Optional[Action] = None) -> Signal:
        """Evaluation order: stop-loss, entry (flat only), exit, hold."""
        if z is None:
            return Signal(Action.HOLD, None, "insufficient data for z-score")

        if position_type is Action.OPEN_LONG and z < -self.stop_loss_threshold:
            return Signal(Action.STOP_LOSS, z,
                          f"spread kept falling, stop loss: Z={z:.2f}")
        if position_type is Action.OPEN_SHORT and z > self.stop_loss_threshold:
            return Signal(Action.STOP_LOSS, z,
                          f"spread kept rising, stop loss: Z={z:.2f}")

        if position_type is None:
            if z > self.entry_threshold:
                return Signal(Action.OPEN_SHORT, z,
                              f"spread rich, short spread: Z={z:.2f}")
            if z < -self.entry_threshold:
                return Signal(Action.OPEN_LONG, z,
                              f"spread cheap, long spread: Z={z:.2f}")

        if position_type is not None and abs(z) < self.exit_threshold:
            return Signal(Action.CLOSE, z, f"spread reverted to mean: Z={z:.2f}")

        if position_type is not None:
            return Signal(Action.HOLD, z, f"holding position: Z={z:.2f}")
        return Signal(Action.HOLD, z, f"watching: Z={z:.2f}")

    # -------------------------------------------------------------------
    #  Sizing / P&L
    # -------------------------------------------------------------------

    def calculate_position_ratio(self, price1: float, price2: float,
                                 capital: float) -> PositionSizing:
        """Half the capital per leg, each leg capped at MAX_QUANTITY_VALUE."""
        if price1 <= 0 or price2 <= 0:
            raise ValueError(f"prices must be positive, got {price1} / {price2}")
        if price1 < MIN_PRICE or price2 < MIN_PRICE:
            self.log.warning(f"price very low: {price1} / {price2}, "
                             f"sizing may lose precision")

        half = capital / 2
        qty1 = half / price1
        qty2 = half / price2

        max_qty1 = MAX_QUANTITY_VALUE / price1
        max_qty2 = MAX_QUANTITY_VALUE / price2
        if qty1 > max_qty1:
            self.log.warning(f"leg 1 quantity {qty1:.2f} capped at {max_qty1:.2f}")
            qty1 = max_qty1
        if qty2 > max_qty2:
            self.log.warning(f"leg 2 quantity {qty2:.2f} capped at {max_qty2:.2f}")
            qty2 = max_qty2

        sizing = PositionSizing(
            quantity1=qty1, quantity2=qty2,
            price_ratio=price1 / price2, capital=capital,
            actual_capital1=qty1 * price1, actual_capital2=qty2 * price2,
        )
        if self.legs.strategy_type is StrategyType.FUTURES:
            sizing.leverage = self.config.leverage
            sizing.margin_type = self.config.margin_type
        return sizing

    def calculate_pnl(self, position: Position, price1: float,
                      price2: float) -> PnLBreakdown:
        return self.legs.pnl(position, price1, price2)

    # -------------------------------------------------------------------
    #  Position lifecycle
    # -------------------------------------------------------------------

    def open_position(self, pair_key: PairKey, signal: Signal,
                      price1: float, price2: float, capital: float,
                      timestamp: int) -> Optional[Position]:
        """Open a spread. None if the pair already has a position (no pyramiding)."""
        if pair_key in self.positions:
            self.log.warning(f"{pair_key}: position already open, ignoring {signal.action.value}")
            return None
        if not signal.action.is_open:
            self.log.warning(f"{pair_key}: {signal.action.value} is not an entry signal")
            return None

        sizing = self.calculate_position_ratio(price1, price2, capital)
        leg1, leg2 = self.legs.assign_legs(signal.action)

        pos = Position(
            pair_key=pair_key, type=signal.action,
            entry_time=timestamp, entry_z=signal.z_score,
            entry_price1=price1, entry_price2=price2,
            quantity1=sizing.quantity1, quantity2=sizing.quantity2,
            capital=capital, price_ratio=sizing.price_ratio,
            leg1=leg1, leg2=leg2,
            leverage=self.config.leverage,
            margin_type=self.config.margin_type,
        )
        self.positions[pair_key] = pos

        self.log.info(
            f"open {pair_key} {signal.action.value} Z={signal.z_score:.2f} | "
            f"{pair_key.symbol1} {leg1.instrument.value}/{leg1.side.value} "
            f"{sizing.quantity1:.4f} @ {price1:.8f} (${sizing.actual_capital1:,.2f}) | "
            f"{pair_key.symbol2} {leg2.instrument.value}/{leg2.side.value} "
            f"{sizing.quantity2:.4f} @ {price2:.8f} (${sizing.actual_capital2:,.2f})")
        return pos

    def close_position(self, pair_key: PairKey, price1: float, price2: float,
                       signal: Signal, timestamp: int) -> Optional[Position]:
        """Close, record a Trade and drop the pair from the position map."""
        pos = self.positions.get(pair_key)
        if pos is None:
            self.log.warning(f"no open position for {pair_key}")
            return None

        pnl = self.calculate_pnl(pos, price1, price2)
        pos.exit_time = timestamp
        pos.exit_z = signal.z_score
        pos.exit_price1 = price1
        pos.exit_price2 = price2
        pos.pnl = pnl.total
        pos.pnl_pct = pnl.percent
        pos.pnl1 = pnl.pnl1
        pos.pnl2 = pnl.pnl2
        pos.side1 = pnl.side1
        pos.side2 = pnl.side2
        pos.status = PositionStatus.CLOSED
        pos.close_action = (Action.STOP_LOSS if signal.action is Action.STOP_LOSS
                            else Action.CLOSE)
        pos.close_reason = signal.reason
        pos.forced_close = signal.forced

        self.trades.append(Trade.from_position(pos))
        del self.positions[pair_key]

        held = (timestamp - pos.entry_time) / 60_000
        self.log.info(
            f"close {pair_key} ({signal.reason}) | "
            f"{pos.symbol1} {pnl.side1.value} {pnl.pnl1:+.2f} | "
            f"{pos.symbol2} {pnl.side2.value} {pnl.pnl2:+.2f} | "
            f"total {pnl.total:+.2f} ({pnl.percent:+.2f}%) | held {held:.0f} min")
        return pos

    def update_position(self, pair_key: PairKey, price1: float, price2: float,
                        z: Optional[float], timestamp: int) -> Optional[Position]:
        """Close on STOP_LOSS / CLOSE, otherwise refresh the running marks."""
        pos = self.positions.get(pair_key)
        if pos is None:
            return None

        signal = self.generate_signal(z, pos.type)
        if signal.action.is_exit:
            return self.close_position(pair_key, price1, price2, signal, timestamp)

        pnl = self.calculate_pnl(pos, price1, price2)
        pos.current_price1 = price1
        pos.current_price2 = price2
        pos.current_z = z
        pos.current_pnl = pnl.total
        pos.current_pnl_pct = pnl.percent
        pos.last_update = timestamp
        return pos

    def rollback_position(self, pair_key: PairKey) -> Optional[Position]:
        """Forget a position the exchange never actually opened."""
        pos = self.positions.pop(pair_key, None)
        if pos is not None:
            self.log.warning(f"rolled back in-memory position for {pair_key}")
        return pos

    # -------------------------------------------------------------------
    #  Accessors
    # -------------------------------------------------------------------

    def get_position(self, pair_key: PairKey) -> Optional[Position]:
        return self.positions.get(pair_key)

    def get_all_positions(self) -> list[Position]:
        return list(self.positions.values())

    def get_trade_history(self) -> list[Trade]:
        return list(self.trades)

    def get_statistics(self) -> dict:
        return trade_statistics(self.trades)

    def reset(self):
        self.positions.clear()
        self.trades = []
