"""
live_trading.py -- run PairsStrategy against a live exchange

Every scan_interval seconds, for each configured pair:
  1. fetch the last lookback + 10 candles of both legs
  2. analyze the window (same code path as the backtest)
  3. open / update / close the in-memory position
  4. with auto_trade on, mirror opens and closes as market orders

Leg execution is NOT atomic. If the second leg fails after the first one
filled, the account holds a naked leg: the in-memory position is rolled
back, a PartialExecutionError is logged at ERROR and nothing else is
traded. The leftover leg has to be handled by hand.

Usage:
    ex = build_exchange("binance", api_key, secret)
    trader = LiveTrader(ex, DataCollector(ex), PairsStrategy(cfg), cfg,
                        pairs=[("ID/USDT", "HOOK/USDT")])
    trader.run()
"""

import logging
import time
from typing import Callable, Optional

import ccxt

from .backtest_engine.models import (
    InstrumentType, LegSpec, PairKey, Position, PositionStatus, Signal,
)
from .backtest_engine.strategy import PairsStrategy
from .config import StrategyConfig
from .data_collect.collector import DataCollector

log = logging.getLogger(__name__)

PAIR_DELAY = 1.0          # seconds between pairs within a cycle
EXTRA_CANDLES = 10        # fetched beyond the lookback window


class PartialExecutionError(RuntimeError):
    """Some legs of a spread order were placed, the rest failed."""

    def __init__(self, pair_key: PairKey, filled: list, cause: Exception):
        self.pair_key = pair_key
        self.filled = filled
        self.cause = cause
        super().__init__(
            f"{pair_key}: {len(filled)} leg(s) filled before failure: {cause}")


def build_exchange(exchange_id: str, api_key: Optional[str] = None,
                   secret: Optional[str] = None, timeout: int = 30_000,
                   proxy: Optional[str] = None, options: Optional[dict] = None):
    """ccxt client with rate limiting on and an optional HTTPS proxy."""
    exchange_cls = getattr(ccxt, exchange_id, None)
    if exchange_cls is None:
        raise ValueError(f"unknown ccxt exchange id '{exchange_id}'")

    params = {
        "enableRateLimit": True,
        "timeout": timeout,
        "options": options or {},
    }
    if api_key:
        params["apiKey"] = api_key
    if secret:
        params["secret"] = secret
    if proxy:
        params["httpsProxy"] = proxy
        log.info(f"using proxy {proxy}")
    return exchange_cls(params)


class LiveTrader:

    def __init__(
        self,
        exchange,
        collector: DataCollector,
        strategy: PairsStrategy,
        config: StrategyConfig,
        pairs: list[tuple[str, str]],
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.exchange = exchange
        self.collector = collector
        self.strategy = strategy
        self.config = config
        self.pairs = list(pairs)
        self.log = logger or log
        self._sleep = sleep
        self._running = False

    # -------------------------------------------------------------------
    #  Loop
    # -------------------------------------------------------------------

    def run(self, max_cycles: Optional[int] = None):
        """Scan until stop() is called (or max_cycles cycles have run)."""
        self._running = True
        mode = "AUTO-TRADE" if self.config.auto_trade else "signals only"
        self.log.info(f"live trading started: {len(self.pairs)} pairs, {mode}, "
                      f"every {self.config.scan_interval:.0f}s")

        cycle = 0
        while self._running and (max_cycles is None or cycle < max_cycles):
            cycle += 1
            self.log.info("=" * 60)
            self.log.info(f"cycle {cycle}")

            for symbol1, symbol2 in self.pairs:
                try:
                    self.process_pair(symbol1, symbol2)
                except Exception:
                    self.log.exception(f"error processing {symbol1}/{symbol2}")
                self._sleep(PAIR_DELAY)

            stats = self.strategy.get_statistics()
            if stats["total_trades"]:
                self.log.info(f"totals: {stats['total_trades']} trades, "
                              f"win rate {stats['win_rate']:.1f}%, "
                              f"P&L {stats['total_pnl']:+.2f}")
            else:
                self.log.info("totals: no closed trades yet")

            self.log.info(f"next scan in {self.config.scan_interval:.0f}s")
            self._sleep(self.config.scan_interval)

        self._running = False
        self.log.info("live trading stopped")

    def stop(self):
        self.log.info("stop requested")
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def process_pair(self, symbol1: str, symbol2: str) -> Optional[Signal]:
        """One scan of one pair. Returns the signal, None when there was nothing to analyze."""
        limit = self.config.lookback_period + EXTRA_CANDLES
        tf = self.config.timeframe
        d1 = self.collector.fetch_ohlcv(symbol1, tf, limit, use_cache=False)
        d2 = self.collector.fetch_ohlcv(symbol2, tf, limit, use_cache=False)
        if not d1 or not d2:
            self.log.warning(f"{symbol1}/{symbol2}: no candles returned, skipping")
            return None

        matrix = self.collector.get_price_matrix({symbol1: d1, symbol2: d2})
        _, p1, p2 = matrix.pair(symbol1, symbol2)
        if len(p1) < 2:
            self.log.warning(f"{symbol1}/{symbol2}: not enough overlapping bars")
            return None

        pair_key = PairKey(symbol1, symbol2)
        price1, price2 = p1[-1], p2[-1]
        now = int(time.time() * 1000)

        analysis = self.strategy.analyze_pair(symbol1, symbol2, p1, p2, pair_key)
        self.log.info(f"{pair_key}: {symbol1}={price1:.8f} {symbol2}={price2:.8f} "
                      f"ratio {price1 / price2:.4f}")
        if not analysis.viable:
            self.log.info(f"  not tradeable: {analysis.reason}")
            return None

        signal = analysis.signal
        z = analysis.z_score
        self.log.info(f"  corr {analysis.correlation:.3f} | spread {analysis.spread_current:.6f} "
                      f"(mean {analysis.spread_mean:.6f}, std {analysis.spread_std:.6f}) | "
                      f"Z={'n/a' if z is None else f'{z:.2f}'}")
        self.log.info(f"  signal {signal.action.value}: {signal.reason}")

        position = self.strategy.get_position(pair_key)
        if position is not None:
            updated = self.strategy.update_position(pair_key, price1, price2, z, now)
            if updated is not None and updated.status is PositionStatus.CLOSED:
                self.log.info(f"  closed, P&L {updated.pnl:+.2f}")
                if self.config.auto_trade:
                    try:
                        self.execute_close(updated)
                    except PartialExecutionError as e:
                        self.log.error(f"CLOSE FAILED, CHECK THE ACCOUNT MANUALLY: {e}")
                else:
                    self.log.info("  auto_trade off: close the position manually")
            elif updated is not None:
                self.log.info(f"  open {updated.type.value}, floating "
                              f"{updated.current_pnl:+.2f} ({updated.current_pnl_pct:+.2f}%)")

        elif signal.action.is_open:
            capital = self.config.trade_amount
            self.log.info(f"  entry signal, planned capital ${capital:,.2f}")
            if self.config.auto_trade:
                opened = self.strategy.open_position(
                    pair_key, signal, price1, price2, capital, now)
                if opened is not None:
                    try:
                        self.execute_open(opened)
                    except PartialExecutionError as e:
                        self.log.error(f"OPEN FAILED, CHECK THE ACCOUNT MANUALLY: {e}")
                        self.strategy.rollback_position(pair_key)
            else:
                self.log.info("  auto_trade off: signal only")

        return signal

    # -------------------------------------------------------------------
    #  Orders
    # -------------------------------------------------------------------

    def _open_leg(self, symbol: str, leg: LegSpec, quantity: float, leverage: float):
        if leg.instrument is InstrumentType.FUTURE:
            if leverage > 1:
                self.exchange.set_leverage(leverage, symbol)
                self.log.info(f"  leverage {symbol} {leverage}x")
            return self.exchange.create_order(
                symbol, "market", leg.side.value, quantity, None, {"type": "future"})
        return self.exchange.create_order(symbol, "market", leg.side.value, quantity)

    def _close_leg(self, symbol: str, leg: LegSpec, quantity: float):
        side = leg.side.opposite.value
        if leg.instrument is InstrumentType.FUTURE:
            return self.exchange.create_order(
                symbol, "market", side, quantity, None,
                {"type": "future", "reduceOnly": True})
        return self.exchange.create_order(symbol, "market", side, quantity)

    def execute_open(self, position: Position) -> list:
        """Place both entry legs. Raises PartialExecutionError on any failure."""
        legs = [(position.symbol1, position.leg1, position.quantity1),
                (position.symbol2, position.leg2, position.quantity2)]
        filled = []
        for symbol, leg, qty in legs:
            self.log.info(f"  order {symbol} {leg.instrument.value} "
                          f"{leg.side.value.upper()} {qty:.8f}")
            try:
                order = self._open_leg(symbol, leg, qty, position.leverage)
            except ccxt.BaseError as e:
                raise PartialExecutionError(position.pair_key, filled, e) from e
            self.log.info(f"  filled {symbol}: id={order.get('id')} "
                          f"price={order.get('average') or order.get('price')}")
            filled.append(order)
        position.orders.extend(filled)
        return filled

    def execute_close(self, position: Position) -> list:
        """Reverse both legs (futures legs reduce-only)."""
        legs = [(position.symbol1, position.leg1, position.quantity1),
                (position.symbol2, position.leg2, position.quantity2)]
        filled = []
        for symbol, leg, qty in legs:
            try:
                order = self._close_leg(symbol, leg, qty)
            except ccxt.BaseError as e:
                raise PartialExecutionError(position.pair_key, filled, e) from e
            self.log.info(f"  closed {symbol}: id={order.get('id')}")
            filled.append(order)
        position.orders.extend(filled)
        return filled
