"""
legs.py -- how each leg of a spread bet is traded and marked

The strategy state machine is identical for every variant; what differs is
the instrument behind each leg and therefore the sign of its P&L.

  spot      OPEN_LONG   leg1 spot/buy     leg2 spot/sell
            OPEN_SHORT  leg1 spot/sell    leg2 spot/buy
            P&L sign follows the bet direction.

  futures   OPEN_LONG   leg1 spot/buy     leg2 future/sell
            OPEN_SHORT  leg1 future/sell  leg2 spot/buy
            (short leg falls back to spot/sell when
             use_contract_for_short is off)
            P&L sign follows each leg's own side.
"""

from ..config import StrategyConfig, StrategyType
from .models import (
    Action, InstrumentType, LegDirection, LegSpec, OrderSide,
    PnLBreakdown, Position,
)


def leg_pnl(quantity: float, entry_price: float, exit_price: float,
            side: OrderSide) -> tuple[float, LegDirection]:
    """Bought legs gain when price rises, sold legs when it falls."""
    if side is OrderSide.BUY:
        return quantity * (exit_price - entry_price), LegDirection.LONG
    return quantity * (entry_price - exit_price), LegDirection.SHORT


def _breakdown(pnl1, side1, pnl2, side2, capital) -> PnLBreakdown:
    total = pnl1 + pnl2
    pct = total / capital * 100 if capital else 0.0
    return PnLBreakdown(total=total, percent=pct, pnl1=pnl1, pnl2=pnl2,
                        side1=side1, side2=side2)


class SpotLegs:
    """Both legs on spot; the short leg is 'sell spot, buy back later'."""

    strategy_type = StrategyType.SPOT

    def assign_legs(self, action: Action) -> tuple[LegSpec, LegSpec]:
        if action is Action.OPEN_LONG:
            return (LegSpec(InstrumentType.SPOT, OrderSide.BUY),
                    LegSpec(InstrumentType.SPOT, OrderSide.SELL))
        if action is Action.OPEN_SHORT:
            return (LegSpec(InstrumentType.SPOT, OrderSide.SELL),
                    LegSpec(InstrumentType.SPOT, OrderSide.BUY))
        raise ValueError(f"cannot assign legs for action {action.value}")

    def pnl(self, position: Position, price1: float, price2: float) -> PnLBreakdown:
        v1_entry = position.quantity1 * position.entry_price1
        v2_entry = position.quantity2 * position.entry_price2
        v1_now = position.quantity1 * price1
        v2_now = position.quantity2 * price2

        if position.type is Action.OPEN_LONG:
            return _breakdown(v1_now - v1_entry, LegDirection.LONG,
                              v2_entry - v2_now, LegDirection.SHORT,
                              position.capital)
        return _breakdown(v1_entry - v1_now, LegDirection.SHORT,
                          v2_now - v2_entry, LegDirection.LONG,
                          position.capital)


class FuturesLegs:
    """Short leg on a perpetual contract, long leg on spot."""

    strategy_type = StrategyType.FUTURES

    def __init__(self, use_contract_for_short: bool = True):
        self.use_contract_for_short = use_contract_for_short

    def _short_leg(self) -> LegSpec:
        instrument = (InstrumentType.FUTURE if self.use_contract_for_short
                      else InstrumentType.SPOT)
        return LegSpec(instrument, OrderSide.SELL)

    def assign_legs(self, action: Action) -> tuple[LegSpec, LegSpec]:
        if action is Action.OPEN_LONG:
            return LegSpec(InstrumentType.SPOT, OrderSide.BUY), self._short_leg()
        if action is Action.OPEN_SHORT:
            return self._short_leg(), LegSpec(InstrumentType.SPOT, OrderSide.BUY)
        raise ValueError(f"cannot assign legs for action {action.value}")

    def pnl(self, position: Position, price1: float, price2: float) -> PnLBreakdown:
        pnl1, side1 = leg_pnl(position.quantity1, position.entry_price1,
                              price1, position.leg1.side)
        pnl2, side2 = leg_pnl(position.quantity2, position.entry_price2,
                              price2, position.leg2.side)
        return _breakdown(pnl1, side1, pnl2, side2, position.capital)


def leg_model_for(config: StrategyConfig):
    """Pick the leg model matching config.strategy_type."""
    if config.strategy_type is StrategyType.FUTURES:
        return FuturesLegs(use_contract_for_short=config.use_contract_for_short)
    return SpotLegs()
