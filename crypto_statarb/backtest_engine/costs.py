"""
costs.py -- commission model for 2-leg spread trades

A round trip pays the rate four times: both legs at entry, both at exit,
each on its own notional (quantity * price). Fees are charged on notional,
not on P&L, so a flat trade still loses ~4 * rate * leg_notional.

Never hardcode fees in strategy code, always go through CommissionModel or
get_commission_rate().

Usage:
    cm = CommissionModel(get_commission_rate("binance"))
    details = cm.details(position, exit_price1, exit_price2, gross_pnl)
"""

from dataclasses import dataclass

from .models import CommissionDetails


@dataclass
class VenueFees:
    name: str
    maker_fee: float      # decimal, e.g. 0.001 = 0.1%
    taker_fee: float      # market orders pay this

    @property
    def round_trip_rate(self) -> float:
        """Taker fee paid on entry and exit, as a fraction of leg notional."""
        return 2 * self.taker_fee


# -----------------------------------------------------------------------
#  CEX venues (base tier, no discounts)
# -----------------------------------------------------------------------

VENUE_FEES = {
    "binance":         VenueFees("binance", maker_fee=0.001, taker_fee=0.001),
    "binance_futures": VenueFees("binance_futures", maker_fee=0.0002, taker_fee=0.0005),
    "okx":             VenueFees("okx", maker_fee=0.0008, taker_fee=0.001),
    "okx_futures":     VenueFees("okx_futures", maker_fee=0.0002, taker_fee=0.0005),
    "bybit":           VenueFees("bybit", maker_fee=0.001, taker_fee=0.001),
    "bybit_futures":   VenueFees("bybit_futures", maker_fee=0.0002, taker_fee=0.00055),
    "gate":            VenueFees("gate", maker_fee=0.002, taker_fee=0.002),
    "gate_futures":    VenueFees("gate_futures", maker_fee=0.0002, taker_fee=0.0005),
}


def get_commission_rate(venue: str) -> float:
    """Default taker rate for a known venue. Unknown venues raise ValueError."""
    key = venue.lower().replace(" ", "_").replace("-", "_")
    if key not in VENUE_FEES:
        raise ValueError(f"unknown venue '{venue}' (known: {sorted(VENUE_FEES)})")
    return VENUE_FEES[key].taker_fee


class CommissionModel:
    """Flat per-side rate on each leg's notional."""

    def __init__(self, rate: float = 0.001):
        if rate < 0:
            raise ValueError(f"commission rate must be >= 0, got {rate}")
        self.rate = rate

    def entry_fee(self, position) -> float:
        return self.rate * (position.quantity1 * position.entry_price1
                            + position.quantity2 * position.entry_price2)

    def exit_fee(self, position, exit_price1: float, exit_price2: float) -> float:
        return self.rate * (position.quantity1 * exit_price1
                            + position.quantity2 * exit_price2)

    def details(self, position, exit_price1: float, exit_price2: float,
                gross_pnl: float) -> CommissionDetails:
        """
        Fee breakdown for one closed spread. position is anything with
        quantity1/2 and entry_price1/2 (Position or Trade).
        """
        entry = self.entry_fee(position)
        exit_ = self.exit_fee(position, exit_price1, exit_price2)
        total = entry + exit_
        return CommissionDetails(
            entry_fee=entry, exit_fee=exit_, total_fee=total,
            pnl_before_fee=gross_pnl, net_pnl=gross_pnl - entry - exit_)
