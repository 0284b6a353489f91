"""
models.py -- data classes for pair keys, signals, positions and trades
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

FORCED_CLOSE_REASON = "backtest end"


class Action(str, Enum):
    OPEN_LONG = "OPEN_LONG"      # long spread: buy leg 1, sell leg 2
    OPEN_SHORT = "OPEN_SHORT"    # short spread: sell leg 1, buy leg 2
    CLOSE = "CLOSE"
    STOP_LOSS = "STOP_LOSS"
    HOLD = "HOLD"

    @property
    def is_open(self) -> bool:
        return self in (Action.OPEN_LONG, Action.OPEN_SHORT)

    @property
    def is_exit(self) -> bool:
        return self in (Action.CLOSE, Action.STOP_LOSS)


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class InstrumentType(str, Enum):
    SPOT = "spot"
    FUTURE = "future"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class LegDirection(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class PairKey:
    """Ordered pair of instrument ids. Keys the position map."""
    symbol1: str
    symbol2: str

    def __str__(self) -> str:
        return f"{self.symbol1}_{self.symbol2}"

    @property
    def symbols(self) -> tuple[str, str]:
        return self.symbol1, self.symbol2


@dataclass
class Signal:
    action: Action
    z_score: Optional[float]
    reason: str
    forced: bool = False         # end-of-data liquidation, not a strategy exit


@dataclass
class LegSpec:
    """How one leg is traded: instrument type + opening side."""
    instrument: InstrumentType
    side: OrderSide


@dataclass
class PositionSizing:
    """
    Capital-neutral split. actual_capital1/2 differ from capital/2 only
    when the per-leg value cap kicked in.
    """
    quantity1: float
    quantity2: float
    price_ratio: float
    capital: float
    actual_capital1: float
    actual_capital2: float
    leverage: Optional[float] = None
    margin_type: Optional[str] = None

    @property
    def is_capital_neutral(self) -> bool:
        half = self.capital / 2
        tol = 1e-9 * max(half, 1.0)
        return (abs(self.actual_capital1 - half) <= tol
                and abs(self.actual_capital2 - half) <= tol)


@dataclass
class PnLBreakdown:
    total: float
    percent: float
    pnl1: float
    pnl2: float
    side1: LegDirection
    side2: LegDirection


@dataclass
class CointegrationResult:
    """CV-of-ratio proxy. is_cointegrated = cv < 0.1 (heuristic, not Engle-Granger)."""
    mean_ratio: float
    std_ratio: float
    cv: float
    is_cointegrated: bool


@dataclass
class CorrelatedPair:
    pair: tuple[str, str]
    correlation: float
    abs_correlation: float
    stability: Optional[float] = None


@dataclass
class PairAnalysis:
    """Result of StatisticalAnalyzer + state machine for the current bar."""
    viable: bool
    reason: str = ""
    pair: Optional[tuple[str, str]] = None
    correlation: float = 0.0
    cointegration: Optional[CointegrationResult] = None
    spread_current: float = 0.0
    spread_mean: float = 0.0
    spread_std: float = 0.0
    spread: Optional[object] = None       # np.ndarray
    z_score: Optional[float] = None
    z_scores: Optional[object] = None     # np.ndarray, NaN during warm-up
    half_life: float = float("inf")
    signal: Optional[Signal] = None


@dataclass
class Position:
    """
    Open 2-leg spread owned by PairsStrategy (one per PairKey).

    type = OPEN_LONG:  bet that the spread rises (leg 1 long, leg 2 short)
    type = OPEN_SHORT: bet that the spread falls (leg 1 short, leg 2 long)
    """
    pair_key: PairKey
    type: Action
    entry_time: int
    entry_z: float
    entry_price1: float
    entry_price2: float
    quantity1: float
    quantity2: float
    capital: float
    price_ratio: float
    leg1: LegSpec
    leg2: LegSpec
    leverage: float = 1.0
    margin_type: str = "cross"
    status: PositionStatus = PositionStatus.OPEN

    # refreshed on every update while open
    current_price1: Optional[float] = None
    current_price2: Optional[float] = None
    current_z: Optional[float] = None
    current_pnl: Optional[float] = None
    current_pnl_pct: Optional[float] = None
    last_update: Optional[int] = None

    # filled on close
    exit_time: Optional[int] = None
    exit_z: Optional[float] = None
    exit_price1: Optional[float] = None
    exit_price2: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    pnl1: Optional[float] = None
    pnl2: Optional[float] = None
    side1: Optional[LegDirection] = None
    side2: Optional[LegDirection] = None
    close_action: Optional[Action] = None
    close_reason: Optional[str] = None
    forced_close: bool = False

    # exchange acknowledgements (live mode)
    orders: list = field(default_factory=list)

    @property
    def symbol1(self) -> str:
        return self.pair_key.symbol1

    @property
    def symbol2(self) -> str:
        return self.pair_key.symbol2


@dataclass
class CommissionDetails:
    entry_fee: float
    exit_fee: float
    total_fee: float
    pnl_before_fee: float
    net_pnl: float


@dataclass(frozen=True)
class Trade:
    """
    Snapshot of a Position at close time. pnl is gross (before fees) when
    recorded by the strategy; the backtest adds net_pnl, capital and fees.

    close_action is CLOSE (mean reversion or end of data) or STOP_LOSS;
    forced_close marks the end-of-data case.
    """
    pair_key: PairKey
    type: Action
    entry_time: int
    exit_time: int
    entry_z: float
    exit_z: Optional[float]
    entry_price1: float
    entry_price2: float
    exit_price1: float
    exit_price2: float
    quantity1: float
    quantity2: float
    capital: float
    price_ratio: float
    leg1: LegSpec
    leg2: LegSpec
    leverage: float
    margin_type: str
    pnl: float
    pnl_pct: float
    pnl1: float
    pnl2: float
    side1: LegDirection
    side2: LegDirection
    close_action: Action
    close_reason: str

    forced_close: bool = False
    net_pnl: Optional[float] = None
    capital_after: Optional[float] = None
    trade_number: Optional[int] = None
    commission: Optional[CommissionDetails] = None

    @classmethod
    def from_position(cls, pos: Position) -> "Trade":
        return cls(
            pair_key=pos.pair_key, type=pos.type,
            entry_time=pos.entry_time, exit_time=pos.exit_time,
            entry_z=pos.entry_z, exit_z=pos.exit_z,
            entry_price1=pos.entry_price1, entry_price2=pos.entry_price2,
            exit_price1=pos.exit_price1, exit_price2=pos.exit_price2,
            quantity1=pos.quantity1, quantity2=pos.quantity2,
            capital=pos.capital, price_ratio=pos.price_ratio,
            leg1=pos.leg1, leg2=pos.leg2,
            leverage=pos.leverage, margin_type=pos.margin_type,
            pnl=pos.pnl, pnl_pct=pos.pnl_pct, pnl1=pos.pnl1, pnl2=pos.pnl2,
            side1=pos.side1, side2=pos.side2,
            close_action=pos.close_action, close_reason=pos.close_reason,
            forced_close=pos.forced_close,
        )

    @property
    def symbol1(self) -> str:
        return self.pair_key.symbol1

    @property
    def symbol2(self) -> str:
        return self.pair_key.symbol2

    @property
    def final_pnl(self) -> float:
        """Net P&L when fees were applied, else gross."""
        return self.net_pnl if self.net_pnl is not None else self.pnl

    @property
    def duration_minutes(self) -> float:
        return (self.exit_time - self.entry_time) / 60_000

    @property
    def exit_type(self) -> str:
        """CLOSE / STOP_LOSS, with forced end-of-data closes kept apart."""
        if self.forced_close:
            return "BACKTEST_END"
        return self.close_action.value

    def to_dict(self) -> dict:
        """Flat dict for DataFrame / JSON export."""
        d = {
            "pair": str(self.pair_key),
            "symbol1": self.symbol1,
            "symbol2": self.symbol2,
            "type": self.type.value,
            "entry_time": self.entry_time,
            "exit_time": self.exit_time,
            "duration_min": round(self.duration_minutes, 1),
            "entry_z": round(self.entry_z, 4),
            "exit_z": round(self.exit_z, 4) if self.exit_z is not None else None,
            "entry_price1": self.entry_price1,
            "entry_price2": self.entry_price2,
            "exit_price1": self.exit_price1,
            "exit_price2": self.exit_price2,
            "quantity1": self.quantity1,
            "quantity2": self.quantity2,
            "leg1": f"{self.leg1.instrument.value}/{self.leg1.side.value}",
            "leg2": f"{self.leg2.instrument.value}/{self.leg2.side.value}",
            "side1": self.side1.value,
            "side2": self.side2.value,
            "capital": round(self.capital, 2),
            "gross_pnl": round(self.pnl, 4),
            "pnl1": round(self.pnl1, 4),
            "pnl2": round(self.pnl2, 4),
            "pnl_pct": round(self.pnl_pct, 4),
            "close_action": self.close_action.value,
            "close_reason": self.close_reason,
            "exit_type": self.exit_type,
        }
        if self.commission is not None:
            d["entry_fee"] = round(self.commission.entry_fee, 4)
            d["exit_fee"] = round(self.commission.exit_fee, 4)
            d["total_fee"] = round(self.commission.total_fee, 4)
        if self.net_pnl is not None:
            d["net_pnl"] = round(self.net_pnl, 4)
        if self.capital_after is not None:
            d["capital_after"] = round(self.capital_after, 2)
        if self.trade_number is not None:
            d["trade_number"] = self.trade_number
        return d
