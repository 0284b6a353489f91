"""
collector.py -- OHLCV download through a ccxt exchange, with a TTL cache

The exchange object is injected (anything with ccxt's fetch_ohlcv), so tests
and the live loop can pass a mock or a pre-configured client.

Requests longer than one exchange page (1000 candles) are fetched in pages,
each starting one bar after the previous page's last candle, until the
exchange returns a short page or MAX_BATCHES is hit.

Candles are dicts: {timestamp, open, high, low, close, volume}, timestamp
in epoch milliseconds.

Usage:
    ex = build_exchange("binance")
    dc = DataCollector(ex)
    data = dc.fetch_multiple_ohlcv(["BTC/USDT", "ETH/USDT"], "15m", 2880)
    matrix = dc.get_price_matrix(data)
    ts, p1, p2 = matrix.pair("BTC/USDT", "ETH/USDT")
"""

import json
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import ccxt
import numpy as np
import pandas as pd

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
PAGE_LIMIT = 1000          # max candles per request
MAX_BATCHES = 50           # 50 pages = 50k candles
REQUEST_DELAY = 0.3        # seconds between pages
SYMBOL_DELAY = 0.1         # seconds between symbols
MAX_BACKTEST_CANDLES = 30_000

_MINUTE = 60_000
TIMEFRAME_MS = {
    "1m": _MINUTE,
    "5m": 5 * _MINUTE,
    "15m": 15 * _MINUTE,
    "30m": 30 * _MINUTE,
    "1h": 60 * _MINUTE,
    "2h": 120 * _MINUTE,
    "4h": 240 * _MINUTE,
    "6h": 360 * _MINUTE,
    "12h": 720 * _MINUTE,
    "1d": 1440 * _MINUTE,
    "1w": 7 * 1440 * _MINUTE,
}

# cache entries live for one bar of their timeframe
CACHE_MAX_AGE_MS = {
    "1m": _MINUTE,
    "5m": 5 * _MINUTE,
    "15m": 15 * _MINUTE,
    "1h": 60 * _MINUTE,
    "4h": 240 * _MINUTE,
    "1d": 1440 * _MINUTE,
}


def timeframe_to_ms(timeframe: str) -> int:
    """Bar length in ms; unknown timeframes count as 1h."""
    return TIMEFRAME_MS.get(timeframe, TIMEFRAME_MS["1h"])


def cache_max_age_ms(timeframe: str) -> int:
    return CACHE_MAX_AGE_MS.get(timeframe, CACHE_MAX_AGE_MS["1h"])


def calculate_backtest_limit(timeframe: str, hours: float) -> int:
    """Candles needed to cover `hours`, capped at MAX_BACKTEST_CANDLES."""
    needed = math.ceil(hours * 60 * _MINUTE / timeframe_to_ms(timeframe))
    return min(needed, MAX_BACKTEST_CANDLES)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
class OHLCVCache:
    """In-memory {key: (stored_at_ms, candles)} with per-lookup max age."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._entries: dict[str, tuple[int, list]] = {}

    def get(self, key: str, max_age_ms: int) -> Optional[list]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self._clock() - stored_at >= max_age_ms:
            return None
        return data

    def set(self, key: str, data: list):
        self._entries[key] = (self._clock(), data)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Price matrix
# ---------------------------------------------------------------------------
@dataclass
class PriceMatrix:
    """Close prices on the sorted union of timestamps, None where a symbol has no bar."""
    timestamps: list[int]
    prices: dict[str, list[Optional[float]]]

    @property
    def symbols(self) -> list[str]:
        return list(self.prices)

    def pair(self, symbol1: str, symbol2: str) -> tuple[list[int], list[float], list[float]]:
        """Bars where both legs have a price."""
        p1, p2 = self.prices[symbol1], self.prices[symbol2]
        rows = [(t, a, b) for t, a, b in zip(self.timestamps, p1, p2)
                if a is not None and b is not None]
        return ([r[0] for r in rows], [r[1] for r in rows], [r[2] for r in rows])

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(self.prices, index=pd.Index(self.timestamps, name="timestamp"))
        return df.astype(float)


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------
class DataCollector:

    def __init__(
        self,
        exchange,
        cache: Optional[OHLCVCache] = None,
        data_dir: str = "./data",
        logger: Optional[logging.Logger] = None,
        request_delay: float = REQUEST_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.exchange = exchange
        self.cache = cache if cache is not None else OHLCVCache()
        self.data_dir = Path(data_dir)
        self.log = logger or log
        self.request_delay = request_delay
        self._sleep = sleep

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1h", limit: int = 500,
                    since: Optional[int] = None, use_cache: bool = True) -> list[dict]:
        """
        Candles for symbol. since=None means the last `limit` bars up to now.
        Exchange errors are logged with a hint and re-raised.
        """
        key = f"{symbol}_{timeframe}_{limit}_{since if since is not None else 'latest'}"
        if use_cache:
            cached = self.cache.get(key, cache_max_age_ms(timeframe))
            if cached is not None:
                self.log.debug(f"cache hit: {key}")
                return cached

        tf_ms = timeframe_to_ms(timeframe)
        start = since if since is not None else _now_ms() - limit * tf_ms

        self.log.info(f"fetching {symbol} {timeframe} x{limit}")
        try:
            raw = self._fetch_pages(symbol, timeframe, start, limit, tf_ms)
        except ccxt.BaseError as e:
            self.log.error(f"OHLCV fetch failed [{symbol}]: {e}")
            if isinstance(e, ccxt.AuthenticationError):
                self.log.error("  authentication failed: check API key/secret and IP whitelist")
            elif isinstance(e, ccxt.NetworkError):
                self.log.error("  network error: check connectivity and proxy settings")
            raise

        data = [
            {"timestamp": int(c[0]), "open": c[1], "high": c[2],
             "low": c[3], "close": c[4], "volume": c[5]}
            for c in raw
        ]
        if use_cache:
            self.cache.set(key, data)
        self.log.info(f"  {symbol}: {len(data)} candles")
        return data

    def _fetch_pages(self, symbol, timeframe, start, limit, tf_ms) -> list:
        if limit <= PAGE_LIMIT:
            return self.exchange.fetch_ohlcv(symbol, timeframe, start, limit) or []

        out = []
        cursor = start
        remaining = limit
        batches = 0
        while remaining > 0 and batches < MAX_BATCHES:
            batch_limit = min(remaining, PAGE_LIMIT)
            page = self.exchange.fetch_ohlcv(symbol, timeframe, cursor, batch_limit)
            if not page:
                self.log.info(f"  page {batches + 1}: no more data")
                break

            out.extend(page)
            remaining -= len(page)
            batches += 1
            if batches == 1 or batches % 5 == 0:
                self.log.info(f"  page {batches}: {len(page)} candles, {len(out)} total")

            cursor = page[-1][0] + tf_ms
            if len(page) < batch_limit:
                break
            self._sleep(self.request_delay)

        if batches >= MAX_BATCHES:
            self.log.warning(f"hit MAX_BATCHES ({MAX_BATCHES}) for {symbol}, data may be incomplete")
        return out

    def fetch_multiple_ohlcv(self, symbols: list[str], timeframe: str = "1h",
                             limit: int = 500, since: Optional[int] = None,
                             use_cache: bool = True) -> dict[str, Optional[list]]:
        """{symbol: candles}; a failed symbol maps to None instead of aborting."""
        results = {}
        for symbol in symbols:
            try:
                results[symbol] = self.fetch_ohlcv(symbol, timeframe, limit, since, use_cache)
            except ccxt.BaseError as e:
                self.log.error(f"skipping {symbol}: {e}")
                results[symbol] = None
            self._sleep(SYMBOL_DELAY)
        return results

    @staticmethod
    def get_close_prices(data: list[dict]) -> list[float]:
        return [c["close"] for c in data]

    @staticmethod
    def get_price_matrix(data: dict[str, Optional[list]]) -> PriceMatrix:
        """Outer-join close prices on timestamp; missing bars become None."""
        series = {}
        for symbol, candles in data.items():
            if not candles:
                continue
            s = pd.Series([c["close"] for c in candles],
                          index=[int(c["timestamp"]) for c in candles], dtype=float)
            series[symbol] = s[~s.index.duplicated(keep="last")]

        if not series:
            return PriceMatrix(timestamps=[], prices={})

        df = pd.concat(series, axis=1, join="outer").sort_index()
        prices = {
            sym: [None if np.isnan(v) else float(v) for v in df[sym].to_numpy()]
            for sym in df.columns
        }
        return PriceMatrix(timestamps=[int(t) for t in df.index], prices=prices)

    # --- persistence ---

    def _path(self, symbol: str, timeframe: str, fmt: str) -> Path:
        if fmt not in ("json", "parquet"):
            raise ValueError(f"unknown file format '{fmt}' (expected json or parquet)")
        return self.data_dir / f"{symbol.replace('/', '_')}_{timeframe}.{fmt}"

    def save_to_file(self, symbol: str, timeframe: str, data: list[dict],
                     fmt: str = "json") -> Path:
        path = self._path(symbol, timeframe, fmt)
        path.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "parquet":
            pd.DataFrame(data).to_parquet(path, index=False)
        else:
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        self.log.info(f"saved {len(data)} candles to {path}")
        return path

    def load_from_file(self, symbol: str, timeframe: str,
                       fmt: str = "json") -> Optional[list[dict]]:
        path = self._path(symbol, timeframe, fmt)
        if not path.exists():
            self.log.debug(f"no cached file {path}")
            return None
        if fmt == "parquet":
            df = pd.read_parquet(path)
            df["timestamp"] = df["timestamp"].astype("int64")
            data = df.to_dict("records")
        else:
            with open(path) as f:
                data = json.load(f)
        self.log.info(f"loaded {len(data)} candles from {path}")
        return data

    def clear_cache(self):
        self.cache.clear()
        self.log.info("OHLCV cache cleared")
