"""
analyzer.py -- correlation, spread, z-score and half-life for price pairs

All functions are pure numpy; degenerate inputs resolve to a documented
fallback instead of NaN/inf leaking into the signal logic:
  - zero-variance series       -> correlation 0
  - zero first price           -> normalize() returns input unchanged
  - zero-std z-score window    -> z = 0
  - non-mean-reverting spread  -> half-life inf

Z-scores use a trailing window that EXCLUDES the current bar. Including
it pulls the z-score toward zero and suppresses real signals.
"""

import logging
from typing import Optional

import numpy as np
from statsmodels.tsa.stattools import coint as _coint

from .models import CointegrationResult, CorrelatedPair

log = logging.getLogger(__name__)

SPREAD_METHODS = ("normalized_ratio", "ratio", "difference", "log")
_COINTEGRATION_MAX_CV = 0.1   # ratio CV below this counts as cointegrated
_FLAT_STD_TOL = 1e-12


def _as_array(series) -> np.ndarray:
    return np.asarray(series, dtype=np.float64)


def _check_lengths(a: np.ndarray, b: np.ndarray):
    if len(a) != len(b):
        raise ValueError(f"series length mismatch: {len(a)} vs {len(b)}")


def _is_flat(mu: float, sd: float) -> bool:
    # summing identical floats can leave ~1e-17 of std; treat that as flat
    return sd <= _FLAT_STD_TOL * max(1.0, abs(mu))


class StatisticalAnalyzer:
    """Numeric building blocks for pair analysis. Stateless apart from the logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or log

    # -------------------------------------------------------------------
    #  Moments
    # -------------------------------------------------------------------

    @staticmethod
    def mean(series) -> float:
        arr = _as_array(series)
        return float(arr.mean()) if len(arr) else 0.0

    @staticmethod
    def variance(series) -> float:
        """Population variance."""
        arr = _as_array(series)
        return float(arr.var()) if len(arr) else 0.0

    @staticmethod
    def std(series) -> float:
        arr = _as_array(series)
        return float(arr.std()) if len(arr) else 0.0

    # -------------------------------------------------------------------
    #  Correlation
    # -------------------------------------------------------------------

    def correlation(self, series1, series2) -> float:
        """Pearson correlation; 0 when either series is constant."""
        a, b = _as_array(series1), _as_array(series2)
        _check_lengths(a, b)
        if len(a) < 2:
            return 0.0
        da = a - a.mean()
        db = b - b.mean()
        denom = np.sqrt(np.sum(da * da) * np.sum(db * db))
        if denom < 1e-300 or not np.isfinite(denom):
            return 0.0
        return float(np.clip(np.sum(da * db) / denom, -1.0, 1.0))

    def correlation_matrix(self, price_map: dict) -> dict[str, dict[str, float]]:
        """
        Pairwise correlation for every symbol in price_map.

        Missing bars (None/NaN) are dropped per pair, so symbols with
        different listing dates still get compared on their overlap.
        """
        symbols = list(price_map)
        arrays = {s: _as_array([np.nan if v is None else v for v in price_map[s]])
                  for s in symbols}
        matrix: dict[str, dict[str, float]] = {s: {} for s in symbols}

        for i, s1 in enumerate(symbols):
            matrix[s1][s1] = 1.0
            for s2 in symbols[i + 1:]:
                a, b = arrays[s1], arrays[s2]
                _check_lengths(a, b)
                both = np.isfinite(a) & np.isfinite(b)
                corr = self.correlation(a[both], b[both])
                matrix[s1][s2] = corr
                matrix[s2][s1] = corr
        return matrix

    def find_highly_correlated_pairs(
        self,
        matrix: dict[str, dict[str, float]],
        threshold: float,
        stability: Optional[dict[str, dict[str, float]]] = None,
        max_stability: Optional[float] = None,
    ) -> list[CorrelatedPair]:
        """Pairs (i < j) with |corr| >= threshold, optionally stable enough."""
        symbols = list(matrix)
        pairs = []
        n_unstable = 0

        for i in range(len(symbols)):
            for j in range(i + 1, len(symbols)):
                s1, s2 = symbols[i], symbols[j]
                corr = matrix[s1].get(s2)
                if corr is None or abs(corr) < threshold:
                    continue

                stab = None
                if stability is not None and max_stability is not None:
                    stab = stability.get(s1, {}).get(s2)
                    if stab is not None and stab > max_stability:
                        n_unstable += 1
                        continue

                pairs.append(CorrelatedPair(
                    pair=(s1, s2), correlation=corr,
                    abs_correlation=abs(corr), stability=stab))

        if n_unstable:
            self.log.info(f"stability filter removed {n_unstable} pairs "
                          f"(sigma > {max_stability})")
        pairs.sort(key=lambda p: p.abs_correlation, reverse=True)
        return pairs

    # -------------------------------------------------------------------
    #  Cointegration
    # -------------------------------------------------------------------

    def cointegration(self, series1, series2) -> CointegrationResult:
        """
        Coefficient-of-variation proxy on the price ratio.

        Not an Engle-Granger test; thresholds downstream were tuned on
        this exact heuristic.
        """
        a, b = _as_array(series1), _as_array(series2)
        _check_lengths(a, b)
        mask = b != 0
        ratio = a[mask] / b[mask]
        if len(ratio) == 0:
            return CointegrationResult(0.0, 0.0, float("inf"), False)

        mean_ratio = float(ratio.mean())
        std_ratio = float(ratio.std())
        cv = std_ratio / mean_ratio if mean_ratio != 0 else float("inf")
        return CointegrationResult(
            mean_ratio=mean_ratio, std_ratio=std_ratio, cv=cv,
            is_cointegrated=bool(cv < _COINTEGRATION_MAX_CV))

    def engle_granger_pvalue(self, series1, series2) -> Optional[float]:
        """Engle-Granger p-value (statsmodels). Diagnostic only, never gates a trade."""
        a, b = _as_array(series1), _as_array(series2)
        _check_lengths(a, b)
        if len(a) < 30 or a.std() == 0 or b.std() == 0:
            return None
        try:
            _, p_value, _ = _coint(a, b)
        except (ValueError, np.linalg.LinAlgError) as e:
            self.log.warning(f"Engle-Granger test failed: {e}")
            return None
        return float(p_value)

    # -------------------------------------------------------------------
    #  Spread
    # -------------------------------------------------------------------

    def normalize(self, series) -> np.ndarray:
        """Divide by the first price. A zero base can't be normalized."""
        arr = _as_array(series)
        if len(arr) == 0:
            return arr
        if arr[0] == 0:
            self.log.warning("cannot normalize a series starting at 0, returning it unchanged")
            return arr
        return arr / arr[0]

    def spread(self, series1, series2,
               method: str = "normalized_ratio") -> np.ndarray:
        """
        Spread between two aligned price series.

        normalized_ratio (default) rebases both legs to 1 first so the
        z-score stays meaningful when the legs trade at very different
        absolute prices.
        """
        a, b = _as_array(series1), _as_array(series2)
        _check_lengths(a, b)

        if method == "normalized_ratio":
            na, nb = self.normalize(a), self.normalize(b)
            out = np.ones_like(na)
            nz = nb != 0
            out[nz] = na[nz] / nb[nz]
            return out
        if method == "ratio":
            out = np.zeros_like(a)
            nz = b != 0
            out[nz] = a[nz] / b[nz]
            return out
        if method == "difference":
            return a - b
        if method == "log":
            out = np.zeros_like(a)
            ok = (a > 0) & (b > 0)
            out[ok] = np.log(a[ok]) - np.log(b[ok])
            return out
        raise ValueError(f"unknown spread method '{method}' (expected one of {SPREAD_METHODS})")

    # -------------------------------------------------------------------
    #  Z-score / half-life
    # -------------------------------------------------------------------

    @staticmethod
    def rolling_zscore(series, lookback: int) -> np.ndarray:
        """
        z[i] = (x[i] - mean(x[i-lookback:i])) / std(x[i-lookback:i])

        Population std. Warm-up bars (i < lookback) are NaN, meaning
        "insufficient data". A flat window gives z = 0.
        """
        if lookback < 1:
            raise ValueError(f"lookback must be >= 1, got {lookback}")
        x = _as_array(series)
        z = np.full(len(x), np.nan)
        for i in range(lookback, len(x)):
            window = x[i - lookback:i]
            mu, sd = window.mean(), window.std()
            z[i] = 0.0 if _is_flat(mu, sd) else (x[i] - mu) / sd
        return z

    def current_zscore(self, series, lookback: int) -> Optional[float]:
        """Z-score of the last bar, None while in warm-up."""
        x = _as_array(series)
        if len(x) <= lookback:
            return None
        window = x[-lookback - 1:-1]
        mu, sd = window.mean(), window.std()
        return 0.0 if _is_flat(mu, sd) else float((x[-1] - mu) / sd)

    @staticmethod
    def half_life(spread) -> float:
        """
        AR(1) without intercept: x[t] = beta * x[t-1].
        half-life = -ln 2 / ln beta, in bars. inf unless 0 < beta < 1.
        """
        x = _as_array(spread)
        if len(x) < 2:
            return float("inf")
        lag, cur = x[:-1], x[1:]
        denom = float(np.sum(lag * lag))
        if denom == 0:
            return float("inf")
        beta = float(np.sum(lag * cur)) / denom
        if beta <= 0 or beta >= 1:
            return float("inf")
        return float(-np.log(2) / np.log(beta))
