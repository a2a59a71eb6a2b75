"""
Lag Analysis Module

Detects cross-timezone lead/lag effects between return series: assets whose
markets close at different times (e.g. Asian ADRs vs. the US close) show
understated same-day correlation that reappears when one series is shifted
by a trading day.  Correlations are measured at lags -1, 0 and +1 and the
strongest one can be written back into a correlation matrix.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from .correlation import CORRELATION_CLAMP, ewma_weights, weighted_correlation
from .errors import InvalidConfigError
from .returns import trim_to_window

logger = structlog.get_logger(__name__)

LAGS = (-1, 0, 1)
MIN_LAG_OBS = 30
SIGNIFICANCE_THRESHOLD = 0.05
ADJUSTMENT_THRESHOLD = 0.01


@dataclass(frozen=True)
class LagPair:
    """Lag statistics for one ticker pair.

    A positive best_lag means ticker_b leads ticker_a: a[t] lines up with b[t-lag].
    """

    ticker_a: str
    ticker_b: str
    correlations: Dict[int, Optional[float]]
    best_lag: int
    best_correlation: float
    improvement: float
    significant: bool
    observations: int

    def to_dict(self) -> Dict:
        return {
            'ticker_a': self.ticker_a,
            'ticker_b': self.ticker_b,
            'correlations': {str(k): v for k, v in self.correlations.items()},
            'best_lag': self.best_lag,
            'best_correlation': self.best_correlation,
            'improvement': self.improvement,
            'significant': self.significant,
            'observations': self.observations,
        }


@dataclass(frozen=True)
class LagAnalysisResult:
    """Pairwise lag matrices and the per-pair records they were built from.

    Matrices are labelled by ticker.  Entries for lags that could not be
    computed (fewer than 30 overlapping points) are NaN.
    """

    tickers: Tuple[str, ...]
    lag_matrices: Dict[int, pd.DataFrame]
    best_correlation: pd.DataFrame
    best_lag: pd.DataFrame
    pairs: Tuple[LagPair, ...]
    ewma_lambda: float = 1.0
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def significant_pairs(self) -> List[LagPair]:
        return [p for p in self.pairs if p.significant]

    @property
    def num_significant(self) -> int:
        return len(self.significant_pairs)


def lagged_correlation(
    x: np.ndarray,
    y: np.ndarray,
    lag: int,
    lam: float = 1.0,
    min_obs: int = MIN_LAG_OBS,
) -> Optional[float]:
    """Correlation of x[t] with y[t - lag] on the overlapping region.

    Returns:
        Correlation, or None when the shifted overlap has fewer than min_obs points
    """
    if lag > 0:
        xs, ys = x[lag:], y[:-lag]
    elif lag < 0:
        xs, ys = x[:lag], y[-lag:]
    else:
        xs, ys = x, y

    if len(xs) < min_obs:
        return None

    return weighted_correlation(xs, ys, ewma_weights(len(xs), lam))


def analyze_pair(
    ticker_a: str,
    ticker_b: str,
    x: pd.Series,
    y: pd.Series,
    lam: float = 1.0,
) -> Optional[LagPair]:
    """Measure one pair at lags -1/0/+1; None when lag 0 has too little overlap."""
    common = x.index.intersection(y.index)
    xv = x.loc[common].to_numpy(dtype=float)
    yv = y.loc[common].to_numpy(dtype=float)

    correlations = {lag: lagged_correlation(xv, yv, lag, lam) for lag in LAGS}
    corr0 = correlations[0]
    if corr0 is None:
        return None

    # lag 0 first so ties keep the same-day correlation
    best_lag, best_corr = 0, corr0
    for lag in (-1, 1):
        value = correlations[lag]
        if value is not None and abs(value) > abs(best_corr):
            best_lag, best_corr = lag, value

    improvement = abs(best_corr) - abs(corr0)

    return LagPair(
        ticker_a=ticker_a,
        ticker_b=ticker_b,
        correlations=correlations,
        best_lag=best_lag,
        best_correlation=best_corr,
        improvement=improvement,
        significant=improvement > SIGNIFICANCE_THRESHOLD,
        observations=len(common),
    )


def analyze_lags(
    returns_by_ticker: Dict[str, pd.Series],
    ewma_lambda: float = 1.0,
    tickers: Optional[List[str]] = None,
    window_days: Optional[int] = None,
) -> LagAnalysisResult:
    """Compute lag -1/0/+1 correlations for every ticker pair.

    Args:
        returns_by_ticker: {ticker: pd.Series} of daily returns
        ewma_lambda: Decay factor for weighted correlation (1.0 = equal weight)
        tickers: Matrix order (defaults to the input's key order)
        window_days: Optional trailing window applied to each series first

    Returns:
        LagAnalysisResult with lag, best-correlation and best-lag matrices
    """
    if not 0 < ewma_lambda <= 1:
        raise InvalidConfigError(f"Lambda must be in (0, 1], got {ewma_lambda}")

    tickers = list(tickers) if tickers is not None else list(returns_by_ticker.keys())
    n = len(tickers)

    series = {}
    for t in tickers:
        s = returns_by_ticker.get(t)
        if s is None:
            continue
        s = s.dropna()
        series[t] = trim_to_window(s, window_days) if window_days else s

    lag_arrays = {lag: np.full((n, n), np.nan) for lag in LAGS}
    best_corr = np.full((n, n), np.nan)
    best_lag = np.zeros((n, n), dtype=int)
    for lag in LAGS:
        np.fill_diagonal(lag_arrays[lag], 1.0)
    np.fill_diagonal(best_corr, 1.0)

    pairs: List[LagPair] = []
    warnings: List[str] = []

    for i in range(n):
        for j in range(i + 1, n):
            ti, tj = tickers[i], tickers[j]
            if ti not in series or tj not in series:
                warnings.append(f"{ti}/{tj}: missing return series; lag analysis skipped")
                continue

            pair = analyze_pair(ti, tj, series[ti], series[tj], ewma_lambda)
            if pair is None:
                warnings.append(
                    f"{ti}/{tj}: fewer than {MIN_LAG_OBS} overlapping observations; lag analysis skipped"
                )
                continue

            for lag, value in pair.correlations.items():
                if value is not None:
                    lag_arrays[lag][i, j] = value
                    lag_arrays[-lag][j, i] = value

            best_corr[i, j] = best_corr[j, i] = pair.best_correlation
            best_lag[i, j] = pair.best_lag
            best_lag[j, i] = -pair.best_lag
            pairs.append(pair)

    result = LagAnalysisResult(
        tickers=tuple(tickers),
        lag_matrices={
            lag: pd.DataFrame(arr, index=tickers, columns=tickers)
            for lag, arr in lag_arrays.items()
        },
        best_correlation=pd.DataFrame(best_corr, index=tickers, columns=tickers),
        best_lag=pd.DataFrame(best_lag, index=tickers, columns=tickers),
        pairs=tuple(pairs),
        ewma_lambda=ewma_lambda,
        warnings=tuple(warnings),
    )

    logger.info(
        "analyze_lags: lag analysis complete",
        num_assets=n,
        num_pairs=len(pairs),
        num_significant=result.num_significant,
        ewma_lambda=ewma_lambda,
    )

    return result


def apply_lag_adjustment(
    corr,
    lag_result: LagAnalysisResult,
    threshold: float = ADJUSTMENT_THRESHOLD,
) -> Tuple[pd.DataFrame, List[Dict]]:
    """Write best-lag correlations into a correlation matrix where they are stronger.

    C[i][j] is replaced by the best-lag correlation when
    |best| > |C[i][j]| + threshold, then the matrix is symmetrized and clamped.
    The result is not PSD-repaired; pass it through make_valid_correlation
    before simulating.

    Args:
        corr: Correlation matrix (DataFrame, or ndarray ordered like lag_result.tickers)
        lag_result: Output of analyze_lags
        threshold: Minimum absolute-correlation gain required to adjust

    Returns:
        Tuple of (adjusted matrix, list of adjustment records)
    """
    if isinstance(corr, pd.DataFrame):
        adjusted = corr.astype(float).copy()
    else:
        adjusted = pd.DataFrame(
            np.array(corr, dtype=float),
            index=list(lag_result.tickers),
            columns=list(lag_result.tickers),
        )

    adjustments: List[Dict] = []

    for pair in lag_result.pairs:
        a, b = pair.ticker_a, pair.ticker_b
        if a not in adjusted.index or b not in adjusted.index:
            continue

        current = float(adjusted.loc[a, b])
        if abs(pair.best_correlation) > abs(current) + threshold:
            adjusted.loc[a, b] = pair.best_correlation
            adjusted.loc[b, a] = pair.best_correlation
            adjustments.append({
                'ticker_a': a,
                'ticker_b': b,
                'lag': pair.best_lag,
                'previous': current,
                'adjusted': pair.best_correlation,
            })

    arr = adjusted.to_numpy()
    arr = (arr + arr.T) / 2
    arr = np.clip(arr, -CORRELATION_CLAMP, CORRELATION_CLAMP)
    np.fill_diagonal(arr, 1.0)
    adjusted = pd.DataFrame(arr, index=adjusted.index, columns=adjusted.columns)

    logger.info(
        "apply_lag_adjustment: matrix adjusted",
        num_adjusted=len(adjustments),
        threshold=threshold,
    )

    return adjusted, adjustments
