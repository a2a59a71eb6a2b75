"""
Distribution Estimation Module

Derives per-position marginal return distributions (annualized mean,
volatility and skew) from daily return history, from user overrides, or
from a set of user-supplied return percentiles.
"""

import math
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from scipy import stats

from .errors import InsufficientDataError, InvalidConfigError, RiskEngineError
from .models import TRADING_DAYS, DistributionParams

logger = structlog.get_logger(__name__)

MIN_DISTRIBUTION_OBS = 20
MIN_PERCENTILE_SIGMA = 0.01
MAX_ABS_SKEW = 2.0
IQR_TO_SIGMA = 1.35
NORMAL_P5_P95_RANGE = 3.29
MIN_TAIL_DF = 3.0
MAX_TAIL_DF = 30.0


def _require_positive_sigma(params: DistributionParams, ticker: Optional[str]) -> DistributionParams:
    if params.sigma <= 0:
        logger.error("estimate_distribution: non-positive sigma", ticker=ticker, sigma=params.sigma)
        raise InvalidConfigError(
            "sigma must be > 0" + (f" for {ticker}" if ticker else "") + f", got {params.sigma}"
        )
    return params


def historical_params(
    returns: pd.Series | np.ndarray,
    trading_days: int = TRADING_DAYS,
) -> DistributionParams:
    """Annualize mean and volatility of daily returns; skew from the third moment.

    mu = mean(daily) * 252, sigma = std(daily, ddof=1) * sqrt(252).

    Raises:
        InsufficientDataError: If fewer than 20 finite observations
    """
    values = np.asarray(returns, dtype=float)
    values = values[np.isfinite(values)]

    if len(values) < MIN_DISTRIBUTION_OBS:
        raise InsufficientDataError(
            f"Need at least {MIN_DISTRIBUTION_OBS} observations, got {len(values)}"
        )

    mu = float(values.mean()) * trading_days
    sigma = float(values.std(ddof=1)) * math.sqrt(trading_days)
    skew = float(stats.skew(values)) if sigma > 0 else 0.0

    return DistributionParams(mu=mu, sigma=sigma, skew=skew, source="historical")


def params_from_percentiles(
    p5: float,
    p25: float,
    p50: float,
    p75: float,
    p95: float,
) -> DistributionParams:
    """Fit (mu, sigma, skew, tail_df) to annual return percentiles supplied by a user.

    sigma = IQR / 1.35 (floored at 1%), skew = tail asymmetry
    (p95 + p5 - 2 p50) / (p95 - p5) clamped to [-2, 2], and mu is the median
    nudged toward the heavier tail.  tail_df comes from estimate_tail_df, so
    a 5-95 range much wider than the IQR implies gives fatter tails.

    Raises:
        InvalidConfigError: If the percentiles are not non-decreasing
    """
    points = [p5, p25, p50, p75, p95]
    if not all(math.isfinite(p) for p in points):
        raise InvalidConfigError("Percentiles must be finite")
    if any(b < a for a, b in zip(points, points[1:])):
        raise InvalidConfigError(f"Percentiles must be non-decreasing, got {points}")

    sigma = max(MIN_PERCENTILE_SIGMA, (p75 - p25) / IQR_TO_SIGMA)

    spread = p95 - p5
    asymmetry = p95 + p5 - 2 * p50
    skew = asymmetry / spread if spread > 0 else 0.0
    skew = max(-MAX_ABS_SKEW, min(MAX_ABS_SKEW, skew))

    mu = p50 + 0.1 * asymmetry
    tail_df = estimate_tail_df(p5, p95, sigma)

    return DistributionParams(mu=mu, sigma=sigma, skew=skew, tail_df=tail_df, source="percentiles")


def estimate_tail_df(p5: float, p95: float, sigma: float) -> float:
    """Student-t degrees of freedom implied by the width of the 5-95 range.

    A normal variable spans about 3.29 sigma between its 5th and 95th
    percentiles.  Ranges within 10% of that are treated as normal (df 30);
    wider ranges map to df = 30 / (range / 3.29 sigma), rounded and clamped
    to [3, 30].
    """
    if sigma <= 0:
        return MAX_TAIL_DF

    normal_range = NORMAL_P5_P95_RANGE * sigma
    spread = p95 - p5
    if spread <= 1.1 * normal_range:
        return MAX_TAIL_DF

    df = MAX_TAIL_DF / (spread / normal_range)
    return float(round(max(MIN_TAIL_DF, min(MAX_TAIL_DF, df))))


def estimate_distribution(
    returns: pd.Series | np.ndarray | None = None,
    override: DistributionParams | Mapping | None = None,
    ticker: Optional[str] = None,
) -> DistributionParams:
    """Distribution parameters for one position.

    A manual override bypasses computation entirely; otherwise the parameters
    are estimated from the daily return history.  Either way sigma must be > 0.

    Args:
        returns: Daily return history
        override: DistributionParams or {'mu', 'sigma', 'skew'} mapping
        ticker: Used in log events and error messages

    Raises:
        InvalidConfigError: If sigma <= 0 or neither input is given
        InsufficientDataError: If the history has fewer than 20 observations
    """
    if override is not None:
        if isinstance(override, DistributionParams):
            params = override
        else:
            try:
                params = DistributionParams(**{'source': 'manual', **dict(override)})
            except ValueError as e:
                raise InvalidConfigError(
                    "Invalid distribution override" + (f" for {ticker}" if ticker else "") + f": {e}"
                ) from e
        return _require_positive_sigma(params, ticker)

    if returns is None:
        raise InvalidConfigError(
            "Either returns or an override is required" + (f" for {ticker}" if ticker else "")
        )

    params = historical_params(returns)
    return _require_positive_sigma(params, ticker)


def estimate_distributions(
    returns_by_ticker: Mapping[str, pd.Series],
    tickers: Iterable[str],
    overrides: Optional[Mapping[str, DistributionParams | Mapping]] = None,
) -> Tuple[Dict[str, DistributionParams], List[str]]:
    """Estimate parameters for every ticker, collecting failures as warnings.

    Returns:
        Tuple of ({ticker: DistributionParams} for tickers that succeeded,
        warnings for those that did not)
    """
    overrides = overrides or {}
    params: Dict[str, DistributionParams] = {}
    warnings: List[str] = []

    for ticker in tickers:
        try:
            params[ticker] = estimate_distribution(
                returns_by_ticker.get(ticker),
                overrides.get(ticker),
                ticker=ticker,
            )
        except RiskEngineError as e:
            warnings.append(f"{ticker}: {e}")

    logger.info(
        "estimate_distributions: parameters estimated",
        num_estimated=len(params),
        num_failed=len(warnings),
        num_overrides=sum(1 for t in params if params[t].source != "historical"),
    )

    return params, warnings
