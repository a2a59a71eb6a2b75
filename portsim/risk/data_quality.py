"""Data quality checks on the return history feeding the engine.

Flags exposure whose tickers lack enough history for correlation estimation,
outlier daily returns, and flat streaks that usually mean stale prices.
The results are advisory; they surface as warnings next to the risk output.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np
import pandas as pd
import structlog

from .models import Position

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Warning thresholds
# ---------------------------------------------------------------------------

WARN_EXCLUDED_EXPOSURE_PCT = 10.0     # Warn if >10% gross exposure lacks history
OUTLIER_RETURN_THRESHOLD = 0.30       # |return| > 30% flagged as outlier
FLAT_STREAK_THRESHOLD = 5             # >=5 days of flat returns flagged
FLAT_RETURN_EPS = 1e-8


def _gross_exposure(positions: Sequence[Position]) -> float:
    return float(sum(abs(p.market_value) for p in positions))


def compute_coverage_metrics(
    positions: Sequence[Position],
    returns_by_ticker: Mapping[str, pd.Series],
    window: int = 252,
    min_obs: int = 20,
) -> Dict[str, Any]:
    """Exposure held in tickers without enough usable history.

    Args:
        positions: Current holdings
        returns_by_ticker: {ticker: Series} of daily returns
        window: Trailing window the estimators will use
        min_obs: Observations required inside the window

    Returns:
        Dict with included/excluded counts, excluded exposure % and the
        largest excluded positions with reasons
    """
    gross_exposure = _gross_exposure(positions)

    included = 0
    excluded_exposure = 0.0
    excluded_details = []

    for p in positions:
        series = returns_by_ticker.get(p.ticker)
        n_obs = int(series.dropna().iloc[-window:].shape[0]) if series is not None else 0

        if n_obs >= min_obs:
            included += 1
            continue

        mv = abs(p.market_value)
        excluded_exposure += mv
        excluded_details.append({
            "ticker": p.ticker,
            "exposure": mv,
            "exposure_pct": (mv / gross_exposure * 100) if gross_exposure > 0 else 0,
            "reason": f"insufficient_history ({n_obs} < {min_obs})" if series is not None else "no_return_data",
        })

    excluded_details.sort(key=lambda x: x["exposure"], reverse=True)

    return {
        "window": window,
        "included_count": included,
        "excluded_count": len(excluded_details),
        "excluded_exposure_pct": (excluded_exposure / gross_exposure * 100) if gross_exposure > 0 else 0,
        "top_excluded": excluded_details[:5],
    }


def count_flat_streaks(returns: pd.Series, min_length: int = FLAT_STREAK_THRESHOLD) -> int:
    """Number of runs of at least `min_length` consecutive ~zero returns."""
    streaks = 0
    streak = 0
    for r in np.abs(returns.to_numpy(dtype=float)):
        if r < FLAT_RETURN_EPS:
            streak += 1
            if streak == min_length:
                streaks += 1
        else:
            streak = 0
    return streaks


def compute_integrity_metrics(returns_by_ticker: Mapping[str, pd.Series]) -> Dict[str, Any]:
    """Outlier days and flat streaks per ticker.

    Returns:
        Dict with totals and the tickers affected by each issue
    """
    outlier_days = 0
    flat_streaks = 0
    outlier_tickers: Dict[str, int] = {}
    flat_tickers: Dict[str, int] = {}

    for ticker, series in returns_by_ticker.items():
        if series is None or len(series) == 0:
            continue

        n_outliers = int((series.abs() > OUTLIER_RETURN_THRESHOLD).sum())
        if n_outliers:
            outlier_tickers[ticker] = n_outliers
            outlier_days += n_outliers

        n_flat = count_flat_streaks(series)
        if n_flat:
            flat_tickers[ticker] = n_flat
            flat_streaks += n_flat

    return {
        "outlier_return_days": outlier_days,
        "outlier_tickers": outlier_tickers,
        "flat_streak_flags": flat_streaks,
        "flat_streak_tickers": flat_tickers,
    }


def generate_warnings(
    coverage: Dict[str, Any],
    integrity: Dict[str, Any],
) -> List[Dict[str, str]]:
    """Turn metrics into warning banners.

    Returns:
        List of {level: 'info'|'warning', message: str}
    """
    warnings = []

    excl_pct = coverage.get("excluded_exposure_pct", 0)
    if excl_pct > WARN_EXCLUDED_EXPOSURE_PCT:
        warnings.append({
            "level": "warning",
            "message": f"{coverage.get('window', '?')}d window: {excl_pct:.1f}% gross exposure lacks return history",
        })

    if integrity.get("outlier_return_days", 0) > 0:
        warnings.append({
            "level": "info",
            "message": f"{integrity['outlier_return_days']} outlier return days detected (|return| > 30%)",
        })

    if integrity.get("flat_streak_flags", 0) > 0:
        tickers = ", ".join(sorted(integrity.get("flat_streak_tickers", {})))
        warnings.append({
            "level": "warning",
            "message": f"flat return streaks (>= {FLAT_STREAK_THRESHOLD} days) in {tickers}; prices may be stale",
        })

    return warnings


def build_data_quality_pack(
    positions: Sequence[Position],
    returns_by_ticker: Mapping[str, pd.Series],
    window: int = 252,
    min_obs: int = 20,
) -> Dict[str, Any]:
    """Coverage, integrity and warnings for the inputs of one risk run."""
    coverage = compute_coverage_metrics(positions, returns_by_ticker, window, min_obs)
    integrity = compute_integrity_metrics(returns_by_ticker)
    warnings = generate_warnings(coverage, integrity)

    if warnings:
        logger.info(
            "build_data_quality_pack: data quality issues",
            num_warnings=len(warnings),
            excluded_exposure_pct=coverage["excluded_exposure_pct"],
        )

    return {
        "coverage": coverage,
        "integrity": integrity,
        "warnings": warnings,
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }
