"""
Covariance Helpers Module

Shrinkage-intensity estimation, date alignment of return series, and the
correlation-to-covariance conversion used by the swap optimizer.
"""

from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
import structlog
from sklearn.covariance import LedoitWolf

from .returns import trim_to_window

logger = structlog.get_logger(__name__)


def aligned_returns(
    returns_by_ticker: Dict[str, pd.Series],
    tickers: List[str],
    window: int,
) -> pd.DataFrame:
    """Build a date-aligned (inner join) returns frame from trimmed series.

    Args:
        returns_by_ticker: {ticker: pd.Series} of daily returns
        tickers: Column order of the output
        window: Trailing observations kept per series before aligning

    Returns:
        DataFrame (T x N) containing only dates every ticker shares
    """
    columns = {t: trim_to_window(returns_by_ticker[t].dropna(), window) for t in tickers}
    frame = pd.concat(columns, axis=1, join='inner')
    return frame[tickers]


def ledoit_wolf_intensity(returns: pd.DataFrame) -> float:
    """Estimate the Ledoit-Wolf optimal shrinkage intensity for a correlation matrix.

    Columns are standardized first so the sample covariance the estimator sees
    is the sample correlation matrix, and the intensity applies to correlations.
    scikit-learn optimizes the intensity for a scaled-identity target, while
    shrink_correlation pulls toward the average correlation; the estimate is
    used as a data-scaled intensity, not as the constant-correlation optimum.

    Args:
        returns: Date-aligned returns (T x N), no NaN

    Returns:
        Shrinkage intensity in [0, 1]

    Raises:
        ValueError: If fewer than 2 observations or NaN values are present
    """
    if len(returns) < 2:
        raise ValueError(f"Need at least 2 observations, got {len(returns)}")

    returns_array = returns.to_numpy(dtype=float)

    if np.isnan(returns_array).any():
        nan_counts = np.isnan(returns_array).sum(axis=0)
        affected_symbols = [
            returns.columns[i]
            for i, count in enumerate(nan_counts)
            if count > 0
        ]
        logger.error(
            "ledoit_wolf_intensity: NaN values in returns",
            affected_symbols=affected_symbols
        )
        raise ValueError(f"NaN values detected in returns for symbols: {affected_symbols}")

    std = returns_array.std(axis=0, ddof=1)
    std[std == 0] = 1.0
    standardized = (returns_array - returns_array.mean(axis=0)) / std

    lw = LedoitWolf(assume_centered=True)
    lw.fit(standardized)
    intensity = float(np.clip(lw.shrinkage_, 0.0, 1.0))

    logger.info(
        "ledoit_wolf_intensity: intensity estimated",
        num_assets=returns_array.shape[1],
        num_observations=returns_array.shape[0],
        shrinkage=intensity,
    )

    return intensity


def correlation_to_covariance(corr: np.ndarray, sigmas: Sequence[float]) -> np.ndarray:
    """Convert a correlation matrix to a covariance matrix: cov_ij = rho_ij * s_i * s_j.

    Args:
        corr: Correlation matrix (N x N)
        sigmas: Volatilities (N,), in whatever period the covariance should be

    Returns:
        Covariance matrix (N x N)
    """
    corr = np.asarray(corr, dtype=float)
    sigmas = np.asarray(sigmas, dtype=float)

    if corr.ndim != 2 or corr.shape[0] != corr.shape[1]:
        raise ValueError(f"Correlation matrix must be square, got shape {corr.shape}")

    if len(sigmas) != corr.shape[0]:
        raise ValueError(
            f"Sigmas length {len(sigmas)} doesn't match matrix size {corr.shape[0]}"
        )

    if (sigmas < 0).any():
        raise ValueError("Volatilities must be non-negative")

    return corr * np.outer(sigmas, sigmas)
