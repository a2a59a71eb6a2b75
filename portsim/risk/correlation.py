"""
Correlation Estimation Module

Builds the validated N x N correlation matrix the simulation engine consumes:
equal-weight or EWMA pairwise correlations over each pair's overlapping
trailing window, optional shrinkage toward the average correlation, cash
tickers forced to zero correlation, and a final repair to a valid
(symmetric, unit-diagonal, positive semi-definite) correlation matrix.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from .covariance import aligned_returns, ledoit_wolf_intensity
from .errors import InsufficientDataError, InvalidConfigError, InvalidMatrixError
from .models import WINDOW_DAYS, CorrelationMethod, HistoryWindow
from .returns import align_pair, trim_to_window, usable_tickers

logger = structlog.get_logger(__name__)

MIN_CORRELATION_OBS = 20
DEFAULT_SHRINKAGE = 0.2
CORRELATION_CLAMP = 0.999
EIGENVALUE_FLOOR = 1e-8
VALIDATION_TOL = 1e-6


@dataclass(frozen=True)
class CorrelationEstimate:
    """Correlation matrix plus the bookkeeping of how it was produced.

    Attributes:
        matrix: Repaired correlation matrix labelled by ticker
        overlaps: Overlapping observation count per pair
        method: Estimation method used
        ewma_lambda: Decay factor applied (1.0 = equal weight)
        shrinkage: Shrinkage intensity applied (0.0 = none)
        excluded: Tickers without enough history (zero correlation to all)
        warnings: Human-readable fallbacks taken during estimation
    """

    matrix: pd.DataFrame
    overlaps: pd.DataFrame
    method: CorrelationMethod
    ewma_lambda: float = 1.0
    shrinkage: float = 0.0
    excluded: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def tickers(self) -> List[str]:
        return list(self.matrix.index)


def window_to_days(window) -> int:
    """Map a history window ('6mo', '1y', '2y', '3y' or a day count) to trading days."""
    if isinstance(window, HistoryWindow):
        return window.days
    if isinstance(window, (int, np.integer)) and not isinstance(window, bool):
        if window <= 0:
            raise InvalidConfigError(f"Window must be positive, got {window}")
        return int(window)
    if window not in WINDOW_DAYS:
        raise InvalidConfigError(
            f"Unknown history window: {window}. Use one of {sorted(WINDOW_DAYS)}"
        )
    return WINDOW_DAYS[window]


def half_life_to_lambda(half_life: float) -> float:
    """Decay factor with the given half-life in days: exp(-ln2 / half_life)."""
    if half_life <= 0:
        raise InvalidConfigError(f"Half-life must be positive, got {half_life}")
    return math.exp(-math.log(2) / half_life)


def lambda_to_half_life(lam: float) -> float:
    """Inverse of half_life_to_lambda; infinite for lambda >= 1."""
    if not 0 < lam <= 1:
        raise InvalidConfigError(f"Lambda must be in (0, 1], got {lam}")
    if lam >= 1:
        return math.inf
    return -math.log(2) / math.log(lam)


def ewma_weights(n: int, lam: float = 1.0) -> np.ndarray:
    """Normalized weights lam^(n-1-t) for t = 0..n-1 (newest observation last)."""
    if not 0 < lam <= 1:
        raise InvalidConfigError(f"Lambda must be in (0, 1], got {lam}")
    if n <= 0:
        return np.empty(0)
    if lam >= 1:
        return np.full(n, 1.0 / n)

    weights = lam ** (n - 1 - np.arange(n, dtype=float))
    return weights / weights.sum()


def weighted_correlation(
    x: np.ndarray,
    y: np.ndarray,
    weights: Optional[np.ndarray] = None,
) -> float:
    """Weighted Pearson correlation of two equal-length arrays.

    With uniform (or no) weights this is the ordinary sample correlation.
    A constant series has no defined correlation and yields 0.0.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    if len(x) != len(y):
        raise ValueError(f"Length mismatch: {len(x)} vs {len(y)}")
    if len(x) < 2:
        return 0.0

    # weighted mean of a constant array leaves ~1e-16 residuals
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return 0.0

    if weights is None:
        weights = np.full(len(x), 1.0 / len(x))

    dx = x - np.dot(weights, x)
    dy = y - np.dot(weights, y)

    cov = float(np.dot(weights, dx * dy))
    var_x = float(np.dot(weights, dx * dx))
    var_y = float(np.dot(weights, dy * dy))

    if var_x <= 0 or var_y <= 0:
        return 0.0

    corr = cov / math.sqrt(var_x * var_y)
    return max(-1.0, min(1.0, corr))


def pairwise_correlation(
    x: pd.Series,
    y: pd.Series,
    window: int = 252,
    lam: float = 1.0,
    min_obs: int = MIN_CORRELATION_OBS,
) -> Tuple[Optional[float], int]:
    """Correlation of two series over their overlapping trailing window.

    Each series is trimmed to its last `window` observations, then the pair is
    aligned on common timestamps.

    Returns:
        Tuple of (correlation or None when overlap < min_obs, overlap count)
    """
    xv, yv = align_pair(trim_to_window(x.dropna(), window), trim_to_window(y.dropna(), window))
    overlap = len(xv)

    if overlap < min_obs:
        return None, overlap

    return weighted_correlation(xv, yv, ewma_weights(overlap, lam)), overlap


def shrink_correlation(corr, intensity: float = DEFAULT_SHRINKAGE):
    """Shrink off-diagonal correlations toward their average.

    C'[i][j] = (1 - theta) * C[i][j] + theta * r_bar, diagonal untouched.

    Args:
        corr: Correlation matrix (DataFrame or ndarray)
        intensity: theta in [0, 1]

    Returns:
        Shrunk matrix of the same type as the input
    """
    if not 0 <= intensity <= 1:
        raise InvalidConfigError(f"Shrinkage intensity must be in [0, 1], got {intensity}")

    arr = np.array(corr, dtype=float)
    n = arr.shape[0]
    if n < 2:
        return corr.copy()

    off_diag = ~np.eye(n, dtype=bool)
    r_bar = float(arr[off_diag].mean())

    shrunk = arr.copy()
    shrunk[off_diag] = (1 - intensity) * arr[off_diag] + intensity * r_bar

    logger.debug(
        "shrink_correlation: shrunk toward average",
        intensity=intensity,
        avg_correlation=r_bar,
    )

    if isinstance(corr, pd.DataFrame):
        return pd.DataFrame(shrunk, index=corr.index, columns=corr.columns)
    return shrunk


def zero_cash_correlations(corr: pd.DataFrame, cash_tickers: Iterable[str]) -> pd.DataFrame:
    """Treat the given tickers as uncorrelated cash: zero their off-diagonal entries."""
    out = corr.copy()
    for ticker in cash_tickers:
        if ticker not in out.index:
            logger.debug("zero_cash_correlations: cash ticker not in matrix", ticker=ticker)
            continue
        out.loc[ticker, :] = 0.0
        out.loc[:, ticker] = 0.0
        out.loc[ticker, ticker] = 1.0
    return out


def _as_square_array(matrix) -> np.ndarray:
    arr = np.array(matrix, dtype=float)

    if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or arr.shape[0] == 0:
        logger.error("make_valid_correlation: matrix is not square", shape=arr.shape)
        raise InvalidMatrixError(f"Correlation matrix must be square and non-empty, got shape {arr.shape}")

    if not np.isfinite(arr).all():
        logger.error("make_valid_correlation: non-finite entries")
        raise InvalidMatrixError("Correlation matrix contains NaN or infinite values")

    return arr


def make_valid_correlation(matrix, floor: float = EIGENVALUE_FLOOR):
    """Repair a matrix into a valid correlation matrix.

    Symmetrize, clamp off-diagonals to [-0.999, 0.999], set a unit diagonal,
    and if the smallest eigenvalue is below `floor`, clip eigenvalues to it,
    reconstruct and re-normalize the diagonal.

    Args:
        matrix: Candidate correlation matrix (DataFrame or ndarray)
        floor: Minimum eigenvalue after repair

    Returns:
        Repaired matrix of the same type as the input

    Raises:
        InvalidMatrixError: If the input is non-square or non-finite, or the
            repaired matrix still violates the invariants
    """
    arr = _as_square_array(matrix)

    arr = (arr + arr.T) / 2
    arr = np.clip(arr, -CORRELATION_CLAMP, CORRELATION_CLAMP)
    np.fill_diagonal(arr, 1.0)

    min_eigenvalue = float(np.min(np.linalg.eigvalsh(arr)))

    if min_eigenvalue < floor:
        eigenvalues, eigvecs = np.linalg.eigh(arr)
        eigenvalues = np.maximum(eigenvalues, floor)
        arr = eigvecs @ np.diag(eigenvalues) @ eigvecs.T

        d = np.sqrt(np.diag(arr))
        arr = arr / np.outer(d, d)
        arr = (arr + arr.T) / 2
        arr = np.clip(arr, -1.0, 1.0)
        np.fill_diagonal(arr, 1.0)

        logger.warning(
            "make_valid_correlation: eigenvalues clipped",
            min_eigenvalue=min_eigenvalue,
            floor=floor,
            repaired_min_eigenvalue=float(np.min(np.linalg.eigvalsh(arr))),
        )

    validate_correlation_matrix(arr)

    if isinstance(matrix, pd.DataFrame):
        return pd.DataFrame(arr, index=matrix.index, columns=matrix.columns)
    return arr


def validate_correlation_matrix(matrix, tol: float = VALIDATION_TOL) -> np.ndarray:
    """Check the correlation matrix invariants without repairing anything.

    Returns:
        The matrix as a float ndarray

    Raises:
        InvalidMatrixError: Naming the first violated invariant
    """
    arr = np.array(matrix, dtype=float)

    if arr.ndim != 2 or arr.shape[0] != arr.shape[1] or arr.shape[0] == 0:
        raise InvalidMatrixError(f"Correlation matrix must be square and non-empty, got shape {arr.shape}")

    if not np.isfinite(arr).all():
        raise InvalidMatrixError("Correlation matrix contains NaN or infinite values")

    if not np.allclose(arr, arr.T, atol=tol, rtol=0):
        raise InvalidMatrixError("Correlation matrix is not symmetric")

    if not np.allclose(np.diag(arr), 1.0, atol=tol, rtol=0):
        raise InvalidMatrixError("Correlation matrix diagonal is not 1")

    if np.abs(arr).max() > 1 + tol:
        raise InvalidMatrixError("Correlation matrix has entries outside [-1, 1]")

    min_eigenvalue = float(np.min(np.linalg.eigvalsh((arr + arr.T) / 2)))
    if min_eigenvalue < -tol:
        raise InvalidMatrixError(
            f"Correlation matrix is not positive semi-definite (min eigenvalue {min_eigenvalue:.3g})"
        )

    return arr


def estimate_correlation(
    returns_by_ticker: Dict[str, pd.Series],
    method: CorrelationMethod | str = CorrelationMethod.SAMPLE,
    window_days=252,
    use_ewma: bool = False,
    shrinkage_intensity: Optional[float] = DEFAULT_SHRINKAGE,
    cash_tickers: Sequence[str] = (),
    tickers: Optional[List[str]] = None,
) -> CorrelationEstimate:
    """Estimate a validated correlation matrix from per-ticker return series.

    Pairs with fewer than 20 overlapping observations in the trailing window
    get correlation 0 and a warning.  Tickers with fewer than 20 observations
    in total are kept in the matrix with zero correlation to everything.

    Args:
        returns_by_ticker: {ticker: pd.Series} of daily returns
        method: 'sample', 'ewma' or 'ledoit_wolf'
        window_days: Trailing window in trading days or a window label ('1y')
        use_ewma: Apply EWMA weighting regardless of method
        shrinkage_intensity: Shrinkage for 'ledoit_wolf'; None estimates the
            optimal intensity from the data
        cash_tickers: Tickers treated as uncorrelated cash
        tickers: Matrix order (defaults to the input's key order)

    Returns:
        CorrelationEstimate whose matrix satisfies the correlation invariants

    Raises:
        InsufficientDataError: If fewer than 2 tickers have usable series
        InvalidConfigError: On unknown method or window
    """
    try:
        method = CorrelationMethod(method)
    except ValueError as e:
        raise InvalidConfigError(f"Unknown correlation method: {method}") from e

    window = window_to_days(window_days)
    tickers = list(tickers) if tickers is not None else list(returns_by_ticker.keys())

    usable, excluded = usable_tickers(returns_by_ticker, tickers, MIN_CORRELATION_OBS)
    if len(usable) < 2:
        logger.error(
            "estimate_correlation: insufficient data",
            usable=usable,
            excluded=excluded,
        )
        raise InsufficientDataError(
            f"insufficient data: need at least 2 tickers with {MIN_CORRELATION_OBS}+ "
            f"observations, got {len(usable)}"
        )

    warnings: List[str] = [
        f"{t}: fewer than {MIN_CORRELATION_OBS} observations; excluded from correlation estimate"
        for t in excluded
    ]

    lam = 1.0
    if use_ewma or method == CorrelationMethod.EWMA:
        lam = half_life_to_lambda(window / 2)

    n = len(tickers)
    corr = np.eye(n)
    overlaps = np.zeros((n, n), dtype=int)
    usable_set = set(usable)

    for i in range(n):
        ti = tickers[i]
        if ti in usable_set:
            overlaps[i, i] = len(trim_to_window(returns_by_ticker[ti].dropna(), window))
        for j in range(i + 1, n):
            tj = tickers[j]
            if ti not in usable_set or tj not in usable_set:
                continue

            value, overlap = pairwise_correlation(
                returns_by_ticker[ti], returns_by_ticker[tj], window, lam
            )
            overlaps[i, j] = overlaps[j, i] = overlap

            if value is None:
                warnings.append(
                    f"{ti}/{tj}: only {overlap} overlapping observations "
                    f"(need {MIN_CORRELATION_OBS}); correlation set to 0"
                )
                continue

            corr[i, j] = corr[j, i] = value

    matrix = pd.DataFrame(corr, index=tickers, columns=tickers)

    applied_shrinkage = 0.0
    if method == CorrelationMethod.LEDOIT_WOLF:
        applied_shrinkage = shrinkage_intensity
        if applied_shrinkage is None:
            aligned = aligned_returns(returns_by_ticker, usable, window)
            if len(aligned) < MIN_CORRELATION_OBS:
                applied_shrinkage = DEFAULT_SHRINKAGE
                warnings.append(
                    f"only {len(aligned)} dates shared by all tickers; "
                    f"using fixed shrinkage {DEFAULT_SHRINKAGE}"
                )
            else:
                try:
                    applied_shrinkage = ledoit_wolf_intensity(aligned)
                except ValueError as e:
                    logger.warning(
                        "estimate_correlation: shrinkage estimate failed, using fixed intensity",
                        error=str(e),
                        shrinkage=DEFAULT_SHRINKAGE,
                    )
                    applied_shrinkage = DEFAULT_SHRINKAGE
                    warnings.append(
                        f"shrinkage estimate failed ({e}); using fixed shrinkage {DEFAULT_SHRINKAGE}"
                    )
        matrix.loc[usable, usable] = shrink_correlation(
            matrix.loc[usable, usable], applied_shrinkage
        )

    if cash_tickers:
        matrix = zero_cash_correlations(matrix, cash_tickers)

    matrix = make_valid_correlation(matrix)

    upper_vals = matrix.values[np.triu_indices(n, k=1)]
    logger.info(
        "estimate_correlation: correlation estimated",
        method=method.value,
        num_assets=n,
        window_days=window,
        ewma_lambda=lam,
        shrinkage=applied_shrinkage,
        avg_correlation=float(upper_vals.mean()) if len(upper_vals) else 0.0,
        num_warnings=len(warnings),
    )

    return CorrelationEstimate(
        matrix=matrix,
        overlaps=pd.DataFrame(overlaps, index=tickers, columns=tickers),
        method=method,
        ewma_lambda=lam,
        shrinkage=float(applied_shrinkage),
        excluded=tuple(excluded),
        warnings=tuple(warnings),
    )


def top_correlated_pairs(
    corr: pd.DataFrame,
    n: int = 20,
) -> List[Dict]:
    """Find the top N most correlated pairs (excluding self-correlation).

    Includes both highly positive and highly negative correlations.

    Returns:
        List of dicts: [{'symbol_a': str, 'symbol_b': str, 'correlation': float}, ...]
        sorted by |correlation| descending
    """
    if corr.empty:
        raise ValueError("Cannot find pairs from empty correlation matrix")

    rows, cols = np.triu_indices_from(corr.values, k=1)
    pairs = [
        {
            'symbol_a': corr.index[i],
            'symbol_b': corr.columns[j],
            'correlation': float(corr.iloc[i, j]),
        }
        for i, j in zip(rows, cols)
    ]
    pairs.sort(key=lambda x: abs(x['correlation']), reverse=True)

    return pairs[:n]
