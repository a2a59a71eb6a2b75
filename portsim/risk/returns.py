"""
Return Series Module

Pure functions for turning the market-data collaborator's payloads into
validated per-ticker daily return series, and for aligning and trimming
those series ahead of correlation and lag estimation.

A return series is a ``pd.Series`` of float returns indexed by a strictly
increasing ``DatetimeIndex``.
"""

from typing import Dict, Iterable, List, Mapping, Tuple

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger(__name__)


def to_return_series(
    daily_returns: Iterable[float],
    timestamps: Iterable,
    timestamp_unit: str = 'ms',
    name: str | None = None,
) -> pd.Series:
    """Build one validated return series.

    Args:
        daily_returns: Daily returns (already currency-normalized)
        timestamps: Epoch timestamps (or anything pd.to_datetime accepts)
        timestamp_unit: Unit for numeric timestamps ('ms', 's', ...)
        name: Optional series name (ticker)

    Returns:
        pd.Series of floats indexed by DatetimeIndex

    Raises:
        ValueError: On length mismatch, non-finite returns, or timestamps
            that are not strictly increasing
    """
    values = np.asarray(list(daily_returns), dtype=float)
    stamps = list(timestamps)

    if len(values) != len(stamps):
        raise ValueError(
            f"Returns length {len(values)} doesn't match timestamps length {len(stamps)}"
            + (f" for {name}" if name else "")
        )

    if len(stamps) > 0 and isinstance(stamps[0], (int, float, np.integer, np.floating)):
        index = pd.to_datetime(stamps, unit=timestamp_unit)
    else:
        index = pd.to_datetime(stamps)

    if not np.all(np.isfinite(values)):
        raise ValueError("Non-finite returns detected" + (f" for {name}" if name else ""))

    index = pd.DatetimeIndex(index)
    if len(index) > 1 and not (index[1:] > index[:-1]).all():
        raise ValueError(
            "Timestamps must be strictly increasing" + (f" for {name}" if name else "")
        )

    return pd.Series(values, index=index, name=name)


def returns_from_payload(
    payload: Mapping[str, Mapping[str, Iterable]],
    timestamp_unit: str = 'ms',
) -> Dict[str, pd.Series]:
    """Convert ``{ticker: {"daily_returns": [...], "timestamps": [...]}}``.

    ``dailyReturns`` is accepted as an alias of ``daily_returns``.  Tickers
    are upper-cased.

    Returns:
        {ticker: pd.Series} of validated daily returns
    """
    result: Dict[str, pd.Series] = {}

    for ticker, data in payload.items():
        symbol = ticker.strip().upper()
        values = data.get('daily_returns', data.get('dailyReturns'))
        stamps = data.get('timestamps')
        if values is None or stamps is None:
            raise ValueError(f"Payload for {symbol} needs daily_returns and timestamps")

        result[symbol] = to_return_series(values, stamps, timestamp_unit, name=symbol)

    logger.info(
        "returns_from_payload: series built",
        num_symbols=len(result),
        lengths={s: len(r) for s, r in result.items()},
    )

    return result


def trim_to_window(returns: pd.Series, window: int) -> pd.Series:
    """Take the last `window` observations (all of them if the series is shorter)."""
    if window <= 0:
        raise ValueError(f"Window must be positive, got {window}")

    return returns.iloc[-window:]


def align_pair(x: pd.Series, y: pd.Series) -> Tuple[np.ndarray, np.ndarray]:
    """Align two return series on their common timestamps.

    Returns:
        Tuple of equal-length arrays (x_values, y_values) in date order
    """
    common = x.index.intersection(y.index)
    return x.loc[common].to_numpy(dtype=float), y.loc[common].to_numpy(dtype=float)


def usable_tickers(
    returns_by_ticker: Mapping[str, pd.Series],
    tickers: List[str],
    min_obs: int,
) -> Tuple[List[str], List[str]]:
    """Split tickers into those with at least `min_obs` returns and those without.

    Returns:
        Tuple of (usable, excluded) preserving input order
    """
    usable, excluded = [], []
    for t in tickers:
        series = returns_by_ticker.get(t)
        if series is not None and series.dropna().shape[0] >= min_obs:
            usable.append(t)
        else:
            excluded.append(t)
    return usable, excluded
