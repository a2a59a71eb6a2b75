"""
Monte Carlo Simulation Module

Simulates correlated daily return paths for every position and compounds
them into terminal portfolio outcomes.

Shocks are drawn per simulated day as independent standard normals (or
scrambled Sobol points mapped through the normal inverse CDF), correlated
through the Cholesky factor of the correlation matrix, skewed per position,
optionally mixed into a Student-t (per-position degrees of freedom, one
mixing quantile per path), and scaled to daily (mu / 252,
sigma / sqrt(252)).

Paths are generated in independent batches.  Each batch owns a child seed
derived from the run seed, so a seeded run produces identical output whether
batches execute sequentially or on a thread pool.  Quasi-random sampling
trades strict independence between paths for more even coverage of the
distribution; it changes sampling quality, not the result's correctness.
"""

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from warnings import catch_warnings, simplefilter

import numpy as np
import pandas as pd
import structlog
from pydantic import ValidationError
from scipy import stats
from scipy.stats import qmc

from .correlation import validate_correlation_matrix
from .errors import (
    InvalidConfigError,
    InvalidMatrixError,
    NumericInstabilityError,
    SimulationCancelled,
)
from .models import (
    TRADING_DAYS,
    DistributionParams,
    FatTailMethod,
    Position,
    SimulationConfig,
    SimulationResult,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]

PHASE_PREPARE = "prepare"
PHASE_SIMULATE = "simulate"
PHASE_AGGREGATE = "aggregate"

MIN_STABLE_PATHS = 1000
UNIFORM_CLIP = 1e-10

CONTRIBUTION_PERCENTILES = {
    'p5': 0.05,
    'p25': 0.25,
    'p50': 0.50,
    'p75': 0.75,
    'p95': 0.95,
}

LOSS_THRESHOLDS = {
    'below_0': 0.0,
    'below_10': -0.10,
    'below_20': -0.20,
    'below_30': -0.30,
}


class CancellationToken:
    """Cooperative cancellation flag checked by the engine between batches."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SimulationCancelled("Simulation cancelled")


def percentile_index(n: int, p: float) -> int:
    """Nearest-rank index floor(p * n), clipped to the last element."""
    if n <= 0:
        raise ValueError(f"Cannot index an empty distribution (n={n})")
    return min(int(math.floor(p * n)), n - 1)


@dataclass(frozen=True)
class _Batch:
    index: int
    start: int
    size: int
    seed: np.random.SeedSequence


@dataclass(frozen=True)
class _PreparedRun:
    tickers: Tuple[str, ...]
    position_values: np.ndarray
    cholesky: np.ndarray
    mu_daily: np.ndarray
    sigma_daily: np.ndarray
    skew_delta: np.ndarray
    tail_dfs: np.ndarray
    cash_path: np.ndarray
    cash_balance: float
    starting_value: float
    day_seeds: np.ndarray
    config: SimulationConfig


def _report(progress_callback: Optional[ProgressCallback], phase: str, current: int, total: int) -> None:
    if progress_callback is not None:
        progress_callback(phase, current, total)


def _coerce_config(config) -> SimulationConfig:
    if config is None:
        return SimulationConfig()
    if isinstance(config, SimulationConfig):
        return config
    return SimulationConfig.build(**dict(config))


def _aggregate_positions(positions: Sequence[Position | Mapping]) -> Tuple[List[str], np.ndarray]:
    """Market value per ticker in first-seen order (duplicate tickers are summed)."""
    values: Dict[str, float] = {}
    for raw in positions:
        try:
            position = raw if isinstance(raw, Position) else Position(**dict(raw))
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid position: {e}") from e
        values[position.ticker] = values.get(position.ticker, 0.0) + position.market_value

    return list(values.keys()), np.array(list(values.values()), dtype=float)


def _ordered_correlation(correlation, tickers: List[str]) -> np.ndarray:
    if isinstance(correlation, pd.DataFrame):
        missing = [t for t in tickers if t not in correlation.index or t not in correlation.columns]
        if missing:
            logger.error("simulate: tickers missing from correlation matrix", missing=missing)
            raise InvalidMatrixError(f"Correlation matrix has no entries for: {missing}")
        correlation = correlation.loc[tickers, tickers]

    arr = np.array(correlation, dtype=float)
    if arr.shape != (len(tickers), len(tickers)):
        raise InvalidMatrixError(
            f"Correlation matrix shape {arr.shape} doesn't match {len(tickers)} positions"
        )

    return validate_correlation_matrix(arr)


def _resolve_params(
    params: Mapping[str, DistributionParams | Mapping],
    tickers: List[str],
) -> List[DistributionParams]:
    missing = [t for t in tickers if t not in params]
    if missing:
        logger.error("simulate: missing distribution params", missing=missing)
        raise InvalidConfigError(f"No distribution params for: {missing}")

    resolved = []
    for t in tickers:
        p = params[t]
        if not isinstance(p, DistributionParams):
            try:
                p = DistributionParams(**dict(p))
            except ValidationError as e:
                raise InvalidConfigError(f"Invalid distribution params for {t}: {e}") from e
        resolved.append(p)
    return resolved


def _apply_skew(x: np.ndarray, delta: np.ndarray) -> np.ndarray:
    """Skew-normal style transform with zero mean and unit variance preserved."""
    if not delta.any():
        return x

    scale = np.sqrt(1.0 - 2.0 * delta ** 2 / np.pi)
    skewed = np.sqrt(1.0 - delta ** 2) * x + delta * np.abs(x) - delta * np.sqrt(2.0 / np.pi)
    return skewed / scale


def _sample_day(
    run: _PreparedRun,
    rng: np.random.Generator,
    batch: _Batch,
    day: int,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Independent standard normals (size x N) and, for Student-t, chi-square mixing draws.

    The chi-square draws broadcast against the (size x N) shocks.  With
    per-position degrees of freedom they come from a single uniform per path,
    so every position in a path sits at the same tail quantile.
    """
    cfg = run.config
    n_assets = len(run.tickers)
    fat_tails = cfg.fat_tail_method == FatTailMethod.STUDENT_T
    dfs = run.tail_dfs

    if cfg.use_quasi_random:
        dims = n_assets + (1 if fat_tails else 0)
        engine = qmc.Sobol(d=dims, scramble=True, seed=int(run.day_seeds[day]))
        if batch.start:
            engine.fast_forward(batch.start)
        with catch_warnings():
            # batch sizes are not always powers of 2
            simplefilter("ignore", UserWarning)
            u = engine.random(batch.size)
        u = np.clip(u, UNIFORM_CLIP, 1.0 - UNIFORM_CLIP)

        normals = stats.norm.ppf(u[:, :n_assets])
        chi2_draws = stats.chi2.ppf(u[:, n_assets:], dfs) if fat_tails else None
        return normals, chi2_draws

    normals = rng.standard_normal((batch.size, n_assets))
    if not fat_tails:
        return normals, None

    if (dfs == dfs[0]).all():
        chi2_draws = rng.chisquare(dfs[0], batch.size)[:, None]
    else:
        u = np.clip(rng.random(batch.size), UNIFORM_CLIP, 1.0 - UNIFORM_CLIP)
        chi2_draws = stats.chi2.ppf(u[:, None], dfs)
    return normals, chi2_draws


def _simulate_batch(
    run: _PreparedRun,
    batch: _Batch,
    cancel_token: Optional[CancellationToken] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Simulate one batch of paths.

    Returns:
        Tuple of (terminal gross growth per position (size x N),
        max drawdown per path (size,))
    """
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    cfg = run.config
    dfs = run.tail_dfs
    t_scale = np.sqrt((dfs - 2.0) / dfs)

    rng = np.random.default_rng(batch.seed)
    growth = np.ones((batch.size, len(run.tickers)))
    peak = np.full(batch.size, run.starting_value)
    max_drawdowns = np.zeros(batch.size)

    for day in range(cfg.horizon_days):
        normals, chi2_draws = _sample_day(run, rng, batch, day)

        shocks = _apply_skew(normals @ run.cholesky.T, run.skew_delta)
        if chi2_draws is not None:
            shocks = shocks * t_scale / np.sqrt(chi2_draws / dfs)

        daily = np.maximum(run.mu_daily + run.sigma_daily * shocks, -1.0)
        growth *= 1.0 + daily

        portfolio = growth @ run.position_values + run.cash_path[day]
        np.maximum(peak, portfolio, out=peak)
        np.maximum(max_drawdowns, (peak - portfolio) / peak, out=max_drawdowns)

    return growth, max_drawdowns


def _run_batches(
    run: _PreparedRun,
    batches: List[_Batch],
    progress_callback: Optional[ProgressCallback],
    cancel_token: Optional[CancellationToken],
) -> List[Tuple[np.ndarray, np.ndarray]]:
    total = len(batches)
    outputs: List = [None] * total

    if run.config.max_workers == 1 or total == 1:
        for batch in batches:
            outputs[batch.index] = _simulate_batch(run, batch, cancel_token)
            _report(progress_callback, PHASE_SIMULATE, batch.index + 1, total)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return outputs

    with ThreadPoolExecutor(max_workers=run.config.max_workers) as executor:
        futures = {
            executor.submit(_simulate_batch, run, batch, cancel_token): batch.index
            for batch in batches
        }
        completed = 0
        try:
            for future in as_completed(futures):
                outputs[futures[future]] = future.result()
                completed += 1
                _report(progress_callback, PHASE_SIMULATE, completed, total)
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    return outputs


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


def _empty_result(
    tickers: List[str],
    starting_value: float,
    config: SimulationConfig,
    warnings: List[str],
    started: float,
) -> SimulationResult:
    """Result for a portfolio with no (or undefined) value: everything is zero."""
    n_paths = config.num_paths
    n_assets = len(tickers)

    def zeros(*shape):
        return _freeze(np.zeros(shape))

    return SimulationResult(
        tickers=tuple(tickers),
        weights=zeros(n_assets),
        starting_value=0.0 if not math.isfinite(starting_value) else starting_value,
        terminal_returns=zeros(n_paths),
        terminal_values=zeros(n_paths),
        max_drawdowns=zeros(n_paths),
        position_contributions=zeros(n_paths, n_assets),
        cash_contributions=zeros(n_paths),
        contribution_percentiles={label: zeros(n_assets) for label in CONTRIBUTION_PERCENTILES},
        loss_probabilities={label: 0.0 for label in LOSS_THRESHOLDS},
        config=config,
        elapsed_seconds=time.perf_counter() - started,
        warnings=tuple(warnings),
    )


def simulate(
    positions: Sequence[Position | Mapping],
    correlation,
    params: Mapping[str, DistributionParams | Mapping],
    config: SimulationConfig | Mapping | None = None,
    cash_balance: float = 0.0,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> SimulationResult:
    """Run a Monte Carlo simulation of the portfolio over the configured horizon.

    Args:
        positions: Position snapshots (or {'ticker', 'quantity', 'price'} dicts);
            negative quantities are shorts
        correlation: Repaired correlation matrix, a ticker-labelled DataFrame or
            an ndarray in position order
        params: {ticker: DistributionParams} for every position
        config: SimulationConfig (defaults when None)
        cash_balance: Cash held alongside the positions, compounding at config.cash_rate
        progress_callback: Called as (phase, current, total) at 'prepare', after
            each batch of 'simulate', and at 'aggregate'
        cancel_token: Checked at every batch boundary

    Returns:
        SimulationResult with read-only path arrays

    Raises:
        InvalidConfigError: Missing params, invalid positions, negative portfolio value
        InvalidMatrixError: Correlation matrix fails validation
        NumericInstabilityError: Cholesky failure or non-finite outputs
        SimulationCancelled: The token was cancelled between batches
    """
    started = time.perf_counter()
    config = _coerce_config(config)

    if not positions:
        raise InvalidConfigError("At least one position is required")

    tickers, position_values = _aggregate_positions(positions)
    corr = _ordered_correlation(correlation, tickers)
    resolved = _resolve_params(params, tickers)

    _report(progress_callback, PHASE_PREPARE, 0, 1)

    warnings: List[str] = []
    if config.num_paths < MIN_STABLE_PATHS:
        logger.warning(
            "simulate: low path count, tail statistics will be unstable",
            num_paths=config.num_paths,
            recommended=MIN_STABLE_PATHS,
        )
        warnings.append(
            f"num_paths={config.num_paths} is below {MIN_STABLE_PATHS}; "
            "tail percentiles (P5, VaR) are unstable"
        )

    starting_value = float(position_values.sum() + cash_balance)

    if not math.isfinite(starting_value) or starting_value == 0:
        logger.warning("simulate: portfolio value is zero or undefined", starting_value=starting_value)
        warnings.append("portfolio value is zero or undefined; terminal values set to 0")
        _report(progress_callback, PHASE_PREPARE, 1, 1)
        _report(progress_callback, PHASE_AGGREGATE, 1, 1)
        return _empty_result(tickers, starting_value, config, warnings, started)

    if starting_value < 0:
        logger.error("simulate: negative portfolio value", starting_value=starting_value)
        raise InvalidConfigError(f"Net portfolio value must be positive, got {starting_value:.2f}")

    try:
        cholesky = np.linalg.cholesky(corr)
    except np.linalg.LinAlgError as e:
        logger.error("simulate: Cholesky decomposition failed", error=str(e))
        raise NumericInstabilityError(f"non-PSD matrix: Cholesky decomposition failed ({e})") from e

    skews = np.array([p.skew for p in resolved])
    root_seed = np.random.SeedSequence(config.seed)
    num_batches = math.ceil(config.num_paths / config.batch_size)
    child_seeds = root_seed.spawn(num_batches)

    run = _PreparedRun(
        tickers=tuple(tickers),
        position_values=position_values,
        cholesky=cholesky,
        mu_daily=np.array([p.mu for p in resolved]) / TRADING_DAYS,
        sigma_daily=np.array([p.sigma for p in resolved]) / math.sqrt(TRADING_DAYS),
        skew_delta=skews / np.sqrt(1.0 + skews ** 2),
        tail_dfs=np.array([p.tail_df or config.student_t_df for p in resolved], dtype=float),
        cash_path=cash_balance * (1.0 + config.cash_rate / TRADING_DAYS) ** np.arange(1, config.horizon_days + 1),
        cash_balance=float(cash_balance),
        starting_value=starting_value,
        day_seeds=root_seed.generate_state(config.horizon_days),
        config=config,
    )

    batches = [
        _Batch(
            index=k,
            start=k * config.batch_size,
            size=min(config.batch_size, config.num_paths - k * config.batch_size),
            seed=child_seeds[k],
        )
        for k in range(num_batches)
    ]

    _report(progress_callback, PHASE_PREPARE, 1, 1)

    logger.info(
        "simulate: starting run",
        num_assets=len(tickers),
        num_paths=config.num_paths,
        horizon_days=config.horizon_days,
        num_batches=num_batches,
        max_workers=config.max_workers,
        fat_tail_method=config.fat_tail_method.value,
        quasi_random=config.use_quasi_random,
    )

    outputs = _run_batches(run, batches, progress_callback, cancel_token)

    _report(progress_callback, PHASE_AGGREGATE, 0, 1)

    growth = np.concatenate([g for g, _ in outputs], axis=0)
    max_drawdowns = np.concatenate([d for _, d in outputs])

    terminal_cash = float(run.cash_path[-1])
    terminal_values = growth @ position_values + terminal_cash
    terminal_returns = terminal_values / starting_value - 1.0
    position_contributions = position_values * (growth - 1.0) / starting_value
    cash_contributions = np.full(config.num_paths, (terminal_cash - cash_balance) / starting_value)

    for name, arr in (
        ('terminal_returns', terminal_returns),
        ('max_drawdowns', max_drawdowns),
        ('position_contributions', position_contributions),
    ):
        if not np.isfinite(arr).all():
            logger.error("simulate: non-finite values in output", array=name)
            raise NumericInstabilityError(f"NaN or infinite values in {name}")

    order = np.argsort(terminal_returns, kind='stable')
    n = config.num_paths
    contribution_percentiles = {
        label: _freeze(position_contributions[order[percentile_index(n, p)]].copy())
        for label, p in CONTRIBUTION_PERCENTILES.items()
    }
    loss_probabilities = {
        label: float(np.mean(terminal_returns < threshold))
        for label, threshold in LOSS_THRESHOLDS.items()
    }

    result = SimulationResult(
        tickers=tuple(tickers),
        weights=_freeze(position_values / starting_value),
        starting_value=starting_value,
        terminal_returns=_freeze(terminal_returns),
        terminal_values=_freeze(terminal_values),
        max_drawdowns=_freeze(max_drawdowns),
        position_contributions=_freeze(position_contributions),
        cash_contributions=_freeze(cash_contributions),
        contribution_percentiles=contribution_percentiles,
        loss_probabilities=loss_probabilities,
        config=config,
        elapsed_seconds=time.perf_counter() - started,
        warnings=tuple(warnings),
    )

    _report(progress_callback, PHASE_AGGREGATE, 1, 1)

    logger.info(
        "simulate: run complete",
        num_paths=n,
        median_return=float(terminal_returns[order[percentile_index(n, 0.5)]]),
        elapsed_seconds=round(result.elapsed_seconds, 3),
    )

    return result


class SimulationRunner:
    """Serializes simulation runs for one caller.

    Starting a run cancels the one in flight (it stops at its next batch
    boundary).  The latest completed result is kept as ``current`` and the
    one before it as ``previous``.
    """

    def __init__(self):
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active_token: Optional[CancellationToken] = None
        self.current: Optional[SimulationResult] = None
        self.previous: Optional[SimulationResult] = None

    def cancel(self) -> None:
        """Cancel the in-flight run, if any."""
        with self._state_lock:
            if self._active_token is not None:
                self._active_token.cancel()

    def run(
        self,
        positions: Sequence[Position | Mapping],
        correlation,
        params: Mapping[str, DistributionParams | Mapping],
        config: SimulationConfig | Mapping | None = None,
        cash_balance: float = 0.0,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SimulationResult:
        token = CancellationToken()
        with self._state_lock:
            if self._active_token is not None:
                self._active_token.cancel()
            self._active_token = token

        try:
            with self._run_lock:
                token.raise_if_cancelled()
                result = simulate(
                    positions,
                    correlation,
                    params,
                    config,
                    cash_balance=cash_balance,
                    progress_callback=progress_callback,
                    cancel_token=token,
                )
                with self._state_lock:
                    self.previous, self.current = self.current, result
                return result
        finally:
            with self._state_lock:
                if self._active_token is token:
                    self._active_token = None
