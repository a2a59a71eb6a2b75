"""
Swap Optimization Module

Analytic risk decomposition of the current portfolio (expected return,
volatility, Sharpe, marginal and total risk contribution, incremental Sharpe,
risk-budget optimality, risk-parity weights) and ranking of single swaps:
sell a dollar notional of one ticker and buy the same notional of another.

Swaps are scored from the existing covariance structure without
re-simulating.  validate_swaps_by_simulation re-runs the Monte Carlo engine
for the best few swaps with common random numbers as a cross-check.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .covariance import correlation_to_covariance
from .errors import InvalidConfigError
from .metrics import (
    analyze_simulation,
    component_contribution_to_risk,
    marginal_contribution_to_risk,
    portfolio_volatility,
)
from .models import DistributionParams, Position, SimulationConfig
from .simulation import simulate

logger = structlog.get_logger(__name__)

MIN_MCTR = 1e-4
RISK_PARITY_MAX_ITER = 100
RISK_PARITY_TOL = 1e-4
WEIGHT_EPS = 1e-12


class SwapObjective(str, Enum):
    MAX_SHARPE = "max_sharpe"
    TARGET_RETURN = "target_return"
    MIN_RISK = "min_risk"


class SwapConstraints(BaseModel):
    """Limits a swap must respect; violating swaps are rejected, never clamped."""

    model_config = {"frozen": True}

    max_positions: int = Field(50, gt=0)
    min_allocation: float = Field(0.0, ge=0.0, le=1.0)
    max_allocation: float = Field(1.0, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_range(self) -> "SwapConstraints":
        if self.min_allocation > self.max_allocation:
            raise ValueError(
                f"min_allocation {self.min_allocation} exceeds max_allocation {self.max_allocation}"
            )
        return self

    @classmethod
    def from_settings(cls, settings) -> "SwapConstraints":
        try:
            return cls(
                max_positions=settings.MAX_POSITIONS,
                min_allocation=settings.MIN_ALLOCATION,
                max_allocation=settings.MAX_ALLOCATION,
            )
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid swap constraints: {e}") from e


class SwapCandidate(BaseModel):
    """Sell `notional` dollars of `sell` and buy the same amount of `buy`.

    A missing notional means the optimizer's default swap size.
    """

    model_config = {"frozen": True}

    sell: str
    buy: str
    notional: Optional[float] = Field(None, gt=0.0)

    @field_validator("sell", "buy")
    @classmethod
    def _upper(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("ticker must be non-empty")
        return v

    @model_validator(mode="after")
    def _distinct(self) -> "SwapCandidate":
        if self.sell == self.buy:
            raise ValueError(f"Cannot swap {self.sell} with itself")
        return self


@dataclass(frozen=True)
class RiskDecomposition:
    """Analytic (annualized) risk picture of the portfolio over a ticker universe.

    Weights are market value / net portfolio value (cash included in the
    denominator), so long-short books can have weights summing above 1.
    Tickers in the universe but not held have weight 0 and are swap targets.
    """

    tickers: Tuple[str, ...]
    values: np.ndarray
    weights: np.ndarray
    portfolio_value: float
    cash_weight: float
    cash_rate: float
    mu: np.ndarray
    sigma: np.ndarray
    correlation: np.ndarray
    covariance: np.ndarray
    expected_return: float
    volatility: float
    sharpe: float
    risk_free_rate: float
    mctr: np.ndarray
    risk_contribution: np.ndarray
    incremental_sharpe: np.ndarray
    optimality_ratio: np.ndarray
    risk_parity_weights: np.ndarray
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    def index_of(self, ticker: str) -> Optional[int]:
        try:
            return self.tickers.index(ticker)
        except ValueError:
            return None

    def portfolio_stats(self, weights: np.ndarray) -> Tuple[float, float, float]:
        """(expected return, volatility, Sharpe) for alternative weights."""
        ret = float(weights @ self.mu) + self.cash_weight * self.cash_rate
        vol = portfolio_volatility(weights, self.covariance)
        sharpe = (ret - self.risk_free_rate) / vol if vol > 0 else 0.0
        return ret, vol, sharpe

    def to_dict(self) -> Dict:
        per_ticker = {
            t: {
                'weight': float(self.weights[k]),
                'mu': float(self.mu[k]),
                'sigma': float(self.sigma[k]),
                'mctr': float(self.mctr[k]),
                'risk_contribution': float(self.risk_contribution[k]),
                'incremental_sharpe': float(self.incremental_sharpe[k]),
                'optimality_ratio': float(self.optimality_ratio[k]),
                'risk_parity_weight': float(self.risk_parity_weights[k]),
            }
            for k, t in enumerate(self.tickers)
        }
        return {
            'portfolio_value': self.portfolio_value,
            'expected_return': self.expected_return,
            'volatility': self.volatility,
            'sharpe': self.sharpe,
            'cash_weight': self.cash_weight,
            'positions': per_ticker,
            'warnings': list(self.warnings),
        }


@dataclass(frozen=True)
class SwapResult:
    """Analytic effect of one swap, or the reason it was rejected."""

    sell: str
    buy: str
    notional: float
    new_return: float = 0.0
    new_volatility: float = 0.0
    new_sharpe: float = 0.0
    delta_return: float = 0.0
    delta_volatility: float = 0.0
    delta_sharpe: float = 0.0
    accepted: bool = True
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'sell': self.sell,
            'buy': self.buy,
            'notional': self.notional,
            'new_return': self.new_return,
            'new_volatility': self.new_volatility,
            'new_sharpe': self.new_sharpe,
            'delta_return': self.delta_return,
            'delta_volatility': self.delta_volatility,
            'delta_sharpe': self.delta_sharpe,
            'accepted': self.accepted,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class SwapRanking:
    objective: SwapObjective
    ranked: Tuple[SwapResult, ...]
    rejected: Tuple[SwapResult, ...]

    def top(self, n: int = 5) -> List[SwapResult]:
        return list(self.ranked[:n])


def _held_values(positions: Sequence[Position | Mapping]) -> Dict[str, float]:
    values: Dict[str, float] = {}
    for raw in positions:
        try:
            position = raw if isinstance(raw, Position) else Position(**dict(raw))
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid position: {e}") from e
        values[position.ticker] = values.get(position.ticker, 0.0) + position.market_value
    return values


def risk_parity_weights(
    sigma: np.ndarray,
    cov: np.ndarray,
    max_iter: int = RISK_PARITY_MAX_ITER,
    tol: float = RISK_PARITY_TOL,
) -> np.ndarray:
    """Long-only weights (summing to 1) with approximately equal risk contribution.

    Starts from inverse-volatility weights and repeatedly sets
    w_i proportional to (vol / n) / MCTR_i.
    """
    n = len(sigma)
    if n == 0:
        return np.empty(0)

    w = np.where(sigma > 0, 1.0 / np.where(sigma > 0, sigma, 1.0), 1.0)
    w = w / w.sum()

    for _ in range(max_iter):
        vol = portfolio_volatility(w, cov)
        if vol <= 0:
            break

        mctr = marginal_contribution_to_risk(w, cov)
        target = vol / n
        new_w = np.where(mctr > 0, target / np.where(mctr > 0, mctr, 1.0), w)

        total = new_w.sum()
        if total <= 0:
            break
        new_w = np.maximum(new_w / total, 0.0)

        converged = np.max(np.abs(new_w - w)) < tol
        w = new_w
        if converged:
            break

    return w


def build_risk_decomposition(
    positions: Sequence[Position | Mapping],
    params: Mapping[str, DistributionParams],
    correlation,
    cash_balance: float = 0.0,
    cash_rate: float = 0.0,
    risk_free_rate: float = 0.04,
) -> RiskDecomposition:
    """Analytic risk decomposition over the correlation matrix's tickers.

    Args:
        positions: Current holdings
        params: {ticker: DistributionParams}; universe tickers without params
            are dropped with a warning
        correlation: Ticker-labelled correlation DataFrame (the universe), or an
            ndarray ordered like `positions`
        cash_balance: Cash held, earning cash_rate
        cash_rate: Annual return on cash
        risk_free_rate: Annual rate for Sharpe ratios

    Raises:
        InvalidConfigError: Held ticker missing from the universe or params,
            or non-positive portfolio value
    """
    held = _held_values(positions)

    if isinstance(correlation, pd.DataFrame):
        universe = [str(t) for t in correlation.index]
        corr_frame = correlation
    else:
        universe = list(held.keys())
        corr_frame = pd.DataFrame(np.asarray(correlation, dtype=float), index=universe, columns=universe)

    missing = [t for t in held if t not in universe or t not in params]
    if missing:
        logger.error("build_risk_decomposition: held tickers without data", missing=missing)
        raise InvalidConfigError(f"Held tickers missing correlation or params: {missing}")

    warnings = [f"{t}: no distribution params; excluded from swap universe" for t in universe if t not in params]
    tickers = [t for t in universe if t in params]

    values = np.array([held.get(t, 0.0) for t in tickers])
    portfolio_value = float(values.sum() + cash_balance)
    if not np.isfinite(portfolio_value) or portfolio_value <= 0:
        logger.error("build_risk_decomposition: non-positive portfolio value", value=portfolio_value)
        raise InvalidConfigError(f"Portfolio value must be positive, got {portfolio_value}")

    weights = values / portfolio_value
    cash_weight = cash_balance / portfolio_value
    mu = np.array([params[t].mu for t in tickers])
    sigma = np.array([params[t].sigma for t in tickers])
    corr = corr_frame.loc[tickers, tickers].to_numpy(dtype=float)
    cov = correlation_to_covariance(corr, sigma)

    expected_return = float(weights @ mu) + cash_weight * cash_rate
    volatility = portfolio_volatility(weights, cov)
    sharpe = (expected_return - risk_free_rate) / volatility if volatility > 0 else 0.0

    mctr = marginal_contribution_to_risk(weights, cov)
    risk_contribution = (
        component_contribution_to_risk(weights, cov) / volatility
        if volatility > 0 else np.zeros_like(weights)
    )

    # iSharpe_i = S_i - rho(i, portfolio) * S_p
    asset_sharpe = np.where(sigma > 0, (mu - risk_free_rate) / np.where(sigma > 0, sigma, 1.0), 0.0)
    cov_with_portfolio = cov @ weights
    denom = sigma * volatility
    corr_with_portfolio = np.where(denom > 0, cov_with_portfolio / np.where(denom > 0, denom, 1.0), 0.0)
    incremental_sharpe = asset_sharpe - corr_with_portfolio * sharpe

    optimality_ratio = np.where(
        np.abs(mctr) >= MIN_MCTR,
        (mu - risk_free_rate) / np.where(np.abs(mctr) >= MIN_MCTR, mctr, 1.0),
        0.0,
    )

    decomposition = RiskDecomposition(
        tickers=tuple(tickers),
        values=values,
        weights=weights,
        portfolio_value=portfolio_value,
        cash_weight=cash_weight,
        cash_rate=cash_rate,
        mu=mu,
        sigma=sigma,
        correlation=corr,
        covariance=cov,
        expected_return=expected_return,
        volatility=volatility,
        sharpe=sharpe,
        risk_free_rate=risk_free_rate,
        mctr=mctr,
        risk_contribution=risk_contribution,
        incremental_sharpe=incremental_sharpe,
        optimality_ratio=optimality_ratio,
        risk_parity_weights=risk_parity_weights(sigma, cov),
        warnings=tuple(warnings),
    )

    logger.info(
        "build_risk_decomposition: decomposition built",
        num_assets=len(tickers),
        num_held=len(held),
        expected_return=expected_return,
        volatility=volatility,
        sharpe=sharpe,
    )

    return decomposition


def generate_candidates(
    decomposition: RiskDecomposition,
    notional: Optional[float] = None,
    include_unheld: bool = True,
) -> List[SwapCandidate]:
    """Every (sell a long holding, buy another universe ticker) pair."""
    sells = [t for t, v in zip(decomposition.tickers, decomposition.values) if v > 0]
    buys = [
        t for t, v in zip(decomposition.tickers, decomposition.values)
        if include_unheld or v != 0
    ]
    return [
        SwapCandidate(sell=s, buy=b, notional=notional)
        for s in sells
        for b in buys
        if s != b
    ]


def _evaluate_swap(
    candidate: SwapCandidate,
    decomposition: RiskDecomposition,
    held: Dict[str, float],
    constraints: SwapConstraints,
    default_notional: float,
) -> SwapResult:
    notional = candidate.notional if candidate.notional is not None else default_notional

    def reject(reason: str) -> SwapResult:
        return SwapResult(
            sell=candidate.sell, buy=candidate.buy, notional=notional,
            accepted=False, reason=reason,
        )

    i = decomposition.index_of(candidate.sell)
    j = decomposition.index_of(candidate.buy)
    if i is None:
        return reject(f"{candidate.sell} is not in the risk universe")
    if j is None:
        return reject(f"{candidate.buy} is not in the risk universe")

    held_value = held.get(candidate.sell, 0.0)
    if notional > held_value + 1e-9:
        return reject(
            f"selling {notional:.2f} of {candidate.sell} exceeds the {max(held_value, 0.0):.2f} held"
        )

    pv = decomposition.portfolio_value
    new_weights = decomposition.weights.copy()
    new_weights[i] -= notional / pv
    new_weights[j] += notional / pv

    held_after = np.abs(new_weights) > WEIGHT_EPS
    if held_after.sum() > constraints.max_positions:
        return reject(
            f"swap would hold {int(held_after.sum())} positions (max {constraints.max_positions})"
        )

    for k in (i, j):
        w = abs(new_weights[k])
        ticker = decomposition.tickers[k]
        if w > constraints.max_allocation + WEIGHT_EPS:
            return reject(f"{ticker} weight {w:.2%} exceeds max allocation {constraints.max_allocation:.2%}")
        if WEIGHT_EPS < w < constraints.min_allocation - WEIGHT_EPS:
            return reject(f"{ticker} weight {w:.2%} is below min allocation {constraints.min_allocation:.2%}")

    new_return, new_vol, new_sharpe = decomposition.portfolio_stats(new_weights)

    return SwapResult(
        sell=candidate.sell,
        buy=candidate.buy,
        notional=notional,
        new_return=new_return,
        new_volatility=new_vol,
        new_sharpe=new_sharpe,
        delta_return=new_return - decomposition.expected_return,
        delta_volatility=new_vol - decomposition.volatility,
        delta_sharpe=new_sharpe - decomposition.sharpe,
    )


def rank_swaps(
    positions: Sequence[Position | Mapping],
    candidates: Sequence[SwapCandidate | Mapping],
    decomposition: RiskDecomposition,
    objective: SwapObjective | str = SwapObjective.MAX_SHARPE,
    constraints: Optional[SwapConstraints] = None,
    target_return: Optional[float] = None,
    min_return: Optional[float] = None,
    swap_size: float = 0.01,
    top_n: Optional[int] = None,
) -> SwapRanking:
    """Score candidate swaps analytically and rank them for an objective.

    Objectives:
        max_sharpe: largest Sharpe improvement first
        target_return: new expected return closest to `target_return` first
        min_risk: lowest new volatility first, rejecting swaps whose expected
            return falls below `min_return` (default: the current return)

    Args:
        positions: Current holdings (sell notional may not exceed a holding)
        candidates: Swaps to evaluate
        decomposition: Output of build_risk_decomposition
        objective: Ranking objective
        constraints: Position count and allocation limits
        target_return: Required for target_return
        min_return: Return floor for min_risk
        swap_size: Default notional as a fraction of portfolio value
        top_n: Keep only the best N accepted swaps

    Returns:
        SwapRanking with accepted swaps in rank order and rejected swaps with reasons
    """
    try:
        objective = SwapObjective(objective)
    except ValueError as e:
        raise InvalidConfigError(f"Unknown swap objective: {objective}") from e

    if objective == SwapObjective.TARGET_RETURN and target_return is None:
        raise InvalidConfigError("target_return is required for the target_return objective")

    if not 0 < swap_size <= 1:
        raise InvalidConfigError(f"swap_size must be in (0, 1], got {swap_size}")

    constraints = constraints or SwapConstraints()
    held = _held_values(positions)
    default_notional = swap_size * decomposition.portfolio_value
    floor = decomposition.expected_return if min_return is None else min_return

    accepted: List[SwapResult] = []
    rejected: List[SwapResult] = []

    for raw in candidates:
        try:
            candidate = raw if isinstance(raw, SwapCandidate) else SwapCandidate(**dict(raw))
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid swap candidate: {e}") from e

        result = _evaluate_swap(candidate, decomposition, held, constraints, default_notional)

        if result.accepted and objective == SwapObjective.MIN_RISK and result.new_return < floor:
            result = SwapResult(
                sell=result.sell, buy=result.buy, notional=result.notional,
                accepted=False,
                reason=f"expected return {result.new_return:.2%} below minimum {floor:.2%}",
            )

        (accepted if result.accepted else rejected).append(result)

    if objective == SwapObjective.MAX_SHARPE:
        accepted.sort(key=lambda r: -r.delta_sharpe)
    elif objective == SwapObjective.TARGET_RETURN:
        accepted.sort(key=lambda r: abs(r.new_return - target_return))
    else:
        accepted.sort(key=lambda r: r.new_volatility)

    if top_n is not None:
        accepted = accepted[:top_n]

    logger.info(
        "rank_swaps: swaps ranked",
        objective=objective.value,
        num_candidates=len(candidates),
        num_accepted=len(accepted),
        num_rejected=len(rejected),
        best=f"{accepted[0].sell}->{accepted[0].buy}" if accepted else None,
    )

    return SwapRanking(objective=objective, ranked=tuple(accepted), rejected=tuple(rejected))


def swap_matrix(decomposition: RiskDecomposition, swap_size: float = 0.01) -> Dict[str, pd.DataFrame]:
    """Analytic effect of swapping `swap_size` of portfolio value between every held pair.

    Rows are the ticker sold, columns the ticker bought; the diagonal is 0.

    Returns:
        {'delta_sharpe': DataFrame, 'delta_volatility': DataFrame, 'delta_return': DataFrame}
    """
    held_idx = [k for k, v in enumerate(decomposition.values) if v != 0]
    labels = [decomposition.tickers[k] for k in held_idx]
    n = len(held_idx)

    out = {name: np.zeros((n, n)) for name in ('delta_sharpe', 'delta_volatility', 'delta_return')}

    for a, i in enumerate(held_idx):
        for b, j in enumerate(held_idx):
            if i == j:
                continue
            w = decomposition.weights.copy()
            w[i] -= swap_size
            w[j] += swap_size
            ret, vol, sharpe = decomposition.portfolio_stats(w)
            out['delta_sharpe'][a, b] = sharpe - decomposition.sharpe
            out['delta_volatility'][a, b] = vol - decomposition.volatility
            out['delta_return'][a, b] = ret - decomposition.expected_return

    return {name: pd.DataFrame(arr, index=labels, columns=labels) for name, arr in out.items()}


def validate_swaps_by_simulation(
    decomposition: RiskDecomposition,
    swaps: Sequence[SwapResult],
    params: Mapping[str, DistributionParams],
    config: Optional[SimulationConfig] = None,
    cash_balance: float = 0.0,
    top_n: int = 5,
) -> List[Dict]:
    """Re-simulate the best swaps against a baseline using common random numbers.

    Every run simulates the whole universe (unheld tickers at zero value) with
    the same seed, so differences come from the swap and not from sampling noise.

    Returns:
        One dict per swap with the simulated change in P5, P50, mean return and VaR
    """
    config = config or SimulationConfig()
    if config.seed is None:
        config = config.model_copy(update={'seed': int(np.random.SeedSequence().entropy % (2 ** 32))})

    tickers = list(decomposition.tickers)
    corr = pd.DataFrame(decomposition.correlation, index=tickers, columns=tickers)
    sim_params = {t: params[t] for t in tickers}

    def run(values: np.ndarray):
        positions = [Position(ticker=t, quantity=float(v), price=1.0) for t, v in zip(tickers, values)]
        result = simulate(positions, corr, sim_params, config, cash_balance=cash_balance)
        return analyze_simulation(result)

    baseline = run(decomposition.values)
    if not baseline.has_data:
        logger.warning("validate_swaps_by_simulation: baseline has no data", reason=baseline.reason)
        return []

    validations = []
    for swap in list(swaps)[:top_n]:
        i = decomposition.index_of(swap.sell)
        j = decomposition.index_of(swap.buy)
        if i is None or j is None or not swap.accepted:
            continue

        values = decomposition.values.copy()
        values[i] -= swap.notional
        values[j] += swap.notional
        report = run(values)
        if not report.has_data:
            continue

        validations.append({
            'sell': swap.sell,
            'buy': swap.buy,
            'delta_p5': report.percentiles['p5'] - baseline.percentiles['p5'],
            'delta_p50': report.percentiles['p50'] - baseline.percentiles['p50'],
            'delta_mean': report.mean_return - baseline.mean_return,
            'delta_var': report.var - baseline.var,
            'analytic_delta_sharpe': swap.delta_sharpe,
        })

    logger.info(
        "validate_swaps_by_simulation: swaps validated",
        num_validated=len(validations),
        num_paths=config.num_paths,
        seed=config.seed,
    )

    return validations
