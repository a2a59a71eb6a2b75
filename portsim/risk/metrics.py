"""
Risk Metrics Module

Reduces Monte Carlo output into risk statistics: terminal return and value
percentiles, simulated VaR and Expected Shortfall, drawdown percentiles,
loss probabilities and per-position return contribution.  Also carries the
parametric helpers (portfolio volatility, risk contributions, concentration)
used by the swap optimizer.
"""

from typing import Dict, List, Optional, Union

import numpy as np
import structlog

from .errors import InvalidConfigError
from .models import NoDataReport, RiskReport, SimulationResult
from .simulation import percentile_index

logger = structlog.get_logger(__name__)

RETURN_PERCENTILES = {
    'p5': 0.05,
    'p10': 0.10,
    'p25': 0.25,
    'p50': 0.50,
    'p75': 0.75,
    'p90': 0.90,
    'p95': 0.95,
}

# same ranks as terminal returns; drawdowns are positive, so p99 adds the deep tail
DRAWDOWN_PERCENTILES = {
    **RETURN_PERCENTILES,
    'p99': 0.99,
}


def value_at_risk(terminal_returns: np.ndarray, alpha: float = 0.05) -> float:
    """Simulated VaR: the alpha-quantile terminal return, sorted[floor(n * alpha)].

    Losses are negative; a 5% VaR of -0.18 means 1 path in 20 loses 18% or more.
    """
    if not 0 < alpha < 1:
        raise InvalidConfigError(f"Alpha must be between 0 and 1, got {alpha}")

    sorted_returns = np.sort(np.asarray(terminal_returns, dtype=float))
    return float(sorted_returns[percentile_index(len(sorted_returns), alpha)])


def conditional_value_at_risk(terminal_returns: np.ndarray, alpha: float = 0.05) -> float:
    """Simulated Expected Shortfall: mean of all outcomes at or below VaR.

    Always <= value_at_risk at the same alpha.
    """
    values = np.asarray(terminal_returns, dtype=float)
    var = value_at_risk(values, alpha)
    return float(values[values <= var].mean())


def _malformed_reason(result: SimulationResult) -> Optional[str]:
    n = result.terminal_returns.shape[0] if result.terminal_returns.ndim == 1 else -1
    if n < 0:
        return "terminal returns must be one-dimensional"
    if n == 0:
        return "simulation produced no paths"
    if result.terminal_values.shape != (n,) or result.max_drawdowns.shape != (n,):
        return "path arrays have inconsistent lengths"
    if result.position_contributions.shape != (n, len(result.tickers)):
        return "position contributions don't match paths and tickers"
    if not (
        np.isfinite(result.terminal_returns).all()
        and np.isfinite(result.terminal_values).all()
        and np.isfinite(result.max_drawdowns).all()
    ):
        return "non-finite values in simulation output"
    return None


def analyze_simulation(
    result: Optional[SimulationResult],
    alpha: Optional[float] = None,
) -> Union[RiskReport, NoDataReport]:
    """Reduce a simulation result into a risk report.

    Percentiles use nearest rank: sorted[floor(p * n)].  Contributions at a
    percentile are those of the single path holding that rank of terminal
    return, so per-position contributions plus the cash contribution add up
    to that path's return.

    Args:
        result: Output of simulate()
        alpha: VaR/CVaR tail probability (defaults to the run's var_alpha)

    Returns:
        RiskReport, or NoDataReport when the result is missing, empty or malformed
    """
    if result is None or not isinstance(result, SimulationResult):
        logger.warning("analyze_simulation: no simulation result")
        return NoDataReport(reason="no simulation result")

    reason = _malformed_reason(result)
    if reason is not None:
        logger.warning("analyze_simulation: unusable simulation result", reason=reason)
        return NoDataReport(reason=reason, warnings=tuple(result.warnings))

    alpha = result.config.var_alpha if alpha is None else alpha
    if not 0 < alpha < 1:
        raise InvalidConfigError(f"Alpha must be between 0 and 1, got {alpha}")

    returns = result.terminal_returns
    n = returns.shape[0]
    order = np.argsort(returns, kind='stable')
    sorted_returns = returns[order]
    sorted_values = np.sort(result.terminal_values)
    sorted_drawdowns = np.sort(result.max_drawdowns)

    percentiles = {
        label: float(sorted_returns[percentile_index(n, p)])
        for label, p in RETURN_PERCENTILES.items()
    }
    value_percentiles = {
        label: float(sorted_values[percentile_index(n, p)])
        for label, p in RETURN_PERCENTILES.items()
    }
    drawdown_percentiles = {
        label: float(sorted_drawdowns[percentile_index(n, p)])
        for label, p in DRAWDOWN_PERCENTILES.items()
    }

    var = float(sorted_returns[percentile_index(n, alpha)])
    cvar = float(sorted_returns[sorted_returns <= var].mean())

    contributions = {}
    for label, p in RETURN_PERCENTILES.items():
        row = result.position_contributions[order[percentile_index(n, p)]]
        contributions[label] = {t: float(c) for t, c in zip(result.tickers, row)}

    report = RiskReport(
        num_paths=n,
        starting_value=float(result.starting_value),
        alpha=alpha,
        percentiles=percentiles,
        value_percentiles=value_percentiles,
        mean_return=float(returns.mean()),
        std_return=float(returns.std(ddof=1)) if n > 1 else 0.0,
        var=var,
        cvar=cvar,
        var_dollar=float(result.starting_value * var),
        cvar_dollar=float(result.starting_value * cvar),
        drawdown_percentiles=drawdown_percentiles,
        mean_drawdown=float(result.max_drawdowns.mean()),
        loss_probabilities=dict(result.loss_probabilities),
        contributions=contributions,
        warnings=tuple(result.warnings),
    )

    logger.info(
        "analyze_simulation: report built",
        num_paths=n,
        alpha=alpha,
        p50=percentiles['p50'],
        var=var,
        cvar=cvar,
    )

    return report


def compare_reports(
    current: Union[RiskReport, NoDataReport],
    previous: Union[RiskReport, NoDataReport, None],
) -> Dict[str, float]:
    """Change in headline statistics from the previous run to the current one.

    Returns:
        {stat: current - previous}; empty when either side has no data
    """
    if previous is None or not current.has_data or not previous.has_data:
        return {}

    deltas = {
        'mean_return': current.mean_return - previous.mean_return,
        'std_return': current.std_return - previous.std_return,
        'var': current.var - previous.var,
        'cvar': current.cvar - previous.cvar,
        'mean_drawdown': current.mean_drawdown - previous.mean_drawdown,
    }
    for label in RETURN_PERCENTILES:
        deltas[label] = current.percentiles[label] - previous.percentiles[label]
    for label, prob in current.loss_probabilities.items():
        if label in previous.loss_probabilities:
            deltas[f"prob_{label}"] = prob - previous.loss_probabilities[label]

    return deltas


def portfolio_volatility(
    weights: np.ndarray,
    cov: np.ndarray,
    horizon_days: int = 1,
) -> float:
    """Compute portfolio volatility.

    vol = sqrt(w' * Sigma * w) * sqrt(horizon_days), in the period of `cov`.

    Args:
        weights: Position weights (N x 1 array or flat array)
        cov: Covariance matrix (N x N)
        horizon_days: Number of `cov` periods in the horizon (default 1)

    Returns:
        Portfolio volatility (as decimal, not %)
    """
    weights = np.asarray(weights).flatten()

    if weights.shape[0] != cov.shape[0]:
        raise ValueError(
            f"Weights dimension {weights.shape[0]} doesn't match covariance {cov.shape[0]}"
        )

    if horizon_days < 1:
        raise ValueError(f"Horizon must be >= 1, got {horizon_days}")

    portfolio_var = weights @ cov @ weights

    if portfolio_var < -1e-10:
        raise ValueError(
            f"Negative portfolio variance ({portfolio_var:.6e}). "
            "Covariance matrix is not positive semi-definite."
        )
    # numerical noise
    portfolio_var = max(portfolio_var, 0.0)

    return float(np.sqrt(portfolio_var) * np.sqrt(horizon_days))


def marginal_contribution_to_risk(
    weights: np.ndarray,
    cov: np.ndarray,
) -> np.ndarray:
    """Marginal Contribution to Risk (MCTR) per position.

    MCTR_i = (Sigma * w)_i / sigma_p, the change in portfolio volatility from
    a unit increase in position i.  Zero when the portfolio has no volatility.
    """
    weights = np.asarray(weights).flatten()

    if weights.shape[0] != cov.shape[0]:
        raise ValueError(
            f"Weights dimension {weights.shape[0]} doesn't match covariance {cov.shape[0]}"
        )

    port_vol = portfolio_volatility(weights, cov)

    if port_vol == 0:
        logger.warning("marginal_contribution_to_risk: zero portfolio volatility")
        return np.zeros_like(weights, dtype=float)

    return (cov @ weights) / port_vol


def component_contribution_to_risk(
    weights: np.ndarray,
    cov: np.ndarray,
) -> np.ndarray:
    """Component Contribution to Risk per position: w_i * MCTR_i.

    Sums to portfolio volatility.
    """
    weights = np.asarray(weights).flatten()
    return weights * marginal_contribution_to_risk(weights, cov)


def concentration_metrics(
    weights: np.ndarray,
    tickers: List[str],
) -> Dict:
    """Compute concentration metrics.

    Args:
        weights: Position weights (as decimals or dollar amounts)
        tickers: Tickers corresponding to weights

    Returns:
        Dict with:
            - top_5_pct: Sum of top 5 absolute weights as % of gross
            - hhi: Herfindahl-Hirschman Index (0-10000)
            - top_5_names: Top 5 tickers by absolute weight
    """
    weights = np.asarray(weights).flatten()

    if len(weights) != len(tickers):
        raise ValueError(
            f"Weights length {len(weights)} doesn't match tickers length {len(tickers)}"
        )

    abs_weights = np.abs(weights)
    gross_exposure = np.sum(abs_weights)

    if gross_exposure == 0:
        logger.warning("concentration_metrics: zero gross exposure")
        return {
            'top_5_pct': 0.0,
            'hhi': 0.0,
            'top_5_names': []
        }

    normalized_weights = abs_weights / gross_exposure
    hhi = float(np.sum(normalized_weights ** 2) * 10000)

    top_5_indices = np.argsort(abs_weights)[::-1][:min(5, len(weights))]
    top_5_pct = float(np.sum(abs_weights[top_5_indices]) / gross_exposure * 100)

    return {
        'top_5_pct': top_5_pct,
        'hhi': hhi,
        'top_5_names': [tickers[i] for i in top_5_indices],
    }
