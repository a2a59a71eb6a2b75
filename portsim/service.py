"""Risk pipeline orchestration.

Wires the engine end to end for a caller holding positions and return
history: data quality checks, correlation estimation (with optional lag
adjustment), distribution estimation, Monte Carlo simulation, risk
reduction and, optionally, swap ranking.  Output is plain structured data.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from portsim.config import Settings, get_settings
from portsim.logging_config import configure_logging
from portsim.risk.correlation import (
    estimate_correlation,
    make_valid_correlation,
    top_correlated_pairs,
)
from portsim.risk.data_quality import build_data_quality_pack
from portsim.risk.distributions import estimate_distributions
from portsim.risk.errors import InsufficientDataError
from portsim.risk.lag import analyze_lags, apply_lag_adjustment
from portsim.risk.metrics import analyze_simulation, concentration_metrics
from portsim.risk.models import DistributionParams, Position, SimulationConfig
from portsim.risk.optimization import (
    SwapConstraints,
    build_risk_decomposition,
    generate_candidates,
    rank_swaps,
)
from portsim.risk.returns import returns_from_payload
from portsim.risk.simulation import CancellationToken, ProgressCallback, simulate

logger = structlog.get_logger(__name__)


def _coerce_returns(returns: Mapping[str, Any]) -> Dict[str, pd.Series]:
    """Accept either {ticker: pd.Series} or the market-data payload shape."""
    if all(isinstance(v, pd.Series) for v in returns.values()):
        return {t.strip().upper(): s for t, s in returns.items()}
    return returns_from_payload(returns)


def run_risk_pipeline(
    positions: Sequence[Position | Mapping],
    returns: Mapping[str, Any],
    config: Optional[SimulationConfig] = None,
    cash_balance: float = 0.0,
    overrides: Optional[Mapping[str, DistributionParams | Mapping]] = None,
    apply_lags: bool = False,
    optimize: bool = False,
    objective: str = "max_sharpe",
    settings: Optional[Settings] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> Dict[str, Any]:
    """Run the full risk pipeline.

    Steps:
    1. Validate positions and convert return payloads
    2. Data quality checks
    3. Correlation matrix (+ optional lag adjustment, then repair)
    4. Distribution parameters per position
    5. Monte Carlo simulation
    6. Risk report
    7. Optional swap ranking

    Logging is configured from settings.LOG_LEVEL unless the host process
    has already configured structlog.

    Returns:
        Dict with correlation, distributions, simulation, risk, swaps,
        data_quality, warnings and metadata.  When the inputs cannot support
        a simulation the same keys are present with empty values and
        metadata['error'] set.
    """
    settings = settings or get_settings()
    if not structlog.is_configured():
        configure_logging(settings.LOG_LEVEL)
    config = config or SimulationConfig.from_settings(settings)

    try:
        positions = [p if isinstance(p, Position) else Position(**dict(p)) for p in positions]
        if not positions:
            logger.warning("run_risk_pipeline: no positions")
            return _empty_result(config, "No positions found")

        returns_by_ticker = _coerce_returns(returns)
        tickers = list(dict.fromkeys(p.ticker for p in positions))
        warnings: List[str] = []

        logger.info(
            "run_risk_pipeline: starting",
            num_positions=len(positions),
            num_series=len(returns_by_ticker),
            method=config.correlation_method.value,
            window=config.history_window.value,
        )

        data_quality = build_data_quality_pack(positions, returns_by_ticker, window=config.window_days)
        warnings.extend(w["message"] for w in data_quality["warnings"])

        # Distributions first: positions without params cannot be simulated
        params, param_warnings = estimate_distributions(returns_by_ticker, tickers, overrides)
        warnings.extend(param_warnings)
        tickers = [t for t in tickers if t in params]
        if not tickers:
            return _empty_result(config, "No positions with usable distribution parameters", warnings)

        lag_info: Dict[str, Any] = {}
        if len(tickers) == 1:
            corr = pd.DataFrame(np.eye(1), index=tickers, columns=tickers)
        else:
            try:
                estimate = estimate_correlation(
                    returns_by_ticker,
                    method=config.correlation_method,
                    window_days=config.window_days,
                    use_ewma=config.use_ewma,
                    shrinkage_intensity=config.shrinkage_intensity,
                    cash_tickers=config.cash_tickers,
                    tickers=tickers,
                )
            except InsufficientDataError as e:
                logger.warning("run_risk_pipeline: correlation unavailable", error=str(e))
                return _empty_result(config, str(e), warnings)

            warnings.extend(estimate.warnings)
            corr = estimate.matrix

            if apply_lags:
                lag_result = analyze_lags(
                    returns_by_ticker,
                    ewma_lambda=estimate.ewma_lambda,
                    tickers=tickers,
                    window_days=config.window_days,
                )
                corr, adjustments = apply_lag_adjustment(corr, lag_result)
                corr = make_valid_correlation(corr)
                warnings.extend(lag_result.warnings)
                lag_info = {
                    "significant_pairs": [p.to_dict() for p in lag_result.significant_pairs],
                    "adjustments": adjustments,
                }

        sim_positions = [p for p in positions if p.ticker in params]
        excluded_value = sum(p.market_value for p in positions if p.ticker not in params)
        if excluded_value:
            warnings.append(f"{excluded_value:,.2f} of position value excluded from simulation")

        result = simulate(
            sim_positions,
            corr,
            params,
            config,
            cash_balance=cash_balance,
            progress_callback=progress_callback,
            cancel_token=cancel_token,
        )
        report = analyze_simulation(result)
        warnings.extend(result.warnings)

        swaps: Dict[str, Any] = {}
        if optimize:
            decomposition = build_risk_decomposition(
                sim_positions,
                params,
                corr,
                cash_balance=cash_balance,
                cash_rate=config.cash_rate,
                risk_free_rate=config.risk_free_rate,
            )
            ranking = rank_swaps(
                sim_positions,
                generate_candidates(decomposition),
                decomposition,
                objective=objective,
                constraints=SwapConstraints.from_settings(settings),
                swap_size=settings.SWAP_SIZE,
                top_n=10,
            )
            swaps = {
                "decomposition": decomposition.to_dict(),
                "ranked": [s.to_dict() for s in ranking.ranked],
                "num_rejected": len(ranking.rejected),
            }

        values = np.array([p.market_value for p in sim_positions])
        metadata = {
            "num_positions": len(sim_positions),
            "num_paths": config.num_paths,
            "horizon_days": config.horizon_days,
            "correlation_method": config.correlation_method.value,
            "history_window": config.history_window.value,
            "fat_tail_method": config.fat_tail_method.value,
            "quasi_random": config.use_quasi_random,
            "lag_adjusted": bool(apply_lags and len(tickers) > 1),
            "concentration": concentration_metrics(values, [p.ticker for p in sim_positions]),
            "elapsed_seconds": result.elapsed_seconds,
            "computed_at": datetime.now(timezone.utc).isoformat(),
        }

        logger.info(
            "run_risk_pipeline: complete",
            num_positions=len(sim_positions),
            num_warnings=len(warnings),
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )

        return {
            "correlation": {
                "tickers": list(corr.index),
                "matrix": corr.to_numpy().tolist(),
                "top_pairs": top_correlated_pairs(corr, n=10) if len(corr) > 1 else [],
            },
            "lag": lag_info,
            "distributions": {t: p.model_dump() for t, p in params.items()},
            "simulation": result.to_dict(),
            "risk": report.to_dict(),
            "swaps": swaps,
            "data_quality": data_quality,
            "warnings": warnings,
            "metadata": metadata,
        }

    except Exception:
        logger.exception("run_risk_pipeline: failed")
        raise


def _empty_result(
    config: SimulationConfig,
    error: str,
    warnings: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Return an empty pipeline result structure."""
    return {
        "correlation": {"tickers": [], "matrix": [], "top_pairs": []},
        "lag": {},
        "distributions": {},
        "simulation": {},
        "risk": {"has_data": False, "reason": error, "warnings": list(warnings or [])},
        "swaps": {},
        "data_quality": {"coverage": {}, "integrity": {}, "warnings": []},
        "warnings": list(warnings or []),
        "metadata": {
            "num_paths": config.num_paths,
            "correlation_method": config.correlation_method.value,
            "history_window": config.history_window.value,
            "error": error,
            "computed_at": datetime.now(timezone.utc).isoformat(),
        },
    }
