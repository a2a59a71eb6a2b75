"""
Portfolio Simulation Engine

Monte Carlo risk engine for portfolio analysis.
Pure computation modules operating on pandas and numpy inputs.

Modules:
- returns: Return series construction, validation and alignment
- correlation: Correlation estimation (sample, EWMA, shrinkage) and PSD repair
- covariance: Shrinkage intensity and correlation/covariance conversion
- lag: Cross-timezone lead/lag detection and adjustment
- distributions: Per-position return distribution parameters
- simulation: Correlated Monte Carlo path generation
- metrics: Percentiles, VaR/CVaR, drawdowns, contributions
- optimization: Risk decomposition and swap ranking
- data_quality: Coverage and integrity checks on return history
"""

# Errors
from .errors import (
    RiskEngineError,
    InsufficientDataError,
    InvalidMatrixError,
    InvalidConfigError,
    NumericInstabilityError,
    SimulationCancelled,
)

# Models
from .models import (
    CorrelationMethod,
    FatTailMethod,
    HistoryWindow,
    Position,
    DistributionParams,
    SimulationConfig,
    SimulationResult,
    RiskReport,
    NoDataReport,
)

# Returns module
from .returns import (
    to_return_series,
    returns_from_payload,
    trim_to_window,
)

# Correlation module
from .correlation import (
    CorrelationEstimate,
    estimate_correlation,
    pairwise_correlation,
    weighted_correlation,
    shrink_correlation,
    zero_cash_correlations,
    make_valid_correlation,
    validate_correlation_matrix,
    half_life_to_lambda,
    lambda_to_half_life,
    window_to_days,
    top_correlated_pairs,
)

# Covariance module
from .covariance import (
    ledoit_wolf_intensity,
    correlation_to_covariance,
)

# Lag module
from .lag import (
    LagPair,
    LagAnalysisResult,
    analyze_lags,
    apply_lag_adjustment,
)

# Distributions module
from .distributions import (
    estimate_distribution,
    estimate_distributions,
    historical_params,
    params_from_percentiles,
    estimate_tail_df,
)

# Simulation module
from .simulation import (
    CancellationToken,
    SimulationRunner,
    simulate,
)

# Metrics module
from .metrics import (
    analyze_simulation,
    compare_reports,
    value_at_risk,
    conditional_value_at_risk,
    portfolio_volatility,
    marginal_contribution_to_risk,
    component_contribution_to_risk,
    concentration_metrics,
)

# Optimization module
from .optimization import (
    SwapObjective,
    SwapConstraints,
    SwapCandidate,
    SwapResult,
    SwapRanking,
    RiskDecomposition,
    build_risk_decomposition,
    generate_candidates,
    rank_swaps,
    swap_matrix,
    validate_swaps_by_simulation,
)

# Data quality module
from .data_quality import build_data_quality_pack

__all__ = [
    # Errors
    'RiskEngineError',
    'InsufficientDataError',
    'InvalidMatrixError',
    'InvalidConfigError',
    'NumericInstabilityError',
    'SimulationCancelled',
    # Models
    'CorrelationMethod',
    'FatTailMethod',
    'HistoryWindow',
    'Position',
    'DistributionParams',
    'SimulationConfig',
    'SimulationResult',
    'RiskReport',
    'NoDataReport',
    # Returns
    'to_return_series',
    'returns_from_payload',
    'trim_to_window',
    # Correlation
    'CorrelationEstimate',
    'estimate_correlation',
    'pairwise_correlation',
    'weighted_correlation',
    'shrink_correlation',
    'zero_cash_correlations',
    'make_valid_correlation',
    'validate_correlation_matrix',
    'half_life_to_lambda',
    'lambda_to_half_life',
    'window_to_days',
    'top_correlated_pairs',
    # Covariance
    'ledoit_wolf_intensity',
    'correlation_to_covariance',
    # Lag
    'LagPair',
    'LagAnalysisResult',
    'analyze_lags',
    'apply_lag_adjustment',
    # Distributions
    'estimate_distribution',
    'estimate_distributions',
    'historical_params',
    'params_from_percentiles',
    'estimate_tail_df',
    # Simulation
    'CancellationToken',
    'SimulationRunner',
    'simulate',
    # Metrics
    'analyze_simulation',
    'compare_reports',
    'value_at_risk',
    'conditional_value_at_risk',
    'portfolio_volatility',
    'marginal_contribution_to_risk',
    'component_contribution_to_risk',
    'concentration_metrics',
    # Optimization
    'SwapObjective',
    'SwapConstraints',
    'SwapCandidate',
    'SwapResult',
    'SwapRanking',
    'RiskDecomposition',
    'build_risk_decomposition',
    'generate_candidates',
    'rank_swaps',
    'swap_matrix',
    'validate_swaps_by_simulation',
    # Data quality
    'build_data_quality_pack',
]
