"""
Unit tests for lag.py - Lag Analysis Module

Tests cover:
- Lagged correlation on shifted overlaps
- Best-lag detection and antisymmetry
- Significance flag
- Lag adjustment never weakening a pair
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from portsim.risk.correlation import estimate_correlation, make_valid_correlation, validate_correlation_matrix
from portsim.risk.errors import InvalidConfigError
from portsim.risk.lag import (
    MIN_LAG_OBS,
    analyze_lags,
    analyze_pair,
    apply_lag_adjustment,
    lagged_correlation,
)


class TestLaggedCorrelation:
    """Tests for lagged_correlation function."""

    def test_lag_zero_is_plain_correlation(self):
        rng = np.random.default_rng(0)
        x = rng.normal(size=100)
        y = 0.5 * x + rng.normal(size=100)

        assert lagged_correlation(x, y, 0) == pytest.approx(np.corrcoef(x, y)[0, 1])

    def test_positive_lag_pairs_x_with_earlier_y(self):
        rng = np.random.default_rng(1)
        y = rng.normal(size=100)
        x = np.empty(100)
        x[0] = 0.0
        x[1:] = y[:-1]

        assert lagged_correlation(x, y, 1) == pytest.approx(1.0)
        assert lagged_correlation(y, x, -1) == pytest.approx(1.0)

    def test_short_overlap_skipped(self):
        x = np.random.default_rng(2).normal(size=MIN_LAG_OBS)

        assert lagged_correlation(x, x, 0) is not None
        assert lagged_correlation(x, x, 1) is None


class TestAnalyzeLags:
    """Tests for analyze_pair and analyze_lags."""

    def test_detects_one_day_lead(self, lagged_returns):
        pair = analyze_pair('ADR', 'HOME', lagged_returns['ADR'], lagged_returns['HOME'])

        assert pair.best_lag == 1
        assert abs(pair.best_correlation) > abs(pair.correlations[0])
        assert pair.significant
        assert pair.improvement == pytest.approx(abs(pair.best_correlation) - abs(pair.correlations[0]))

    def test_best_lag_matrix_is_antisymmetric(self, lagged_returns):
        result = analyze_lags(lagged_returns, tickers=['ADR', 'HOME'])

        assert result.best_lag.loc['ADR', 'HOME'] == 1
        assert result.best_lag.loc['HOME', 'ADR'] == -1
        assert result.best_correlation.loc['ADR', 'HOME'] == result.best_correlation.loc['HOME', 'ADR']
        assert result.num_significant == 1

    def test_lag_matrices_mirror(self, lagged_returns):
        result = analyze_lags(lagged_returns, tickers=['ADR', 'HOME'])

        assert result.lag_matrices[1].loc['ADR', 'HOME'] == result.lag_matrices[-1].loc['HOME', 'ADR']
        assert_allclose(np.diag(result.lag_matrices[0].values), 1.0)

    def test_same_day_pair_keeps_lag_zero(self, sample_returns):
        result = analyze_lags(sample_returns, tickers=['AAPL', 'GOOGL'])
        pair = result.pairs[0]

        assert pair.best_lag == 0
        assert not pair.significant

    def test_short_pair_skipped_with_warning(self, sample_returns):
        returns = {'AAPL': sample_returns['AAPL'], 'IPO': sample_returns['MSFT'].iloc[-20:]}

        result = analyze_lags(returns)

        assert result.pairs == ()
        assert np.isnan(result.best_correlation.loc['AAPL', 'IPO'])
        assert any('IPO' in w for w in result.warnings)

    def test_ewma_lambda_changes_estimates(self, lagged_returns):
        equal = analyze_lags(lagged_returns).pairs[0]
        weighted = analyze_lags(lagged_returns, ewma_lambda=0.97).pairs[0]

        assert weighted.correlations[0] != pytest.approx(equal.correlations[0], abs=1e-12)

    def test_invalid_lambda_raises(self, lagged_returns):
        with pytest.raises(InvalidConfigError, match="Lambda"):
            analyze_lags(lagged_returns, ewma_lambda=1.5)


class TestApplyLagAdjustment:
    """Tests for apply_lag_adjustment function."""

    def test_adjustment_never_decreases_abs_correlation(self, lagged_returns, sample_returns):
        returns = dict(sample_returns)
        returns.update(lagged_returns)
        returns['ADR'] = returns['ADR'].reindex(sample_returns['AAPL'].index).dropna()
        returns['HOME'] = returns['HOME'].reindex(sample_returns['AAPL'].index).dropna()

        corr = estimate_correlation(returns, 'sample', 252).matrix
        lag_result = analyze_lags(returns, window_days=252)

        adjusted, adjustments = apply_lag_adjustment(corr, lag_result)

        assert np.all(np.abs(adjusted.values) >= np.abs(corr.values) - 1e-12)
        assert any({a['ticker_a'], a['ticker_b']} == {'ADR', 'HOME'} for a in adjustments)

    def test_adjusted_matrix_passes_repair(self, lagged_returns):
        corr = estimate_correlation(lagged_returns, 'sample', 252).matrix
        adjusted, _ = apply_lag_adjustment(corr, analyze_lags(lagged_returns))

        repaired = make_valid_correlation(adjusted)

        validate_correlation_matrix(repaired)
        assert adjusted.loc['HOME', 'ADR'] == adjusted.loc['ADR', 'HOME']

    def test_threshold_blocks_small_gains(self, lagged_returns):
        corr = estimate_correlation(lagged_returns, 'sample', 252).matrix
        lag_result = analyze_lags(lagged_returns)

        adjusted, adjustments = apply_lag_adjustment(corr, lag_result, threshold=1.0)

        assert adjustments == []
        assert_allclose(adjusted.values, corr.values)

    def test_accepts_ndarray(self, lagged_returns):
        lag_result = analyze_lags(lagged_returns)
        adjusted, adjustments = apply_lag_adjustment(np.eye(2), lag_result)

        assert list(adjusted.index) == list(lag_result.tickers)
        assert len(adjustments) == 1
