"""
Unit tests for optimization.py - Swap Optimization Module

Tests cover:
- Analytic risk decomposition (weights, contributions, incremental Sharpe)
- Risk-parity weights
- Candidate generation
- Swap ranking per objective and constraint rejection
- Swap matrix and simulation cross-check
"""

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose
from pydantic import ValidationError

from portsim.risk.errors import InvalidConfigError
from portsim.risk.models import DistributionParams, Position, SimulationConfig
from portsim.risk.optimization import (
    SwapCandidate,
    SwapConstraints,
    SwapObjective,
    build_risk_decomposition,
    generate_candidates,
    rank_swaps,
    risk_parity_weights,
    swap_matrix,
    validate_swaps_by_simulation,
)


@pytest.fixture
def universe_corr():
    tickers = ['AAA', 'BBB', 'CCC']
    corr = np.full((3, 3), 0.2)
    np.fill_diagonal(corr, 1.0)
    return pd.DataFrame(corr, index=tickers, columns=tickers)


@pytest.fixture
def universe_params():
    return {
        'AAA': DistributionParams(mu=0.15, sigma=0.20),
        'BBB': DistributionParams(mu=0.02, sigma=0.30),
        'CCC': DistributionParams(mu=0.10, sigma=0.15),
    }


@pytest.fixture
def decomposition(two_positions, universe_params, universe_corr):
    return build_risk_decomposition(two_positions, universe_params, universe_corr, risk_free_rate=0.04)


class TestBuildRiskDecomposition:
    """Tests for build_risk_decomposition function."""

    def test_weights_and_expected_return(self, decomposition):
        assert decomposition.tickers == ('AAA', 'BBB', 'CCC')
        assert decomposition.portfolio_value == pytest.approx(100_000.0)
        assert_allclose(decomposition.weights, [0.5, 0.5, 0.0])
        assert decomposition.expected_return == pytest.approx(0.5 * 0.15 + 0.5 * 0.02)

    def test_volatility_and_sharpe(self, decomposition):
        w = np.array([0.5, 0.5])
        cov = np.array([[0.04, 0.2 * 0.2 * 0.3], [0.2 * 0.2 * 0.3, 0.09]])
        vol = np.sqrt(w @ cov @ w)

        assert decomposition.volatility == pytest.approx(vol)
        assert decomposition.sharpe == pytest.approx((0.085 - 0.04) / vol)

    def test_risk_contributions_sum_to_one(self, decomposition):
        assert decomposition.risk_contribution.sum() == pytest.approx(1.0)
        assert decomposition.risk_contribution[2] == 0.0

    def test_incremental_sharpe(self, decomposition):
        k = 2
        asset_sharpe = (0.10 - 0.04) / 0.15
        rho = (decomposition.covariance @ decomposition.weights)[k] / (0.15 * decomposition.volatility)

        expected = asset_sharpe - rho * decomposition.sharpe
        assert decomposition.incremental_sharpe[k] == pytest.approx(expected)

    def test_cash_dilutes_weights(self, two_positions, universe_params, universe_corr):
        decomp = build_risk_decomposition(
            two_positions, universe_params, universe_corr, cash_balance=100_000.0, cash_rate=0.03,
        )

        assert_allclose(decomp.weights[:2], [0.25, 0.25])
        assert decomp.cash_weight == pytest.approx(0.5)
        assert decomp.expected_return == pytest.approx(0.25 * 0.15 + 0.25 * 0.02 + 0.5 * 0.03)

    def test_held_ticker_without_params_raises(self, two_positions, universe_corr):
        params = {'AAA': DistributionParams(mu=0.1, sigma=0.2)}

        with pytest.raises(InvalidConfigError, match="BBB"):
            build_risk_decomposition(two_positions, params, universe_corr)

    def test_unheld_ticker_without_params_dropped(self, two_positions, universe_params, universe_corr):
        params = {t: p for t, p in universe_params.items() if t != 'CCC'}

        decomp = build_risk_decomposition(two_positions, params, universe_corr)

        assert decomp.tickers == ('AAA', 'BBB')
        assert any('CCC' in w for w in decomp.warnings)

    def test_non_positive_value_raises(self, universe_params, universe_corr):
        positions = [Position(ticker='AAA', quantity=-10, price=100.0)]

        with pytest.raises(InvalidConfigError, match="must be positive"):
            build_risk_decomposition(positions, universe_params, universe_corr)

    def test_to_dict(self, decomposition):
        payload = decomposition.to_dict()

        assert set(payload['positions']) == {'AAA', 'BBB', 'CCC'}
        assert payload['positions']['CCC']['weight'] == 0.0


class TestRiskParityWeights:
    """Tests for risk_parity_weights function."""

    def test_equal_vol_uncorrelated_is_equal_weight(self):
        sigma = np.array([0.2, 0.2, 0.2])
        w = risk_parity_weights(sigma, np.diag(sigma ** 2))

        assert_allclose(w, [1 / 3] * 3, atol=1e-6)

    def test_inverse_vol_when_uncorrelated(self):
        sigma = np.array([0.1, 0.2, 0.4])
        w = risk_parity_weights(sigma, np.diag(sigma ** 2))

        expected = (1 / sigma) / (1 / sigma).sum()
        assert_allclose(w, expected, atol=1e-4)

    def test_weights_sum_to_one(self, decomposition):
        assert decomposition.risk_parity_weights.sum() == pytest.approx(1.0)
        assert (decomposition.risk_parity_weights >= 0).all()


class TestGenerateCandidates:
    """Tests for generate_candidates function."""

    def test_all_pairs(self, decomposition):
        pairs = {(c.sell, c.buy) for c in generate_candidates(decomposition)}

        assert pairs == {('AAA', 'BBB'), ('AAA', 'CCC'), ('BBB', 'AAA'), ('BBB', 'CCC')}

    def test_held_only(self, decomposition):
        pairs = {(c.sell, c.buy) for c in generate_candidates(decomposition, include_unheld=False)}

        assert pairs == {('AAA', 'BBB'), ('BBB', 'AAA')}


class TestSwapModels:
    """Tests for SwapCandidate and SwapConstraints validation."""

    def test_candidate_normalizes_tickers(self):
        assert SwapCandidate(sell=' aaa', buy='bbb').sell == 'AAA'

    def test_candidate_same_ticker_rejected(self):
        with pytest.raises(ValidationError):
            SwapCandidate(sell='AAA', buy='aaa')

    def test_constraints_range_checked(self):
        with pytest.raises(ValidationError):
            SwapConstraints(min_allocation=0.5, max_allocation=0.2)


class TestRankSwaps:
    """Tests for rank_swaps function."""

    def test_max_sharpe_ordering(self, two_positions, decomposition):
        ranking = rank_swaps(two_positions, generate_candidates(decomposition), decomposition)

        deltas = [r.delta_sharpe for r in ranking.ranked]
        assert deltas == sorted(deltas, reverse=True)
        assert ranking.ranked[0].sell == 'BBB'
        assert ranking.ranked[0].delta_sharpe > 0

    def test_default_notional_is_swap_size(self, two_positions, decomposition):
        ranking = rank_swaps(two_positions, generate_candidates(decomposition), decomposition, swap_size=0.02)

        assert all(r.notional == pytest.approx(2_000.0) for r in ranking.ranked)

    def test_analytic_delta_matches_recomputed_stats(self, two_positions, decomposition):
        ranking = rank_swaps(two_positions, [SwapCandidate(sell='BBB', buy='CCC')], decomposition)
        result = ranking.ranked[0]

        w = decomposition.weights.copy()
        w[1] -= 0.01
        w[2] += 0.01
        _, vol, sharpe = decomposition.portfolio_stats(w)

        assert result.new_volatility == pytest.approx(vol)
        assert result.delta_sharpe == pytest.approx(sharpe - decomposition.sharpe)

    def test_oversized_sell_rejected(self, two_positions, decomposition):
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='AAA', buy='CCC', notional=60_000.0)], decomposition,
        )

        assert ranking.ranked == ()
        assert 'exceeds' in ranking.rejected[0].reason

    def test_selling_unheld_rejected(self, two_positions, decomposition):
        ranking = rank_swaps(two_positions, [SwapCandidate(sell='CCC', buy='AAA')], decomposition)
        assert not ranking.rejected[0].accepted

    def test_max_allocation_rejects(self, two_positions, decomposition):
        constraints = SwapConstraints(max_allocation=0.5)
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='BBB', buy='AAA')], decomposition, constraints=constraints,
        )

        assert 'max allocation' in ranking.rejected[0].reason

    def test_max_positions_rejects(self, two_positions, decomposition):
        constraints = SwapConstraints(max_positions=2)
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='BBB', buy='CCC')], decomposition, constraints=constraints,
        )

        assert 'positions' in ranking.rejected[0].reason

    def test_min_allocation_rejects(self, two_positions, decomposition):
        constraints = SwapConstraints(min_allocation=0.05)
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='BBB', buy='CCC')], decomposition, constraints=constraints,
        )

        assert 'min allocation' in ranking.rejected[0].reason

    def test_target_return_requires_target(self, two_positions, decomposition):
        with pytest.raises(InvalidConfigError, match="target_return is required"):
            rank_swaps(two_positions, generate_candidates(decomposition), decomposition, objective='target_return')

    def test_target_return_ordering(self, two_positions, decomposition):
        ranking = rank_swaps(
            two_positions, generate_candidates(decomposition), decomposition,
            objective=SwapObjective.TARGET_RETURN, target_return=0.0,
        )

        gaps = [abs(r.new_return) for r in ranking.ranked]
        assert gaps == sorted(gaps)
        assert ranking.ranked[0].buy == 'BBB'

    def test_min_risk_keeps_return_floor(self, two_positions, decomposition):
        ranking = rank_swaps(
            two_positions, generate_candidates(decomposition), decomposition, objective='min_risk',
        )

        vols = [r.new_volatility for r in ranking.ranked]
        assert vols == sorted(vols)
        assert all(r.new_return >= decomposition.expected_return for r in ranking.ranked)
        assert any('below minimum' in (r.reason or '') for r in ranking.rejected)

    def test_unknown_objective_raises(self, two_positions, decomposition):
        with pytest.raises(InvalidConfigError, match="Unknown swap objective"):
            rank_swaps(two_positions, [], decomposition, objective='max_alpha')

    def test_top_n(self, two_positions, decomposition):
        ranking = rank_swaps(two_positions, generate_candidates(decomposition), decomposition, top_n=2)

        assert len(ranking.ranked) == 2
        assert ranking.top(1) == [ranking.ranked[0]]


class TestSwapMatrix:
    """Tests for swap_matrix function."""

    def test_shape_and_diagonal(self, decomposition):
        matrices = swap_matrix(decomposition)
        sharpe = matrices['delta_sharpe']

        assert list(sharpe.index) == ['AAA', 'BBB']
        assert_allclose(np.diag(sharpe.values), 0.0)

    def test_matches_ranked_swap(self, two_positions, decomposition):
        matrices = swap_matrix(decomposition, swap_size=0.01)
        ranking = rank_swaps(two_positions, [SwapCandidate(sell='BBB', buy='AAA')], decomposition)

        assert matrices['delta_sharpe'].loc['BBB', 'AAA'] == pytest.approx(ranking.ranked[0].delta_sharpe)


class TestValidateSwapsBySimulation:
    """Tests for validate_swaps_by_simulation function."""

    def test_common_random_numbers(self, two_positions, universe_params, decomposition):
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='BBB', buy='AAA', notional=10_000.0)], decomposition,
        )
        config = SimulationConfig(num_paths=5000, horizon_days=63, seed=21)

        validations = validate_swaps_by_simulation(decomposition, ranking.ranked, universe_params, config)

        assert len(validations) == 1
        v = validations[0]
        assert (v['sell'], v['buy']) == ('BBB', 'AAA')
        assert v['delta_mean'] > 0
        assert v['analytic_delta_sharpe'] == ranking.ranked[0].delta_sharpe

    def test_rejected_swaps_skipped(self, two_positions, universe_params, decomposition):
        ranking = rank_swaps(
            two_positions, [SwapCandidate(sell='CCC', buy='AAA')], decomposition,
        )
        config = SimulationConfig(num_paths=500, horizon_days=5, seed=1)

        assert validate_swaps_by_simulation(decomposition, ranking.rejected, universe_params, config) == []
