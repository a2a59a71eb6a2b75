"""
Unit tests for simulation.py - Monte Carlo Simulation Module

Tests cover:
- Diversification through the correlation/Cholesky pipeline
- Degenerate (zero volatility) positions
- Determinism across runs and worker counts
- Student-t (run-wide and per-position df) and quasi-random sampling
- Contribution bookkeeping, shorts and cash
- Validation, cancellation, progress reporting and the runner
"""

import threading

import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose, assert_array_equal

from portsim.risk.correlation import make_valid_correlation
from portsim.risk.errors import (
    InvalidConfigError,
    InvalidMatrixError,
    SimulationCancelled,
)
from portsim.risk.models import DistributionParams, FatTailMethod, Position, SimulationConfig
from portsim.risk.simulation import (
    CancellationToken,
    SimulationRunner,
    percentile_index,
    simulate,
)


def _corr(rho: float) -> pd.DataFrame:
    return pd.DataFrame([[1.0, rho], [rho, 1.0]], index=['AAA', 'BBB'], columns=['AAA', 'BBB'])


class TestPercentileIndex:
    """Tests for percentile_index function."""

    def test_floor_rank(self):
        assert percentile_index(100, 0.05) == 5
        assert percentile_index(10, 0.5) == 5

    def test_clipped_to_last(self):
        assert percentile_index(10, 1.0) == 9

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            percentile_index(0, 0.5)


class TestDiversification:
    """End-to-end check of the correlation pipeline."""

    def test_uncorrelated_pair_diversifies(self, two_positions, two_params):
        config = SimulationConfig(num_paths=20_000, horizon_days=252, seed=1)

        uncorrelated = simulate(two_positions, _corr(0.0), two_params, config)
        correlated = simulate(two_positions, _corr(0.95), two_params, config)

        std_uncorrelated = uncorrelated.terminal_returns.std()
        std_correlated = correlated.terminal_returns.std()

        assert std_uncorrelated < 0.25
        assert std_correlated > 0.27
        assert std_correlated == pytest.approx(0.30, abs=0.04)

    def test_single_asset_volatility_matches_sigma(self):
        config = SimulationConfig(num_paths=20_000, horizon_days=252, seed=2)
        result = simulate(
            [Position(ticker='AAA', quantity=1, price=100.0)],
            np.eye(1),
            {'AAA': DistributionParams(mu=0.0, sigma=0.20)},
            config,
        )

        log_returns = np.log1p(result.terminal_returns)
        assert log_returns.std() == pytest.approx(0.20, abs=0.01)


class TestDegenerate:
    """Zero-volatility and zero-value portfolios."""

    def test_zero_sigma_gives_point_mass_at_zero(self):
        config = SimulationConfig(num_paths=1000, horizon_days=252, seed=3)
        result = simulate(
            [Position(ticker='AAA', quantity=10, price=100.0)],
            np.eye(1),
            {'AAA': DistributionParams(mu=0.0, sigma=0.0)},
            config,
        )

        assert_array_equal(result.terminal_returns, np.zeros(1000))
        assert_array_equal(result.max_drawdowns, np.zeros(1000))
        assert result.terminal_values[0] == pytest.approx(1000.0)

    def test_zero_portfolio_value_returns_zeros(self, two_params):
        positions = [
            Position(ticker='AAA', quantity=100, price=100.0),
            Position(ticker='BBB', quantity=-200, price=50.0),
        ]
        config = SimulationConfig(num_paths=500, horizon_days=5, seed=4)

        result = simulate(positions, _corr(0.0), two_params, config)

        assert result.starting_value == 0.0
        assert_array_equal(result.terminal_values, np.zeros(500))
        assert_array_equal(result.weights, np.zeros(2))
        assert any('zero or undefined' in w for w in result.warnings)

    def test_negative_portfolio_value_raises(self, two_params):
        positions = [
            Position(ticker='AAA', quantity=100, price=100.0),
            Position(ticker='BBB', quantity=-400, price=50.0),
        ]

        with pytest.raises(InvalidConfigError, match="must be positive"):
            simulate(positions, _corr(0.0), two_params, SimulationConfig(num_paths=100, horizon_days=5))


class TestDeterminism:
    """Seeded runs are reproducible."""

    def test_same_seed_same_result(self, two_positions, two_params, small_config):
        a = simulate(two_positions, _corr(0.3), two_params, small_config)
        b = simulate(two_positions, _corr(0.3), two_params, small_config)

        assert_array_equal(a.terminal_returns, b.terminal_returns)
        assert_array_equal(a.max_drawdowns, b.max_drawdowns)
        assert_array_equal(a.position_contributions, b.position_contributions)

    def test_different_seed_differs(self, two_positions, two_params, small_config):
        a = simulate(two_positions, _corr(0.3), two_params, small_config)
        b = simulate(two_positions, _corr(0.3), two_params, small_config.model_copy(update={'seed': 12}))

        assert not np.array_equal(a.terminal_returns, b.terminal_returns)

    def test_worker_count_does_not_change_output(self, two_positions, two_params, small_config):
        sequential = simulate(two_positions, _corr(0.3), two_params, small_config)
        threaded = simulate(
            two_positions, _corr(0.3), two_params,
            small_config.model_copy(update={'max_workers': 4}),
        )

        assert_array_equal(sequential.terminal_returns, threaded.terminal_returns)

    def test_quasi_random_is_deterministic(self, two_positions, two_params, small_config):
        config = small_config.model_copy(update={'use_quasi_random': True})

        a = simulate(two_positions, _corr(0.3), two_params, config)
        b = simulate(two_positions, _corr(0.3), two_params, config.model_copy(update={'max_workers': 3}))

        assert_array_equal(a.terminal_returns, b.terminal_returns)


class TestSampling:
    """Fat tails, quasi-random coverage and skew."""

    def test_student_t_has_fatter_tails(self):
        position = [Position(ticker='AAA', quantity=1, price=100.0)]
        params = {'AAA': DistributionParams(mu=0.0, sigma=0.20)}
        base = SimulationConfig(num_paths=20_000, horizon_days=1, seed=5)

        gaussian = simulate(position, np.eye(1), params, base).terminal_returns
        student = simulate(
            position, np.eye(1), params,
            base.model_copy(update={'fat_tail_method': FatTailMethod.STUDENT_T, 'student_t_df': 5.0}),
        ).terminal_returns

        def kurtosis(x):
            z = (x - x.mean()) / x.std()
            return float(np.mean(z ** 4))

        assert student.std() == pytest.approx(gaussian.std(), rel=0.1)
        assert kurtosis(student) > kurtosis(gaussian) + 1.0

    def test_position_tail_df_overrides_run_df(self):
        position = [Position(ticker='AAA', quantity=1, price=100.0)]
        config = SimulationConfig(
            num_paths=20_000, horizon_days=1, seed=5,
            fat_tail_method=FatTailMethod.STUDENT_T, student_t_df=5.0,
        )

        def kurtosis(x):
            z = (x - x.mean()) / x.std()
            return float(np.mean(z ** 4))

        fat = simulate(
            position, np.eye(1), {'AAA': DistributionParams(mu=0.0, sigma=0.20, tail_df=3.0)}, config
        ).terminal_returns
        thin = simulate(
            position, np.eye(1), {'AAA': DistributionParams(mu=0.0, sigma=0.20, tail_df=30.0)}, config
        ).terminal_returns

        assert kurtosis(fat) > kurtosis(thin) + 2.0

    def test_mixed_tail_dfs_per_position(self):
        positions = [
            Position(ticker='AAA', quantity=1, price=100.0),
            Position(ticker='BBB', quantity=1, price=100.0),
        ]
        params = {
            'AAA': DistributionParams(mu=0.0, sigma=0.20, tail_df=3.0),
            'BBB': DistributionParams(mu=0.0, sigma=0.20),
        }
        config = SimulationConfig(
            num_paths=20_000, horizon_days=1, seed=8,
            fat_tail_method=FatTailMethod.STUDENT_T, student_t_df=30.0,
        )

        contributions = simulate(positions, np.eye(2), params, config).position_contributions

        def kurtosis(x):
            z = (x - x.mean()) / x.std()
            return float(np.mean(z ** 4))

        assert np.isfinite(contributions).all()
        assert kurtosis(contributions[:, 0]) > kurtosis(contributions[:, 1]) + 2.0

    def test_mixed_tail_dfs_quasi_random_deterministic(self):
        positions = [
            Position(ticker='AAA', quantity=1, price=100.0),
            Position(ticker='BBB', quantity=1, price=100.0),
        ]
        params = {
            'AAA': DistributionParams(mu=0.0, sigma=0.20, tail_df=4.0),
            'BBB': DistributionParams(mu=0.0, sigma=0.20, tail_df=12.0),
        }
        config = SimulationConfig(
            num_paths=2048, horizon_days=5, seed=9, batch_size=512,
            fat_tail_method=FatTailMethod.STUDENT_T, use_quasi_random=True,
        )

        a = simulate(positions, np.eye(2), params, config)
        b = simulate(positions, np.eye(2), params, config)

        assert_array_equal(a.terminal_returns, b.terminal_returns)
        assert np.isfinite(a.terminal_returns).all()

    def test_gaussian_ignores_tail_df(self, small_config):
        position = [Position(ticker='AAA', quantity=1, price=100.0)]

        plain = simulate(position, np.eye(1), {'AAA': DistributionParams(mu=0.05, sigma=0.2)}, small_config)
        tailed = simulate(
            position, np.eye(1), {'AAA': DistributionParams(mu=0.05, sigma=0.2, tail_df=3.0)}, small_config
        )

        assert_array_equal(plain.terminal_returns, tailed.terminal_returns)

    def test_quasi_random_moments(self):
        config = SimulationConfig(num_paths=4096, horizon_days=1, seed=6, use_quasi_random=True)
        result = simulate(
            [Position(ticker='AAA', quantity=1, price=100.0)],
            np.eye(1),
            {'AAA': DistributionParams(mu=0.0, sigma=np.sqrt(252) * 0.01)},
            config,
        )

        assert result.terminal_returns.mean() == pytest.approx(0.0, abs=5e-4)
        assert result.terminal_returns.std() == pytest.approx(0.01, rel=0.02)

    def test_negative_skew_shifts_tail(self):
        position = [Position(ticker='AAA', quantity=1, price=100.0)]
        config = SimulationConfig(num_paths=20_000, horizon_days=1, seed=7)

        skewed = simulate(
            position, np.eye(1), {'AAA': DistributionParams(mu=0.0, sigma=0.3, skew=-2.0)}, config
        ).terminal_returns

        centered = skewed - skewed.mean()
        assert np.mean(centered ** 3) < 0
        assert skewed.mean() == pytest.approx(0.0, abs=1e-3)


class TestContributions:
    """Per-position bookkeeping, shorts and cash."""

    def test_contributions_sum_to_terminal_return(self, two_positions, two_params, small_config):
        result = simulate(two_positions, _corr(0.2), two_params, small_config, cash_balance=10_000.0)

        total = result.position_contributions.sum(axis=1) + result.cash_contributions
        assert_allclose(total, result.terminal_returns, atol=1e-12)

    def test_percentile_contributions_come_from_ranked_path(self, two_positions, two_params, small_config):
        result = simulate(two_positions, _corr(0.2), two_params, small_config)

        order = np.argsort(result.terminal_returns, kind='stable')
        p5_path = order[percentile_index(result.num_paths, 0.05)]

        assert_array_equal(result.contribution_percentiles['p5'], result.position_contributions[p5_path])
        assert set(result.contribution_percentiles) == {'p5', 'p25', 'p50', 'p75', 'p95'}

    def test_cash_compounds_at_cash_rate(self):
        config = SimulationConfig(num_paths=100, horizon_days=252, seed=8, cash_rate=0.05)
        result = simulate(
            [Position(ticker='AAA', quantity=1, price=100.0)],
            np.eye(1),
            {'AAA': DistributionParams(mu=0.0, sigma=0.0)},
            config,
            cash_balance=900.0,
        )

        expected = 900.0 * ((1 + 0.05 / 252) ** 252 - 1) / 1000.0
        assert_allclose(result.terminal_returns, expected, rtol=1e-10)

    def test_short_position_gains_when_asset_falls(self):
        positions = [
            Position(ticker='AAA', quantity=100, price=100.0),
            Position(ticker='BBB', quantity=-50, price=100.0),
        ]
        params = {
            'AAA': DistributionParams(mu=0.0, sigma=0.0),
            'BBB': DistributionParams(mu=-0.5, sigma=0.0),
        }
        config = SimulationConfig(num_paths=100, horizon_days=252, seed=9)

        result = simulate(positions, _corr(0.0), params, config)

        assert_allclose(result.weights, [2.0, -1.0])
        assert (result.terminal_returns > 0).all()
        assert (result.position_contributions[:, 1] > 0).all()

    def test_loss_probabilities(self, two_positions, two_params, small_config):
        result = simulate(two_positions, _corr(0.5), two_params, small_config)
        probs = result.loss_probabilities

        assert probs['below_0'] == pytest.approx(np.mean(result.terminal_returns < 0))
        assert probs['below_0'] >= probs['below_10'] >= probs['below_20'] >= probs['below_30']

    def test_arrays_are_read_only(self, two_positions, two_params, small_config):
        result = simulate(two_positions, _corr(0.0), two_params, small_config)

        with pytest.raises(ValueError):
            result.terminal_returns[0] = 1.0


class TestValidation:
    """Preconditions checked before any sampling."""

    def test_unrepaired_matrix_rejected(self, two_positions, two_params, small_config):
        asymmetric = pd.DataFrame([[1.0, 0.2], [0.6, 1.0]], index=['AAA', 'BBB'], columns=['AAA', 'BBB'])

        with pytest.raises(InvalidMatrixError, match="not symmetric"):
            simulate(two_positions, asymmetric, two_params, small_config)

    def test_repaired_matrix_accepted(self, two_positions, two_params, small_config):
        asymmetric = pd.DataFrame([[1.0, 0.2], [0.6, 1.0]], index=['AAA', 'BBB'], columns=['AAA', 'BBB'])

        result = simulate(two_positions, make_valid_correlation(asymmetric), two_params, small_config)

        assert result.num_paths == small_config.num_paths

    def test_matrix_reordered_by_label(self, two_positions, two_params, small_config):
        forward = _corr(0.4)
        reversed_ = forward.loc[['BBB', 'AAA'], ['BBB', 'AAA']]

        a = simulate(two_positions, forward, two_params, small_config)
        b = simulate(two_positions, reversed_, two_params, small_config)

        assert_array_equal(a.terminal_returns, b.terminal_returns)

    def test_missing_ticker_in_matrix(self, two_positions, two_params, small_config):
        corr = pd.DataFrame([[1.0]], index=['AAA'], columns=['AAA'])

        with pytest.raises(InvalidMatrixError, match="BBB"):
            simulate(two_positions, corr, two_params, small_config)

    def test_missing_params(self, two_positions, small_config):
        with pytest.raises(InvalidConfigError, match="No distribution params"):
            simulate(two_positions, _corr(0.0), {'AAA': DistributionParams(mu=0, sigma=0.2)}, small_config)

    def test_invalid_num_paths(self):
        with pytest.raises(InvalidConfigError, match="num_paths"):
            SimulationConfig.build(num_paths=0)

    def test_low_path_count_warns(self, two_positions, two_params):
        config = SimulationConfig(num_paths=200, horizon_days=5, seed=1)
        result = simulate(two_positions, _corr(0.0), two_params, config)

        assert any('below 1000' in w for w in result.warnings)

    def test_dict_inputs_accepted(self, small_config):
        result = simulate(
            [{'ticker': 'aaa', 'quantity': 10, 'price': 5.0}],
            np.eye(1),
            {'AAA': {'mu': 0.05, 'sigma': 0.1}},
            small_config,
        )

        assert result.tickers == ('AAA',)


class TestProgressAndCancellation:
    """Progress callback and cooperative cancellation."""

    def test_progress_phases(self, two_positions, two_params, small_config):
        events = []
        simulate(two_positions, _corr(0.0), two_params, small_config,
                 progress_callback=lambda phase, current, total: events.append((phase, current, total)))

        num_batches = -(-small_config.num_paths // small_config.batch_size)
        simulate_events = [e for e in events if e[0] == 'simulate']

        assert events[0][0] == 'prepare'
        assert events[-1] == ('aggregate', 1, 1)
        assert simulate_events == [('simulate', k, num_batches) for k in range(1, num_batches + 1)]

    def test_cancelled_token_stops_run(self, two_positions, two_params, small_config):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(SimulationCancelled):
            simulate(two_positions, _corr(0.0), two_params, small_config, cancel_token=token)

    def test_cancel_at_batch_boundary(self, two_positions, two_params, small_config):
        token = CancellationToken()
        seen = []

        def on_progress(phase, current, total):
            if phase == 'simulate':
                seen.append(current)
                if current == 2:
                    token.cancel()

        with pytest.raises(SimulationCancelled):
            simulate(two_positions, _corr(0.0), two_params, small_config,
                     progress_callback=on_progress, cancel_token=token)

        assert seen == [1, 2]


class TestSimulationRunner:
    """Tests for SimulationRunner."""

    def test_keeps_previous_result(self, two_positions, two_params, small_config):
        runner = SimulationRunner()

        first = runner.run(two_positions, _corr(0.0), two_params, small_config)
        second = runner.run(two_positions, _corr(0.9), two_params, small_config)

        assert runner.current is second
        assert runner.previous is first

    def test_new_run_cancels_in_flight_run(self, two_positions, two_params):
        runner = SimulationRunner()
        slow_config = SimulationConfig(num_paths=50_000, horizon_days=100, seed=1, batch_size=100)
        started = threading.Event()
        errors = []

        def on_progress(phase, current, total):
            if phase == 'simulate':
                started.set()

        def first_run():
            try:
                runner.run(two_positions, _corr(0.0), two_params, slow_config, progress_callback=on_progress)
            except SimulationCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=first_run)
        worker.start()
        assert started.wait(timeout=30)

        quick = SimulationConfig(num_paths=100, horizon_days=5, seed=2)
        result = runner.run(two_positions, _corr(0.0), two_params, quick)
        worker.join(timeout=30)

        assert len(errors) == 1
        assert runner.current is result
