"""
Shared test fixtures for the simulation engine test suite.

Provides consistent test data across all test modules:
- Per-ticker daily return series with correlation structure
- Positions, distribution parameters and small simulation configs
"""

import pytest
import numpy as np
import pandas as pd

from portsim.risk.models import DistributionParams, Position, SimulationConfig


@pytest.fixture
def sample_tickers():
    """Standard list of tickers used across tests."""
    return ['AAPL', 'GOOGL', 'MSFT', 'TSLA', 'AMZN']


@pytest.fixture
def sample_returns_frame(sample_tickers):
    """Returns DataFrame (300 x 5) with correlation structure.

    GOOGL is correlated with AAPL, MSFT correlated with AAPL, the rest independent.
    """
    np.random.seed(42)
    dates = pd.bdate_range('2023-01-02', periods=300)

    data = np.random.normal(0.0004, 0.02, (len(dates), len(sample_tickers)))
    data[:, 1] = 0.7 * data[:, 0] + 0.3 * data[:, 1]
    data[:, 2] = 0.5 * data[:, 0] + 0.5 * data[:, 2]

    return pd.DataFrame(data, index=dates, columns=sample_tickers)


@pytest.fixture
def sample_returns(sample_returns_frame):
    """{ticker: pd.Series} view of sample_returns_frame."""
    return {t: sample_returns_frame[t].rename(t) for t in sample_returns_frame.columns}


@pytest.fixture
def lagged_returns():
    """Two series where ADR follows HOME with a one-day delay.

    ADR[t] = 0.8 * HOME[t-1] + noise, so the same-day correlation is weak
    and the one-day lagged correlation is strong.
    """
    rng = np.random.default_rng(7)
    dates = pd.bdate_range('2023-01-02', periods=260)

    home = rng.normal(0, 0.02, len(dates))
    adr = np.empty(len(dates))
    adr[0] = rng.normal(0, 0.02)
    adr[1:] = 0.8 * home[:-1] + rng.normal(0, 0.008, len(dates) - 1)

    return {
        'HOME': pd.Series(home, index=dates, name='HOME'),
        'ADR': pd.Series(adr, index=dates, name='ADR'),
    }


@pytest.fixture
def two_positions():
    """Two long positions worth $50,000 each."""
    return [
        Position(ticker='AAA', quantity=500, price=100.0),
        Position(ticker='BBB', quantity=1000, price=50.0),
    ]


@pytest.fixture
def two_params():
    """Identical 30% vol, zero drift, no skew distributions for AAA and BBB."""
    return {
        'AAA': DistributionParams(mu=0.0, sigma=0.30),
        'BBB': DistributionParams(mu=0.0, sigma=0.30),
    }


@pytest.fixture
def small_config():
    """Fast seeded config for behavioural tests."""
    return SimulationConfig(num_paths=2000, horizon_days=21, seed=11, batch_size=256)
