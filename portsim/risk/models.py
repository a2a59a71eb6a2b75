"""
Engine Models

Pydantic models for engine inputs (positions, distribution parameters,
simulation configuration) and frozen dataclasses for the results the engine
hands back to its collaborators.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidConfigError

TRADING_DAYS = 252

WINDOW_DAYS = {
    '6mo': 126,
    '1y': 252,
    '2y': 504,
    '3y': 756,
}


class CorrelationMethod(str, Enum):
    SAMPLE = "sample"
    EWMA = "ewma"
    LEDOIT_WOLF = "ledoit_wolf"


class FatTailMethod(str, Enum):
    GAUSSIAN = "gaussian"
    STUDENT_T = "student_t"


class HistoryWindow(str, Enum):
    SIX_MONTHS = "6mo"
    ONE_YEAR = "1y"
    TWO_YEARS = "2y"
    THREE_YEARS = "3y"

    @property
    def days(self) -> int:
        return WINDOW_DAYS[self.value]


class Position(BaseModel):
    """A single portfolio position snapshot (negative quantity = short)."""

    ticker: str
    quantity: float
    price: float

    @field_validator("ticker")
    @classmethod
    def _normalize_ticker(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("ticker must be non-empty")
        return v

    @field_validator("quantity")
    @classmethod
    def _finite_quantity(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"quantity must be finite, got {v}")
        return v

    @field_validator("price")
    @classmethod
    def _positive_price(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError(f"price must be positive, got {v}")
        return v

    @property
    def market_value(self) -> float:
        return self.quantity * self.price


class DistributionParams(BaseModel):
    """Annualized marginal return distribution for one position.

    ``sigma`` may be zero here (a degenerate point mass the engine accepts);
    the estimators in ``distributions`` refuse to produce one.

    ``tail_df`` is the Student-t degrees of freedom for this position;
    when unset the run-wide ``SimulationConfig.student_t_df`` applies.
    """

    model_config = {"frozen": True}

    mu: float
    sigma: float
    skew: float = 0.0
    tail_df: Optional[float] = Field(None, gt=2.0)
    source: str = "manual"

    @field_validator("mu", "skew")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"value must be finite, got {v}")
        return v

    @field_validator("sigma")
    @classmethod
    def _non_negative_sigma(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"sigma must be >= 0, got {v}")
        return v


class SimulationConfig(BaseModel):
    """Validated simulation/risk configuration with every default resolved."""

    model_config = {"frozen": True, "extra": "forbid"}

    num_paths: int = Field(10_000, gt=0)
    horizon_days: int = Field(TRADING_DAYS, gt=0)
    correlation_method: CorrelationMethod = CorrelationMethod.SAMPLE
    use_ewma: bool = False
    fat_tail_method: FatTailMethod = FatTailMethod.GAUSSIAN
    student_t_df: float = Field(5.0, gt=2.0)
    use_quasi_random: bool = False
    history_window: HistoryWindow = HistoryWindow.ONE_YEAR
    shrinkage_intensity: Optional[float] = Field(0.2, ge=0.0, le=1.0)
    cash_tickers: Tuple[str, ...] = ()
    cash_rate: float = 0.0
    seed: Optional[int] = None
    batch_size: int = Field(1024, gt=0)
    max_workers: int = Field(1, gt=0)
    var_alpha: float = Field(0.05, gt=0.0, lt=1.0)
    risk_free_rate: float = 0.04

    @field_validator("cash_tickers")
    @classmethod
    def _upper_cash_tickers(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(t.strip().upper() for t in v)

    @classmethod
    def build(cls, **kwargs: Any) -> "SimulationConfig":
        """Construct a config, converting validation failures to InvalidConfigError."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise InvalidConfigError(f"Invalid simulation config: {e}") from e

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "SimulationConfig":
        """Resolve defaults from a ``portsim.config.Settings`` instance."""
        values = {
            'num_paths': settings.NUM_PATHS,
            'horizon_days': settings.HORIZON_DAYS,
            'correlation_method': settings.CORRELATION_METHOD,
            'use_ewma': settings.USE_EWMA,
            'fat_tail_method': settings.FAT_TAIL_METHOD,
            'student_t_df': settings.STUDENT_T_DF,
            'use_quasi_random': settings.USE_QUASI_RANDOM,
            'history_window': settings.HISTORY_WINDOW,
            'shrinkage_intensity': settings.SHRINKAGE_INTENSITY,
            'cash_rate': settings.CASH_RATE,
            'batch_size': settings.BATCH_SIZE,
            'max_workers': settings.MAX_WORKERS,
            'var_alpha': settings.VAR_ALPHA,
            'risk_free_rate': settings.RISK_FREE_RATE,
        }
        values.update(overrides)
        return cls.build(**values)

    @property
    def window_days(self) -> int:
        return self.history_window.days

    @property
    def effective_ewma(self) -> bool:
        return self.use_ewma or self.correlation_method == CorrelationMethod.EWMA

    @property
    def ewma_lambda(self) -> float:
        """Decay factor implied by the history window (1.0 when EWMA is off).

        Half-life is half the window length: 63/126/252/378 days.
        """
        if not self.effective_ewma:
            return 1.0
        half_life = self.window_days / 2
        return math.exp(-math.log(2) / half_life)


@dataclass(frozen=True)
class SimulationResult:
    """Output of one Monte Carlo run.

    Arrays are marked read-only by the engine; a new run produces a new
    result rather than mutating this one.

    Attributes:
        tickers: Position tickers in simulation order
        weights: Starting weights (market value / net portfolio value)
        starting_value: Net portfolio value at t=0 (positions + cash)
        terminal_returns: Cumulative portfolio return per path (num_paths,)
        terminal_values: Dollar value per path (num_paths,)
        max_drawdowns: Max peak-to-trough decline per path, as a positive fraction
        position_contributions: Per-path return contribution of each position
            (num_paths x N); rows plus the cash contribution sum to terminal_returns
        cash_contributions: Per-path return contribution of the cash balance
        contribution_percentiles: {'p5': array(N), ...} contributions on the
            path sitting at each percentile rank of terminal return
        loss_probabilities: {'below_0': float, 'below_10': float, ...}
    """

    tickers: Tuple[str, ...]
    weights: np.ndarray
    starting_value: float
    terminal_returns: np.ndarray
    terminal_values: np.ndarray
    max_drawdowns: np.ndarray
    position_contributions: np.ndarray
    cash_contributions: np.ndarray
    contribution_percentiles: Dict[str, np.ndarray]
    loss_probabilities: Dict[str, float]
    config: SimulationConfig
    elapsed_seconds: float = 0.0
    warnings: Tuple[str, ...] = ()

    @property
    def num_paths(self) -> int:
        return int(self.terminal_returns.shape[0])

    def to_dict(self, include_paths: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'tickers': list(self.tickers),
            'weights': {t: float(w) for t, w in zip(self.tickers, self.weights)},
            'starting_value': float(self.starting_value),
            'num_paths': self.num_paths,
            'horizon_days': self.config.horizon_days,
            'contribution_percentiles': {
                label: {t: float(c) for t, c in zip(self.tickers, contrib)}
                for label, contrib in self.contribution_percentiles.items()
            },
            'loss_probabilities': dict(self.loss_probabilities),
            'elapsed_seconds': float(self.elapsed_seconds),
            'warnings': list(self.warnings),
        }
        if include_paths:
            out['terminal_returns'] = self.terminal_returns.tolist()
            out['terminal_values'] = self.terminal_values.tolist()
            out['max_drawdowns'] = self.max_drawdowns.tolist()
        return out


@dataclass(frozen=True)
class RiskReport:
    """Risk statistics reduced from a SimulationResult.

    Returns are decimals (-0.12 = -12%). VaR and CVaR are terminal returns at
    the alpha tail, so losses are negative and ``cvar <= var``.
    """

    has_data: ClassVar[bool] = True

    num_paths: int
    starting_value: float
    alpha: float
    percentiles: Dict[str, float]
    value_percentiles: Dict[str, float]
    mean_return: float
    std_return: float
    var: float
    cvar: float
    var_dollar: float
    cvar_dollar: float
    drawdown_percentiles: Dict[str, float]
    mean_drawdown: float
    loss_probabilities: Dict[str, float]
    contributions: Dict[str, Dict[str, float]]
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_data': True,
            'num_paths': self.num_paths,
            'starting_value': self.starting_value,
            'alpha': self.alpha,
            'percentiles': dict(self.percentiles),
            'value_percentiles': dict(self.value_percentiles),
            'mean_return': self.mean_return,
            'std_return': self.std_return,
            'var': self.var,
            'cvar': self.cvar,
            'var_dollar': self.var_dollar,
            'cvar_dollar': self.cvar_dollar,
            'drawdown_percentiles': dict(self.drawdown_percentiles),
            'mean_drawdown': self.mean_drawdown,
            'loss_probabilities': dict(self.loss_probabilities),
            'contributions': {k: dict(v) for k, v in self.contributions.items()},
            'warnings': list(self.warnings),
        }


@dataclass(frozen=True)
class NoDataReport:
    """Typed marker returned instead of a RiskReport when there is nothing to reduce."""

    has_data: ClassVar[bool] = False

    reason: str
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {'has_data': False, 'reason': self.reason, 'warnings': list(self.warnings)}
