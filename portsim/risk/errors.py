"""
Error Taxonomy

Exceptions raised by the risk engine. Configuration and matrix errors also
subclass ValueError so callers that only catch ValueError keep working.
"""


class RiskEngineError(Exception):
    """Base class for all risk engine errors."""


class InsufficientDataError(RiskEngineError):
    """Too few observations for the requested statistic."""


class InvalidMatrixError(RiskEngineError, ValueError):
    """Correlation matrix is not a valid (repaired) correlation matrix."""


class InvalidConfigError(RiskEngineError, ValueError):
    """Configuration or parameter rejected before any computation starts."""


class NumericInstabilityError(RiskEngineError):
    """Cholesky failure or non-finite values produced during a run."""


class SimulationCancelled(RiskEngineError):
    """Run stopped at a batch boundary because its token was cancelled."""
