"""Monte Carlo portfolio risk engine."""

__version__ = "0.1.0"
