"""Configuration for the simulation engine loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine defaults.

    Every field can be overridden with a ``PORTSIM_``-prefixed environment
    variable (e.g. ``PORTSIM_NUM_PATHS=20000``).  Values are resolved once
    into a ``SimulationConfig`` by ``SimulationConfig.from_settings``.
    """

    NUM_PATHS: int = 10_000
    HORIZON_DAYS: int = 252
    CORRELATION_METHOD: str = "sample"  # sample | ewma | ledoit_wolf
    USE_EWMA: bool = False
    FAT_TAIL_METHOD: str = "gaussian"  # gaussian | student_t
    STUDENT_T_DF: float = 5.0
    USE_QUASI_RANDOM: bool = False
    HISTORY_WINDOW: str = "1y"  # 6mo | 1y | 2y | 3y
    SHRINKAGE_INTENSITY: float | None = 0.2
    CASH_RATE: float = 0.0
    BATCH_SIZE: int = 1024
    MAX_WORKERS: int = 1
    VAR_ALPHA: float = 0.05
    RISK_FREE_RATE: float = 0.04

    # Swap optimizer
    SWAP_SIZE: float = 0.01  # fraction of portfolio value moved per swap
    MAX_POSITIONS: int = 50
    MIN_ALLOCATION: float = 0.0
    MAX_ALLOCATION: float = 1.0

    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "PORTSIM_"}


def get_settings() -> Settings:
    """Return a Settings instance."""
    return Settings()
