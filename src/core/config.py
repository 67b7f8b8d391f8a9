"""Runtime settings. Defaults mirror production values, any field can be overridden with a CHESS_<FIELD> environment variable."""

import logging
import os
from typing import Self

from pydantic import BaseModel

ENV_PREFIX = "CHESS_"


class Settings(BaseModel):
    database_url: str = "sqlite:///./chess.db"
    jwt_secret: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"

    # Session registry cache maintenance
    eviction_period_seconds: float = 5 * 60
    session_inactivity_seconds: float = 30 * 60

    # Presence
    disconnect_grace_seconds: float = 30
    liveness_sweep_seconds: float = 15
    liveness_threshold_seconds: float = 30
    active_players_limit: int = 50

    # Games and ratings
    default_time_control: str = "10min"
    elo_k_factor: int = 32

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Self:
        """Build settings from the environment, ignoring variables that are not set."""
        overrides = {
            name: os.environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in os.environ
        }
        return cls.model_validate(overrides)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
