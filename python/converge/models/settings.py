# converge/models/settings.py

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Pydantic settings for the reconciliation engine.
    Fields map to environment variables prefixed with `CONVERGE_`,
    e.g. `CONVERGE_PARALLELISM=4` or `CONVERGE_MAX_ATTEMPTS=3`.
    CLI flags override whatever the environment provides.
    """

    parallelism: int = Field(default=10, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    backoff_jitter: bool = True
    lock_ttl_seconds: float = Field(default=900.0, gt=0.0)
    refresh: bool = True
    state_path: str = "converge.state.json"

    model_config = SettingsConfigDict(env_prefix="CONVERGE_")
