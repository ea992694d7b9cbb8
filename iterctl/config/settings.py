"""Application configuration for iterctl."""

from functools import lru_cache
from pydantic_settings import BaseSettings

from ..schemas import SeedMode


class Settings(BaseSettings):
    """Settings loaded from environment (``ITERCTL_*``) or ``.env``.

    ``dsn`` and ``statement_timeout_ms`` feed ``create_executor_from_settings``.
    Policy fields are defaults for ``IterationController.from_settings``;
    explicit constructor arguments always win.
    """

    # Engine
    dsn: str = ":memory:"
    statement_timeout_ms: int = 0

    # Iteration policy
    temporary_tables: bool = True
    truncate_after_update: bool = False
    seed_state: bool = False
    seed_mode: SeedMode = SeedMode.SUPPLEMENT
    verbose: bool = False

    class Config:
        env_prefix = "ITERCTL_"
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
