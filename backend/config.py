"""
Configuration settings for the Lifecycle Engine backend.
Uses pydantic-settings for environment variable management.

DATABASE_URL priority:
  1. DATABASE_URL env var (PostgreSQL in every deployed environment)
  2. Fallback: SQLite file for local development
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Lifecycle Engine - Company Product Adoption"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./lifecycle.db"

    @property
    def is_postgres(self) -> bool:
        """True when using PostgreSQL."""
        return self.DATABASE_URL.startswith("postgresql")

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Command layer
    COMMAND_MAX_RETRIES: int = 3          # attempts before ConcurrencyConflict surfaces
    WON_SALE_NEXT_PHASE: str = "onboarding"  # onboarding | active
    TERMINAL_MUTATION_POLICY: str = "reject"  # reject | owner_only | allow
    CLOSE_READY_CONFIDENCE: int = 75

    # Projector
    PROJECTION_BATCH_SIZE: int = 500
    PROJECTION_TIME_BUDGET_SECONDS: float = 0.0  # 0 = no budget

    # Reference data
    SEED_REFERENCE_DATA: bool = True

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
