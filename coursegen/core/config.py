"""Application configuration with validation."""

from enum import Enum
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


# Rank order of the repair chain. Also the set of accepted strategy names.
KNOWN_STRATEGIES = (
    "syntax-repair",
    "critique-and-revise",
    "partial-regeneration",
    "model-escalation",
    "emergency-fallback",
)


class Settings(BaseSettings):
    """
    Pipeline settings with validation.

    Every option can be set through the environment (case-insensitive)
    or a local .env file.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./coursegen.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(
        default=5,
        description="Number of persistent database connections"
    )
    db_max_overflow: int = Field(
        default=10,
        description="Extra connections allowed during traffic bursts"
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a connection from the pool before raising"
    )
    db_pool_recycle: int = Field(
        default=1800,
        description="Seconds before a connection is recycled (prevents stale connections)"
    )

    # Generator (LLM) Configuration
    # LiteLLM model string, e.g. "openrouter/openai/gpt-oss-20b".
    # Empty string = no generator; LLM-backed repair strategies are skipped.
    generator_model: str = Field(
        default="",
        description="LiteLLM model string for stage generation and repairs (empty = disabled)"
    )
    generator_api_key: str = Field(
        default="",
        description="API key for the generator provider"
    )
    generator_api_base: str = Field(
        default="",
        description="Base URL for the generator provider (optional)"
    )
    generator_timeout_seconds: int = Field(
        default=120,
        description="Wall-clock timeout for a single generator call"
    )
    generator_temperature: float = Field(default=0.3)
    generator_max_tokens: int = Field(default=4096)

    # Model escalation chain, cheapest first (comma-separated LiteLLM model strings).
    escalation_models: str = Field(
        default="",
        description="Models tried by the model-escalation strategy, in order"
    )

    # Regeneration
    regeneration_strategies: str = Field(
        default=",".join(KNOWN_STRATEGIES),
        description="Enabled repair strategies (comma-separated)"
    )
    regeneration_max_attempts: int = Field(
        default=2,
        ge=1,
        description="Attempts per repair strategy before escalating"
    )

    # Circuit breaker around the generator endpoint
    circuit_failure_threshold: int = Field(default=3, ge=1)
    circuit_cooldown_seconds: int = Field(default=60, ge=0)

    # Worker
    worker_poll_interval: int = Field(
        default=5,
        description="Seconds between queue polls when the queue is empty"
    )
    worker_concurrency: int = Field(
        default=2,
        ge=1,
        description="Number of worker threads pulling from the queue"
    )
    work_item_max_retries: int = Field(
        default=1,
        ge=0,
        description="Automatic re-queues of a failed work item"
    )
    # "package.module:callable" returning the stage handlers the worker runs.
    stage_handlers: str = Field(
        default="",
        description="Import path of a callable returning stage handlers"
    )

    # A non-terminal job with no progress update for this long is reported as stuck.
    stuck_after_minutes: int = Field(default=60, ge=1)

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    def get_escalation_models(self) -> List[str]:
        """Escalation chain as a list, blanks dropped."""
        return [m.strip() for m in self.escalation_models.split(",") if m.strip()]

    def get_enabled_strategies(self) -> List[str]:
        """
        Enabled repair strategies as a list.

        Raises:
            ConfigurationError: if a name is not a known strategy.
        """
        names = [s.strip() for s in self.regeneration_strategies.split(",") if s.strip()]
        unknown = [n for n in names if n not in KNOWN_STRATEGIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown regeneration strategies: {unknown}. "
                f"Valid names: {', '.join(KNOWN_STRATEGIES)}"
            )
        return names

    def generator_configured(self) -> bool:
        return bool(self.generator_model)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup on settings that only make sense for
        local development. In development, returns silently.

        Raises:
            ConfigurationError: If production config is unusable.
        """
        errors: list[str] = []

        if not self.generator_model:
            errors.append(
                "GENERATOR_MODEL is empty. "
                "Stage generation and LLM repairs need a configured model."
            )

        if self.database_url.startswith("sqlite"):
            errors.append(
                "DATABASE_URL points at SQLite. "
                "Concurrent workers need a server database (PostgreSQL)."
            )

        try:
            self.get_enabled_strategies()
        except ConfigurationError as e:
            errors.append(str(e))

        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is invalid:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
