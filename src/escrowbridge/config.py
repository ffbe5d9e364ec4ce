"""Application configuration using pydantic-settings.

Policy windows, route scoring weights and execution retry policy are all
configurable so they can be tuned without code changes.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/escrowbridge.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(default=True, description="Use simulated providers and escrow ledger")

    # ======================
    # Deal policy windows
    # ======================
    approval_window_hours: int = Field(
        default=48, ge=1, description="Final approval period before auto-release"
    )
    dispute_window_days: int = Field(
        default=7, ge=1, description="Dispute resolution period before auto-refund"
    )

    # ======================
    # Route scoring
    # ======================
    route_weight_fee: Decimal = Field(default=Decimal("0.3"), ge=0)
    route_weight_duration: Decimal = Field(default=Decimal("0.3"), ge=0)
    route_weight_confidence: Decimal = Field(default=Decimal("0.3"), ge=0)
    route_weight_steps: Decimal = Field(default=Decimal("0.1"), ge=0)

    # ======================
    # Route provider
    # ======================
    route_provider: str = Field(default="dry_run", description="Route provider: dry_run or lifi")
    lifi_api_url: str = Field(default="https://li.quest/v1", description="LI.FI API base URL")
    lifi_api_key: str = Field(default="", description="LI.FI API key (optional)")
    lifi_integrator: str = Field(default="escrowbridge", description="LI.FI integrator tag")
    route_slippage: Decimal = Field(default=Decimal("0.03"), description="Max slippage (3%)")
    provider_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for every external provider call"
    )

    # ======================
    # Execution policy
    # ======================
    execution_max_retries: int = Field(default=3, ge=0, description="Retry bound per execution")
    execution_backoff_base_seconds: int = Field(default=30, ge=0)
    execution_backoff_max_seconds: int = Field(default=1800, ge=0)
    execution_timeout_multiplier: Decimal = Field(
        default=Decimal("2.0"), gt=0, description="STUCK threshold = expected duration x multiplier"
    )
    execution_poll_interval_seconds: float = Field(default=15.0, gt=0)

    # ======================
    # Scheduler
    # ======================
    scheduler_interval_seconds: int = Field(
        default=300, ge=1, description="Seconds between deadline sweeps"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "policy": {
                "approval_window_hours": self.approval_window_hours,
                "dispute_window_days": self.dispute_window_days,
            },
            "routing": {
                "provider": self.route_provider,
                "lifi_api_url": self.lifi_api_url,
                "lifi_api_key": "***" if self.lifi_api_key else "(not set)",
                "timeout_seconds": self.provider_timeout_seconds,
                "weights": {
                    "fee": str(self.route_weight_fee),
                    "duration": str(self.route_weight_duration),
                    "confidence": str(self.route_weight_confidence),
                    "steps": str(self.route_weight_steps),
                },
            },
            "execution": {
                "max_retries": self.execution_max_retries,
                "backoff_base_seconds": self.execution_backoff_base_seconds,
                "timeout_multiplier": str(self.execution_timeout_multiplier),
            },
            "scheduler": {"interval_seconds": self.scheduler_interval_seconds},
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def build_settings(**overrides) -> Settings:
    """Build an uncached Settings instance, ignoring any .env file."""
    return Settings(_env_file=None, **overrides)
