"""
Configuration management using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


ENV_FILE_PATH = Path(os.environ.get("RECON_ENV_FILE", ".env"))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Candidate search
    amount_tolerance: Decimal = Field(default=Decimal("0.01"))
    # Relative tolerance as a fraction of the line amount (0.005 is 0.5%)
    amount_tolerance_ratio: Decimal = Field(default=Decimal("0"))
    date_window_days: int = Field(default=5)
    max_split_size: int = Field(default=5)
    max_aggregate_pool: int = Field(default=20)

    # Scoring
    auto_confirm_threshold: float = Field(default=0.95)
    suggest_threshold: float = Field(default=0.5)
    split_penalty: float = Field(default=0.05)

    # Matchable line types (empty means every type)
    matchable_line_types: List[str] = Field(default_factory=list)

    # Exhausted lines move to "disputed" instead of staying "extracted"
    dispute_on_exhausted: bool = Field(default=False)

    # Sign-off
    signoff_epsilon: Decimal = Field(default=Decimal("0"))
    partial_variance_limit: Optional[Decimal] = Field(default=None)

    # Retries on optimistic-lock conflicts
    retry_attempts: int = Field(default=3)

    def allowed_delta(self, amount: Decimal) -> Decimal:
        """
        Calculate the allowed delta around an amount.

        The absolute tolerance or the ratio of the amount, whichever is wider.
        """
        return max(self.amount_tolerance, abs(amount) * self.amount_tolerance_ratio)

    def amount_within_tolerance(self, delta: Decimal, amount: Decimal = Decimal("0")) -> bool:
        """Check an amount delta against the tolerance allowed for amount."""
        return abs(delta) <= self.allowed_delta(amount)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
