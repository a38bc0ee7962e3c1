"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "paygent"
    app_env: str = "dev"
    log_level: str = "INFO"
    network: str = "testnet"

    catalog_url: str = "https://scan.stacksx402.com"
    catalog_ttl_s: float = Field(default=60.0, ge=0.0)
    catalog_timeout_s: float = Field(default=10.0, gt=0.0)
    demo_server_url: str = "http://localhost:3403"

    payment_mode: str = "demo"
    payment_timeout_s: float = Field(default=60.0, gt=0.0)
    demo_wallet_balance: int = Field(default=10_000_000, ge=0)

    # Ceilings are micro-units of the primary asset.
    max_spend_per_task: int = Field(default=100_000, ge=0)
    max_spend_per_day: int = Field(default=1_000_000, ge=0)
    default_max_steps: int = Field(default=5, ge=1)

    planner_mode: str = "heuristic"
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    history_capacity: int = Field(default=50, ge=1)
    database_url: str = ""
    max_concurrent_runs: int = Field(default=4, ge=1)
    max_tracked_runs: int = Field(default=200, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="PAYGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
