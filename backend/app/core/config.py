"""Application configuration using Pydantic Settings."""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Models usable for forced tool-call rule generation
LLM_MODELS = {
    "anthropic": {
        "claude-sonnet-4-5": {
            "name": "Claude Sonnet 4.5",
            "tier": "balanced",
            "cost": "medium",
        },
        "claude-haiku-4-5": {"name": "Claude Haiku 4.5", "tier": "fast", "cost": "low"},
    },
    "openai": {
        "gpt-4o": {"name": "GPT-4o", "tier": "premium", "cost": "high"},
        "gpt-4o-mini": {"name": "GPT-4o Mini", "tier": "balanced", "cost": "low"},
    },
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "RuleGuard"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Server
    host: str = "127.0.0.1"
    port: int = 8001

    # Database paths
    data_dir: Path = Field(default_factory=lambda: Path("./data"))
    duckdb_path: Path = Field(default_factory=lambda: Path("./data/ruleguard.duckdb"))
    sqlite_path: Path = Field(default_factory=lambda: Path("./data/ruleguard_meta.db"))

    # LLM provider (rule generation)
    llm_provider: Literal["anthropic", "openai"] = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 2048
    llm_timeout_seconds: float = 30.0

    # Anthropic Direct API
    anthropic_api_key: str | None = None

    # OpenAI Direct API
    openai_api_key: str | None = None

    # Generation limits (process-local, optimization only)
    generation_requests_per_minute: int = 10
    generation_cache_ttl_seconds: int = 1800
    generation_cache_max_size: int = 256

    # Sampling
    default_sample_size: int = 10000
    max_sample_size: int = 50000
    recent_window_days: int = 30
    high_value_threshold: float = 5000.0
    off_hours_start: int = 18
    off_hours_end: int = 9
    sampler_max_workers: int = 5

    # Overlap analysis
    overlap_top_n: int = 5
    overlap_min_score: float = 0.01
    overlap_high_threshold: float = 0.7
    overlap_moderate_threshold: float = 0.3

    # False-positive risk tiers (percent of unflagged newly caught records)
    fp_risk_high_pct: float = 70.0
    fp_risk_medium_pct: float = 40.0

    # Governance
    suggestion_ttl_days: int = 7
    min_approval_notes_length: int = 10
    expiry_sweep_interval_seconds: int = 3600

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Field(default_factory=lambda: Path("./logs"))

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def get_available_models(self) -> dict[str, Any]:
        """Get available models for current provider."""
        return LLM_MODELS.get(self.llm_provider, {})


settings = Settings()
