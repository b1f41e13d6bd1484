"""Configuration management."""

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field

from chatmodels import SummarizationPolicy


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "groupchat"
    db_user: str = "groupchat"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Backends
    storage_backend: Literal["postgres", "memory"] = "postgres"
    job_backend: Literal["dbos", "inline"] = "dbos"  # Where summarization jobs run
    llm_backend: Literal["claude", "mock"] = "claude"

    # Claude
    claude_model: str = "sonnet"  # Chat replies
    claude_summary_model: str = "haiku"  # Background summarization
    llm_timeout_seconds: float = 120.0

    # Well-known authors, resolved once at startup
    assistant_user_id: str = "assistant"
    system_user_id: str = "system"

    # Context assembly
    context_max_messages: int = 50
    summary_min_corpus: int = 20
    summary_trigger_threshold: int = 10
    summary_retain_tail: int = 10
    summary_min_fresh_messages: int = 5
    summary_keep_versions: int = 5
    summary_output_budget: int = 800  # Tokens reserved for a summary response

    # Token quota
    token_default_quota: int = 100_000  # Per user per month
    token_low_water_mark: int = 1000
    token_response_budget: int = 800  # Tokens reserved for a chat reply
    token_reservation_ttl_seconds: int = 600
    token_reconcile_attempts: int = 3
    token_reconcile_backoff_seconds: float = 0.5
    cost_per_1k_input_cents: float = 0.14
    cost_per_1k_output_cents: float = 0.28

    # Wikipedia (/wiki command)
    wikipedia_api_url: str = "https://en.wikipedia.org/w/api.php"
    wikipedia_timeout_seconds: float = 10.0

    # Watchdog
    summarization_stale_seconds: int = 900
    watchdog_interval_seconds: int = 60

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def summarization_policy(self) -> SummarizationPolicy:
        return SummarizationPolicy(
            min_corpus=self.summary_min_corpus,
            trigger_threshold=self.summary_trigger_threshold,
            retain_tail=self.summary_retain_tail,
            min_fresh_messages=self.summary_min_fresh_messages,
            keep_versions=self.summary_keep_versions,
        )


# Global settings instance
settings = Settings()
