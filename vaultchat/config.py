"""Settings via pydantic-settings with VAULTCHAT_ env prefix.

The Anthropic key uses validation_alias to read the same unprefixed
ANTHROPIC_API_KEY the rest of the tooling uses, so a single .env file
drives both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VAULTCHAT_", env_file=".env")

    log_level: str = "info"

    # LLM
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    enable_prompt_caching: bool = False

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    retry_delays: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0])

    # Tool loop
    max_iterations: int = 10  # Max request/tool round-trips per turn

    # Context management
    max_history_messages: int = 10
    max_tool_result_chars: int = 500
    max_text_chars: int = 2000
    preserve_recent: int = 3  # Never truncated (in-flight tool pairs)
    prune_window: int = 5  # Never pruned
    min_message_chars: int = 4
    low_value_phrases: list[str] = Field(
        default_factory=lambda: [
            "ok", "okay", "k", "thanks", "thank you", "thx", "ty",
            "got it", "cool", "great", "nice", "sure", "yes", "no",
        ]
    )
    context_window_tokens: int = 200_000

    # Summarization
    summarization_enabled: bool = True
    auto_summarize_threshold: float = 0.8  # usage ratio that triggers it
    summary_keep_recent: int = 6
    summary_snippet_chars: int = 200
    summary_model: str = "claude-haiku-4-5-20251001"
    summary_max_tokens: int = 1024

    # Conversation store
    max_conversations: int = 10
    auto_save: bool = True
    db_url: str = "sqlite+aiosqlite:///vaultchat.db"
    store_namespace: str = "conversations"
    auto_name: bool = True

    # Vault
    vault_dir: str = "./vault"
    vault_max_file_chars: int = 50_000

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if not self.retry_delays:
            raise ValueError("retry_delays must contain at least one delay")
        if any(d < 0 for d in self.retry_delays):
            raise ValueError("retry_delays must be non-negative")
        if list(self.retry_delays) != sorted(self.retry_delays):
            raise ValueError(
                f"retry_delays must be ascending, got {self.retry_delays}"
            )
        if self.preserve_recent > self.max_history_messages:
            raise ValueError(
                f"preserve_recent ({self.preserve_recent}) must be <= "
                f"max_history_messages ({self.max_history_messages})"
            )
        if self.summary_keep_recent > self.max_history_messages:
            raise ValueError(
                f"summary_keep_recent ({self.summary_keep_recent}) must be <= "
                f"max_history_messages ({self.max_history_messages})"
            )
        if self.prune_window < self.preserve_recent:
            raise ValueError(
                f"prune_window ({self.prune_window}) must be >= "
                f"preserve_recent ({self.preserve_recent})"
            )
        if not 0.0 < self.auto_summarize_threshold <= 1.0:
            raise ValueError("auto_summarize_threshold must be in (0, 1]")
        if self.max_conversations < 1:
            raise ValueError("max_conversations must be >= 1")
        return self
