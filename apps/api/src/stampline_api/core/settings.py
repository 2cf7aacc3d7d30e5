from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./stampline.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Tracing
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = ""
    otel_exporter_otlp_headers: str = ""
    otel_console_exporter: bool = False

    # Internal API security (business dashboards, admin tooling)
    admin_api_key: str = ""

    # Counter QR anti-replay
    loyalty_token_grace_minutes: int = 30
    loyalty_counter_token_length: int = 32
    loyalty_public_id_length: int = 10
    loyalty_public_id_max_attempts: int = 5

    # Redemption verification screen
    loyalty_redemption_display_minutes: int = 10
    loyalty_redemption_replay_window_minutes: int = 5

    # Earn abuse guards (0 disables a guard)
    loyalty_earn_limit_per_pass_per_hour: int = 10
    loyalty_earn_limit_per_ip_per_hour: int = 20
    loyalty_ip_velocity_threshold: int = 3
    loyalty_ip_velocity_window_minutes: int = 10
    loyalty_ip_hash_salt: str = ""

    # Optimistic concurrency
    loyalty_mutation_max_attempts: int = 5

    # Analytics
    loyalty_avg_reward_value: float = 3.0
    loyalty_near_reward_window: int = 3

    # Pass delivery (external collaborator)
    pass_sync_enabled: bool = True

    @field_validator(
        "loyalty_token_grace_minutes",
        "loyalty_redemption_display_minutes",
        "loyalty_redemption_replay_window_minutes",
        "loyalty_earn_limit_per_pass_per_hour",
        "loyalty_earn_limit_per_ip_per_hour",
        "loyalty_ip_velocity_threshold",
        "loyalty_ip_velocity_window_minutes",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be zero or positive")
        return value

    @field_validator("loyalty_mutation_max_attempts", "loyalty_public_id_max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must allow at least one attempt")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
