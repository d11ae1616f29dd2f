"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mjrelay.services.upscale.tokens import DEFAULT_TOKEN_FORMATS

SQLITE_DEFAULT_URL = "sqlite+aiosqlite:///./mjrelay.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(default=SQLITE_DEFAULT_URL, alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")

    # Discord / Midjourney protocol
    discord_api_base: str = Field(default="https://discord.com/api/v9", alias="DISCORD_API_BASE")
    midjourney_bot_id: str = Field(default="936929561302675456", alias="MIDJOURNEY_BOT_ID")
    imagine_command_id: str = Field(default="938956540159881230", alias="IMAGINE_COMMAND_ID")
    imagine_command_version: str = Field(
        default="1237876415471554623", alias="IMAGINE_COMMAND_VERSION"
    )
    discord_session_id: str = Field(
        default="cb06f61453064c0983f2adae2a88c223", alias="DISCORD_SESSION_ID"
    )
    discord_http_timeout: float = Field(default=30.0, alias="DISCORD_HTTP_TIMEOUT")
    discord_user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        alias="DISCORD_USER_AGENT",
    )
    ephemeral_marker: str = Field(default="ephemeral-attachments", alias="EPHEMERAL_MARKER")
    recent_messages_limit: int = Field(default=50, alias="RECENT_MESSAGES_LIMIT")

    # Generation (imagine) polling
    imagine_poll_interval_seconds: float = Field(default=3.0, alias="IMAGINE_POLL_INTERVAL_SECONDS")
    imagine_timeout_seconds: float = Field(default=600.0, alias="IMAGINE_TIMEOUT_SECONDS")

    # Attachment Resolver
    resolve_poll_interval_seconds: float = Field(default=2.0, alias="RESOLVE_POLL_INTERVAL_SECONDS")
    resolve_max_attempts: int = Field(default=10, alias="RESOLVE_MAX_ATTEMPTS")
    resolve_timeout_seconds: float = Field(default=30.0, alias="RESOLVE_TIMEOUT_SECONDS")

    # Upscale Executor
    upscale_poll_interval_seconds: float = Field(default=2.0, alias="UPSCALE_POLL_INTERVAL_SECONDS")
    upscale_max_attempts: int = Field(default=30, alias="UPSCALE_MAX_ATTEMPTS")
    upscale_max_rate_limit_retries: int = Field(default=5, alias="UPSCALE_MAX_RATE_LIMIT_RETRIES")
    upscale_token_formats: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TOKEN_FORMATS), alias="UPSCALE_TOKEN_FORMATS"
    )

    # Full-Generation Pipeline
    settle_delay_seconds: float = Field(default=5.0, alias="SETTLE_DELAY_SECONDS")
    settle_delay_ephemeral_seconds: float = Field(
        default=15.0, alias="SETTLE_DELAY_EPHEMERAL_SECONDS"
    )
    sequential_delay_seconds: float = Field(default=3.0, alias="SEQUENTIAL_DELAY_SECONDS")
    concurrent_stagger_seconds: float = Field(default=1.0, alias="CONCURRENT_STAGGER_SECONDS")
    full_generation_max_wait_seconds: float = Field(
        default=300.0, alias="FULL_GENERATION_MAX_WAIT_SECONDS"
    )

    # Task Registry
    task_ttl_seconds: float = Field(default=300.0, alias="TASK_TTL_SECONDS")
    registry_sweep_interval_seconds: float = Field(
        default=30.0, alias="REGISTRY_SWEEP_INTERVAL_SECONDS"
    )

    # Accounts
    default_monthly_limit: int = Field(default=100, alias="DEFAULT_MONTHLY_LIMIT")
    history_page_size: int = Field(default=10, alias="HISTORY_PAGE_SIZE")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_test(self) -> bool:
        return self.app_env in ("test", "testing")

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate configuration on startup.

        Protocol and polling settings are checked in every environment because a bad
        value there silently breaks upscaling. Deployment checks (database) are skipped
        in test/development environments.
        """
        problems = []

        if not self.upscale_token_formats:
            problems.append("UPSCALE_TOKEN_FORMATS: at least one candidate format is required")
        for template in self.upscale_token_formats:
            if "{index}" not in template or "{hash}" not in template:
                problems.append(
                    f"UPSCALE_TOKEN_FORMATS: '{template}' must contain {{index}} and {{hash}}"
                )
                continue
            try:
                template.format(index=1, hash="0")
            except (KeyError, IndexError, ValueError) as e:
                problems.append(
                    f"UPSCALE_TOKEN_FORMATS: '{template}' is not a valid template ({e!r})"
                )

        if self.resolve_max_attempts < 1 or self.upscale_max_attempts < 1:
            problems.append("RESOLVE_MAX_ATTEMPTS and UPSCALE_MAX_ATTEMPTS must be >= 1")

        # Rendering an upscale takes longer than promoting an attachment
        resolve_budget = self.resolve_max_attempts * self.resolve_poll_interval_seconds
        upscale_budget = self.upscale_max_attempts * self.upscale_poll_interval_seconds
        if upscale_budget < resolve_budget:
            problems.append(
                "UPSCALE_MAX_ATTEMPTS * UPSCALE_POLL_INTERVAL_SECONDS must not be smaller "
                "than the attachment resolver budget"
            )

        if self.app_env == "production" and self.database_url == SQLITE_DEFAULT_URL:
            problems.append("DATABASE_URL: Configure a PostgreSQL URL for production")

        if problems:
            error_msg = "CRITICAL: Invalid configuration:\n\n" + "\n".join(
                f"  - {p}" for p in problems
            )
            error_msg += "\n\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
