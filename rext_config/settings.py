"""
Exporter Settings (Pydantic Settings).

Loads process configuration from environment variables (.env file or system env).
The service/resource/metric graph lives in the TOML file pointed to by
CONFIG_PATH, see rext_config.loader.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Exporter settings loaded from environment variables.

    Every field can be overridden from the command line wrapper, see
    apps.exporter_api.cli.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # SERVICE CONFIGURATION
    # ========================================================================
    CONFIG_PATH: str = Field(
        default="rextporter.toml",
        description="TOML file declaring services, resources and metrics",
    )

    # ========================================================================
    # SCRAPE ENDPOINT
    # ========================================================================
    LISTEN_HOST: str = Field(default="0.0.0.0")
    LISTEN_PORT: int = Field(default=8080, ge=1, le=65535)
    METRICS_PATH: str = Field(default="/metrics", pattern="^/")

    # ========================================================================
    # SCRAPE ENGINE
    # ========================================================================
    WORKER_COUNT: int = Field(default=6, ge=1, description="Worker pool size")
    SCRAPE_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for one inbound scrape, late tasks report _up=0",
    )
    HTTP_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        gt=0,
        description="Per-request timeout for upstream calls",
    )
    TOKEN_REFRESH_STATUSES: list[int] = Field(
        default=[401, 403],
        description="Upstream statuses that invalidate a CSRF token and retry once",
    )
    TOKEN_REFRESH_ON_ANY_STATUS: bool = Field(
        default=False,
        description="Refresh the token on any non-200 data response",
    )

    # ========================================================================
    # LOGGING
    # ========================================================================
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_FORMAT: str = Field(default="json", pattern="^(json|text)$")

    # ========================================================================
    # OPENTELEMETRY
    # ========================================================================
    OTEL_EXPORTER_OTLP_ENDPOINT: str = Field(default="http://localhost:4317")
    OTEL_SERVICE_NAME: str = Field(default="rextporter")
    OTEL_TRACES_ENABLED: bool = Field(default=False)

    # ========================================================================
    # DEPLOYMENT
    # ========================================================================
    ENVIRONMENT: str = Field(
        default="development", pattern="^(development|staging|production)$"
    )

    def refreshes_token_on(self, status: int) -> bool:
        """Whether an upstream status should trigger a token refresh."""
        if status == 200:
            return False
        return self.TOKEN_REFRESH_ON_ANY_STATUS or status in self.TOKEN_REFRESH_STATUSES
