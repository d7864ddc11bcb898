"""
Configuration with Pydantic Settings and validation.

Only this module reads the environment. The orchestration core receives plain
values (credentials, retry budget) through constructors.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PLACEHOLDER_API_KEYS = frozenset({"", "your_gemini_api_key_here"})


class GeminiConfig(BaseModel):
    """Configuration for the Gemini model endpoint."""

    api_key: str | None = Field(None, description="Gemini API key")
    model: str = Field("gemini-2.0-flash-exp")
    base_url: str = Field("https://generativelanguage.googleapis.com/v1beta")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(0.8, ge=0.0, le=1.0)
    top_k: int = Field(40, gt=0)
    max_output_tokens: int = Field(8192, gt=0)
    timeout: float = Field(120.0, gt=0, description="Request timeout in seconds")
    enable_streaming: bool = Field(True)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    def has_credentials(self) -> bool:
        """True when a non-placeholder API key is configured."""
        return (self.api_key or "").strip() not in PLACEHOLDER_API_KEYS


class RetryConfig(BaseModel):
    """Retry budget for model API calls."""

    max_attempts: int = Field(3, gt=0)
    rate_limit_base_ms: int = Field(1000, gt=0, description="Base of the 2**n rate-limit backoff")
    network_step_ms: int = Field(1000, gt=0, description="Step of the linear network backoff")


class PipelineConfig(BaseModel):
    """Shape of the agent pipeline."""

    sequential: bool = Field(False, description="Chain every stage to the previous one")
    requirements_excerpt_chars: int = Field(1000, gt=0)
    review_code_excerpt_chars: int = Field(2000, gt=0)
    testing_code_excerpt_chars: int = Field(1000, gt=0)


class ObservabilityConfig(BaseModel):
    """Configuration for logging, metrics and tracing."""

    log_level: str = Field("INFO")
    enable_tracing: bool = Field(False)
    enable_metrics: bool = Field(False)
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("crewfusion")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


class APIConfig(BaseModel):
    """Configuration for the HTTP API server."""

    host: str = Field("127.0.0.1")
    port: int = Field(8000, gt=0, le=65535)
    enable_cors: bool = Field(True)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="CF_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    output_directory: Path = Field(Path("./outputs"))

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
