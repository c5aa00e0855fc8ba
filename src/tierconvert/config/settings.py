"""Configuration settings using pydantic-settings."""

import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict, YamlConfigSettingsSource

from tierconvert.config.constants import (
    DEFAULT_CANVAS_FONT_SIZE,
    DEFAULT_CANVAS_MARGIN,
    DEFAULT_CANVAS_MAX_FILE_SIZE,
    DEFAULT_CANVAS_MAX_HEIGHT,
    DEFAULT_CANVAS_PAGE_HEIGHT,
    DEFAULT_CANVAS_THRESHOLD,
    DEFAULT_CANVAS_WEIGHT,
    DEFAULT_CANVAS_WIDTH,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONFIG_FILE,
    DEFAULT_ENGINE_MAX_FILE_SIZE,
    DEFAULT_ENGINE_THRESHOLD,
    DEFAULT_ENGINE_TIMEOUT,
    DEFAULT_ENGINE_WEIGHT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HEALTH_CACHE_TTL,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_HEALTH_CHECK_TIMEOUT,
    DEFAULT_KILL_TIMEOUT,
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_LOG_DIR,
    DEFAULT_MARKUP_MAX_FILE_SIZE,
    DEFAULT_MAX_FALLBACK_ATTEMPTS,
    DEFAULT_MEMORY_THRESHOLD,
    DEFAULT_NETWORK_WEIGHT,
    DEFAULT_PAGE_LOAD_TIMEOUT,
    DEFAULT_POOL_IDLE_TIMEOUT,
    DEFAULT_POOL_MAX_INSTANCES,
    DEFAULT_POOL_SWEEP_INTERVAL,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_REMOTE_MAX_FILE_SIZE,
    DEFAULT_REMOTE_MAX_RETRIES,
    DEFAULT_REMOTE_TIMEOUT,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_TIER_SELECTION_TIMEOUT,
)

BackendName = Literal["engine", "canvas", "remote", "markup"]


class OrchestratorConfig(BaseModel):
    """Tier selection and fallback configuration."""

    max_fallback_attempts: int = Field(default=DEFAULT_MAX_FALLBACK_ATTEMPTS, ge=0)
    tier_selection_timeout: float = Field(default=DEFAULT_TIER_SELECTION_TIMEOUT, gt=0)
    cache_capability_assessment: bool = True
    tier_priority: list[BackendName] | None = None  # None = capability-derived order

    # User feedback
    enable_user_feedback: bool = True
    show_progress: bool = True
    show_capability_limitations: bool = True
    show_recommendations: bool = True
    show_fallback_transitions: bool = True


class CapabilityWeights(BaseModel):
    """Weights used to compute the overall capability score."""

    engine: float = Field(default=DEFAULT_ENGINE_WEIGHT, ge=0)
    canvas: float = Field(default=DEFAULT_CANVAS_WEIGHT, ge=0)
    network: float = Field(default=DEFAULT_NETWORK_WEIGHT, ge=0)


class CapabilityConfig(BaseModel):
    """Capability probing configuration."""

    weights: CapabilityWeights = Field(default_factory=CapabilityWeights)
    engine_threshold: float = Field(default=DEFAULT_ENGINE_THRESHOLD, ge=0, le=1)
    canvas_threshold: float = Field(default=DEFAULT_CANVAS_THRESHOLD, ge=0, le=1)
    probe_timeout: float = Field(default=DEFAULT_PROBE_TIMEOUT, gt=0)
    intensive: bool = False
    skip_performance_tests: bool = False


class PdfOptions(BaseModel):
    """Options forwarded to the engine's print-to-PDF command."""

    landscape: bool = False
    print_background: bool = True
    scale: float = Field(default=1.0, gt=0)
    paper_width: float = 8.5  # inches
    paper_height: float = 11.0
    margin: float = 0.4


class ImageOptions(BaseModel):
    """Options for raster output."""

    quality: int = Field(default=90, ge=0, le=100)
    full_page: bool = True


class EngineConfig(BaseModel):
    """Headless rendering-engine configuration."""

    executable_path: str | None = None  # None = search PATH
    headless: bool = True
    extra_args: list[str] = Field(default_factory=list)
    max_file_size: int = DEFAULT_ENGINE_MAX_FILE_SIZE
    timeout: float = DEFAULT_ENGINE_TIMEOUT
    page_load_timeout: float = DEFAULT_PAGE_LOAD_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    pdf: PdfOptions = Field(default_factory=PdfOptions)
    image: ImageOptions = Field(default_factory=ImageOptions)


class PoolConfig(BaseModel):
    """Engine process pool configuration."""

    max_instances: int = Field(default=DEFAULT_POOL_MAX_INSTANCES, ge=1)
    idle_timeout: float = Field(default=DEFAULT_POOL_IDLE_TIMEOUT, gt=0)
    reuse_instances: bool = True
    sweep_interval: float = Field(default=DEFAULT_POOL_SWEEP_INTERVAL, gt=0)
    launch_timeout: float = Field(default=DEFAULT_LAUNCH_TIMEOUT, gt=0)
    kill_timeout: float = Field(default=DEFAULT_KILL_TIMEOUT, gt=0)


class CanvasConfig(BaseModel):
    """Pillow drawing-surface configuration."""

    max_file_size: int = DEFAULT_CANVAS_MAX_FILE_SIZE
    width: int = Field(default=DEFAULT_CANVAS_WIDTH, ge=100)
    page_height: int = Field(default=DEFAULT_CANVAS_PAGE_HEIGHT, ge=100)
    max_height: int = Field(default=DEFAULT_CANVAS_MAX_HEIGHT, ge=100)
    margin: int = Field(default=DEFAULT_CANVAS_MARGIN, ge=0)
    font_size: int = Field(default=DEFAULT_CANVAS_FONT_SIZE, ge=6)
    font_path: str | None = None
    image_quality: int = Field(default=90, ge=0, le=100)


class MarkupConfig(BaseModel):
    """Sanitized markup output configuration."""

    max_file_size: int = DEFAULT_MARKUP_MAX_FILE_SIZE
    inline_styles: bool = True
    include_javascript: bool = False
    compress_html: bool = False
    include_metadata: bool = True
    custom_css: str | None = None


class RateLimitConfig(BaseModel):
    """Per-service rate limit."""

    requests_per_minute: int | None = Field(default=None, ge=1)
    max_concurrent: int | None = Field(default=None, ge=1)


class ServiceConfig(BaseModel):
    """Configuration for a single remote conversion service."""

    id: str
    name: str | None = None
    url: str
    endpoint: str = ""
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    request_format: Literal["json", "form-data", "raw"] = "json"
    response_format: Literal["json", "base64", "binary", "text"] = "json"
    supported_formats: list[str] = Field(default_factory=list)
    priority: int = 1
    quality_score: float = Field(default=0.8, ge=0, le=1)
    cost_per_conversion: float = 0.0
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)


class AuthConfig(BaseModel):
    """Authentication material for one service."""

    api_key: str | None = None
    api_key_env: str | None = None
    bearer_token: str | None = None
    bearer_token_env: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    def resolve_api_key(self) -> str | None:
        """Return the API key, reading the environment if configured."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def resolve_bearer_token(self) -> str | None:
        """Return the bearer token, reading the environment if configured."""
        if self.bearer_token:
            return self.bearer_token
        if self.bearer_token_env:
            return os.environ.get(self.bearer_token_env)
        return None


class HealthCheckConfig(BaseModel):
    """Remote service health check configuration."""

    enabled: bool = True
    interval: float = Field(default=DEFAULT_HEALTH_CHECK_INTERVAL, gt=0)
    timeout: float = Field(default=DEFAULT_HEALTH_CHECK_TIMEOUT, gt=0)
    failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)


class RemoteFallbackConfig(BaseModel):
    """Multi-service fallback policy."""

    try_multiple_services: bool = True
    health_cache_ttl: float = Field(default=DEFAULT_HEALTH_CACHE_TTL, gt=0)


class RemoteConfig(BaseModel):
    """Remote conversion service configuration."""

    enabled: bool = True
    max_file_size: int = DEFAULT_REMOTE_MAX_FILE_SIZE
    timeout: float = DEFAULT_REMOTE_TIMEOUT
    max_retries: int = Field(default=DEFAULT_REMOTE_MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    retry_max_delay: float = Field(default=DEFAULT_RETRY_MAX_DELAY, ge=0)
    cors_enabled: bool = True
    use_default_services: bool = True

    # Category ("pdf", "image", "mhtml") -> services, merged with the defaults by id
    services: dict[str, list[ServiceConfig]] = Field(default_factory=dict)
    # Service id -> authentication material
    authentication: dict[str, AuthConfig] = Field(default_factory=dict)

    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    fallback: RemoteFallbackConfig = Field(default_factory=RemoteFallbackConfig)


class MemoryConfig(BaseModel):
    """Memory pressure monitoring configuration."""

    enabled: bool = True
    threshold: float = Field(default=DEFAULT_MEMORY_THRESHOLD, gt=0, le=1)


class TierConvertSettings(BaseSettings):
    """Main configuration class for TierConvert."""

    model_config = SettingsConfigDict(
        env_prefix="TIERCONVERT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        """Customize settings sources to include YAML file."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=DEFAULT_CONFIG_FILE),
            file_secret_settings,
        )

    # Sub-configurations
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    capability: CapabilityConfig = Field(default_factory=CapabilityConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    canvas: CanvasConfig = Field(default_factory=CanvasConfig)
    markup: MarkupConfig = Field(default_factory=MarkupConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)

    # Global settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_dir: str = DEFAULT_LOG_DIR


@lru_cache
def get_settings() -> TierConvertSettings:
    """Get cached settings instance."""
    return TierConvertSettings()


def reload_settings() -> TierConvertSettings:
    """Force reload settings (clear cache)."""
    get_settings.cache_clear()
    return get_settings()
