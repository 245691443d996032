"""Application configuration using Pydantic BaseSettings."""

import logging
from pathlib import Path

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:5173", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=3088, alias="PORT")

    # Render backend (node-graph execution service)
    render_backend_url: str = Field(default="http://127.0.0.1:8188", alias="RENDER_BACKEND_URL")
    render_submit_timeout_seconds: float = Field(
        default=30.0, alias="RENDER_SUBMIT_TIMEOUT_SECONDS"
    )
    render_timeout_seconds: float = Field(default=600.0, alias="RENDER_TIMEOUT_SECONDS")

    # Fixed base pipeline models (names as the render backend lists them)
    base_unet_name: str = Field(default="z_image_turbo_bf16.safetensors", alias="BASE_UNET_NAME")
    base_clip_name: str = Field(default="qwen_3_4b.safetensors", alias="BASE_CLIP_NAME")
    base_clip_type: str = Field(default="lumina2", alias="BASE_CLIP_TYPE")
    base_vae_name: str = Field(default="ae.safetensors", alias="BASE_VAE_NAME")
    idle_lora_name: str = Field(default="umrgen_idle.safetensors", alias="IDLE_LORA_NAME")
    detail_detector_model: str = Field(
        default="bbox/face_yolov8m.pt", alias="DETAIL_DETECTOR_MODEL"
    )
    sampler_name: str = Field(default="euler", alias="SAMPLER_NAME")
    scheduler_name: str = Field(default="simple", alias="SCHEDULER_NAME")

    # Filesystem roots
    output_root: Path = Field(default=Path("data/outputs"), alias="OUTPUT_ROOT")
    session_root: Path = Field(default=Path("data/sessions"), alias="SESSION_ROOT")
    backend_lora_dir: Path = Field(default=Path("data/backend_loras"), alias="BACKEND_LORA_DIR")

    # Session assets (custom models)
    max_asset_bytes: int = Field(default=512 * 1024 * 1024, alias="MAX_ASSET_BYTES")
    min_asset_bytes: int = Field(default=1024, alias="MIN_ASSET_BYTES")
    session_ttl_hours: float = Field(default=24.0, alias="SESSION_TTL_HOURS")
    sweep_interval_seconds: float = Field(default=600.0, alias="SWEEP_INTERVAL_SECONDS")
    import_connect_timeout_seconds: float = Field(
        default=10.0, alias="IMPORT_CONNECT_TIMEOUT_SECONDS"
    )
    max_url_length: int = Field(default=2048, alias="MAX_URL_LENGTH")

    # Job queue
    queue_capacity: int = Field(default=20, alias="QUEUE_CAPACITY")
    job_retention_seconds: float = Field(default=300.0, alias="JOB_RETENTION_SECONDS")
    eta_default_seconds: float = Field(default=30.0, alias="ETA_DEFAULT_SECONDS")
    eta_window: int = Field(default=10, alias="ETA_WINDOW")
    history_limit: int = Field(default=100, alias="HISTORY_LIMIT")

    # Request gateway
    rate_limit_per_minute: int = Field(default=6, alias="RATE_LIMIT_PER_MINUTE")
    max_prompt_chars: int = Field(default=1000, alias="MAX_PROMPT_CHARS")
    default_negative_prompt: str = Field(
        default="bad quality, blurry, ugly, deformed", alias="DEFAULT_NEGATIVE_PROMPT"
    )

    # Capability tokens
    token_secret: str = Field(default="", alias="TOKEN_SECRET")
    token_ttl_hours: float = Field(default=24.0 * 30, alias="TOKEN_TTL_HOURS")
    pro_activation_key: str = Field(default="", alias="PRO_ACTIVATION_KEY")
    trial_activation_key: str = Field(default="", alias="TRIAL_ACTIVATION_KEY")
    trial_usage_limit: int = Field(default=20, alias="TRIAL_USAGE_LIMIT")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def render_ws_url(self) -> str:
        """WebSocket base URL derived from the render backend HTTP URL."""
        base = self.render_backend_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :]
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :]
        return base

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        # TOKEN_SECRET signs every capability token
        if not self.token_secret:
            missing.append("TOKEN_SECRET: Generate a random secret, e.g. `openssl rand -hex 32`")

        if self.min_asset_bytes >= self.max_asset_bytes:
            missing.append("MIN_ASSET_BYTES must be smaller than MAX_ASSET_BYTES")

        if missing:
            error_msg = "CRITICAL: Invalid or missing configuration:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        renderer = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
