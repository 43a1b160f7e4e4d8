from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    data_dir: str = "data"
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Keys
    gemini_api_key: str | None = None
    openai_api_key: str | None = None

    # Models
    gemini_image_model: str = "gemini-3-pro-image-preview"
    gemini_vision_model: str = "gemini-2.5-flash"
    openai_text_model: str = "gpt-4.1-mini"

    # Context fan-out
    source_timeout_s: float = 5.0
    reference_hosts: list[str] = ["res.cloudinary.com", "images.unsplash.com", "cdn.pixabay.com"]
    max_reference_images: int = 3

    # Provider call
    invoke_timeout_s: float = 120.0
    invoke_max_attempts: int = 3
    invoke_backoff_base_s: float = 1.0
    invoke_backoff_max_s: float = 8.0

    # Critic / retry loop
    max_attempts: int = 3
    critic_pass_threshold: int = 60

    # Pre-generation gate
    gate_enabled: bool = True
    gate_block_threshold: int = 40
    gate_warn_threshold: int = 60

    # Input validation
    max_images: int = 6
    max_image_mb: int = 10
    allowed_mime_types: list[str] = ["image/png", "image/jpeg", "image/webp", "image/heic", "image/heif"]


settings = Settings()
