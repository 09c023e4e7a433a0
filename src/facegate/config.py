"""Environment-based configuration for facegate."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MATCH_THRESHOLD: float = 0.7


class Settings(BaseSettings):
    """Application settings loaded from FACEGATE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEGATE_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model source: a local file wins over a Hub download
    model_path: str | None = None
    model_repo_id: str | None = None
    model_filename: str = "mobilefacenet.onnx"
    models_dir: str = "models"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Preprocessing
    channel_order: Literal["rgb", "bgr"] = "rgb"

    # Matching
    match_threshold: float = DEFAULT_MATCH_THRESHOLD

    # Concurrency (one inference in flight per model resource)
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
