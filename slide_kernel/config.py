from pathlib import Path
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SlideKernelSettings(BaseSettings):
    """Runtime configuration, overridable through SLIDE_KERNEL_* environment variables."""

    # Background server endpoint. Fixed for the lifetime of the process.
    HOST: str = Field("localhost", frozen=True)
    PORT: int = Field(default=8989, ge=1024, le=65535)
    TOKEN: str = Field(default="c8deb952f41e46e2a22d708358406560", min_length=1)
    SERVER_MODULE: str = "jupyter_server"

    # Startup polling: 50 attempts x 500ms ~= 25s
    POLL_INTERVAL: float = Field(default=0.5, gt=0)
    MAX_POLL_ATTEMPTS: int = Field(default=50, ge=1)

    # Grace period between SIGINT and SIGKILL on shutdown
    SHUTDOWN_GRACE_PERIOD: float = Field(default=5.0, gt=0)

    PROBE_TIMEOUT: float = Field(default=30.0, gt=0)
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)

    # Interpreter requirements
    REQUIRED_PACKAGES: List[str] = ["ipykernel", "jupyter_server"]
    INSTALL_PACKAGES: List[str] = ["ipykernel", "jupyter_server"]
    MISSING_MODULE_MARKER: str = "No module named"

    # Kernel registration
    KERNEL_NAME_PREFIX: str = "ipynb-slideshow-"
    AUTO_REGISTER_KERNEL: bool = True

    STATE_DB_PATH: Path = Path.home() / ".slide-kernel" / "workspace_state.db"

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="SLIDE_KERNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Single settings object shared across the package
settings = SlideKernelSettings()
