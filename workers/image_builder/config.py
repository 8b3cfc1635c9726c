"""
Tool configuration

Operational knobs only.  Target ABI, profile and artifact path belong to
the pipeline definition and are not settable from the environment.
"""
import tempfile
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from IMAGE_BUILDER_* environment variables and .env"""

    # Workspaces
    WORKSPACE_ROOT: str = tempfile.gettempdir()
    OUTPUT_DIR: str = "dist"
    KEEP_WORKSPACE: bool = False

    # Builder execution
    EXECUTOR: Literal["container", "host"] = "container"
    STEP_TIMEOUT: int = 1800  # seconds

    # Container engine
    ENGINE_BINARY: str = "docker"
    ENGINE_BUILD: bool = True

    model_config = SettingsConfigDict(
        env_prefix="IMAGE_BUILDER_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )
