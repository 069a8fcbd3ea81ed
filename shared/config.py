"""
Type-safe configuration for canvasflow using Pydantic Settings.

Everything is loaded from environment variables or a local .env file and
validated once at import time.

Usage:
    from shared.config import config

    policy = PropagationPolicy.from_config(config)
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CanvasflowConfig(BaseSettings):
    """
    Central configuration for canvasflow.

    All configuration is loaded from environment variables or .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ============================================================================
    # Remote runner
    # ============================================================================

    runner_base_url: str = Field(default="http://127.0.0.1:8100", description="Execution backend base URL")
    runner_timeout_seconds: float = Field(default=10.0, description="Timeout for the start-run call")

    # ============================================================================
    # Schema propagation
    # ============================================================================

    propagation_max_attempts: int = Field(default=3, ge=1, description="Write attempts before deferring")
    propagation_base_delay_seconds: float = Field(default=0.5, ge=0, description="Delay after the first failure")
    propagation_backoff_factor: float = Field(default=2.0, ge=1, description="Delay multiplier between attempts")
    propagation_attempt_timeout_seconds: float = Field(default=5.0, gt=0, description="Timeout per write attempt")
    propagation_recheck_delay_seconds: float = Field(default=10.0, ge=0, description="Delay before the deferred re-check")

    # ============================================================================
    # Identity migration & autosave
    # ============================================================================

    migration_step_attempts: int = Field(default=2, ge=1, description="Attempts per migration step")
    autosave_quiet_period_seconds: float = Field(default=1.0, ge=0, description="Debounce window for autosave")
    default_workflow_name: str = Field(default="New Workflow")

    # ============================================================================
    # Execution status stream
    # ============================================================================

    status_stale_cutoff_seconds: float = Field(default=300.0, gt=0, description="Silence before a run is indeterminate")
    status_reconnect_attempts: int = Field(default=5, ge=0, description="Reconnects after a transport failure")
    status_reconnect_delay_seconds: float = Field(default=1.0, ge=0)
    status_poll_timeout_seconds: float = Field(default=25.0, gt=0, description="Long-poll window of the HTTP stream")

    log_level: str = Field(default="INFO", description="Console log level")


# ============================================================================
# Global Config Instance
# ============================================================================

config = CanvasflowConfig()
