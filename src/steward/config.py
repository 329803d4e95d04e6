"""
Engine configuration for Steward.

Configuration is a single EngineConfig model, loaded from YAML the same way
handshakes are. Everything has a working default so an empty file (or no
file at all) is a valid configuration.

Example:
    model:
      base_url: http://localhost:8000/v1
      model: local-coder
    approval_timeout_seconds: 120
    tool_timeouts:
      exec: 300
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

from steward.schema import CapabilityFamily

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful software agent working on the user's machine. "
    "Use the available tools to complete the user's request. "
    "Tool calls may be denied by policy or by the user; when that happens, "
    "read the reason and choose a permitted alternative."
)


class ModelEndpointConfig(BaseModel):
    """
    Settings for the streaming model endpoint.

    Attributes:
        base_url: Base URL of an OpenAI-compatible API (".../v1")
        model: Model name sent with each request
        api_key_env: Environment variable holding the API key (optional)
        timeout_seconds: Per-request network timeout
        max_retries: Retries after the first attempt for retryable failures
        base_delay_seconds: First backoff delay
        max_delay_seconds: Backoff cap
        jitter_ratio: Random extra delay as a fraction of the backoff
        temperature: Sampling temperature
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = Field(default="http://localhost:11434/v1")
    model: str = Field(default="qwen2.5-coder:7b")
    api_key_env: str | None = Field(default=None)
    timeout_seconds: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    max_delay_seconds: float = Field(default=8.0, ge=0)
    jitter_ratio: float = Field(default=0.2, ge=0, le=1)
    temperature: float | None = Field(default=0.1)

    def api_key(self) -> str | None:
        """Read the API key from the configured environment variable."""
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env) or None


class EngineConfig(BaseModel):
    """
    Complete engine configuration.

    Attributes:
        model: Model endpoint settings
        system_prompt: System instructions placed at the head of the thread
        approval_timeout_seconds: How long to wait for a human decision
        tool_timeouts: Per-category execution timeouts, keyed by capability family
        default_tool_timeout_seconds: Timeout for families not listed above
        artifact_threshold_bytes: Tool output above this size becomes an artifact
        recency_window: Most recent messages always kept verbatim on truncation
        system_share: Fraction of the input budget reserved for system + tools
        step_warning_ratio: Fraction of max_steps at which to warn
        max_continuations: Consecutive output-limit continuations allowed
        checkpoint_dir: Directory holding the session checkpoint file
        history_db_path: SQLite file for the local history/artifact store
        path_case_sensitive: Case rule for path comparison (None = platform rule)
        history_upload_retries: Retries for best-effort history uploads
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    model: ModelEndpointConfig = Field(default_factory=ModelEndpointConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    approval_timeout_seconds: float = Field(default=300.0, gt=0)
    tool_timeouts: dict[CapabilityFamily, float] = Field(
        default_factory=lambda: {
            CapabilityFamily.FILE: 30.0,
            CapabilityFamily.EXEC: 120.0,
            CapabilityFamily.NETWORK: 60.0,
        }
    )
    default_tool_timeout_seconds: float = Field(default=60.0, gt=0)
    artifact_threshold_bytes: int = Field(default=16 * 1024, gt=0)
    recency_window: int = Field(default=8, ge=1)
    system_share: float = Field(default=0.25, gt=0, lt=1)
    step_warning_ratio: float = Field(default=0.8, gt=0, le=1)
    max_continuations: int = Field(default=5, ge=0)
    checkpoint_dir: Path = Field(default=Path(".steward/checkpoints"))
    history_db_path: Path = Field(default=Path(".steward/history.db"))
    path_case_sensitive: bool | None = Field(default=None)
    history_upload_retries: int = Field(default=3, ge=0)

    def tool_timeout(self, family: CapabilityFamily) -> float:
        """Timeout for one tool category."""
        return self.tool_timeouts.get(family, self.default_tool_timeout_seconds)


def load_config(path: Path | str | None) -> EngineConfig:
    """
    Load engine configuration from a YAML file.

    A None path returns the defaults.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    if path is None:
        return EngineConfig()
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return EngineConfig.model_validate(data or {})


def load_config_from_string(content: str) -> EngineConfig:
    """Load engine configuration from a YAML string."""
    data = yaml.safe_load(content)
    return EngineConfig.model_validate(data or {})
