"""
Assistant Configuration — storage key names and validated runtime settings.

Reads settings from environment variables prefixed with ``OVERLAY_``:
    OVERLAY_INSTALLATION_ID = <stable per-installation identifier>
    OVERLAY_PBKDF2_ITERATIONS = <int>
    OVERLAY_FLUSH_DELAY / OVERLAY_FLUSH_MAX_WINDOW = <seconds>
    OVERLAY_KEEPALIVE_INTERVAL = <seconds>
    ...

Security Note:
    The installation identifier is key material. Never log it.
"""
import os
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("overlay.conf")

# ---------------------------------------------------------------------------
# Persisted key names
# ---------------------------------------------------------------------------

SALT_STORAGE_KEY = "_encryption_salt"
TRANSCRIPT_STORAGE_KEY = "_transcript_buffer"
SESSION_MARKER_KEY = "_transcription_active"
SETTINGS_STORAGE_KEY = "overlay-settings"
CIRCUIT_STORAGE_PREFIX = "circuit_"

# Reasoning streams never get fewer tokens than this.
MIN_REASONING_TOKEN_BUDGET = 25_000

# Dotted paths of the document fields encrypted at rest.
ENCRYPTED_FIELDS: tuple[str, ...] = (
    "api_keys.openai",
    "api_keys.openrouter",
    "api_keys.elevenlabs",
)

_ENV_PREFIX = "OVERLAY_"


class AssistantConfig(BaseModel):
    """Validated assistant configuration."""

    installation_id: str = Field(min_length=1, repr=False)
    pbkdf2_iterations: int = Field(default=100_000, ge=10_000)

    # transcript buffer
    flush_delay: float = Field(default=0.5, gt=0)
    flush_max_window: float = Field(default=2.0, gt=0)
    max_entries: Optional[int] = Field(default=5000, ge=1)

    # liveness
    keepalive_interval: float = Field(default=20.0, gt=0)

    # token budgets
    fast_max_tokens: int = Field(default=300, ge=1)
    full_max_tokens: int = Field(default=2000, ge=1)
    reasoning_min_tokens: int = Field(
        default=MIN_REASONING_TOKEN_BUDGET, ge=MIN_REASONING_TOKEN_BUDGET,
    )

    # orchestration
    startup_timeout: float = Field(default=10.0, gt=0)
    cancel_previous_queries: bool = True
    recent_context_entries: int = Field(default=5, ge=0)

    # circuit breaker
    breaker_failure_threshold: int = Field(default=3, ge=1)
    breaker_recovery_timeout: float = Field(default=60.0, gt=0)
    breaker_half_open_successes: int = Field(default=1, ge=1)

    @field_validator("installation_id")
    @classmethod
    def validate_installation_id(cls, v: str) -> str:
        """Reject identifiers made only of whitespace."""
        if not v.strip():
            raise ValueError("installation_id cannot be blank")
        return v

    @model_validator(mode="after")
    def validate_flush_window(self) -> "AssistantConfig":
        """Ensure the maximum flush window is not shorter than the delay."""
        if self.flush_max_window < self.flush_delay:
            raise ValueError(
                f"flush_max_window ({self.flush_max_window}) must be >= "
                f"flush_delay ({self.flush_delay})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "AssistantConfig":
        """Create AssistantConfig by loading values from environment.

        Every field may be set through ``OVERLAY_<FIELD_NAME>``; keyword
        overrides win over the environment.

        Returns:
            Populated AssistantConfig instance.

        Raises:
            pydantic.ValidationError: If a value is missing or invalid.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        config = cls(**values)
        logger.debug(
            "Loaded assistant config from environment (%d value(s))",
            len(values),
        )
        return config


class AssistantSettings(BaseModel):
    """User settings document, persisted through the encrypted adapter.

    ``api_keys`` values are the fields encrypted at rest.
    """

    api_keys: dict[str, str] = Field(default_factory=dict)
    fast_model: str = "gpt-4o-mini"
    full_model: str = "gpt-4o"
    reasoning_model: str = "o4-mini"
    reasoning_effort: Optional[str] = "medium"
    active_template_id: str = "default"
    templates: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("reasoning_effort")
    @classmethod
    def validate_effort(cls, v: Optional[str]) -> Optional[str]:
        """Validate reasoning effort is supported."""
        if v is not None and v not in ("low", "medium", "high"):
            raise ValueError(f"Unsupported reasoning effort: {v}")
        return v
