"""Application settings and configuration.

This module provides Pydantic settings classes for runtime configuration,
loaded from environment variables with support for nested configuration.
"""

import logging

import pydantic_settings
from pydantic import BaseModel, Field, field_validator

from agent_runtime.platform.constants import (
    DOOM_LOOP_FAILURE_THRESHOLD,
    DOOM_LOOP_IDENTICAL_THRESHOLD,
    DOOM_LOOP_SAME_TOOL_THRESHOLD,
    INTERACTIVE_TOOL_NAMES,
    RETRY_BACKOFF_FACTOR,
    RETRY_INITIAL_DELAY_MS,
    RETRY_MAX_RETRIES,
    TOOL_HISTORY_SIZE,
)


class LoggingSettings(BaseModel):
    level: str = Field("INFO")
    json_output: bool = Field(True, description="True=JSON, False=colored console")

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v):
        v_upper = v.upper()
        if v_upper not in logging._nameToLevel:
            raise ValueError(f'invalid value "{v}"')
        return v_upper


class LitellmSettings(BaseModel):
    api_base: str | None = None
    api_key: str | None = None


class RetrySettings(BaseModel):
    """Stream retry policy.

    Attributes:
        initial_delay_ms: Delay before the first retry
        backoff_factor: Multiplier applied per additional attempt
        max_retries: Retries allowed per iteration before the failure is terminal
    """

    initial_delay_ms: int = Field(RETRY_INITIAL_DELAY_MS, ge=0)
    backoff_factor: float = Field(RETRY_BACKOFF_FACTOR, ge=1)
    max_retries: int = Field(RETRY_MAX_RETRIES, ge=0)


class LoopDetectionSettings(BaseModel):
    """Thresholds for stuck-loop detection.

    Attributes:
        failure_threshold: Identical failing results that end the run
        identical_threshold: Identical consecutive calls that end the run
        same_tool_threshold: Consecutive calls to one tool (any arguments) that end the run
        history_size: Records kept in each sliding history
        interactive_tools: Tools that wait on a human and are exempt from detection
    """

    failure_threshold: int = Field(DOOM_LOOP_FAILURE_THRESHOLD, ge=1)
    identical_threshold: int = Field(DOOM_LOOP_IDENTICAL_THRESHOLD, ge=1)
    same_tool_threshold: int = Field(DOOM_LOOP_SAME_TOOL_THRESHOLD, ge=1)
    history_size: int = Field(TOOL_HISTORY_SIZE, ge=1)
    interactive_tools: frozenset[str] = INTERACTIVE_TOOL_NAMES

    @field_validator("history_size")
    @classmethod
    def _validate_history_size(cls, v, info):
        needed = max(
            info.data.get("failure_threshold", 0),
            info.data.get("identical_threshold", 0),
            info.data.get("same_tool_threshold", 0),
        )
        if v < needed:
            raise ValueError(f"history_size must be at least {needed}")
        return v


class Settings(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix="AGENT_RUNTIME_",
        env_nested_delimiter="__",
    )

    logging: LoggingSettings = LoggingSettings()

    # LiteLLM configuration
    litellm: LitellmSettings = LitellmSettings()

    # Iteration loop behaviour
    retry: RetrySettings = RetrySettings()
    loop_detection: LoopDetectionSettings = LoopDetectionSettings()
