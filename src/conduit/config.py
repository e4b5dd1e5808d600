"""Configuration for Conduit.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``./conduit.yaml``
  3. ``~/.config/conduit/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool execution policies
# ---------------------------------------------------------------------------

class MissingToolPolicy(enum.Enum):
    """What to do when the model calls a tool that is not registered."""

    RAISE = "raise"              # raise InvalidInputError
    EMIT_OUTPUT = "emit_output"  # return a textual ToolOutput describing the omission


class RetryCondition(enum.Enum):
    NEVER = "never"
    RETRYABLE_ERRORS = "retryable_errors"
    ALL_FAILURES_EXCEPT_CANCELLATION = "all_failures_except_cancellation"


@dataclass(frozen=True)
class RetryPolicy:
    """Immediate, attempt-counted retry rule for tool execution.

    ``max_attempts`` includes the first attempt; values below 1 clamp to 1.
    There is no delay between attempts.
    """

    max_attempts: int = 1
    condition: RetryCondition = RetryCondition.RETRYABLE_ERRORS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            object.__setattr__(self, "max_attempts", 1)

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_attempts=1, condition=RetryCondition.NEVER)

    @classmethod
    def retryable_errors(cls, max_attempts: int) -> RetryPolicy:
        return cls(max_attempts=max_attempts, condition=RetryCondition.RETRYABLE_ERRORS)

    @classmethod
    def all_failures(cls, max_attempts: int) -> RetryPolicy:
        return cls(
            max_attempts=max_attempts,
            condition=RetryCondition.ALL_FAILURES_EXCEPT_CANCELLATION,
        )


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """Connection settings for the streaming backend."""

    url: str = "https://api.anthropic.com"
    api_key: str = ""
    api_version: str = "2023-06-01"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    timeout: float = 120
    max_retries: int = 3
    backoff_base: float = 1.0  # seconds -- exponential: 1, 2, 4
    extra_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionSpec:
    """Per-conversation limits and tool policies."""

    max_tool_call_rounds: int = 8
    tool_retry: RetryPolicy = field(default_factory=RetryPolicy.none)
    missing_tool_policy: MissingToolPolicy = MissingToolPolicy.RAISE

    def __post_init__(self) -> None:
        self.max_tool_call_rounds = max(0, self.max_tool_call_rounds)


@dataclass
class ConduitConfig:
    """Top-level config for Conduit."""

    provider: ProviderSpec = field(default_factory=ProviderSpec)
    session: SessionSpec = field(default_factory=SessionSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./conduit.yaml"),
    Path.home() / ".config" / "conduit" / "config.yaml",
]


def _parse_provider(raw: dict[str, Any] | None) -> ProviderSpec:
    if not raw:
        return ProviderSpec()
    known = {
        k: v for k, v in raw.items()
        if v is not None and k in ProviderSpec.__dataclass_fields__
    }
    return ProviderSpec(**known)


def _parse_retry(raw: dict[str, Any] | None) -> RetryPolicy:
    if not raw:
        return RetryPolicy.none()
    condition = raw.get("condition", RetryCondition.RETRYABLE_ERRORS.value)
    try:
        cond = RetryCondition(condition)
    except ValueError:
        _logger.warning("Unknown retry condition %r -- using 'never'", condition)
        cond = RetryCondition.NEVER
    return RetryPolicy(max_attempts=int(raw.get("max_attempts", 1)), condition=cond)


def _parse_session(raw: dict[str, Any] | None) -> SessionSpec:
    if not raw:
        return SessionSpec()
    missing = raw.get("missing_tool_policy", MissingToolPolicy.RAISE.value)
    try:
        missing_policy = MissingToolPolicy(missing)
    except ValueError:
        _logger.warning("Unknown missing_tool_policy %r -- using 'raise'", missing)
        missing_policy = MissingToolPolicy.RAISE
    return SessionSpec(
        max_tool_call_rounds=int(raw.get("max_tool_call_rounds", 8)),
        tool_retry=_parse_retry(raw.get("tool_retry")),
        missing_tool_policy=missing_policy,
    )


def load_config(path: str | Path | None = None) -> ConduitConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ConduitConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s -- using defaults", path)
            return ConduitConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found -- using defaults")
        return ConduitConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return ConduitConfig(
        provider=_parse_provider(raw.get("provider")),
        session=_parse_session(raw.get("session")),
    )
