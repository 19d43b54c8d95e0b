"""Shared agentloop configuration utilities.

Centralises reading of ~/.agentloop/configuration.json and the trace
environment variables so the agent facade, the LiteLLM provider and the
budget defaults share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 8192

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

AGENTLOOP_CONFIG_FILE = Path.home() / ".agentloop" / "configuration.json"


def get_agentloop_config() -> dict[str, Any]:
    """Load configuration from ~/.agentloop/configuration.json."""
    if not AGENTLOOP_CONFIG_FILE.exists():
        return {}
    try:
        with open(AGENTLOOP_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the user's preferred LiteLLM model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = get_agentloop_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_agentloop_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable specified in configuration."""
    llm = get_agentloop_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_budget_overrides() -> dict[str, Any]:
    """Return budget overrides from the "limits" section (may be empty)."""
    limits = get_agentloop_config().get("limits", {})
    return limits if isinstance(limits, dict) else {}


# ---------------------------------------------------------------------------
# RuntimeConfig – model settings for the default provider
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Model runtime configuration loaded from ~/.agentloop/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None


# ---------------------------------------------------------------------------
# Trace configuration
# ---------------------------------------------------------------------------

TRACE_ENV_VAR = "AGENTLOOP_TRACE"
TRACE_PATH_ENV_VAR = "AGENTLOOP_TRACE_PATH"
DEFAULT_TRACE_DIR = ".traces"


@dataclass
class TraceOptions:
    """Where (and whether) to write the NDJSON trace of a run."""

    enabled: bool = True
    path: str | None = None
    include_tool_results: bool = False

    def resolve_path(self) -> Path:
        """Return the configured path, or ``.traces/trace-<timestamp>.ndjson``."""
        if self.path:
            return Path(self.path)
        ts = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
        return Path(DEFAULT_TRACE_DIR) / f"trace-{ts}.ndjson"


def trace_config_from_env() -> TraceOptions | None:
    """Build trace options from AGENTLOOP_TRACE / AGENTLOOP_TRACE_PATH.

    A path variable alone enables tracing. Returns None when neither is set.
    """
    flag = os.environ.get(TRACE_ENV_VAR, "").strip().lower()
    path = os.environ.get(TRACE_PATH_ENV_VAR) or None
    if flag in ("1", "true", "yes", "on") or path:
        return TraceOptions(enabled=True, path=path)
    return None


def normalize_trace_config(trace: Any) -> TraceOptions | None:
    """Coerce a user-facing trace setting into TraceOptions.

    None defers to the environment and False disables tracing. Also accepts
    True, a path string, a ``{"path": ...}`` mapping or a TraceOptions instance.
    """
    if trace is None:
        return trace_config_from_env()
    if isinstance(trace, TraceOptions):
        return trace if trace.enabled else None
    if trace is False:
        return None
    if trace is True:
        return TraceOptions(enabled=True)
    if isinstance(trace, str | Path):
        return TraceOptions(enabled=True, path=str(trace))
    if isinstance(trace, dict):
        if not trace.get("enabled", True):
            return None
        return TraceOptions(
            enabled=True,
            path=trace.get("path"),
            include_tool_results=bool(trace.get("include_tool_results", False)),
        )
    raise TypeError(f"Unsupported trace configuration: {trace!r}")
