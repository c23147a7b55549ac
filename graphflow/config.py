"""Shared graphflow configuration utilities.

Centralises reading of ~/.graphflow/configuration.json so that the scheduler
and any embedding application share one implementation. The file location can
be overridden with the GRAPHFLOW_CONFIG environment variable.

Example file:

    {
        "engine": {
            "max_steps_per_branch": 200,
            "default_step_timeout": "30s",
            "default_approval_timeout": "2h",
            "default_retry": {"max_attempts": 3, "initial_delay": "500ms"}
        },
        "logging": {"level": "DEBUG", "format": "human"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from graphflow.graph.node import RetryPolicy, parse_duration

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

GRAPHFLOW_CONFIG_FILE = Path.home() / ".graphflow" / "configuration.json"

DEFAULT_MAX_STEPS = 100
DEFAULT_APPROVAL_TIMEOUT = 3600.0


def get_config_path() -> Path:
    override = os.environ.get("GRAPHFLOW_CONFIG")
    return Path(override).expanduser() if override else GRAPHFLOW_CONFIG_FILE


def get_graphflow_config() -> dict[str, Any]:
    """Load graphflow configuration. Returns {} when the file is missing or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_section() -> dict[str, Any]:
    section = get_graphflow_config().get("engine", {})
    return section if isinstance(section, dict) else {}


def get_max_steps() -> int:
    """Return the per-branch step guard, falling back to DEFAULT_MAX_STEPS."""
    return int(_engine_section().get("max_steps_per_branch", DEFAULT_MAX_STEPS))


def get_default_step_timeout() -> float | None:
    value = _engine_section().get("default_step_timeout")
    return parse_duration(value) if value is not None else None


def get_default_approval_timeout() -> float:
    value = _engine_section().get("default_approval_timeout", DEFAULT_APPROVAL_TIMEOUT)
    return parse_duration(value)


def get_default_retry() -> RetryPolicy | None:
    """Engine-wide retry policy for nodes and workflows that declare none."""
    value = _engine_section().get("default_retry")
    return RetryPolicy.model_validate(value) if value else None


def get_log_settings() -> tuple[str, str]:
    """Return (level, format) for configure_logging()."""
    section = get_graphflow_config().get("logging", {})
    if not isinstance(section, dict):
        section = {}
    return section.get("level", "INFO"), section.get("format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig – consumed by WorkflowScheduler
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.graphflow/configuration.json."""

    max_steps_per_branch: int = field(default_factory=get_max_steps)
    default_step_timeout: float | None = field(default_factory=get_default_step_timeout)
    default_approval_timeout: float | None = field(default_factory=get_default_approval_timeout)
    default_retry: RetryPolicy | None = field(default_factory=get_default_retry)
