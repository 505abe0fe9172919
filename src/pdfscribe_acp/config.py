"""Client configuration.

Sources, lowest to highest precedence:
1. ClientConfig defaults
2. YAML file (``~/.config/pdfscribe/acp.yaml`` unless a path is given)
3. PDFSCRIBE_* environment variables (plus the provider API key variables)
4. Explicit keyword overrides (CLI options)
"""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "pdfscribe" / "acp.yaml"

BACKEND_ACP = "acp"
BACKEND_OPENAI = "openai"
BACKEND_ANTHROPIC = "anthropic"
BACKEND_MOCK = "mock"

# Environment variable -> config field
ENV_VARS: dict[str, str] = {
    "PDFSCRIBE_BACKEND": "backend",
    "PDFSCRIBE_AGENT_COMMAND": "agent_command",
    "PDFSCRIBE_WORKING_DIR": "working_directory",
    "PDFSCRIBE_REQUEST_TIMEOUT": "request_timeout",
    "PDFSCRIBE_PROMPT_TIMEOUT": "prompt_timeout",
    "PDFSCRIBE_MODEL": "model",
    "OPENAI_API_KEY": "openai_api_key",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
}

_SECRET_FIELDS = frozenset({"openai_api_key", "anthropic_api_key"})


@dataclass
class ClientConfig:
    """Everything needed to reach a conversational backend."""

    backend: str = BACKEND_ACP
    agent_command: str = "opencode acp"
    working_directory: str = field(default_factory=os.getcwd)
    agent_env: dict[str, str] = field(default_factory=dict)

    # Bounded waits; prompts cover a whole model turn
    request_timeout: float = 30.0
    prompt_timeout: float | None = 600.0
    stop_timeout: float = 5.0

    delegation_tool: str = "task"
    mode: str | None = None
    model: str | None = None
    opencode_config_path: str | None = None

    # Direct API backends
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    api_base_url: str | None = None
    max_tokens: int = 4096

    # Mock backend
    mock_delay: float = 0.02

    def __post_init__(self) -> None:
        if self.prompt_timeout is not None and self.prompt_timeout <= 0:
            self.prompt_timeout = None

    @property
    def agent_argv(self) -> list[str]:
        """The agent command split into executable and arguments."""
        return shlex.split(self.agent_command)

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if redact:
            for name in _SECRET_FIELDS:
                if data.get(name):
                    data[name] = "***"
        return data


def _coerce(name: str, value: Any) -> Any:
    """Convert file/env values to the field's type."""
    if value is None:
        return None
    if name in ("request_timeout", "stop_timeout", "mock_delay"):
        return float(value)
    if name == "prompt_timeout":
        # 0 and "none" both disable the timeout, from any source
        if isinstance(value, str) and value.strip().lower() in ("", "none"):
            return None
        timeout = float(value)
        return timeout if timeout > 0 else None
    if name == "max_tokens":
        return int(value)
    if name == "agent_env":
        if not isinstance(value, Mapping):
            raise ValueError("agent_env must be a mapping")
        return {str(k): str(v) for k, v in value.items()}
    if name == "agent_command" and isinstance(value, list):
        return shlex.join(str(part) for part in value)
    return str(value)


def _read_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ClientConfig:
    """Build the effective configuration.

    Args:
        path: YAML file to read. When omitted the default path is used if it
            exists; an explicit path that does not exist is an error.
        env: Environment mapping (defaults to ``os.environ``).
        **overrides: Field values that win over every other source. None
            values are ignored so CLI options can be passed straight through.

    Raises:
        FileNotFoundError: An explicit config path does not exist.
        ValueError: The file or a value has the wrong shape.
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(ClientConfig)}
    values: dict[str, Any] = {}

    config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
    if path or config_path.exists():
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        for key, value in _read_file(config_path).items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
                continue
            values[key] = _coerce(key, value)
        logger.debug(f"Loaded config from {config_path}")

    for env_var, name in ENV_VARS.items():
        raw = env.get(env_var)
        if raw:
            values[name] = _coerce(name, raw)

    for name, value in overrides.items():
        if name not in known:
            raise TypeError(f"Unknown config field: {name}")
        if value is not None:
            values[name] = value

    return ClientConfig(**values)
