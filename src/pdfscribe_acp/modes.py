"""Agent modes offered to the user.

OpenCode ships three primary agents (build, plan, explore). Users can add
their own primary agents in ``~/.config/opencode/opencode.json``:

    {"agent": {"reviewer": {"mode": "primary", "name": "Reviewer",
                            "description": "Reviews drafts"}}}

Subagents (``mode`` other than ``primary``) are not selectable modes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

OPENCODE_CONFIG_PATH = Path.home() / ".config" / "opencode" / "opencode.json"


@dataclass(frozen=True)
class AgentMode:
    """A primary agent the session can run as."""

    id: str
    name: str
    description: str
    builtin: bool = False

    @property
    def agent_id(self) -> str:
        """Identifier sent to the agent in ``session/set_mode``."""
        return self.id.lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "builtin": self.builtin,
        }


BUILD = AgentMode("build", "Build", "Full permissions for coding and file modifications", builtin=True)
PLAN = AgentMode("plan", "Plan", "Read-only mode with planning capabilities", builtin=True)
EXPLORE = AgentMode("explore", "Explore", "Search and explore the codebase", builtin=True)

BUILTIN_MODES: tuple[AgentMode, ...] = (BUILD, PLAN, EXPLORE)


def load_primary_modes(config_path: str | Path | None = None) -> list[AgentMode]:
    """Return the built-in modes followed by custom primary agents.

    A missing or unreadable config file yields only the built-ins.
    """
    modes = list(BUILTIN_MODES)
    path = Path(config_path).expanduser() if config_path else OPENCODE_CONFIG_PATH

    if not path.exists():
        logger.debug(f"OpenCode config not found at {path}")
        return modes

    try:
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load OpenCode config {path}: {e}")
        return modes

    if not isinstance(config, dict):
        logger.warning(f"OpenCode config {path} is not an object")
        return modes

    agents = config.get("agents") or config.get("agent") or {}
    if not isinstance(agents, dict):
        logger.warning(f"OpenCode config {path}: 'agent' must be an object")
        return modes

    known = {mode.id for mode in modes}
    for agent_id, agent in agents.items():
        if not isinstance(agent, dict) or agent.get("mode") != "primary":
            continue
        if agent_id in known:
            continue
        modes.append(
            AgentMode(
                id=agent_id,
                name=agent.get("name") or agent_id.capitalize(),
                description=agent.get("description") or "Custom agent",
            )
        )
        known.add(agent_id)
        logger.debug(f"Loaded custom primary agent: {agent_id}")

    return modes


def find_mode(mode_id: str, modes: list[AgentMode] | None = None) -> AgentMode | None:
    for mode in modes if modes is not None else BUILTIN_MODES:
        if mode.id == mode_id or mode.agent_id == mode_id.lower():
            return mode
    return None
