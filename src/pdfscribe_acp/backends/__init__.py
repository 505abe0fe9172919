"""Conversational backends and the name -> factory registry.

    backend = create_backend(load_config())
    async for event in backend.stream("Summarize page 3", context):
        ...
"""

from __future__ import annotations

from collections.abc import Callable

from ..config import BACKEND_ACP, BACKEND_ANTHROPIC, BACKEND_MOCK, BACKEND_OPENAI, ClientConfig
from .acp import AcpBackend
from .base import ConversationalBackend, ModeInfo, ModelInfo
from .direct_api import DirectApiBackend
from .mock import MockBackend

BackendFactory = Callable[[ClientConfig], ConversationalBackend]

BACKEND_FACTORIES: dict[str, BackendFactory] = {
    BACKEND_ACP: AcpBackend,
    BACKEND_OPENAI: lambda config: DirectApiBackend(config, "openai"),
    BACKEND_ANTHROPIC: lambda config: DirectApiBackend(config, "anthropic"),
    BACKEND_MOCK: MockBackend,
}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Make a backend selectable by ``ClientConfig.backend``."""
    BACKEND_FACTORIES[name] = factory


def create_backend(config: ClientConfig) -> ConversationalBackend:
    """Build the backend named by ``config.backend``.

    Raises:
        ValueError: Unknown backend name.
        BackendError: A direct API backend has no API key.
    """
    factory = BACKEND_FACTORIES.get(config.backend)
    if factory is None:
        available = ", ".join(sorted(BACKEND_FACTORIES))
        raise ValueError(f"Unknown backend '{config.backend}' (available: {available})")
    return factory(config)


__all__ = [
    "BACKEND_FACTORIES",
    "AcpBackend",
    "BackendFactory",
    "ConversationalBackend",
    "DirectApiBackend",
    "MockBackend",
    "ModeInfo",
    "ModelInfo",
    "create_backend",
    "register_backend",
]
