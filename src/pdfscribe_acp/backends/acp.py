"""Backend that talks to an ACP agent (OpenCode) through AcpClient."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from ..client import AcpClient
from ..config import ClientConfig
from ..context import PromptContext
from ..dispatcher import PromptHandle, PromptPayload
from ..modes import load_primary_modes
from ..protocol.events import ErrorEvent, StreamEvent, TurnComplete
from .base import ModeInfo, ModelInfo

logger = logging.getLogger(__name__)


class AcpBackend:
    """One ACP session in the configured working directory.

    The agent keeps the conversation history, so prior messages in the
    PromptContext are not resent.
    """

    name = "acp"

    def __init__(self, config: ClientConfig, *, client: AcpClient | None = None):
        self.config = config
        self.client = client or AcpClient(config)
        self._session_id: str | None = None
        self._mode_id = config.mode
        self._model_id = config.model
        self._handle: PromptHandle | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def _ensure_session(self) -> str:
        sessions = self.client.sessions
        if self._session_id is not None and sessions is not None and sessions.find(self._session_id):
            return self._session_id

        self._session_id = await self.client.new_session(self.config.working_directory)
        if self._mode_id:
            await self.client.set_mode(self._session_id, self._mode_id)
        return self._session_id

    async def stream(self, message: str, context: PromptContext | None = None) -> AsyncIterator[StreamEvent]:
        session_id = await self._ensure_session()
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        unsubscribe = self.client.on_event(session_id, queue.put_nowait)

        try:
            payload = context.to_payload(message) if context else PromptPayload(text=message)
            handle = await self.client.dispatch(session_id, payload)
            self._handle = handle

            while True:
                event = await queue.get()
                yield event
                if isinstance(event, TurnComplete) and not event.is_delegated:
                    break
                if isinstance(event, ErrorEvent) and (event.fatal or handle.failed):
                    break
        finally:
            unsubscribe()
            self._handle = None

    def available_models(self) -> list[ModelInfo]:
        # OpenCode picks the model from its own config
        if self._model_id:
            return [ModelInfo(id=self._model_id, name=self._model_id, provider="opencode")]
        return []

    def available_modes(self) -> list[ModeInfo]:
        sessions = self.client.sessions
        session = sessions.find(self._session_id) if sessions and self._session_id else None
        if session is not None and session.available_modes:
            return [
                ModeInfo(id=m.get("id", ""), name=m.get("name") or m.get("id", ""), description=m.get("description"))
                for m in session.available_modes
            ]
        return [
            ModeInfo(id=mode.id, name=mode.name, description=mode.description)
            for mode in load_primary_modes(self.config.opencode_config_path)
        ]

    def current_model(self) -> ModelInfo | None:
        models = self.available_models()
        return models[0] if models else None

    def current_mode(self) -> ModeInfo | None:
        mode_id = self._mode_id
        sessions = self.client.sessions
        session = sessions.find(self._session_id) if sessions and self._session_id else None
        if session is not None and session.current_mode_id:
            mode_id = session.current_mode_id
        if mode_id is None:
            return None
        for mode in self.available_modes():
            if mode.id == mode_id:
                return mode
        return ModeInfo(id=mode_id, name=mode_id)

    async def select_model(self, model_id: str) -> None:
        self._model_id = model_id
        logger.info(f"Model preference set to {model_id} (applied by the agent's config)")

    async def select_mode(self, mode_id: str) -> None:
        self._mode_id = mode_id
        sessions = self.client.sessions
        if self._session_id is not None and sessions is not None and sessions.find(self._session_id):
            await self.client.set_mode(self._session_id, mode_id)

    async def cancel(self) -> None:
        if self._handle is not None and not self._handle.done() and self._session_id is not None:
            await self.client.cancel(self._session_id)

    async def aclose(self) -> None:
        await self.client.aclose()
        self._session_id = None
