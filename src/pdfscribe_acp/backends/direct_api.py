"""Backends that call OpenAI or Anthropic over HTTP.

No agent, no tools: one request per message, answered with a single
MessageChunk and a TurnComplete. Failed requests end the stream with an
ErrorEvent instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, Literal

import httpx

from ..config import ClientConfig
from ..context import ChatMessage, PromptContext
from ..dispatcher import PromptPayload
from ..errors import BackendError
from ..protocol.events import ErrorEvent, MessageChunk, StreamEvent, TurnComplete
from .base import ModeInfo, ModelInfo, local_session_id

logger = logging.getLogger(__name__)

Provider = Literal["openai", "anthropic"]

OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

OPENAI_MODELS = [
    ModelInfo(id="gpt-4o", name="GPT-4o", provider="openai"),
    ModelInfo(id="gpt-4o-mini", name="GPT-4o Mini", provider="openai"),
    ModelInfo(id="gpt-4-turbo", name="GPT-4 Turbo", provider="openai"),
    ModelInfo(id="gpt-4", name="GPT-4", provider="openai"),
]

ANTHROPIC_MODELS = [
    ModelInfo(id="claude-3-5-sonnet-20241022", name="Claude 3.5 Sonnet", provider="anthropic"),
    ModelInfo(id="claude-3-5-haiku-20241022", name="Claude 3.5 Haiku", provider="anthropic"),
    ModelInfo(id="claude-3-opus-20240229", name="Claude 3 Opus", provider="anthropic"),
]


def render_prompt(payload: PromptPayload) -> str:
    """Flatten a payload into plain text; resources are inlined after the prompt."""
    parts = [payload.prompt_text]
    for resource in payload.resources:
        parts.append(f"[Resource: {resource.uri}]\n{resource.text}")
    return "\n\n".join(parts)


class DirectApiBackend:
    """Chat completions against a hosted model API.

    The backend keeps its own history unless the PromptContext supplies
    the prior messages.
    """

    def __init__(
        self,
        config: ClientConfig,
        provider: Provider,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.provider = provider
        self.name = provider

        api_key = config.openai_api_key if provider == "openai" else config.anthropic_api_key
        if not api_key:
            env_var = "OPENAI_API_KEY" if provider == "openai" else "ANTHROPIC_API_KEY"
            raise BackendError(f"No API key for {provider}; set {env_var}")
        self._api_key = api_key

        self._models = OPENAI_MODELS if provider == "openai" else ANTHROPIC_MODELS
        self._model = self._models[0]
        if config.model:
            self._model = self._find_model(config.model)

        base_url = config.api_base_url or (OPENAI_BASE_URL if provider == "openai" else ANTHROPIC_BASE_URL)
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=config.request_timeout)
        self._owns_http = http_client is None

        self.session_id = local_session_id(provider)
        self.history: list[ChatMessage] = []
        self._request: asyncio.Task[str] | None = None
        self._cancelled = False

    def _find_model(self, model_id: str) -> ModelInfo:
        for model in self._models:
            if model.id == model_id:
                return model
        # Newer models the list does not know yet are passed through
        return ModelInfo(id=model_id, name=model_id, provider=self.provider)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _request_body(self, messages: list[ChatMessage]) -> dict[str, Any]:
        if self.provider == "openai":
            return {
                "model": self._model.id,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "temperature": 0.7,
            }

        body: dict[str, Any] = {
            "model": self._model.id,
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
            "max_tokens": self.config.max_tokens,
        }
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        if system:
            body["system"] = system
        return body

    def _headers(self) -> dict[str, str]:
        if self.provider == "openai":
            return {"Authorization": f"Bearer {self._api_key}"}
        return {"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_VERSION}

    @staticmethod
    def _extract_text(provider: Provider, data: Any) -> str:
        try:
            if provider == "openai":
                return str(data["choices"][0]["message"]["content"])
            return "".join(
                block.get("text", "") for block in data["content"] if block.get("type", "text") == "text"
            )
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError(f"Unexpected {provider} response shape") from e

    async def complete(self, messages: list[ChatMessage]) -> str:
        """Send the conversation and return the assistant's reply.

        Raises:
            BackendError: network failure, non-200 status, or a response
                without text.
        """
        path = "/chat/completions" if self.provider == "openai" else "/messages"
        try:
            response = await self._http.post(path, json=self._request_body(messages), headers=self._headers())
        except httpx.HTTPError as e:
            raise BackendError(f"{self.provider} request failed: {e}") from e

        if response.status_code != 200:
            raise BackendError(f"{self.provider} API error {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(f"{self.provider} returned invalid JSON") from e
        return self._extract_text(self.provider, data)

    async def stream(self, message: str, context: PromptContext | None = None) -> AsyncIterator[StreamEvent]:
        payload = context.to_payload(message) if context else PromptPayload(text=message)
        prior = list(context.messages) if context and context.messages else list(self.history)
        user_message = ChatMessage(role="user", content=render_prompt(payload))

        self._cancelled = False
        self._request = asyncio.create_task(self.complete([*prior, user_message]))
        try:
            text = await self._request
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            yield TurnComplete(session_id=self.session_id, sequence=0, stop_reason="cancelled")
            return
        except BackendError as e:
            logger.warning(str(e))
            yield ErrorEvent(session_id=self.session_id, sequence=0, kind=e.kind_name, message=str(e))
            return
        finally:
            self._request = None

        self.history.extend([ChatMessage(role="user", content=message), ChatMessage(role="assistant", content=text)])
        yield MessageChunk(session_id=self.session_id, sequence=0, text=text)
        yield TurnComplete(session_id=self.session_id, sequence=1, stop_reason="end_turn")

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def available_models(self) -> list[ModelInfo]:
        return list(self._models)

    def available_modes(self) -> list[ModeInfo]:
        return []

    def current_model(self) -> ModelInfo | None:
        return self._model

    def current_mode(self) -> ModeInfo | None:
        return None

    async def select_model(self, model_id: str) -> None:
        if not any(model.id == model_id for model in self._models):
            raise BackendError(f"Model {model_id} not available for {self.provider}")
        self._model = self._find_model(model_id)

    async def select_mode(self, mode_id: str) -> None:
        raise BackendError(f"Modes not supported for {self.provider}")

    async def cancel(self) -> None:
        if self._request is not None and not self._request.done():
            self._cancelled = True
            self._request.cancel()

    async def aclose(self) -> None:
        await self.cancel()
        if self._owns_http:
            await self._http.aclose()
