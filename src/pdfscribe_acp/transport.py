"""JSON-RPC transport over a line-oriented byte channel.

Architecture:
- Channel is the PROTOCOL for the underlying byte stream
  (subprocess stdio in production, an in-memory pipe for tests)
- JsonRpcTransport frames messages as JSON lines, assigns request IDs,
  correlates responses with PendingCalls and dispatches notifications

The transport has one reader task. Lines are decoded and handled strictly in
arrival order; notification handlers run one after another inside the
reader. Awaiting a response only suspends the caller of that request.

Wire-level faults never kill the reader:
- malformed lines are logged and discarded
- responses for unknown IDs are logged and dropped
- agent->client requests without a handler get "Method not found"
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .errors import (
    ProcessError,
    ProtocolError,
    ProtocolErrorKind,
    RpcError,
    ScribeError,
    StateError,
    StateErrorKind,
)
from .protocol.messages import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    RequestId,
    encode_message,
    parse_message,
)
from .utils import maybe_await

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[JsonRpcNotification], Awaitable[None] | None]
MessageHandler = Callable[[JsonRpcMessage], Awaitable[None] | None]
RequestHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]
CloseHandler = Callable[[BaseException | None], Awaitable[None] | None]

# Sentinel so callers can pass timeout=None to mean "wait forever"
_DEFAULT_TIMEOUT: Any = object()


@runtime_checkable
class Channel(Protocol):
    """A bidirectional newline-delimited byte stream."""

    async def readline(self) -> bytes:
        """Return the next line including its newline, or b"" at EOF."""
        ...

    async def write(self, data: bytes) -> None:
        """Write raw bytes to the peer."""
        ...

    async def close(self) -> None:
        """Close the write side; the peer sees EOF."""
        ...


class StreamChannel:
    """Channel over an asyncio reader/writer pair (e.g. subprocess stdio)."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def readline(self) -> bytes:
        return await self._reader.readline()

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionError("Channel closed")
        self._writer.write(data)
        await self._writer.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self._writer.wait_closed()


class MemoryChannel:
    """One end of an in-memory pipe.

    Writes on one end appear as lines on the other. Closing an end feeds
    EOF to the peer. Must be created inside a running event loop.
    """

    def __init__(self) -> None:
        self._inbound = asyncio.StreamReader()
        self._peer: MemoryChannel | None = None
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def readline(self) -> bytes:
        return await self._inbound.readline()

    async def write(self, data: bytes) -> None:
        if self._closed or self._peer is None or self._peer._inbound.at_eof():
            raise ConnectionError("Channel closed")
        self._peer._inbound.feed_data(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._peer is not None and not self._peer._inbound.at_eof():
            self._peer._inbound.feed_eof()


def create_memory_channel() -> tuple[MemoryChannel, MemoryChannel]:
    """Create a connected (client_end, agent_end) pair."""
    client_end = MemoryChannel()
    agent_end = MemoryChannel()
    client_end._peer = agent_end
    agent_end._peer = client_end
    return client_end, agent_end


@dataclass
class PendingCall:
    """An outstanding request awaiting exactly one resolution."""

    id: int
    method: str
    session_id: str | None = None
    future: asyncio.Future[Any] = field(default_factory=lambda: asyncio.get_running_loop().create_future())
    created_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        # Resolutions nobody awaits (e.g. after fail_all) must not warn
        self.future.add_done_callback(_consume_exception)

    def done(self) -> bool:
        return self.future.done()

    def resolve(self, result: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


def _unsubscriber(handlers: list[Any], handler: Any) -> Callable[[], None]:
    def unsubscribe() -> None:
        with contextlib.suppress(ValueError):
            handlers.remove(handler)

    return unsubscribe


class JsonRpcTransport:
    """Newline-delimited JSON-RPC 2.0 client transport.

    Usage:
        transport = JsonRpcTransport(channel, request_timeout=30.0)
        transport.start()
        transport.on_notification("session/update", router.handle_update)
        result = await transport.request("initialize", {...})
        await transport.close()
    """

    def __init__(self, channel: Channel, *, request_timeout: float | None = 30.0):
        self._channel = channel
        self.request_timeout = request_timeout
        self._next_id = 0
        self._pending: dict[RequestId, PendingCall] = {}
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self._message_handlers: list[MessageHandler] = []
        self._request_handlers: dict[str, RequestHandler] = {}
        self._close_handlers: list[CloseHandler] = []
        self._request_tasks: set[asyncio.Task[None]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._closed = False
        self._close_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._reader_task is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the background reader."""
        if self._reader_task is not None:
            return
        if self._closed:
            raise StateError(StateErrorKind.TRANSPORT_CLOSED, "Transport already closed")
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.debug("JSON-RPC transport started")

    async def close(self) -> None:
        """Close the transport, failing every pending call."""
        if self._closed and self._reader_task is None:
            return
        self._closing = True
        self._closed = True
        self.fail_all(StateError(StateErrorKind.TRANSPORT_CLOSED, "Transport closed"))

        if self._reader_task is not None:
            # close() may be called from a close handler running in the reader
            if self._reader_task is not asyncio.current_task():
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None

        for task in list(self._request_tasks):
            task.cancel()
        self._request_tasks.clear()

        await self._channel.close()
        await self._run_close_handlers(None)
        logger.debug("JSON-RPC transport closed")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def on_notification(self, method: str, handler: NotificationHandler) -> Callable[[], None]:
        """Register a handler for a notification method. Returns an unsubscriber."""
        handlers = self._notification_handlers.setdefault(method, [])
        handlers.append(handler)
        return _unsubscriber(handlers, handler)

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler that sees every parsed message (for tracing)."""
        self._message_handlers.append(handler)
        return _unsubscriber(self._message_handlers, handler)

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Answer agent->client requests for ``method`` with ``handler(params)``."""
        self._request_handlers[method] = handler

    def on_close(self, handler: CloseHandler) -> Callable[[], None]:
        """Register a handler called once the transport stops reading.

        The handler receives the error that ended the stream, or None for
        a requested close.
        """
        self._close_handlers.append(handler)
        return _unsubscriber(self._close_handlers, handler)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> PendingCall:
        """Send a request and return its PendingCall without waiting."""
        self._ensure_writable()

        self._next_id += 1
        pending = PendingCall(id=self._next_id, method=method, session_id=session_id)
        self._pending[pending.id] = pending

        message = JsonRpcRequest(id=pending.id, method=method, params=params)
        try:
            await self._write(message)
        except BaseException:
            self._pending.pop(pending.id, None)
            pending.future.cancel()
            raise

        logger.debug(f"--> {method} (id={pending.id})")
        return pending

    async def wait_for(self, pending: PendingCall, timeout: float | None = _DEFAULT_TIMEOUT) -> Any:
        """Await a PendingCall's resolution with a bounded wait.

        Raises:
            ProtocolError: TIMEOUT if no response arrives in time; the call
                is removed and the transport stays usable.
            RpcError: the agent answered with an error object.
        """
        if timeout is _DEFAULT_TIMEOUT:
            timeout = self.request_timeout

        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except TimeoutError:
            self._pending.pop(pending.id, None)
            error = ProtocolError(
                ProtocolErrorKind.TIMEOUT,
                f"No response to {pending.method} (id={pending.id}) within {timeout}s",
            )
            if pending.fail(error):
                logger.warning(str(error))
            return pending.future.result()

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = _DEFAULT_TIMEOUT,
        session_id: str | None = None,
    ) -> Any:
        """Send a request and await its result."""
        pending = await self.send_request(method, params, session_id=session_id)
        return await self.wait_for(pending, timeout)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a one-way notification."""
        self._ensure_writable()
        await self._write(JsonRpcNotification(method=method, params=params))
        logger.debug(f"--> {method} (notification)")

    # ------------------------------------------------------------------
    # Failing pending calls
    # ------------------------------------------------------------------

    def fail_all(self, exc: BaseException) -> int:
        """Resolve every pending call with ``exc``. Returns how many were failed."""
        pending = list(self._pending.values())
        self._pending.clear()
        return sum(1 for call in pending if call.fail(exc))

    def cancel_session(self, session_id: str, exc: BaseException) -> int:
        """Resolve the pending calls tagged with ``session_id`` with ``exc``."""
        matching = [call for call in self._pending.values() if call.session_id == session_id]
        for call in matching:
            self._pending.pop(call.id, None)
        return sum(1 for call in matching if call.fail(exc))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_writable(self) -> None:
        if self._closed:
            if self._close_error is not None:
                raise self._close_error
            raise StateError(StateErrorKind.TRANSPORT_CLOSED, "Transport closed")

    async def _write(self, message: JsonRpcMessage) -> None:
        data = encode_message(message)
        async with self._write_lock:
            try:
                await self._channel.write(data)
            except (ConnectionError, OSError) as e:
                raise ProcessError.unexpected_exit(None) from e

    async def _read_loop(self) -> None:
        """Background task: read lines and handle them in order."""
        error: BaseException | None = None
        try:
            while True:
                try:
                    line = await self._channel.readline()
                except ValueError as e:
                    # Line longer than the stream limit; the reader already skipped it
                    logger.warning(f"Discarding oversized message: {e}")
                    continue
                if not line:
                    break
                if not line.strip():
                    continue
                await self._handle_line(line)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.exception("Transport read loop failed")
            error = e

        if not self._closing:
            await self._handle_stream_end(error)

    async def _handle_stream_end(self, error: BaseException | None) -> None:
        """The agent closed its output (or the reader failed) on its own."""
        self._closed = True
        exc = ProcessError.unexpected_exit(None)
        if error is not None:
            exc.__cause__ = error
        self._close_error = exc
        failed = self.fail_all(exc)
        logger.warning(f"Agent output closed; failed {failed} pending call(s)")
        await self._run_close_handlers(exc)

    async def _run_close_handlers(self, exc: BaseException | None) -> None:
        handlers = list(self._close_handlers)
        self._close_handlers.clear()
        for handler in handlers:
            try:
                await maybe_await(handler, exc)
            except Exception:
                logger.exception("Error in transport close handler")

    async def _handle_line(self, line: bytes) -> None:
        try:
            message = parse_message(line)
        except ProtocolError as e:
            preview = line[:80].decode("utf-8", errors="replace").strip()
            logger.warning(f"Discarding malformed message: {e} (line: {preview})")
            return

        for handler in list(self._message_handlers):
            try:
                await maybe_await(handler, message)
            except Exception:
                logger.exception("Error in message handler")

        if isinstance(message, JsonRpcResponse):
            self._resolve(message)
        elif isinstance(message, JsonRpcNotification):
            await self._dispatch_notification(message)
        else:
            self._answer_request(message)

    def _resolve(self, response: JsonRpcResponse) -> None:
        pending = self._pending.pop(response.id, None) if response.id is not None else None
        if pending is None:
            error = ProtocolError(
                ProtocolErrorKind.UNMATCHED_RESPONSE,
                f"No pending call for response id={response.id}",
            )
            logger.warning(f"Dropping response: {error}")
            return

        logger.debug(f"<-- {pending.method} (id={pending.id})")
        if response.error is not None:
            pending.fail(RpcError(response.error.code, response.error.message, response.error.data))
        else:
            pending.resolve(response.result)

    async def _dispatch_notification(self, notification: JsonRpcNotification) -> None:
        handlers = list(self._notification_handlers.get(notification.method, []))
        if not handlers:
            logger.debug(f"Unhandled notification: {notification.method}")
            return
        for handler in handlers:
            try:
                await maybe_await(handler, notification)
            except Exception:
                logger.exception(f"Error in notification handler for {notification.method}")

    def _answer_request(self, request: JsonRpcRequest) -> None:
        # Answered off the reader so a slow handler never stalls the stream
        task = asyncio.create_task(self._run_request_handler(request))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)

    async def _run_request_handler(self, request: JsonRpcRequest) -> None:
        handler = self._request_handlers.get(request.method)
        if handler is None:
            logger.debug(f"No handler for agent request {request.method}")
            response = JsonRpcResponse.failure(
                request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )
        else:
            try:
                result = await maybe_await(handler, request.params or {})
                response = JsonRpcResponse(id=request.id, result=result)
            except RpcError as e:
                response = JsonRpcResponse.failure(request.id, e.code, e.message, e.data)
            except Exception as e:
                logger.exception(f"Error handling agent request {request.method}")
                response = JsonRpcResponse.failure(request.id, INTERNAL_ERROR, str(e))

        try:
            self._ensure_writable()
            await self._write(response)
        except ScribeError as e:
            logger.debug(f"Could not answer {request.method}: {e}")
