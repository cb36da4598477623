import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from livequery.core import create_signal, report_error
from livequery.exceptions import ChannelConnectionError, ChannelError, ChannelMessageError

logger = logging.getLogger(__name__)


class ServerPushState(Enum):
    """Event-stream connection states."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class ServerPushMessage:
    data: str
    event: str = "message"
    id: Optional[str] = None

    def json(self) -> Any:
        try:
            return json.loads(self.data)
        except ValueError as e:
            raise ChannelMessageError(f"Invalid JSON in server push message: {self.data[:100]!r}") from e


class SSEDecoder:
    """Incremental ``text/event-stream`` decoder: feed lines, get messages on blank lines."""

    def __init__(self):
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self.last_event_id: Optional[str] = None
        self.retry: Optional[int] = None

    def feed(self, line: str) -> Optional[ServerPushMessage]:
        line = line.rstrip("\r")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        elif field == "retry" and value.isdigit():
            self.retry = int(value)
        return None

    def _flush(self) -> Optional[ServerPushMessage]:
        if self._id is not None:
            self.last_event_id = self._id
        if not self._data:
            self._event = None
            return None
        message = ServerPushMessage("\n".join(self._data), self._event or "message", self.last_event_id)
        self._data = []
        self._event = None
        self._id = None
        return message


class ServerPush:
    """
    A persistent Server-Sent Events connection over httpx.

    ``connect()`` raises ChannelConnectionError if the first request fails. Once open,
    a dropped stream is reported to ``on_error`` handlers and retried with exponential
    backoff, up to ``max_retries`` (-1 for infinite, 0 to leave reconnection to the caller).
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = -1,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        self.url = url
        self.params = dict(params or {})
        self.headers = {"Accept": "text/event-stream", **(headers or {})}
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._client = client
        self._owns_client = client is None
        self._retry_count = 0
        self._retry_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

        self.state_signal, self.set_state = create_signal(ServerPushState.CLOSED)

        self._on_open_handlers: List[Callable] = []
        self._on_message_handlers: List[Callable] = []
        self._on_error_handlers: List[Callable] = []

    @property
    def state(self) -> ServerPushState:
        return self.state_signal()

    def delay(self, retry_count: int) -> float:
        return min(self.base_delay * (2 ** retry_count), self.max_delay)

    async def connect(self):
        """Open the stream and start reading it in the background."""
        if self.state == ServerPushState.OPEN:
            return
        self._closed = False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self.set_state(ServerPushState.CONNECTING)
        logger.debug("ServerPush connecting to %s", self.url)

        request = self._client.build_request("GET", self.url, params=self.params, headers=self.headers)
        try:
            response = await self._client.send(request, stream=True)
            if response.is_error:
                await response.aclose()
                response.raise_for_status()
        except httpx.HTTPError as e:
            self.set_state(ServerPushState.CLOSED)
            raise ChannelConnectionError(self.url, self._retry_count + 1, e) from e

        self._retry_count = 0
        self.set_state(ServerPushState.OPEN)
        self._call_handlers(self._on_open_handlers, response, "on_open")
        self._reader_task = asyncio.get_running_loop().create_task(self._read(response))

    async def _read(self, response: httpx.Response):
        decoder = SSEDecoder()
        error: Optional[Exception] = None
        try:
            async for line in response.aiter_lines():
                message = decoder.feed(line)
                if message is not None:
                    self._call_handlers(self._on_message_handlers, message, "on_message")
            error = ChannelError(f"Server push stream {self.url} ended")
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            error = ChannelConnectionError(self.url, 0, e)
        finally:
            await response.aclose()

        if self._closed:
            return
        if decoder.last_event_id is not None:
            self.headers["Last-Event-ID"] = decoder.last_event_id
        self.set_state(ServerPushState.CLOSED)
        logger.warning("ServerPush %s: %s", self.url, error)
        self._call_handlers(self._on_error_handlers, error, "on_error")
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._closed or self.state == ServerPushState.OPEN:
            return
        if self.max_retries != -1 and self._retry_count >= self.max_retries:
            if self.max_retries:
                logger.error("ServerPush: max retries (%d) reached for %s, giving up", self.max_retries, self.url)
            return

        delay = self.delay(self._retry_count)
        logger.info("ServerPush: reconnecting in %.1fs (attempt %d)", delay, self._retry_count + 1)

        async def _reconnect_task():
            await asyncio.sleep(delay)
            self._retry_count += 1
            try:
                await self.connect()
            except ChannelConnectionError as e:
                logger.warning("ServerPush reconnect attempt failed: %s", e)
                self._call_handlers(self._on_error_handlers, e, "on_error")
                self._schedule_reconnect()

        if self._retry_task:
            self._retry_task.cancel()
        self._retry_task = asyncio.get_running_loop().create_task(_reconnect_task())

    def _call_handlers(self, handlers: List[Callable], arg: Any, name: str):
        for handler in list(handlers):
            try:
                result = handler(arg)
                if inspect.iscoroutine(result):
                    asyncio.get_running_loop().create_task(result)
            except Exception as e:
                report_error(e, f"Error in ServerPush {name} handler")

    async def close(self, reset_retries: bool = True):
        """Close the connection and cancel any pending reconnect."""
        self._closed = True
        for task in (self._retry_task, self._reader_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._retry_task = None
        self._reader_task = None
        if reset_retries:
            self._retry_count = 0
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        self.set_state(ServerPushState.CLOSED)

    def on_open(self, handler: Callable) -> Callable:
        self._on_open_handlers.append(handler)
        return handler

    def on_message(self, handler: Callable) -> Callable:
        self._on_message_handlers.append(handler)
        return handler

    def on_error(self, handler: Callable) -> Callable:
        self._on_error_handlers.append(handler)
        return handler
