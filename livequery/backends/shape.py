import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from livequery.backends.base import ChangeFeed, ErrorHandler, EventHandler, QueryInterface, Row, finish_rows
from livequery.channels.server_push import ServerPush, ServerPushMessage
from livequery.descriptor import Filter, ResourceDescriptor
from livequery.events import ChangeKind, clean_shape_key, from_shape_message
from livequery.exceptions import ChannelError, EventParseError, FetchError

logger = logging.getLogger(__name__)

SHAPE_PATH = "/v1/shape"
HANDLE_HEADER = "electric-handle"
OFFSET_HEADER = "electric-offset"
UP_TO_DATE_HEADER = "electric-up-to-date"

_SQL_OPS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def where_clause(filters: Sequence[Filter]) -> Optional[str]:
    """Render filters as the SQL ``where`` parameter of a shape request."""
    parts = []
    for f in filters:
        column = '"' + f.column.replace('"', '""') + '"'
        if f.op == "in":
            parts.append(f"{column} IN ({', '.join(sql_literal(v) for v in f.value)})")
        elif f.value is None and f.op in ("eq", "neq"):
            parts.append(f"{column} IS {'NOT ' if f.op == 'neq' else ''}NULL")
        else:
            parts.append(f"{column} {_SQL_OPS[f.op]} {sql_literal(f.value)}")
    return " AND ".join(parts) or None


def is_up_to_date(message: Dict[str, Any]) -> bool:
    return (message.get("headers") or {}).get("control") == "up-to-date"


class _ShapeFeed:
    """Handle returned by ShapeBackend.subscribe()."""

    def __init__(self, descriptor: ResourceDescriptor, push: ServerPush, on_event: EventHandler,
                 on_error: Optional[ErrorHandler], feeds: List["_ShapeFeed"]):
        self.descriptor = descriptor
        self.push = push
        self.on_event = on_event
        self.on_error = on_error
        self._feeds = feeds
        self.dropped = False

    def handle_message(self, message: ServerPushMessage):
        payload = message.json()
        for item in payload if isinstance(payload, list) else [payload]:
            if not isinstance(item, dict):
                continue
            control = (item.get("headers") or {}).get("control")
            if control == "must-refetch":
                self.drop(ChannelError(f"Shape {self.descriptor.channel_key} must be refetched"))
                return
            try:
                event = from_shape_message(item, self.descriptor.primary_key, self.descriptor.resource)
            except EventParseError as e:
                logger.warning("Shape %s: skipping message: %s", self.descriptor.channel_key, e)
                continue
            if event is not None:
                self.on_event(event)

    def drop(self, error: Exception):
        if self.dropped:
            return
        self.dropped = True
        # The owner only sees the error, so it never unsubscribes this handle
        if self in self._feeds:
            self._feeds.remove(self)
        asyncio.get_running_loop().create_task(self.push.close())
        if self.on_error is not None:
            self.on_error(error)


class ShapeBackend(QueryInterface, ChangeFeed):
    """
    Reads and change feeds against an HTTP shape-log endpoint (ElectricSQL style).

    A fetch pages through ``GET /v1/shape?table=...&offset=-1`` until the log is
    up to date and folds the operations into rows. A subscription catches up the
    same way, then follows the log over Server-Sent Events from the last offset.
    """

    def __init__(self, base_url: str, api_key: str = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None, max_pages: int = 1000):
        self.base_url = base_url.rstrip("/")
        self.max_pages = max_pages
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=None), headers=headers)
        self._feeds: List[_ShapeFeed] = []

    @property
    def shape_url(self) -> str:
        return self.base_url + SHAPE_PATH

    def _params(self, resource: str, filters: Sequence[Filter], columns: Sequence[str]) -> Dict[str, str]:
        params = {"table": resource}
        where = where_clause(filters)
        if where:
            params["where"] = where
        if columns and "*" not in columns:
            params["columns"] = ",".join(columns)
        return params

    async def _catch_up(self, params: Dict[str, str], primary_key: str) -> Tuple[Dict[Any, Row], str, Optional[str]]:
        """Page the shape log from the start; returns (rows by key, offset, handle)."""
        rows: Dict[Any, Row] = {}
        offset, handle = "-1", None
        for _ in range(self.max_pages):
            page_params = dict(params, offset=offset)
            if handle:
                page_params["handle"] = handle
            response = await self._client.get(self.shape_url, params=page_params)
            response.raise_for_status()

            handle = response.headers.get(HANDLE_HEADER, handle)
            offset = response.headers.get(OFFSET_HEADER, offset)
            messages = response.json() if response.content else []
            if isinstance(messages, dict):
                messages = [messages]

            done = UP_TO_DATE_HEADER in response.headers or not messages
            for message in messages:
                if is_up_to_date(message):
                    done = True
                    continue
                self._apply(rows, message, primary_key)
            if done:
                return rows, offset, handle
        raise FetchError(params["table"], RuntimeError(f"shape log not up to date after {self.max_pages} pages"))

    @staticmethod
    def _apply(rows: Dict[Any, Row], message: Dict[str, Any], primary_key: str):
        event = from_shape_message(message, primary_key)
        if event is None:
            return
        key = event.key(primary_key)
        if key is None:
            key = clean_shape_key(message.get("key"))
        if event.kind is ChangeKind.DELETED:
            rows.pop(key, None)
        elif event.kind is ChangeKind.UPDATED and key in rows:
            rows[key] = {**rows[key], **event.row}
        else:
            rows[key] = event.row

    # --- QueryInterface ---

    async def fetch(self, resource: str, filters: Sequence[Filter] = (), columns: Sequence[str] = ("*",),
                    order_by: Optional[str] = None, descending: bool = False, limit: Optional[int] = None,
                    single: bool = False, primary_key: str = "id"):
        try:
            rows, _, _ = await self._catch_up(self._params(resource, filters, columns), primary_key)
        except (httpx.HTTPError, ValueError, EventParseError) as e:
            raise FetchError(resource, e) from e
        return finish_rows(rows.values(), columns, order_by, descending, limit, single, primary_key)

    # --- ChangeFeed ---

    async def subscribe(self, descriptor: ResourceDescriptor, on_event: EventHandler,
                        on_error: Optional[ErrorHandler] = None) -> _ShapeFeed:
        params = self._params(descriptor.resource, descriptor.filters, descriptor.columns)
        try:
            _, offset, handle = await self._catch_up(params, descriptor.primary_key)
        except (httpx.HTTPError, ValueError, FetchError) as e:
            raise ChannelError(f"Shape {descriptor.channel_key} unavailable: {e}") from e

        # Full rows on update, so policies can replace rows wholesale
        live_params = dict(params, live="true", live_sse="true", replica="full", offset=offset)
        if handle:
            live_params["handle"] = handle
        # Reconnection belongs to the channel that owns this feed
        push = ServerPush(self.shape_url, client=self._client, params=live_params, max_retries=0)
        feed = _ShapeFeed(descriptor, push, on_event, on_error, self._feeds)
        push.on_message(feed.handle_message)
        push.on_error(feed.drop)
        await push.connect()
        self._feeds.append(feed)
        logger.debug("Shape %s live from offset %s", descriptor.channel_key, offset)
        return feed

    async def unsubscribe(self, handle: _ShapeFeed) -> None:
        handle.dropped = True
        if handle in self._feeds:
            self._feeds.remove(handle)
        await handle.push.close()

    async def aclose(self):
        for feed in list(self._feeds):
            await self.unsubscribe(feed)
        if self._owns_client:
            await self._client.aclose()
