from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from livequery.descriptor import Filter, ResourceDescriptor
from livequery.events import ChangeEvent

Row = Dict[str, Any]
FetchResult = Union[Row, List[Row], None]
EventHandler = Callable[[ChangeEvent], None]
ErrorHandler = Callable[[Exception], None]


class QueryInterface:
    """One-shot reads."""

    async def fetch(
        self,
        resource: str,
        filters: Sequence[Filter] = (),
        columns: Sequence[str] = ("*",),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        single: bool = False,
    ) -> FetchResult:
        raise NotImplementedError


class ChangeFeed:
    """Push notifications for rows matching a descriptor's filters."""

    async def subscribe(self, descriptor: ResourceDescriptor, on_event: EventHandler,
                        on_error: Optional[ErrorHandler] = None) -> Any:
        """Open a feed; returns an opaque handle. Raises ChannelConnectionError when unreachable."""
        raise NotImplementedError

    async def unsubscribe(self, handle: Any) -> None:
        raise NotImplementedError


def fetch_descriptor(query: QueryInterface, descriptor: ResourceDescriptor):
    """Issue the read described by ``descriptor`` against ``query``."""
    return query.fetch(
        descriptor.resource,
        filters=descriptor.filters,
        columns=descriptor.columns,
        order_by=descriptor.order_by,
        descending=descriptor.descending,
        limit=descriptor.limit,
        single=descriptor.single,
    )


def project(row: Row, columns: Sequence[str], primary_key: str = "id") -> Row:
    if not columns or "*" in columns:
        return dict(row)
    projected = {column: row.get(column) for column in columns if column in row}
    if primary_key in row:
        projected.setdefault(primary_key, row[primary_key])
    return projected


def finish_rows(rows: List[Row], columns: Sequence[str] = ("*",), order_by: Optional[str] = None,
                descending: bool = False, limit: Optional[int] = None, single: bool = False,
                primary_key: str = "id") -> FetchResult:
    """Apply ordering, limit, projection and single-row selection to already filtered rows."""
    rows = list(rows)
    if order_by:
        rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by)), reverse=descending)
    if limit is not None:
        rows = rows[:limit]
    rows = [project(row, columns, primary_key) for row in rows]
    if single:
        return rows[0] if rows else None
    return rows
