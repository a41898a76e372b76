"""Source connectors.

Every connector implements the same contract:

* ``test_connection()`` returns a :class:`SourceHealth`;
* ``collect(query)`` returns a list of :class:`RawRecord`;
* ``rate_limit_state()`` exposes the limiter snapshot;
* ``error_count`` only ever increases.

Connectors raise :class:`SourceUnavailableError` for transport or upstream
failures and :class:`RateLimitedError` (carrying the records collected so
far) when the upstream refuses further calls.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, ClassVar

import httpx
from bs4 import BeautifulSoup
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from seedflow.core.exceptions import RateLimitedError, SourceUnavailableError
from seedflow.core.logging import get_logger
from seedflow.features.collection.rate_limit import TokenBucketRateLimiter
from seedflow.features.collection.schemas import (
    PAYLOAD_TYPES,
    CollectionQuery,
    Provenance,
    RateLimitState,
    RawRecord,
    SourceHealth,
    build_payload,
)
from seedflow.shared.utils import content_hash, utcnow

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_COUNT = re.compile(r"^\s*([0-9][0-9,]*(?:\.[0-9]+)?)\s*([KkMmBb]?)\s*$")
_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


class SourceConnector(ABC):
    """Abstract base class for data source connectors.

    Args:
        source_id: Unique source identifier.
        payload_kind: Raw payload shape produced by this source.
        reliability: Prior reliability of the source in [0, 1].
        key_field: Native field holding the natural key.
        field_aliases: Native field name -> payload field name renames.
        rate_limiter: Optional token bucket applied to every upstream call.
    """

    connector_type: ClassVar[str] = "abstract"

    def __init__(
        self,
        source_id: str,
        payload_kind: str,
        *,
        reliability: float = 0.8,
        key_field: str = "id",
        field_aliases: Mapping[str, str] | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        provenance: Provenance = "observed",
    ) -> None:
        if payload_kind not in PAYLOAD_TYPES:
            raise ValueError(f"Unknown payload kind: {payload_kind}")
        if not 0.0 <= reliability <= 1.0:
            raise ValueError("reliability must be between 0 and 1")
        self.source_id = source_id
        self.payload_kind = payload_kind
        self.reliability = reliability
        self.key_field = key_field
        self.field_aliases = dict(field_aliases or {})
        self.rate_limiter = rate_limiter
        self.provenance: Provenance = provenance
        self._error_count = 0

    @property
    def error_count(self) -> int:
        """Total errors observed by this connector (monotonically increasing)."""
        return self._error_count

    def record_error(self) -> None:
        self._error_count += 1

    def rate_limit_state(self) -> RateLimitState | None:
        return self.rate_limiter.state() if self.rate_limiter else None

    async def _throttle(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

    @abstractmethod
    async def test_connection(self) -> SourceHealth:
        """Check that the source is reachable."""

    @abstractmethod
    async def collect(self, query: CollectionQuery) -> list[RawRecord]:
        """Collect records for the query window."""

    async def aclose(self) -> None:  # noqa: B027
        """Release network or database resources held by the connector."""

    def to_record(
        self,
        native: Mapping[str, Any],
        collected_at: datetime,
        steps: Sequence[str] = (),
        raw_confidence: float = 1.0,
    ) -> RawRecord:
        """Wrap a native row as a RawRecord.

        Args:
            native: Row as returned by the source.
            collected_at: Collection timestamp.
            steps: Extra provenance steps (query, page, url).
            raw_confidence: Connector-level confidence in the row.

        Returns:
            Immutable raw record.
        """
        row = {self.field_aliases.get(k, k): v for k, v in native.items()}
        key = row.get(self.key_field)
        source_key = str(key) if key not in (None, "") else content_hash(row)[:16]
        payload, extra = build_payload(self.payload_kind, row)
        return RawRecord(
            source_id=self.source_id,
            source_key=source_key,
            collected_at=collected_at,
            payload=payload,  # type: ignore[arg-type]
            extra=extra,
            provenance=self.provenance,
            provenance_chain=(f"connector:{self.connector_type}:{self.source_id}", *steps),
            raw_confidence=raw_confidence,
        )

    def describe(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "connector": self.connector_type,
            "payload_kind": self.payload_kind,
            "reliability": self.reliability,
        }


def _dig(body: Any, path: str) -> Any:
    """Follow a dotted path into a JSON body (empty path returns the body)."""
    current = body
    for part in [p for p in path.split(".") if p]:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpApiConnector(SourceConnector):
    """Paginated JSON API connector.

    Pages are requested with ``page_param`` until a page returns no items,
    ``max_pages`` is reached or the query limit is satisfied. The window is
    passed as ``window_params`` query parameters (ISO timestamps).
    """

    connector_type: ClassVar[str] = "http_api"

    def __init__(
        self,
        source_id: str,
        base_url: str,
        path: str,
        payload_kind: str,
        *,
        records_path: str = "data",
        page_param: str = "page",
        max_pages: int = 10,
        window_params: tuple[str, str] = ("since", "until"),
        health_path: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(source_id, payload_kind, **kwargs)
        self.base_url = base_url
        self.path = path
        self.records_path = records_path
        self.page_param = page_param
        self.max_pages = max_pages
        self.window_params = window_params
        self.health_path = health_path or path
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout_seconds,
        )

    async def test_connection(self) -> SourceHealth:
        started = time.perf_counter()
        try:
            response = await self.client.get(self.health_path, params={"limit": 1})
            healthy = response.status_code < 500 and response.status_code != 429
            message = None if healthy else f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            self.record_error()
            healthy, message = False, str(e) or type(e).__name__
        return SourceHealth(
            source_id=self.source_id,
            healthy=healthy,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            message=message,
            checked_at=utcnow(),
        )

    async def collect(self, query: CollectionQuery) -> list[RawRecord]:
        records: list[RawRecord] = []
        base_params: dict[str, Any] = dict(query.params)
        if query.start is not None:
            base_params[self.window_params[0]] = query.start.isoformat()
        if query.end is not None:
            base_params[self.window_params[1]] = query.end.isoformat()

        for page in range(1, self.max_pages + 1):
            await self._throttle()
            try:
                response = await self.client.get(
                    self.path, params={**base_params, self.page_param: page}
                )
            except httpx.HTTPError as e:
                self.record_error()
                raise SourceUnavailableError(self.source_id, f"Request failed: {e!r}") from e

            if response.status_code == 429:
                self.record_error()
                retry_after = _retry_after(response)
                if self.rate_limiter is not None:
                    self.rate_limiter.block_for(60.0 if retry_after is None else retry_after)
                logger.warning(
                    "collection.upstream_rate_limited",
                    source_id=self.source_id,
                    page=page,
                    collected=len(records),
                    retry_after=retry_after,
                )
                raise RateLimitedError(
                    self.source_id, retry_after=retry_after, partial=records
                )
            if response.status_code >= 400:
                self.record_error()
                raise SourceUnavailableError(
                    self.source_id,
                    f"Upstream returned HTTP {response.status_code}",
                    details={"page": page},
                )

            items = _dig(response.json(), self.records_path) or []
            if not isinstance(items, list) or not items:
                break
            collected_at = utcnow()
            for item in items:
                if isinstance(item, Mapping):
                    records.append(
                        self.to_record(item, collected_at, steps=(f"page:{page}",))
                    )
            if query.limit is not None and len(records) >= query.limit:
                return records[: query.limit]

        return records

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def parse_count(value: str) -> int | float | str:
    """Parse display counters such as ``"1,204"``, ``"3.4K"`` or ``"2M"``.

    Returns the input unchanged when it does not look like a counter.
    """
    match = _COUNT.match(value)
    if not match:
        return value
    number = float(match.group(1).replace(",", "")) * _MULTIPLIERS[match.group(2).lower()]
    return int(number) if number.is_integer() else number


class ContentScraperConnector(SourceConnector):
    """Extracts records from HTML pages with CSS selectors.

    ``field_selectors`` maps payload field -> selector relative to each item.
    A selector of the form ``"a.permalink@href"`` reads an attribute instead
    of the element text; ``"@data-id"`` reads an attribute of the item itself.
    """

    connector_type: ClassVar[str] = "scraper"

    def __init__(
        self,
        source_id: str,
        urls: Sequence[str],
        item_selector: str,
        field_selectors: Mapping[str, str],
        payload_kind: str = "social_post",
        *,
        timeout_seconds: float = 30.0,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(source_id, payload_kind, **kwargs)
        self.urls = list(urls)
        self.item_selector = item_selector
        self.field_selectors = dict(field_selectors)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers=dict(headers or {"User-Agent": "seedflow-collector/0.1"}),
            timeout=timeout_seconds,
            follow_redirects=True,
        )

    async def test_connection(self) -> SourceHealth:
        started = time.perf_counter()
        healthy, message = True, None
        if not self.urls:
            healthy, message = False, "No URLs configured"
        else:
            try:
                response = await self.client.get(self.urls[0])
                healthy = response.status_code < 400
                message = None if healthy else f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                self.record_error()
                healthy, message = False, str(e) or type(e).__name__
        return SourceHealth(
            source_id=self.source_id,
            healthy=healthy,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            message=message,
            checked_at=utcnow(),
        )

    def parse(self, html: str) -> list[dict[str, Any]]:
        """Extract one dict per item element from an HTML document."""
        soup = BeautifulSoup(html, "html.parser")
        rows: list[dict[str, Any]] = []
        for item in soup.select(self.item_selector):
            row: dict[str, Any] = {}
            for name, selector in self.field_selectors.items():
                css, _, attr = selector.partition("@")
                element = item.select_one(css) if css else item
                if element is None:
                    continue
                raw = element.get(attr) if attr else element.get_text(" ", strip=True)
                if isinstance(raw, list):
                    raw = " ".join(raw)
                if raw is None or raw == "":
                    continue
                row[name] = parse_count(raw)
            if row:
                rows.append(row)
        return rows

    async def collect(self, query: CollectionQuery) -> list[RawRecord]:
        records: list[RawRecord] = []
        for url in self.urls:
            await self._throttle()
            try:
                response = await self.client.get(url)
            except httpx.HTTPError as e:
                self.record_error()
                raise SourceUnavailableError(self.source_id, f"Fetch failed for {url}") from e
            if response.status_code == 429:
                self.record_error()
                retry_after = _retry_after(response)
                if self.rate_limiter is not None:
                    self.rate_limiter.block_for(60.0 if retry_after is None else retry_after)
                raise RateLimitedError(self.source_id, retry_after=retry_after, partial=records)
            if response.status_code >= 400:
                self.record_error()
                raise SourceUnavailableError(
                    self.source_id, f"Upstream returned HTTP {response.status_code} for {url}"
                )

            collected_at = utcnow()
            for row in self.parse(response.text):
                records.append(self.to_record(row, collected_at, steps=(f"url:{url}",)))
            if query.limit is not None and len(records) >= query.limit:
                return records[: query.limit]
        return records

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class HistoricalTableConnector(SourceConnector):
    """Reads historical rows from a relational table, windowed by timestamp."""

    connector_type: ClassVar[str] = "historical"

    def __init__(
        self,
        source_id: str,
        engine: AsyncEngine,
        table: str,
        payload_kind: str,
        *,
        timestamp_column: str,
        columns: Sequence[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(source_id, payload_kind, **kwargs)
        for identifier in [table, timestamp_column, *(columns or [])]:
            if not _IDENTIFIER.match(identifier):
                raise ValueError(f"Invalid SQL identifier: {identifier!r}")
        self.engine = engine
        self.table = table
        self.timestamp_column = timestamp_column
        self.columns = list(columns or [])

    def build_query(self, query: CollectionQuery) -> tuple[str, dict[str, Any]]:
        """Build the SELECT statement and its bound parameters."""
        select_list = ", ".join(self.columns) if self.columns else "*"
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if query.start is not None:
            clauses.append(f"{self.timestamp_column} >= :start")
            params["start"] = query.start
        if query.end is not None:
            clauses.append(f"{self.timestamp_column} < :end")
            params["end"] = query.end
        sql = f"SELECT {select_list} FROM {self.table}"  # noqa: S608
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {self.timestamp_column}"
        if query.limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = query.limit
        return sql, params

    async def test_connection(self) -> SourceHealth:
        started = time.perf_counter()
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            healthy, message = True, None
        except (SQLAlchemyError, OSError) as e:
            self.record_error()
            healthy, message = False, str(e) or type(e).__name__
        return SourceHealth(
            source_id=self.source_id,
            healthy=healthy,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            message=message,
            checked_at=utcnow(),
        )

    async def collect(self, query: CollectionQuery) -> list[RawRecord]:
        sql, params = self.build_query(query)
        await self._throttle()
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                rows = [dict(row) for row in result.mappings()]
        except (SQLAlchemyError, OSError) as e:
            self.record_error()
            raise SourceUnavailableError(self.source_id, f"Query failed: {e!s}") from e

        collected_at = utcnow()
        return [
            self.to_record(row, collected_at, steps=(f"table:{self.table}",)) for row in rows
        ]


class StaticConnector(SourceConnector):
    """Serves a fixed list of rows (replays, fixtures and local files)."""

    connector_type: ClassVar[str] = "static"

    def __init__(
        self,
        source_id: str,
        rows: Sequence[Mapping[str, Any]],
        payload_kind: str,
        *,
        available: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(source_id, payload_kind, **kwargs)
        self.rows = [dict(row) for row in rows]
        self.available = available

    async def test_connection(self) -> SourceHealth:
        if not self.available:
            self.record_error()
        return SourceHealth(
            source_id=self.source_id,
            healthy=self.available,
            message=None if self.available else "Source marked unavailable",
            checked_at=utcnow(),
        )

    async def collect(self, query: CollectionQuery) -> list[RawRecord]:
        if not self.available:
            self.record_error()
            raise SourceUnavailableError(self.source_id, "Source marked unavailable")
        await self._throttle()
        collected_at = utcnow()
        rows = self.rows[: query.limit] if query.limit is not None else self.rows
        return [self.to_record(row, collected_at, steps=("static",)) for row in rows]


CONNECTOR_TYPES: dict[str, type[SourceConnector]] = {
    HttpApiConnector.connector_type: HttpApiConnector,
    ContentScraperConnector.connector_type: ContentScraperConnector,
    HistoricalTableConnector.connector_type: HistoricalTableConnector,
    StaticConnector.connector_type: StaticConnector,
}


def build_connector(
    spec: Mapping[str, Any],
    *,
    engine: AsyncEngine | None = None,
    default_rate_per_second: float | None = None,
    default_burst: int = 10,
) -> SourceConnector:
    """Build a connector from a configuration mapping.

    The mapping needs ``type`` and ``source_id``; ``rate_limit`` may hold
    ``rate_per_second`` and ``burst``. Remaining keys are passed to the
    connector constructor.

    Raises:
        ValueError: If the connector type is unknown or misconfigured.
    """
    options = dict(spec)
    connector_type = options.pop("type", None)
    cls = CONNECTOR_TYPES.get(str(connector_type))
    if cls is None:
        raise ValueError(f"Unknown connector type: {connector_type!r}")

    rate = options.pop("rate_limit", None) or {}
    rate_per_second = rate.get("rate_per_second", default_rate_per_second)
    if rate_per_second:
        options["rate_limiter"] = TokenBucketRateLimiter(
            rate_per_second=float(rate_per_second),
            capacity=int(rate.get("burst", default_burst)),
        )
    if "window_params" in options:
        options["window_params"] = tuple(options["window_params"])
    if cls is HistoricalTableConnector:
        if engine is None:
            raise ValueError("historical connectors require a database engine")
        options["engine"] = engine
    return cls(**options)
