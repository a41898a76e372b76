"""Delivery adapters and the delivery method registry.

Targets are decoupled from transport: a target names a delivery method and
the registry builds the adapter for it. New methods are added with
:func:`register_delivery_method` rather than branches in the engine.

Every adapter must be idempotent under retry. A batch carries a
deterministic ``delivery_id`` (and each row its ``record_id``) so a
consumer can discard a redelivered batch.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, Field

from seedflow.core.exceptions import BadRequestError, DeliveryFailureError
from seedflow.core.logging import get_logger
from seedflow.features.distribution.schemas import Lane, TargetConfig
from seedflow.shared.utils import content_hash, utcnow

logger = get_logger(__name__)


class DeliveryBatch(BaseModel):
    """Rows handed to a target in one delivery call."""

    target_id: str
    run_id: str | None = None
    delivery_id: str
    lane: Lane = "batch"
    rows: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def record_ids(self) -> list[str]:
        return [str(row["record_id"]) for row in self.rows if row.get("record_id") is not None]


class DeliveryResult(BaseModel):
    accepted: int = 0
    duplicates: int = 0


def delivery_id_for(target_id: str, run_id: str | None, rows: Sequence[dict[str, Any]]) -> str:
    """Stable id of a delivery; retries of the same batch share it."""
    return content_hash(
        {"target": target_id, "run": run_id, "records": [row.get("record_id") for row in rows]}
    )[:32]


DeliveryHandler = Callable[[DeliveryBatch], Awaitable[Any]]
OutboxWriter = Callable[[DeliveryBatch], Awaitable[int]]


class DeliveryAdapter(ABC):
    """Transport for one target."""

    method: ClassVar[str]

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id

    @abstractmethod
    async def accept(self, batch: DeliveryBatch) -> DeliveryResult:
        """Deliver a batch.

        Raises:
            DeliveryFailureError: If the target rejected the batch.
        """

    async def aclose(self) -> None:
        return None


class CallableAdapter(DeliveryAdapter):
    """In-process delivery to an async callable.

    The handler may return a :class:`DeliveryResult`, an accepted count or
    anything else (then every row counts as accepted).
    """

    method: ClassVar[str] = "direct"

    def __init__(self, target_id: str, handler: DeliveryHandler) -> None:
        super().__init__(target_id)
        if not callable(handler):
            raise TypeError("handler must be callable")
        self.handler = handler

    async def accept(self, batch: DeliveryBatch) -> DeliveryResult:
        result = await self.handler(batch)
        if isinstance(result, DeliveryResult):
            return result
        if isinstance(result, int) and not isinstance(result, bool):
            return DeliveryResult(accepted=result)
        return DeliveryResult(accepted=len(batch.rows))


class OutboxAdapter(DeliveryAdapter):
    """Appends rows to an outbox that the consumer polls.

    The writer must ignore rows already stored for the same target, run
    and record, and return how many rows were new.
    """

    method: ClassVar[str] = "store_and_poll"

    def __init__(self, target_id: str, writer: OutboxWriter) -> None:
        super().__init__(target_id)
        self.writer = writer

    async def accept(self, batch: DeliveryBatch) -> DeliveryResult:
        appended = await self.writer(batch)
        return DeliveryResult(accepted=appended, duplicates=len(batch.rows) - appended)


class WebhookAdapter(DeliveryAdapter):
    """Pushes batches as JSON to an HTTP endpoint.

    Sends ``Idempotency-Key: <delivery_id>``; a 409 answer is read as "already
    received" and counted as duplicates.
    """

    method: ClassVar[str] = "message_push"

    def __init__(
        self,
        target_id: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(target_id)
        self.url = url
        self.headers = headers or {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    async def accept(self, batch: DeliveryBatch) -> DeliveryResult:
        try:
            response = await self._client.post(
                self.url,
                json=batch.model_dump(mode="json"),
                headers={**self.headers, "Idempotency-Key": batch.delivery_id},
            )
        except httpx.HTTPError as e:
            raise DeliveryFailureError(self.target_id, f"Push failed: {e}") from e

        if response.status_code == 409:
            return DeliveryResult(accepted=0, duplicates=len(batch.rows))
        if response.status_code >= 400:
            raise DeliveryFailureError(
                self.target_id,
                f"Target returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        accepted = len(batch.rows)
        if response.content:
            try:
                accepted = min(accepted, int(response.json().get("accepted", accepted)))
            except (ValueError, AttributeError, TypeError):
                pass
        return DeliveryResult(accepted=accepted, duplicates=len(batch.rows) - accepted)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class MemoryOutbox:
    """Process-local outbox, keyed by (target, run, record)."""

    def __init__(self) -> None:
        self._rows: dict[str, list[dict[str, Any]]] = {}
        self._seen: set[tuple[str, str | None, str]] = set()
        self._lock = asyncio.Lock()

    async def append(self, batch: DeliveryBatch) -> int:
        appended = 0
        async with self._lock:
            rows = self._rows.setdefault(batch.target_id, [])
            for row in batch.model_dump(mode="json")["rows"]:
                key = (batch.target_id, batch.run_id, str(row.get("record_id")))
                if key in self._seen:
                    continue
                self._seen.add(key)
                rows.append({"sequence": len(rows) + 1, "run_id": batch.run_id, "row": row})
                appended += 1
        return appended

    def read(self, target_id: str, after: int = 0, limit: int = 100) -> list[dict[str, Any]]:
        return [e for e in self._rows.get(target_id, []) if e["sequence"] > after][:limit]


# =============================================================================
# Registry
# =============================================================================


@dataclass
class AdapterContext:
    """Collaborators available to adapter factories."""

    outbox: OutboxWriter
    handler: DeliveryHandler | None = None
    client: httpx.AsyncClient | None = None


AdapterFactory = Callable[[TargetConfig, AdapterContext], DeliveryAdapter]


def _direct(config: TargetConfig, context: AdapterContext) -> DeliveryAdapter:
    if context.handler is None:
        raise BadRequestError(
            f"Target '{config.target_id}' uses direct delivery but has no handler",
            details={"target_id": config.target_id},
        )
    return CallableAdapter(config.target_id, context.handler)


def _store_and_poll(config: TargetConfig, context: AdapterContext) -> DeliveryAdapter:
    return OutboxAdapter(config.target_id, context.outbox)


def _message_push(config: TargetConfig, context: AdapterContext) -> DeliveryAdapter:
    if not config.url:
        raise BadRequestError(
            f"Target '{config.target_id}' uses message_push but has no url",
            details={"target_id": config.target_id},
        )
    return WebhookAdapter(
        config.target_id, config.url, headers=config.headers, client=context.client
    )


DELIVERY_METHODS: dict[str, AdapterFactory] = {
    CallableAdapter.method: _direct,
    OutboxAdapter.method: _store_and_poll,
    WebhookAdapter.method: _message_push,
}


def register_delivery_method(name: str, factory: AdapterFactory) -> None:
    DELIVERY_METHODS[name] = factory
    logger.info("distribution.method_registered", method=name)


def build_adapter(config: TargetConfig, context: AdapterContext) -> DeliveryAdapter:
    """Build the adapter for a target's delivery method.

    Raises:
        BadRequestError: If the method is unknown or misconfigured.
    """
    factory = DELIVERY_METHODS.get(config.method)
    if factory is None:
        raise BadRequestError(
            f"Unknown delivery method '{config.method}'",
            details={"target_id": config.target_id, "methods": sorted(DELIVERY_METHODS)},
        )
    return factory(config, context)
