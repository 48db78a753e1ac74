"""Async Elasticsearch index writer."""

import asyncio
import logging
import time
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Any, TypeVar

from elasticsearch import (
    ApiError,
    AsyncElasticsearch,
    ConnectionTimeout,
    NotFoundError,
    TransportError,
)
from pydantic import BaseModel, Field

from discovery_sync.errors import (
    BulkFlushError,
    ConflictError,
    StoreTimeoutError,
    StoreUnavailableError,
    SyncError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTHY_CLUSTER_STATES = ("green", "yellow")


class ElasticsearchConfig(BaseModel):
    """Connection settings for the document store."""

    hosts: list[str] = Field(default=["http://localhost:9200"], description="Cluster URLs")
    username: str = Field(default="", description="Basic auth username")
    password: str = Field(default="", description="Basic auth password")
    max_retries: int = Field(default=3, description="Transport-level retries")
    retry_on_timeout: bool = Field(default=True, description="Transport retry on timeout")
    request_timeout: float = Field(default=30.0, description="Default write deadline in seconds")
    max_connections: int = Field(default=10, description="Connections per node")
    gzip_enabled: bool = Field(default=True, description="Compress request bodies")


def translate_error(exc: BaseException, operation: str, entity: str = "elasticsearch") -> SyncError:
    """Map an Elasticsearch client exception onto the sync error taxonomy.

    Args:
        exc: Exception raised by the client.
        operation: Operation that failed.
        entity: Index or entity the operation targeted.

    Returns:
        StoreTimeoutError, StoreUnavailableError, ConflictError or ValidationError.
    """
    if isinstance(exc, ConnectionTimeout):
        return StoreTimeoutError("Request timed out", operation=operation, entity=entity, cause=exc)
    if isinstance(exc, TransportError):
        return StoreUnavailableError(
            "Connection to Elasticsearch failed", operation=operation, entity=entity, cause=exc
        )
    if isinstance(exc, ApiError):
        status = exc.status_code
        if status == 409:
            return ConflictError("Version conflict", operation=operation, entity=entity, cause=exc)
        if status == 408:
            return StoreTimeoutError(
                "Request timed out", operation=operation, entity=entity, cause=exc
            )
        if status == 429 or status >= 500:
            return StoreUnavailableError(
                f"Elasticsearch unavailable ({status})",
                operation=operation,
                entity=entity,
                cause=exc,
            )
        return ValidationError(
            f"Request rejected ({status})", operation=operation, entity=entity, cause=exc
        )
    return StoreUnavailableError(
        "Unexpected Elasticsearch failure", operation=operation, entity=entity, cause=exc
    )


def _body(response: Any) -> Any:
    return getattr(response, "body", response)


class IndexWriter:
    """Async Elasticsearch wrapper for document writes, reads, health and setup.

    Every write accepts a deadline in seconds and raises StoreTimeoutError
    when it passes. Client exceptions never escape: they are translated with
    ``translate_error``. The underlying connection pool is shared by all
    callers.
    """

    def __init__(
        self,
        config: ElasticsearchConfig | None = None,
        client: AsyncElasticsearch | None = None,
    ) -> None:
        """Initialize the writer.

        Args:
            config: Connection settings. Defaults are used when omitted.
            client: Pre-built client, mainly for tests.
        """
        self.config = config or ElasticsearchConfig()
        self._client = client
        self.healthy = False
        self.last_health_check: datetime | None = None

    async def connect(self) -> None:
        """Create the client. Safe to call more than once."""
        if self._client is not None:
            return

        logger.info(f"Connecting to Elasticsearch at {self.config.hosts}")
        kwargs: dict[str, Any] = {
            "hosts": self.config.hosts,
            "max_retries": self.config.max_retries,
            "retry_on_timeout": self.config.retry_on_timeout,
            "request_timeout": self.config.request_timeout,
            "connections_per_node": self.config.max_connections,
            "http_compress": self.config.gzip_enabled,
        }
        if self.config.username:
            kwargs["basic_auth"] = (self.config.username, self.config.password)

        self._client = AsyncElasticsearch(**kwargs)

    @property
    def client(self) -> AsyncElasticsearch:
        if self._client is None:
            raise RuntimeError("Elasticsearch client not connected. Call connect() first.")
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("Elasticsearch client closed")

    async def _call(
        self,
        coro: Awaitable[T],
        *,
        operation: str,
        entity: str,
        timeout: float | None,
    ) -> T:
        deadline = timeout if timeout is not None else self.config.request_timeout
        try:
            return await asyncio.wait_for(coro, timeout=deadline)
        except TimeoutError as e:
            raise StoreTimeoutError(
                f"No response within {deadline:.1f}s",
                operation=operation,
                entity=entity,
                cause=e,
            ) from e
        except (ApiError, TransportError) as e:
            raise translate_error(e, operation, entity) from e

    # ==================== Writes ====================

    async def index_document(
        self,
        index: str,
        doc_id: str,
        document: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Write a full document, replacing any existing one with the same id."""
        response = await self._call(
            self.client.index(index=index, id=doc_id, document=document),
            operation="CREATE",
            entity=index,
            timeout=timeout,
        )
        return _body(response)

    async def update_document(
        self,
        index: str,
        doc_id: str,
        partial: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Merge fields into a document, creating it when absent."""
        response = await self._call(
            self.client.update(index=index, id=doc_id, doc=partial, doc_as_upsert=True),
            operation="UPDATE",
            entity=index,
            timeout=timeout,
        )
        return _body(response)

    async def delete_document(
        self,
        index: str,
        doc_id: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Delete a document by id.

        Returns:
            True if a document was removed, False if none existed.
        """
        try:
            await self._call(
                self.client.delete(index=index, id=doc_id),
                operation="DELETE",
                entity=index,
                timeout=timeout,
            )
        except ValidationError as e:
            if isinstance(e.cause, NotFoundError):
                logger.debug(f"Document {doc_id} not found in {index}, nothing to delete")
                return False
            raise
        return True

    async def bulk(
        self,
        operations: list[dict[str, Any]],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Submit action/body pairs as one bulk request.

        Args:
            operations: Alternating action descriptors and bodies, in bulk order.
            timeout: Deadline in seconds.

        Returns:
            The bulk response body.

        Raises:
            BulkFlushError: The response reported failed items. Delete items
                answered with 404 are not failures.
        """
        response = _body(
            await self._call(
                self.client.bulk(operations=operations),
                operation="BULK",
                entity="elasticsearch",
                timeout=timeout,
            )
        )
        if not response.get("errors"):
            return response

        failed = []
        for item in response.get("items", []):
            action, info = next(iter(item.items()))
            status = info.get("status", 0)
            if action == "delete" and status == 404:
                continue
            if "error" in info or status >= 300:
                failed.append(
                    {
                        "action": action,
                        "id": info.get("_id"),
                        "status": status,
                        "error": info.get("error"),
                    }
                )

        if failed:
            raise BulkFlushError(
                f"Bulk request had {len(failed)} failed items",
                batch_size=len(response.get("items", [])),
                failed_items=failed,
            )
        return response

    # ==================== Reads ====================

    async def get_document(self, index: str, doc_id: str) -> dict[str, Any] | None:
        """Fetch a document's source, or None when it does not exist."""
        try:
            response = await self._call(
                self.client.get(index=index, id=doc_id),
                operation="GET",
                entity=index,
                timeout=None,
            )
        except ValidationError as e:
            if isinstance(e.cause, NotFoundError):
                return None
            raise
        return _body(response).get("_source")

    async def search(
        self, index: str, query: dict[str, Any] | None = None, size: int = 10
    ) -> list[dict[str, Any]]:
        """Run a query and return the matching sources."""
        response = await self._call(
            self.client.search(index=index, query=query or {"match_all": {}}, size=size),
            operation="SEARCH",
            entity=index,
            timeout=None,
        )
        return [hit["_source"] for hit in _body(response)["hits"]["hits"]]

    async def index_exists(self, index: str) -> bool:
        response = await self._call(
            self.client.indices.exists(index=index),
            operation="EXISTS",
            entity=index,
            timeout=None,
        )
        return bool(response)

    async def check_health(self) -> bool:
        """Probe cluster health and remember the outcome.

        Returns:
            True when the cluster reports green or yellow.
        """
        start = time.perf_counter()
        try:
            response = _body(
                await self._call(
                    self.client.cluster.health(),
                    operation="HEALTH",
                    entity="elasticsearch",
                    timeout=None,
                )
            )
            self.healthy = response.get("status") in HEALTHY_CLUSTER_STATES
        except SyncError as e:
            logger.warning(f"Elasticsearch health check failed: {e}")
            self.healthy = False
        self.last_health_check = datetime.now(UTC)
        logger.debug(
            f"Elasticsearch health: {self.healthy} ({(time.perf_counter() - start) * 1000:.1f}ms)"
        )
        return self.healthy

    # ==================== Provisioning ====================

    async def ensure_index_template(self, name: str, body: dict[str, Any]) -> bool:
        """Create an index template if absent.

        Returns:
            True if the template was created, False if it already existed.
        """
        exists = await self._call(
            self.client.indices.exists_index_template(name=name),
            operation="TEMPLATE",
            entity=name,
            timeout=None,
        )
        if exists:
            return False
        await self._call(
            self.client.indices.put_index_template(name=name, **body),
            operation="TEMPLATE",
            entity=name,
            timeout=None,
        )
        logger.info(f"Created index template {name}")
        return True

    async def ensure_lifecycle_policy(self, name: str, policy: dict[str, Any]) -> bool:
        """Create a lifecycle policy if absent."""
        try:
            await self._call(
                self.client.ilm.get_lifecycle(name=name),
                operation="POLICY",
                entity=name,
                timeout=None,
            )
            return False
        except ValidationError as e:
            if not isinstance(e.cause, NotFoundError):
                raise
        await self._call(
            self.client.ilm.put_lifecycle(name=name, policy=policy),
            operation="POLICY",
            entity=name,
            timeout=None,
        )
        logger.info(f"Created lifecycle policy {name}")
        return True

    async def ensure_index(self, index: str, alias: str | None = None) -> bool:
        """Create an index if absent and point the alias at it.

        Returns:
            True if the index was created, False if it already existed.
        """
        created = False
        if not await self.index_exists(index):
            await self._call(
                self.client.indices.create(index=index),
                operation="INDEX",
                entity=index,
                timeout=None,
            )
            logger.info(f"Created index {index}")
            created = True

        if alias:
            await self.point_alias(alias, index)
        return created

    async def alias_targets(self, alias: str) -> set[str]:
        """Indices an alias currently points at (empty when the alias is missing)."""
        try:
            response = await self._call(
                self.client.indices.get_alias(name=alias),
                operation="ALIAS",
                entity=alias,
                timeout=None,
            )
        except ValidationError as e:
            if isinstance(e.cause, NotFoundError):
                return set()
            raise
        return set(_body(response))

    async def point_alias(self, alias: str, index: str) -> bool:
        """Atomically move an alias so it points only at ``index``.

        Returns:
            True if the alias changed.
        """
        current = await self.alias_targets(alias)
        if current == {index}:
            return False

        actions: list[dict[str, Any]] = [
            {"remove": {"index": old, "alias": alias}} for old in sorted(current - {index})
        ]
        actions.append({"add": {"index": index, "alias": alias, "is_write_index": True}})
        await self._call(
            self.client.indices.update_aliases(actions=actions),
            operation="ALIAS",
            entity=alias,
            timeout=None,
        )
        logger.info(f"Alias {alias} now points at {index}")
        return True

    async def __aenter__(self) -> "IndexWriter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
