"""Pytest configuration and shared fixtures."""

import json
import random
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from discovery_sync.errors import StoreUnavailableError, SyncError
from discovery_sync.indexing.naming import IndexNamer
from discovery_sync.indexing.retry import RetryEngine, RetryPolicy
from discovery_sync.utils.metrics import MetricsCollector


class FakeIndexWriter:
    """In-memory stand-in for IndexWriter with the same write semantics.

    Creates replace, updates merge with upsert, deletes of missing documents
    report False. Queue exceptions on ``failures[method]`` to make the next
    calls of that method fail.
    """

    def __init__(self) -> None:
        self.indices: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.bulk_requests: list[list[dict[str, Any]]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.healthy = True
        self.last_health_check = None

    def _maybe_fail(self, method: str) -> None:
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)

    def docs(self, index: str) -> dict[str, dict[str, Any]]:
        return self.indices.get(index, {})

    def _apply_index(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        self.indices.setdefault(index, {})[doc_id] = dict(document)

    def _apply_update(self, index: str, doc_id: str, partial: dict[str, Any]) -> None:
        docs = self.indices.setdefault(index, {})
        docs[doc_id] = {**docs.get(doc_id, {}), **partial}

    def _apply_delete(self, index: str, doc_id: str) -> bool:
        return self.indices.get(index, {}).pop(doc_id, None) is not None

    async def index_document(self, index, doc_id, document, *, timeout=None):
        self.calls.append(("index", index, doc_id))
        self._maybe_fail("index_document")
        self._apply_index(index, doc_id, document)
        return {"result": "created"}

    async def update_document(self, index, doc_id, partial, *, timeout=None):
        self.calls.append(("update", index, doc_id))
        self._maybe_fail("update_document")
        self._apply_update(index, doc_id, partial)
        return {"result": "updated"}

    async def delete_document(self, index, doc_id, *, timeout=None):
        self.calls.append(("delete", index, doc_id))
        self._maybe_fail("delete_document")
        return self._apply_delete(index, doc_id)

    async def bulk(self, operations, *, timeout=None):
        self.bulk_requests.append(list(operations))
        self._maybe_fail("bulk")
        lines = iter(operations)
        items = []
        for action_line in lines:
            action, meta = next(iter(action_line.items()))
            index, doc_id = meta["_index"], meta["_id"]
            self.calls.append((action, index, doc_id))
            if action == "index":
                self._apply_index(index, doc_id, next(lines))
            elif action == "update":
                self._apply_update(index, doc_id, next(lines)["doc"])
            else:
                self._apply_delete(index, doc_id)
            items.append({action: {"_id": doc_id, "status": 200}})
        return {"errors": False, "items": items}

    async def get_document(self, index, doc_id):
        self._maybe_fail("get_document")
        return self.indices.get(index, {}).get(doc_id)

    async def search(self, index, query=None, size=10):
        self._maybe_fail("search")
        return list(self.indices.get(index, {}).values())[:size]

    async def check_health(self):
        return self.healthy


@pytest.fixture
def store() -> FakeIndexWriter:
    """Create an empty in-memory index writer."""
    return FakeIndexWriter()


@pytest.fixture
def namer() -> IndexNamer:
    """Create a production index namer."""
    return IndexNamer("prod", "digital-discovery")


@pytest.fixture
def metrics() -> MetricsCollector:
    """Create a metrics collector on its own registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def sleep() -> AsyncMock:
    """Replacement for asyncio.sleep that records delays without waiting."""
    return AsyncMock()


@pytest.fixture
def retry(metrics: MetricsCollector, sleep: AsyncMock) -> RetryEngine:
    """Create a retry engine that never actually waits."""
    return RetryEngine(
        RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=1.0),
        metrics=metrics,
        sleep=sleep,
        rng=random.Random(42),
    )


@pytest.fixture
def unavailable() -> Callable[[], SyncError]:
    """Factory for retryable store errors."""
    return lambda: StoreUnavailableError("Elasticsearch unavailable (503)", operation="CREATE")


@pytest.fixture
def make_event() -> Callable[..., bytes]:
    """Factory for change-capture envelopes.

    Example:
        >>> make_event("c", after={"id": 1, "name": "Pulsa"})
    """

    def _make(
        op: str,
        *,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        ts_ms: int = 1743465600000,
    ) -> bytes:
        envelope = {
            "schema": {"type": "struct", "name": "categories.Envelope"},
            "payload": {
                "before": before,
                "after": after,
                "source": {
                    "version": "2.5.0.Final",
                    "connector": "postgresql",
                    "db": "digital_discovery",
                    "table": "categories",
                    "ts_ms": ts_ms,
                },
                "op": op,
                "ts_ms": ts_ms + 5,
            },
        }
        return json.dumps(envelope).encode("utf-8")

    return _make


@pytest.fixture
def make_store() -> Callable[[], FakeIndexWriter]:
    """Factory for additional empty in-memory writers."""
    return FakeIndexWriter
