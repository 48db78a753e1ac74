"""Tests for the Elasticsearch index writer."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import ApiError, ConnectionTimeout, NotFoundError
from elasticsearch import ConflictError as EsConflictError
from elasticsearch import ConnectionError as EsConnectionError

from discovery_sync.clients.elasticsearch import ElasticsearchConfig, IndexWriter, translate_error
from discovery_sync.errors import (
    BulkFlushError,
    ConflictError,
    StoreTimeoutError,
    StoreUnavailableError,
    ValidationError,
)

INDEX = "prod-digital-discovery-categories-2025-04"


def _meta(status: int) -> ApiResponseMeta:
    return ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )


def _api_error(status: int, cls: type[ApiError] = ApiError) -> ApiError:
    return cls(f"status {status}", meta=_meta(status), body={"error": {"type": "test"}})


@pytest.fixture
def client() -> MagicMock:
    """Create a mock AsyncElasticsearch client."""
    client = MagicMock()
    client.index = AsyncMock(return_value={"result": "created"})
    client.update = AsyncMock(return_value={"result": "updated"})
    client.delete = AsyncMock(return_value={"result": "deleted"})
    client.bulk = AsyncMock(return_value={"errors": False, "items": []})
    client.get = AsyncMock()
    client.close = AsyncMock()
    client.cluster.health = AsyncMock(return_value={"status": "green"})
    client.indices.exists = AsyncMock(return_value=True)
    client.indices.create = AsyncMock()
    client.indices.exists_index_template = AsyncMock(return_value=False)
    client.indices.put_index_template = AsyncMock()
    client.indices.get_alias = AsyncMock()
    client.indices.update_aliases = AsyncMock()
    client.ilm.get_lifecycle = AsyncMock()
    client.ilm.put_lifecycle = AsyncMock()
    return client


@pytest.fixture
def writer(client: MagicMock) -> IndexWriter:
    """Create a writer around the mock client."""
    return IndexWriter(ElasticsearchConfig(request_timeout=1.0), client=client)


class TestTranslateError:
    """Tests for translate_error."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (409, ConflictError),
            (408, StoreTimeoutError),
            (429, StoreUnavailableError),
            (500, StoreUnavailableError),
            (503, StoreUnavailableError),
            (400, ValidationError),
            (404, ValidationError),
        ],
    )
    def test_api_status(self, status: int, expected: type) -> None:
        """Test HTTP statuses map onto the taxonomy."""
        error = translate_error(_api_error(status), "CREATE", INDEX)

        assert type(error) is expected
        assert error.operation == "CREATE"
        assert error.entity == INDEX

    def test_connection_timeout(self) -> None:
        """Test client-side timeouts are retryable timeouts."""
        error = translate_error(ConnectionTimeout("timed out"), "UPDATE")
        assert isinstance(error, StoreTimeoutError)
        assert error.is_retryable

    def test_connection_error(self) -> None:
        """Test transport failures mean the store is unavailable."""
        error = translate_error(EsConnectionError("refused"), "DELETE")
        assert type(error) is StoreUnavailableError

    def test_conflict_subclass(self) -> None:
        """Test the client's conflict class maps like a raw 409."""
        error = translate_error(_api_error(409, EsConflictError), "CREATE")
        assert isinstance(error, ConflictError)
        assert not error.is_retryable


class TestWrites:
    """Tests for single-document writes."""

    async def test_index_document(self, writer, client) -> None:
        """Test a create writes the full document under its id."""
        result = await writer.index_document(INDEX, "c1", {"name": "Pulsa"})

        assert result == {"result": "created"}
        client.index.assert_awaited_once_with(index=INDEX, id="c1", document={"name": "Pulsa"})

    async def test_update_document_upserts(self, writer, client) -> None:
        """Test updates merge with doc_as_upsert."""
        await writer.update_document(INDEX, "c1", {"name": "Pulsa v2"})

        client.update.assert_awaited_once_with(
            index=INDEX, id="c1", doc={"name": "Pulsa v2"}, doc_as_upsert=True
        )

    async def test_delete_document(self, writer) -> None:
        """Test a delete reports the removal."""
        assert await writer.delete_document(INDEX, "c1") is True

    async def test_delete_missing_document(self, writer, client) -> None:
        """Test deleting a missing document is not an error."""
        client.delete.side_effect = _api_error(404, NotFoundError)

        assert await writer.delete_document(INDEX, "c1") is False

    async def test_delete_rejected(self, writer, client) -> None:
        """Test other client errors still raise."""
        client.delete.side_effect = _api_error(400)

        with pytest.raises(ValidationError):
            await writer.delete_document(INDEX, "c1")

    async def test_write_translates_errors(self, writer, client) -> None:
        """Test client exceptions are translated and chained."""
        client.index.side_effect = _api_error(503)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await writer.index_document(INDEX, "c1", {})

        assert isinstance(exc_info.value.__cause__, ApiError)
        assert exc_info.value.is_retryable

    async def test_write_deadline(self, writer, client) -> None:
        """Test a write still pending at its deadline raises a timeout."""

        async def hang(**kwargs):
            await asyncio.sleep(10)

        client.index.side_effect = hang

        with pytest.raises(StoreTimeoutError):
            await writer.index_document(INDEX, "c1", {}, timeout=0.01)

    def test_requires_connect(self) -> None:
        """Test using the writer before connect fails clearly."""
        with pytest.raises(RuntimeError, match="not connected"):
            IndexWriter().client


class TestBulk:
    """Tests for bulk submission."""

    async def test_success(self, writer, client) -> None:
        """Test a clean bulk response is returned as-is."""
        operations = [{"delete": {"_index": INDEX, "_id": "1"}}]

        response = await writer.bulk(operations)

        assert response["errors"] is False
        client.bulk.assert_awaited_once_with(operations=operations)

    async def test_missing_deletes_ignored(self, writer, client) -> None:
        """Test deletes answered with 404 are not failures."""
        client.bulk.return_value = {
            "errors": True,
            "items": [
                {"index": {"_id": "1", "status": 201}},
                {"delete": {"_id": "2", "status": 404, "result": "not_found"}},
            ],
        }

        response = await writer.bulk([])
        assert response["errors"] is True

    async def test_item_failures(self, writer, client) -> None:
        """Test failed items raise with their details."""
        client.bulk.return_value = {
            "errors": True,
            "items": [
                {"index": {"_id": "1", "status": 201}},
                {
                    "update": {
                        "_id": "2",
                        "status": 400,
                        "error": {"type": "mapper_parsing_exception"},
                    }
                },
            ],
        }

        with pytest.raises(BulkFlushError) as exc_info:
            await writer.bulk([])

        assert exc_info.value.batch_size == 2
        assert exc_info.value.failed_items == [
            {
                "action": "update",
                "id": "2",
                "status": 400,
                "error": {"type": "mapper_parsing_exception"},
            }
        ]


class TestReadsAndHealth:
    """Tests for reads and health probing."""

    async def test_get_document(self, writer, client) -> None:
        """Test a document's source is returned."""
        client.get.return_value = {"_id": "c1", "_source": {"name": "Pulsa"}}
        assert await writer.get_document(INDEX, "c1") == {"name": "Pulsa"}

    async def test_get_missing_document(self, writer, client) -> None:
        """Test a missing document reads as None."""
        client.get.side_effect = _api_error(404, NotFoundError)
        assert await writer.get_document(INDEX, "c1") is None

    @pytest.mark.parametrize(
        ("status", "healthy"), [("green", True), ("yellow", True), ("red", False)]
    )
    async def test_check_health(self, writer, client, status: str, healthy: bool) -> None:
        """Test green and yellow clusters are healthy."""
        client.cluster.health.return_value = {"status": status}

        assert await writer.check_health() is healthy
        assert writer.healthy is healthy
        assert writer.last_health_check is not None

    async def test_check_health_unreachable(self, writer, client) -> None:
        """Test an unreachable cluster is unhealthy without raising."""
        client.cluster.health.side_effect = EsConnectionError("refused")

        assert await writer.check_health() is False


class TestProvisioning:
    """Tests for template, policy, index and alias setup."""

    async def test_template_created_when_absent(self, writer, client) -> None:
        """Test a missing template is created."""
        assert await writer.ensure_index_template("categories", {"index_patterns": ["x-*"]})
        client.indices.put_index_template.assert_awaited_once_with(
            name="categories", index_patterns=["x-*"]
        )

    async def test_template_kept_when_present(self, writer, client) -> None:
        """Test an existing template is left alone."""
        client.indices.exists_index_template.return_value = True

        assert not await writer.ensure_index_template("categories", {})
        client.indices.put_index_template.assert_not_awaited()

    async def test_policy_created_when_missing(self, writer, client) -> None:
        """Test a missing lifecycle policy is created."""
        client.ilm.get_lifecycle.side_effect = _api_error(404, NotFoundError)

        assert await writer.ensure_lifecycle_policy("categories", {"phases": {}})
        client.ilm.put_lifecycle.assert_awaited_once_with(
            name="categories", policy={"phases": {}}
        )

    async def test_policy_kept_when_present(self, writer, client) -> None:
        """Test an existing policy is left alone."""
        assert not await writer.ensure_lifecycle_policy("categories", {})
        client.ilm.put_lifecycle.assert_not_awaited()

    async def test_ensure_index_creates_and_aliases(self, writer, client) -> None:
        """Test a missing index is created and becomes the alias write index."""
        client.indices.exists.return_value = False
        client.indices.get_alias.side_effect = _api_error(404, NotFoundError)

        assert await writer.ensure_index(INDEX, alias="prod-digital-discovery-categories")

        client.indices.create.assert_awaited_once_with(index=INDEX)
        client.indices.update_aliases.assert_awaited_once_with(
            actions=[
                {
                    "add": {
                        "index": INDEX,
                        "alias": "prod-digital-discovery-categories",
                        "is_write_index": True,
                    }
                }
            ]
        )

    async def test_point_alias_moves_from_old_index(self, writer, client) -> None:
        """Test the alias is moved off the previous month in one request."""
        old = "prod-digital-discovery-categories-2025-03"
        client.indices.get_alias.return_value = {old: {"aliases": {}}}

        assert await writer.point_alias("prod-digital-discovery-categories", INDEX)

        actions = client.indices.update_aliases.await_args.kwargs["actions"]
        assert actions[0] == {
            "remove": {"index": old, "alias": "prod-digital-discovery-categories"}
        }
        assert actions[1]["add"]["index"] == INDEX

    async def test_point_alias_noop(self, writer, client) -> None:
        """Test an alias already on the index is not touched."""
        client.indices.get_alias.return_value = {INDEX: {"aliases": {}}}

        assert not await writer.point_alias("prod-digital-discovery-categories", INDEX)
        client.indices.update_aliases.assert_not_awaited()
