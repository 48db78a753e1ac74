"""Index template, lifecycle policy and alias provisioning."""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from discovery_sync.clients.elasticsearch import IndexWriter
from discovery_sync.errors import ProvisioningError, SyncError
from discovery_sync.indexing.naming import IndexNamer

logger = logging.getLogger(__name__)


def category_template(
    pattern: str,
    service: str,
    shards: int = 3,
    replicas: int = 1,
    lifecycle_policy: str | None = None,
) -> dict[str, Any]:
    """Build the index template body for category indices.

    Args:
        pattern: Index pattern the template binds to.
        service: Service name recorded in the template metadata.
        shards: Primary shards per index.
        replicas: Replicas per shard.
        lifecycle_policy: Lifecycle policy attached to new indices.

    Returns:
        Keyword arguments for the put-index-template API.
    """
    settings: dict[str, Any] = {
        "number_of_shards": shards,
        "number_of_replicas": replicas,
        "refresh_interval": "1s",
        "analysis": {
            "analyzer": {
                "custom_analyzer": {
                    "type": "custom",
                    "tokenizer": "standard",
                    "filter": ["lowercase", "asciifolding"],
                }
            }
        },
    }
    if lifecycle_policy:
        settings["index.lifecycle.name"] = lifecycle_policy

    return {
        "index_patterns": [pattern],
        "template": {
            "settings": settings,
            "mappings": {
                "properties": {
                    "id": {"type": "keyword"},
                    "name": {
                        "type": "text",
                        "analyzer": "custom_analyzer",
                        "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
                    },
                    "description": {"type": "text", "analyzer": "custom_analyzer"},
                    "status": {"type": "integer"},
                    "created_at": {"type": "date"},
                    "updated_at": {"type": "date"},
                    "version": {"type": "long"},
                    "sync_status": {"type": "keyword"},
                    "last_sync": {"type": "date"},
                }
            },
        },
        "priority": 100,
        "version": 1,
        "meta": {"description": "Template for category indices", "service": service},
    }


def lifecycle_policy() -> dict[str, Any]:
    """Hot -> warm (30d) -> cold (60d) -> delete (90d) retention policy."""
    return {
        "phases": {
            "hot": {
                "min_age": "0ms",
                "actions": {
                    "rollover": {"max_age": "30d", "max_primary_shard_size": "50gb"},
                    "set_priority": {"priority": 100},
                },
            },
            "warm": {
                "min_age": "30d",
                "actions": {
                    "shrink": {"number_of_shards": 1},
                    "forcemerge": {"max_num_segments": 1},
                    "set_priority": {"priority": 50},
                },
            },
            "cold": {
                "min_age": "60d",
                "actions": {"set_priority": {"priority": 0}},
            },
            "delete": {
                "min_age": "90d",
                "actions": {"delete": {}},
            },
        }
    }


class ProvisioningConfig(BaseModel):
    """What to provision at startup."""

    template_name: str = Field(default="categories-template", description="Index template name")
    policy_name: str = Field(default="digital-discovery-policy", description="Lifecycle policy")
    entity: str = Field(default="category", description="Entity whose index is provisioned")
    shards: int = Field(default=3, description="Primary shards per index")
    replicas: int = Field(default=1, description="Replicas per shard")


class ProvisioningReport(BaseModel):
    template_created: bool = False
    policy_created: bool = False
    index_created: bool = False
    index: str = ""
    alias: str = ""


class IndexProvisioner:
    """Idempotent startup setup of the category index.

    Runs, in order: lifecycle policy, index template, current month's index
    with its alias. Each step leaves existing resources as they are, so it is
    safe on every start. Any failure aborts startup with ProvisioningError.

    Example:
        >>> provisioner = IndexProvisioner(writer, IndexNamer("prod", "digital-discovery"))
        >>> report = await provisioner.provision()
        >>> report.alias
        'prod-digital-discovery-categories'
    """

    def __init__(
        self,
        writer: IndexWriter,
        namer: IndexNamer,
        config: ProvisioningConfig | None = None,
    ) -> None:
        self.writer = writer
        self.namer = namer
        self.config = config or ProvisioningConfig()

    async def provision(self, at: datetime | None = None) -> ProvisioningReport:
        """Provision policy, template, index and alias.

        Args:
            at: Instant selecting the month's index (defaults to now).

        Returns:
            What was created.

        Raises:
            ProvisioningError: A step failed.
        """
        naming = self.namer.naming(self.config.entity, at)
        report = ProvisioningReport(index=naming.index_name, alias=naming.alias_name)

        report.policy_created = await self._step(
            "policy",
            self.writer.ensure_lifecycle_policy(self.config.policy_name, lifecycle_policy()),
        )
        report.template_created = await self._step(
            "template",
            self.writer.ensure_index_template(
                self.config.template_name,
                category_template(
                    naming.index_pattern,
                    self.namer.service,
                    shards=self.config.shards,
                    replicas=self.config.replicas,
                    lifecycle_policy=self.config.policy_name,
                ),
            ),
        )
        report.index_created = await self._step(
            "index", self.writer.ensure_index(naming.index_name, alias=naming.alias_name)
        )

        logger.info(
            f"Provisioned {report.index} (alias {report.alias}): "
            f"policy_created={report.policy_created}, "
            f"template_created={report.template_created}, "
            f"index_created={report.index_created}"
        )
        return report

    @staticmethod
    async def _step(step: str, coro: Any) -> bool:
        try:
            return await coro
        except SyncError as e:
            logger.error(f"Provisioning step '{step}' failed: {e}")
            raise ProvisioningError(f"Provisioning step '{step}' failed", step=step, cause=e) from e
