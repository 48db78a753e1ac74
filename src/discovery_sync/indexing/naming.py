"""Time-rotated index and alias naming."""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from discovery_sync.indexing.models import utcnow

# Entity type as carried on operations -> index segment
ENTITY_INDEX_SEGMENTS = {
    "category": "categories",
}


def entity_segment(entity: str) -> str:
    """Return the pluralized index segment for an entity type."""
    return ENTITY_INDEX_SEGMENTS.get(entity, entity)


@dataclass(frozen=True)
class IndexNaming:
    """Index naming inputs.

    Index names follow ``{environment}-{service}-{entity}-{yyyy-MM}``, for
    example ``prod-digital-discovery-categories-2025-04``. The alias drops
    the month bucket and always points at the active index.

    Attributes:
        environment: Deployment environment (prod, stg, dev).
        service: Service segment (digital-discovery).
        entity: Pluralized entity segment (categories).
        date: Instant whose month selects the index.
    """

    environment: str
    service: str
    entity: str
    date: datetime = field(default_factory=utcnow)

    @property
    def index_name(self) -> str:
        date = self.date if self.date.tzinfo is None else self.date.astimezone(UTC)
        return f"{self.alias_name}-{date:%Y-%m}"

    @property
    def alias_name(self) -> str:
        return f"{self.environment}-{self.service}-{self.entity}"

    @property
    def index_pattern(self) -> str:
        """Wildcard matching every month's index for this entity."""
        return f"*-{self.service}-{self.entity}-*"


class IndexNamer:
    """Resolves index names for the configured environment and service.

    Names are recomputed on every call so the month bucket rolls over
    without a restart.
    """

    def __init__(self, environment: str, service: str) -> None:
        self.environment = environment
        self.service = service

    def naming(self, entity: str, at: datetime | None = None) -> IndexNaming:
        return IndexNaming(
            environment=self.environment,
            service=self.service,
            entity=entity_segment(entity),
            date=at or utcnow(),
        )

    def index_name(self, entity: str, at: datetime | None = None) -> str:
        """Active index for an entity at ``at`` (defaults to now)."""
        return self.naming(entity, at).index_name

    def alias_name(self, entity: str) -> str:
        return self.naming(entity).alias_name
