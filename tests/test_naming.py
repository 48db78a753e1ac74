"""Tests for index and alias naming."""

from datetime import UTC, datetime, timedelta, timezone

from discovery_sync.indexing.naming import IndexNamer, IndexNaming, entity_segment


class TestIndexNaming:
    """Tests for IndexNaming."""

    def test_index_and_alias(self) -> None:
        """Test the monthly index name and its alias."""
        naming = IndexNaming(
            environment="prod",
            service="digital-discovery",
            entity="categories",
            date=datetime(2025, 4, 15, tzinfo=UTC),
        )

        assert naming.index_name == "prod-digital-discovery-categories-2025-04"
        assert naming.alias_name == "prod-digital-discovery-categories"

    def test_index_pattern(self) -> None:
        """Test the template pattern matches every environment and month."""
        naming = IndexNaming("stg", "digital-discovery", "categories")
        assert naming.index_pattern == "*-digital-discovery-categories-*"

    def test_month_is_zero_padded(self) -> None:
        """Test single-digit months are padded."""
        naming = IndexNaming("dev", "svc", "categories", datetime(2026, 1, 1, tzinfo=UTC))
        assert naming.index_name.endswith("-2026-01")

    def test_month_uses_utc(self) -> None:
        """Test an instant late on the last day of a month in UTC+7 lands in UTC's month."""
        wib = timezone(timedelta(hours=7))
        # 2025-05-01 05:00 WIB is still April in UTC
        naming = IndexNaming("prod", "svc", "categories", datetime(2025, 5, 1, 5, tzinfo=wib))
        assert naming.index_name == "prod-svc-categories-2025-04"


class TestIndexNamer:
    """Tests for IndexNamer."""

    def test_entity_is_pluralized(self, namer: IndexNamer) -> None:
        """Test the category entity maps to the categories segment."""
        name = namer.index_name("category", datetime(2025, 4, 1, tzinfo=UTC))
        assert name == "prod-digital-discovery-categories-2025-04"

    def test_alias_name(self, namer: IndexNamer) -> None:
        """Test the alias has no month bucket."""
        assert namer.alias_name("category") == "prod-digital-discovery-categories"

    def test_rolls_over_between_months(self, namer: IndexNamer) -> None:
        """Test instants either side of a month boundary select different indices."""
        end_of_april = datetime(2025, 4, 30, 23, 59, 59, tzinfo=UTC)
        start_of_may = end_of_april + timedelta(seconds=1)

        assert namer.index_name("category", end_of_april).endswith("2025-04")
        assert namer.index_name("category", start_of_may).endswith("2025-05")

    def test_defaults_to_now(self, namer: IndexNamer) -> None:
        """Test the current month is used when no instant is given."""
        now = datetime.now(UTC)
        assert namer.index_name("category").endswith(f"{now:%Y-%m}")

    def test_unknown_entity_passes_through(self) -> None:
        """Test entities without a mapping are used as-is."""
        assert entity_segment("brands") == "brands"
