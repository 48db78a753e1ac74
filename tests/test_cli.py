"""Tests for the discovery-sync CLI."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from discovery_sync.cli import app
from discovery_sync.errors import ProvisioningError
from discovery_sync.services.provisioning import ProvisioningReport

runner = CliRunner()


@pytest.fixture
def event_file(tmp_path: Path, make_event) -> Path:
    """Write a create event to disk."""
    path = tmp_path / "event.json"
    path.write_bytes(make_event("c", after={"id": "c1", "name": "Pulsa", "status": 1}))
    return path


class TestIndexNameCommand:
    """Tests for the index-name command."""

    def test_index_name_for_month(self) -> None:
        """Test the index and alias for a given month and environment."""
        result = runner.invoke(app, ["index-name", "--month", "2025-04", "-e", "prod"])

        assert result.exit_code == 0
        assert "prod-digital-discovery-categories-2025-04" in result.stdout
        assert "Alias: prod-digital-discovery-categories" in result.stdout

    def test_invalid_month(self) -> None:
        """Test a malformed month is rejected."""
        result = runner.invoke(app, ["index-name", "--month", "April"])

        assert result.exit_code != 0


class TestDecodeCommand:
    """Tests for the decode command."""

    def test_decode_create(self, event_file: Path) -> None:
        """Test a create event shows its operation and document."""
        result = runner.invoke(app, ["decode", str(event_file)])

        assert result.exit_code == 0
        assert "Operation: CREATE" in result.stdout
        assert "Document ID: c1" in result.stdout
        assert '"sync_status": "SUCCESS"' in result.stdout

    def test_decode_delete_has_no_document(self, tmp_path: Path, make_event) -> None:
        """Test a delete event prints no document body."""
        path = tmp_path / "delete.json"
        path.write_bytes(make_event("d", before={"id": "c1"}))

        result = runner.invoke(app, ["decode", str(path)])

        assert result.exit_code == 0
        assert "Operation: DELETE" in result.stdout
        assert "sync_status" not in result.stdout

    def test_decode_invalid(self, tmp_path: Path) -> None:
        """Test an undecodable event exits with status 1."""
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        result = runner.invoke(app, ["decode", str(path)])

        assert result.exit_code == 1
        assert "InvalidPayloadError" in result.stdout

    def test_decode_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file is rejected by argument validation."""
        result = runner.invoke(app, ["decode", str(tmp_path / "missing.json")])
        assert result.exit_code != 0


class TestProvisionCommand:
    """Tests for the provision command."""

    @pytest.fixture
    def writer(self) -> MagicMock:
        """Create mock index writer."""
        writer = MagicMock()
        writer.connect = AsyncMock()
        writer.close = AsyncMock()
        return writer

    def test_provision(self, writer: MagicMock) -> None:
        """Test a successful run reports what was created."""
        provisioner = MagicMock()
        provisioner.provision = AsyncMock(
            return_value=ProvisioningReport(
                template_created=True,
                policy_created=False,
                index_created=True,
                index="development-digital-discovery-categories-2025-04",
                alias="development-digital-discovery-categories",
            )
        )
        with (
            patch("discovery_sync.main.build_writer", return_value=writer),
            patch("discovery_sync.main.build_provisioner", return_value=provisioner),
        ):
            result = runner.invoke(app, ["provision"])

        assert result.exit_code == 0
        assert "Index provisioned" in result.stdout
        writer.connect.assert_awaited_once()
        writer.close.assert_awaited_once()

    def test_provision_failure(self, writer: MagicMock) -> None:
        """Test a failed step exits with status 1 and still closes the writer."""
        provisioner = MagicMock()
        provisioner.provision = AsyncMock(
            side_effect=ProvisioningError("Provisioning step 'template' failed", step="template")
        )
        with (
            patch("discovery_sync.main.build_writer", return_value=writer),
            patch("discovery_sync.main.build_provisioner", return_value=provisioner),
        ):
            result = runner.invoke(app, ["provision"])

        assert result.exit_code == 1
        assert "Provisioning failed" in result.stdout
        writer.close.assert_awaited_once()
