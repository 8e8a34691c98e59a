import json
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from pressbox.cli.main import app
from pressbox.config import get_settings
from pressbox.orchestrator import SiteOrchestrator

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch):
    """Keep log lines out of the captured command output."""
    monkeypatch.setenv("PRESSBOX_LOG_LEVEL", "ERROR")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def cli_orchestrator(settings, registry, ports, provisioner, db_servers, supervisor, downloads):
    """Route CLI commands to an orchestrator wired with fake PHP and database servers."""

    def build():
        return SiteOrchestrator(
            settings=settings,
            registry=registry,
            ports=ports,
            provisioner=provisioner,
            db_servers=db_servers,
            supervisor=supervisor,
        )

    with patch("pressbox.cli.commands.sites.build_orchestrator", side_effect=build):
        yield


class TestSitesCommands:
    def test_list_empty(self, cli_orchestrator):
        result = runner.invoke(app, ["sites", "list"])
        assert result.exit_code == 0
        assert "No sites yet" in result.stdout

    def test_create_then_list(self, cli_orchestrator):
        result = runner.invoke(app, ["sites", "create", "Blog", "--database", "sqlite"])
        assert result.exit_code == 0, result.stdout
        assert "Site created successfully" in result.stdout

        result = runner.invoke(app, ["sites", "list", "--json"])
        [site] = json.loads(result.stdout)
        assert site["name"] == "Blog"
        assert site["status"] == "stopped"
        assert "password" not in site["admin"]
        assert "password" not in site["database"]

    def test_create_invalid_version(self, cli_orchestrator):
        result = runner.invoke(app, ["sites", "create", "Blog", "--wp-version", "nightly"])
        assert result.exit_code == 1
        assert "validate" in result.stdout

    def test_delete_by_name(self, cli_orchestrator, settings):
        runner.invoke(app, ["sites", "create", "Blog"])

        result = runner.invoke(app, ["sites", "delete", "Blog", "--yes"])
        assert result.exit_code == 0, result.stdout
        assert "Deleted" in result.stdout
        assert list(settings.sites_dir.iterdir()) == []

    def test_delete_unknown_site(self, cli_orchestrator):
        result = runner.invoke(app, ["sites", "delete", "ghost", "--yes"])
        assert result.exit_code == 1
        assert "lookup" in result.stdout

    def test_run_reports_spawn_failure(self, cli_orchestrator, supervisor):
        runner.invoke(app, ["sites", "create", "Blog", "--database", "sqlite"])
        supervisor.fail_spawn = True

        result = runner.invoke(app, ["sites", "run", "Blog"])
        assert result.exit_code == 1
        assert "spawn" in result.stdout

    def test_prune(self, cli_orchestrator, settings):
        (settings.sites_dir / "orphan").mkdir(parents=True)

        result = runner.invoke(app, ["sites", "prune"])
        assert result.exit_code == 0
        assert "orphan" in result.stdout
        assert not (settings.sites_dir / "orphan").exists()


class TestServersCommands:
    def test_list_none_found(self):
        with patch(
            "pressbox.cli.commands.servers.DatabaseServerManager.statuses",
            AsyncMock(return_value=[]),
        ):
            result = runner.invoke(app, ["servers", "list"])
        assert result.exit_code == 0
        assert "No MySQL or MariaDB installation found" in result.stdout

    def test_list_json(self, make_db_record):
        record = make_db_record().model_copy(update={"is_running": True, "pid": 42})
        with patch(
            "pressbox.cli.commands.servers.DatabaseServerManager.statuses",
            AsyncMock(return_value=[record]),
        ):
            result = runner.invoke(app, ["servers", "list", "--json"])
        [listed] = json.loads(result.stdout)
        assert listed["engine"] == "mysql"
        assert listed["pid"] == 42
