"""Shared fixtures: isolated settings, archive builders and fake collaborators."""

from collections import deque
from dataclasses import dataclass, field
import io
from pathlib import Path
import socket
import stat
import sys
import textwrap
import zipfile

import httpx
import pytest
import respx

from pressbox.config import Settings
from pressbox.errors import DatabaseConnectionError, ProcessSpawnError
from pressbox.models import (
    AdminCredentials,
    DatabaseConfig,
    DatabaseEngine,
    DatabaseServerRecord,
    Site,
    SitePaths,
)
from pressbox.orchestrator import SiteOrchestrator
from pressbox.ports import PortAllocator
from pressbox.provisioner import WordPressProvisioner
from pressbox.registry import SiteRegistry

pytest_plugins = ("pytest_asyncio",)

WORDPRESS_VERSION = "6.4.2"
LATEST_URL = "https://wordpress.test/latest.zip"
VERSIONED_URL = "https://wordpress.test/wordpress-{version}.zip"
SQLITE_PLUGIN_URL = "https://plugins.test/sqlite-database-integration.zip"


def _free_port_block(size: int = 20) -> int:
    """Start of a port window that is very likely unused on this host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return min(port, 65535 - size)


def build_wordpress_zip(version: str = WORDPRESS_VERSION) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("wordpress/", "")
        archive.writestr("wordpress/index.php", "<?php require __DIR__ . '/wp-blog-header.php';\n")
        archive.writestr(
            "wordpress/wp-includes/version.php",
            f"<?php\n$wp_version = '{version}';\n$wp_db_version = 56657;\n",
        )
        archive.writestr("wordpress/wp-content/index.php", "<?php\n")
        archive.writestr("wordpress/wp-config-sample.php", "<?php\n")
    return buffer.getvalue()


def build_sqlite_plugin_zip() -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("sqlite-database-integration/load.php", "<?php\n")
        archive.writestr("sqlite-database-integration/wp-includes/sqlite/db.php", "<?php\n")
    return buffer.getvalue()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    start = _free_port_block()
    return Settings(
        _env_file=None,
        home_dir=tmp_path / "PressBox",
        port_range_start=start,
        port_range_end=start + 19,
        reserved_ports=[],
        php_ready_attempts=3,
        php_ready_delay_sec=0.01,
        php_stop_timeout_sec=1.0,
        db_probe_attempts=2,
        db_probe_delay_sec=0.01,
        database_search_roots=[tmp_path / "db-roots"],
        wordpress_latest_url=LATEST_URL,
        wordpress_download_url=VERSIONED_URL,
        sqlite_integration_url=SQLITE_PLUGIN_URL,
    )


@pytest.fixture
def registry(settings: Settings) -> SiteRegistry:
    return SiteRegistry(settings.sites_dir)


@pytest.fixture
def make_site(settings: Settings):
    """Factory for site records rooted in the test home directory."""

    def _make(
        name: str = "Blog",
        engine: DatabaseEngine = DatabaseEngine.MYSQL,
        **overrides,
    ) -> Site:
        slug = overrides.pop("slug", name)
        values = {
            "id": f"id-{slug.lower()}",
            "name": name,
            "slug": slug,
            "domain": f"{slug.lower()}.local",
            "port": settings.port_range_start,
            "php_version": "8.2.0",
            "wordpress_version": WORDPRESS_VERSION,
            "database": DatabaseConfig(
                engine=engine,
                name=f"wp_{slug.lower()}",
                user=f"wp_{slug.lower()}",
                password="secret-password",
                port=3306 if engine.is_networked else None,
            ),
            "admin": AdminCredentials(password="admin-password"),
            "paths": SitePaths.for_site(settings.sites_dir, slug),
        }
        values.update(overrides)
        return Site(**values)

    return _make


@pytest.fixture
def downloads():
    """Serve WordPress and plugin archives from memory."""
    with respx.mock(assert_all_called=False) as mock:
        mock.get(LATEST_URL).mock(return_value=httpx.Response(200, content=build_wordpress_zip()))
        mock.get(url__regex=r"https://wordpress\.test/wordpress-(?P<version>[\d.]+)\.zip").mock(
            side_effect=lambda request, version: httpx.Response(
                200, content=build_wordpress_zip(version)
            )
        )
        mock.get(SQLITE_PLUGIN_URL).mock(
            return_value=httpx.Response(200, content=build_sqlite_plugin_zip())
        )
        yield mock


# === Fake collaborators ===


@dataclass
class FakeProcess:
    pid: int
    returncode: int | None = None


@dataclass
class FakeHandle:
    site_id: str
    port: int
    process: FakeProcess
    output: deque = field(default_factory=lambda: deque(maxlen=50))
    stopping: bool = False


class FakeSupervisor:
    """Stands in for ProcessSupervisor without launching PHP."""

    def __init__(self):
        self.handles: dict[str, FakeHandle] = {}
        self.spawned: list[str] = []
        self.terminated: list[str] = []
        self.fail_spawn = False
        self._listeners = []
        self._next_pid = 1000

    def add_exit_listener(self, listener) -> None:
        self._listeners.append(listener)

    def get_handle(self, site_id: str) -> FakeHandle | None:
        return self.handles.get(site_id)

    def is_alive(self, handle) -> bool:
        return handle is not None and handle.process.returncode is None

    def output(self, site_id: str) -> list[str]:
        handle = self.handles.get(site_id)
        return list(handle.output) if handle else []

    async def spawn(self, site: Site) -> FakeHandle:
        existing = self.handles.get(site.id)
        if self.is_alive(existing):
            return existing
        if self.fail_spawn:
            raise ProcessSpawnError(f"PHP server on port {site.port} exited during startup")
        self._next_pid += 1
        handle = FakeHandle(
            site_id=site.id, port=site.port, process=FakeProcess(pid=self._next_pid)
        )
        self.handles[site.id] = handle
        self.spawned.append(site.id)
        return handle

    async def terminate(self, handle: FakeHandle) -> None:
        handle.stopping = True
        handle.process.returncode = -15
        self.handles.pop(handle.site_id, None)
        self.terminated.append(handle.site_id)

    async def terminate_all(self) -> None:
        for handle in list(self.handles.values()):
            await self.terminate(handle)

    async def crash(self, site_id: str, code: int = 255, line: str = "PHP Fatal error") -> None:
        handle = self.handles[site_id]
        handle.output.append(line)
        handle.process.returncode = code
        for listener in self._listeners:
            await listener(site_id, code)
        self.handles.pop(site_id, None)

    async def php_version(self) -> str | None:
        return "8.2.0"

    def alive_count(self) -> int:
        return sum(1 for h in self.handles.values() if self.is_alive(h))


class FakeDatabaseServers:
    """Stands in for DatabaseServerManager without touching real engines."""

    def __init__(self, settings: Settings, records: list[DatabaseServerRecord] | None = None):
        self.settings = settings
        self.records = records or []
        self.running: set[str] = set()
        self.reachable = True
        self.database_error: str | None = None
        self.ensured_databases: list[str] = []
        self.started: list[str] = []
        self.stopped: list[str] = []

    def default_port(self, engine: DatabaseEngine) -> int:
        return {DatabaseEngine.MYSQL: 3306, DatabaseEngine.MARIADB: 3307}[engine]

    async def discover(self) -> list[DatabaseServerRecord]:
        return list(self.records)

    async def status(self, record: DatabaseServerRecord) -> tuple[bool, int | None]:
        running = record.key in self.running
        return running, (4242 if running else None)

    async def statuses(self) -> list[DatabaseServerRecord]:
        result = []
        for record in self.records:
            running, pid = await self.status(record)
            result.append(record.model_copy(update={"is_running": running, "pid": pid}))
        return result

    async def ensure_running(self, record, policy, root_password=None) -> bool:
        if record.key not in self.running:
            self.started.append(record.key)
            self.running.add(record.key)
        return self.reachable

    async def ensure_database(self, record, database: DatabaseConfig, root_password=None) -> None:
        if self.database_error:
            raise DatabaseConnectionError(self.database_error)
        self.ensured_databases.append(database.name)

    async def stop(self, record) -> bool:
        self.stopped.append(record.key)
        self.running.discard(record.key)
        return True


@pytest.fixture
def make_db_record(tmp_path: Path):
    """Factory for discovered engine records."""

    def _make(
        engine: DatabaseEngine = DatabaseEngine.MYSQL, version: str = "8.0.33", port: int = 3306
    ) -> DatabaseServerRecord:
        install = tmp_path / "db-roots" / f"{engine.value}-{version}"
        return DatabaseServerRecord(
            engine=engine,
            version=version,
            install_path=install,
            executable_path=install / "bin" / "mysqld",
            data_path=install / "data",
            listen_port=port,
        )

    return _make


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def db_servers(settings: Settings) -> FakeDatabaseServers:
    return FakeDatabaseServers(settings)


@pytest.fixture
def ports(settings: Settings, registry: SiteRegistry) -> PortAllocator:
    return PortAllocator(
        registry,
        range_start=settings.port_range_start,
        range_end=settings.port_range_end,
        reserved_ports=settings.reserved_ports,
        host=settings.bind_host,
    )


@pytest.fixture
def provisioner(settings: Settings, registry: SiteRegistry) -> WordPressProvisioner:
    return WordPressProvisioner(settings, registry)


@pytest.fixture
async def orchestrator(settings, registry, ports, provisioner, db_servers, supervisor, downloads):
    orch = SiteOrchestrator(
        settings=settings,
        registry=registry,
        ports=ports,
        provisioner=provisioner,
        db_servers=db_servers,
        supervisor=supervisor,
    )
    await orch.initialize()
    yield orch
    await orch.shutdown()


FAKE_PHP = textwrap.dedent(
    """\
    #!{python}
    import os
    import socket
    import sys

    args = sys.argv[1:]
    if args == ["--version"]:
        print("PHP 8.2.12 (cli) (built: Oct 24 2023)")
        sys.exit(0)

    mode = os.environ.get("FAKE_PHP_MODE", "serve")
    host, port = args[args.index("-S") + 1].rsplit(":", 1)
    print(f"PHP Development Server (http://{{host}}:{{port}}) started", flush=True)
    if mode == "exit":
        print("Failed to listen", flush=True)
        sys.exit(1)
    if mode == "hang":
        import time
        time.sleep(60)
        sys.exit(0)
    if mode == "long":
        print("x" * 100000, flush=True)
        print("after long line", flush=True)

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, int(port)))
    server.listen()
    while True:
        conn, _ = server.accept()
        conn.recv(4096)
        conn.sendall(
            b"HTTP/1.1 302 Found\\r\\n"
            b"Location: /wp-admin/install.php\\r\\n"
            b"Content-Length: 0\\r\\n"
            b"Connection: close\\r\\n\\r\\n"
        )
        conn.close()
    """
)


@pytest.fixture
def fake_php(tmp_path: Path) -> Path:
    """Executable standing in for the PHP CLI and its built-in server."""
    path = tmp_path / "php"
    path.write_text(FAKE_PHP.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path
