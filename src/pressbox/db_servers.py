"""Discovery and control of MySQL/MariaDB installations on the host.

Engines are a discovered host resource shared by every site using them:
PressBox starts them when needed but never installs them and never kills
them.
"""

import asyncio
from collections import defaultdict
import os
from pathlib import Path
import re
import signal
import sys

import psutil
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
import structlog

from pressbox.config import Settings
from pressbox.errors import DatabaseConnectionError
from pressbox.models import DatabaseConfig, DatabaseEngine, DatabaseServerRecord
from pressbox.retry import RetryPolicy

logger = structlog.get_logger()

VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")
EXE_SUFFIX = ".exe" if sys.platform == "win32" else ""
ENGINE_DIR_NAMES = {"mysql": DatabaseEngine.MYSQL, "mariadb": DatabaseEngine.MARIADB}


def default_search_roots() -> list[Path]:
    """Package-manager default install roots for the current platform."""
    if sys.platform == "win32":
        program_files = Path(os.environ.get("PROGRAMFILES", r"C:\Program Files"))
        program_files_x86 = Path(os.environ.get("PROGRAMFILES(X86)", r"C:\Program Files (x86)"))
        local_app_data = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return [
            program_files / "MySQL",
            program_files_x86 / "MySQL",
            program_files / "MariaDB",
            program_files_x86 / "MariaDB",
            program_files,
            local_app_data / "MySQL",
            local_app_data / "MariaDB",
            Path(r"C:\xampp"),
            Path(r"C:\wamp\bin\mysql"),
            Path(r"C:\wamp64\bin\mysql"),
            Path(r"C:\wamp64\bin\mariadb"),
        ]
    return [
        Path("/usr/local"),
        Path("/opt"),
        Path("/usr/local/Cellar"),
        Path("/opt/homebrew/Cellar"),
        Path("/Applications/XAMPP/xamppfiles"),
    ]


def parse_version(dir_name: str) -> str:
    """Numeric dotted version from a directory name, or the raw name."""
    match = VERSION_RE.search(dir_name)
    return match.group(1) if match else dir_name


def _server_executable(install_dir: Path) -> tuple[DatabaseEngine, Path] | None:
    """Identify the engine whose server binary lives under ``install_dir/bin``."""
    bin_dir = install_dir / "bin"
    mariadbd = bin_dir / f"mariadbd{EXE_SUFFIX}"
    if mariadbd.is_file():
        return DatabaseEngine.MARIADB, mariadbd
    mysqld = bin_dir / f"mysqld{EXE_SUFFIX}"
    if mysqld.is_file():
        # Older MariaDB releases only ship mysqld
        hint = f"{install_dir.parent.name} {install_dir.name}".lower()
        engine = DatabaseEngine.MARIADB if "mariadb" in hint else DatabaseEngine.MYSQL
        return engine, mysqld
    return None


def _same_executable(candidate: str | None, target: Path) -> bool:
    if not candidate:
        return False
    return os.path.normcase(os.path.realpath(candidate)) == os.path.normcase(
        os.path.realpath(target)
    )


class DatabaseServerManager:
    """Discovers, inspects, starts and stops database engines."""

    def __init__(self, settings: Settings, search_roots: list[Path] | None = None):
        self.settings = settings
        self.search_roots = search_roots or settings.database_search_roots or default_search_roots()
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # === Discovery ===

    async def discover(self) -> list[DatabaseServerRecord]:
        """Scan well-known install roots. Finding nothing is not an error."""
        records = await asyncio.to_thread(self._scan_roots)
        logger.debug("database_servers_discovered", count=len(records))
        return records

    def _scan_roots(self) -> list[DatabaseServerRecord]:
        records: dict[Path, DatabaseServerRecord] = {}
        for root in self.search_roots:
            try:
                if not root.is_dir():
                    continue
                for record in self._scan_root(root):
                    records.setdefault(record.executable_path, record)
            except OSError as e:
                logger.warning("database_root_scan_failed", root=str(root), error=str(e))
        return list(records.values())

    def _scan_root(self, root: Path) -> list[DatabaseServerRecord]:
        found: list[DatabaseServerRecord] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir():
                continue
            # "<Engine> <version>" style, e.g. "MySQL Server 8.0"
            record = self._record_for(entry, entry.name)
            if record:
                found.append(record)
                continue
            # "<engine>/<version>" style, e.g. Cellar/mysql/8.0.33
            if entry.name.lower() in ENGINE_DIR_NAMES:
                for child in sorted(entry.iterdir()):
                    if child.is_dir():
                        record = self._record_for(child, child.name)
                        if record:
                            found.append(record)
        return found

    def _record_for(self, install_dir: Path, version_source: str) -> DatabaseServerRecord | None:
        detected = _server_executable(install_dir)
        if detected is None:
            return None
        engine, executable = detected
        return DatabaseServerRecord(
            engine=engine,
            version=parse_version(version_source),
            install_path=install_dir,
            executable_path=executable,
            data_path=install_dir / "data",
            listen_port=self.default_port(engine),
        )

    def default_port(self, engine: DatabaseEngine) -> int:
        match engine:
            case DatabaseEngine.MYSQL:
                return self.settings.mysql_port
            case DatabaseEngine.MARIADB:
                return self.settings.mariadb_port
            case DatabaseEngine.SQLITE:
                raise ValueError("SQLite is embedded and has no server")

    # === Status ===

    async def status(self, record: DatabaseServerRecord) -> tuple[bool, int | None]:
        """Running only if a live process runs the discovered executable."""
        pid = await asyncio.to_thread(self._find_pid, record.executable_path)
        return pid is not None, pid

    def _find_pid(self, executable: Path) -> int | None:
        for proc in psutil.process_iter(["pid", "exe"]):
            try:
                if _same_executable(proc.info.get("exe"), executable):
                    return proc.info["pid"]
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return None

    async def statuses(self) -> list[DatabaseServerRecord]:
        """Discovered engines with their live running state."""
        records = await self.discover()
        result = []
        for record in records:
            is_running, pid = await self.status(record)
            result.append(record.model_copy(update={"is_running": is_running, "pid": pid}))
        return result

    # === Control ===

    async def initialize(self, record: DatabaseServerRecord) -> None:
        """Ensure the data directory exists."""
        await asyncio.to_thread(record.data_path.mkdir, parents=True, exist_ok=True)

    def _start_command(self, record: DatabaseServerRecord) -> list[str]:
        cmd = [str(record.executable_path)]
        for name in ("my.cnf", "my.ini"):
            config_file = record.install_path / name
            if config_file.is_file():
                # Must be the first option
                cmd.append(f"--defaults-file={config_file}")
                break
        cmd.extend(
            [
                f"--port={record.listen_port}",
                f"--datadir={record.data_path}",
                f"--basedir={record.install_path}",
            ]
        )
        return cmd

    async def start(self, record: DatabaseServerRecord) -> bool:
        """Spawn the engine. Does not wait for readiness.

        Returns:
            True if the process was launched (or is already running)
        """
        is_running, pid = await self.status(record)
        if is_running:
            logger.debug("database_server_already_running", engine=record.engine.value, pid=pid)
            return True

        try:
            await self.initialize(record)
            cmd = self._start_command(record)
            logger.info(
                "starting_database_server",
                engine=record.engine.value,
                version=record.version,
                port=record.listen_port,
                command=" ".join(cmd),
            )
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(record.install_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                # Outlives this control process; shared by other sites
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            logger.error(
                "database_server_start_failed",
                engine=record.engine.value,
                version=record.version,
                error=str(e),
            )
            return False

        self._processes[record.key] = process
        logger.info("database_server_spawned", engine=record.engine.value, pid=process.pid)
        return True

    async def stop(self, record: DatabaseServerRecord) -> bool:
        """Send a graceful termination signal. Never escalates to kill."""
        process = self._processes.pop(record.key, None)
        pid = process.pid if process and process.returncode is None else None
        if pid is None:
            _, pid = await self.status(record)
        if pid is None:
            return True

        try:
            if sys.platform == "win32":
                await asyncio.to_thread(psutil.Process(pid).terminate)
            else:
                os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, psutil.NoSuchProcess):
            return True
        except (PermissionError, psutil.AccessDenied) as e:
            logger.warning("database_server_stop_denied", pid=pid, error=str(e))
            return False

        logger.info("database_server_stop_requested", engine=record.engine.value, pid=pid)
        return True

    # === Connectivity ===

    def _url(
        self,
        record: DatabaseServerRecord,
        user: str,
        password: str,
        database: str | None = None,
    ) -> URL:
        return URL.create(
            "mysql+aiomysql",
            username=user,
            password=password,
            host="127.0.0.1",
            port=record.listen_port,
            database=database,
        )

    async def _execute(self, url: URL, statements: list[tuple[str, dict]]) -> None:
        engine = create_async_engine(
            url,
            poolclass=NullPool,
            connect_args={"connect_timeout": self.settings.db_connect_timeout_sec},
        )
        try:
            async with engine.connect() as conn:
                for sql, params in statements:
                    await conn.execute(text(sql), params)
                await conn.commit()
        finally:
            await engine.dispose()

    def _root_url(self, record: DatabaseServerRecord, root_password: str | None = None) -> URL:
        password = root_password
        if password is None:
            password = self.settings.database_root_password
        return self._url(record, self.settings.database_root_user, password)

    async def probe(self, record: DatabaseServerRecord, root_password: str | None = None) -> bool:
        """Open a root connection and run ``SELECT 1``."""
        try:
            await self._execute(self._root_url(record, root_password), [("SELECT 1", {})])
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.debug("database_probe_failed", engine=record.engine.value, error=str(e))
            return False

    async def ensure_running(
        self,
        record: DatabaseServerRecord,
        policy: RetryPolicy,
        root_password: str | None = None,
    ) -> bool:
        """Make sure the engine accepts connections.

        Tolerates the engine having been started by another site's lifecycle.
        """
        async with self._locks[record.key]:
            is_running, _ = await self.status(record)
            if not is_running and not await self.start(record):
                return False
            elif is_running:
                logger.debug("database_server_reused", engine=record.engine.value)

            return await policy.run(
                lambda: self.probe(record, root_password),
                name=f"{record.engine.value}-connect",
            )

    async def ensure_database(
        self,
        record: DatabaseServerRecord,
        database: DatabaseConfig,
        root_password: str | None = None,
    ) -> None:
        """Create the site's database and user if absent, then verify access.

        Raises:
            DatabaseConnectionError: If any statement or the verification fails
        """
        if not re.fullmatch(r"[a-z0-9_]{1,64}", database.name):
            raise DatabaseConnectionError(f"Unsafe database name: {database.name}")

        statements = [
            (f"CREATE DATABASE IF NOT EXISTS `{database.name}`", {}),
            (
                "CREATE USER IF NOT EXISTS :user@'localhost' IDENTIFIED BY :password",
                {"user": database.user, "password": database.password},
            ),
            (
                "CREATE USER IF NOT EXISTS :user@'127.0.0.1' IDENTIFIED BY :password",
                {"user": database.user, "password": database.password},
            ),
            (
                f"GRANT ALL PRIVILEGES ON `{database.name}`.* TO :user@'localhost'",
                {"user": database.user},
            ),
            (
                f"GRANT ALL PRIVILEGES ON `{database.name}`.* TO :user@'127.0.0.1'",
                {"user": database.user},
            ),
            ("FLUSH PRIVILEGES", {}),
        ]
        try:
            await self._execute(self._root_url(record, root_password), statements)
            await self._execute(
                self._url(record, database.user, database.password, database.name),
                [("SELECT 1", {})],
            )
        except (SQLAlchemyError, OSError) as e:
            raise DatabaseConnectionError(
                f"Could not prepare database {database.name} on {record.engine.value}: {e}"
            ) from e

        logger.info("database_ready", engine=record.engine.value, database=database.name)
