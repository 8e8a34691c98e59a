"""Supervision of PHP built-in development servers, one per running site."""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
import contextlib
from dataclasses import dataclass, field
import re

import structlog

from pressbox.config import Settings
from pressbox.errors import ProcessSpawnError
from pressbox.models import Site
from pressbox.retry import RetryPolicy

logger = structlog.get_logger()

ExitListener = Callable[[str, int | None], Awaitable[None]]

_PHP_VERSION_RE = re.compile(r"PHP (\d+\.\d+\.\d+)")

OUTPUT_CHUNK_SIZE = 65536


@dataclass
class ProcessHandle:
    """A spawned PHP server owned by exactly one site."""

    site_id: str
    port: int
    process: asyncio.subprocess.Process
    output: deque[str]
    stopping: bool = False
    tasks: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode


class ProcessSupervisor:
    """Spawns, watches and terminates PHP development servers."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.readiness = RetryPolicy(
            max_attempts=settings.php_ready_attempts,
            delay=settings.php_ready_delay_sec,
        )
        self._handles: dict[str, ProcessHandle] = {}
        self._listeners: list[ExitListener] = []

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Register a callback for PHP servers that exit on their own."""
        self._listeners.append(listener)

    def get_handle(self, site_id: str) -> ProcessHandle | None:
        return self._handles.get(site_id)

    def is_alive(self, handle: ProcessHandle | None) -> bool:
        return handle is not None and handle.process.returncode is None

    def output(self, site_id: str) -> list[str]:
        """Most recent output lines of the site's PHP server."""
        handle = self._handles.get(site_id)
        return list(handle.output) if handle else []

    def _command(self, site: Site) -> list[str]:
        return [
            self.settings.php_binary,
            "-S",
            f"{self.settings.bind_host}:{site.port}",
            "-t",
            str(site.paths.wordpress_dir),
            "-d",
            "display_errors=1",
            "-d",
            "log_errors=1",
        ]

    async def spawn(self, site: Site) -> ProcessHandle:
        """Start the PHP server for ``site`` and wait until it accepts connections.

        Raises:
            ProcessSpawnError: If PHP cannot be launched, exits early or never
                becomes ready
        """
        existing = self._handles.get(site.id)
        if self.is_alive(existing):
            logger.debug("php_server_already_running", site_id=site.id, pid=existing.pid)
            return existing

        cmd = self._command(site)
        logger.info("spawning_php_server", site_id=site.id, port=site.port, command=" ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(site.paths.wordpress_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Could not launch {self.settings.php_binary}: {e}") from e

        handle = ProcessHandle(
            site_id=site.id,
            port=site.port,
            process=process,
            output=deque(maxlen=self.settings.php_output_lines),
        )
        self._handles[site.id] = handle
        handle.tasks.append(asyncio.create_task(self._pump_output(handle)))

        ready = await self.readiness.run(
            lambda: self._accepts_connections(site.port),
            name="php-ready",
            give_up=lambda: process.returncode is not None,
        )
        if not ready:
            exited = process.returncode is not None
            await self.terminate(handle)
            reason = "exited during startup" if exited else "did not become ready"
            raise ProcessSpawnError(
                f"PHP server on port {site.port} {reason}",
                output=list(handle.output),
            )

        handle.watcher = asyncio.create_task(self._watch_exit(handle))
        logger.info("php_server_ready", site_id=site.id, pid=handle.pid, port=site.port)
        return handle

    async def _accepts_connections(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.settings.bind_host, port), timeout=1.0
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    async def _pump_output(self, handle: ProcessHandle) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        # Lines can be longer than the StreamReader limit
        pending = b""
        while chunk := await stream.read(OUTPUT_CHUNK_SIZE):
            *lines, pending = (pending + chunk).split(b"\n")
            if len(pending) >= OUTPUT_CHUNK_SIZE:
                lines.append(pending)
                pending = b""
            for raw in lines:
                self._record_output(handle, raw)
        if pending:
            self._record_output(handle, pending)

    def _record_output(self, handle: ProcessHandle, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        handle.output.append(line)
        logger.debug("php_output", site_id=handle.site_id, line=line)

    async def _watch_exit(self, handle: ProcessHandle) -> None:
        code = await handle.process.wait()
        if handle.stopping:
            return
        logger.warning("php_server_exited", site_id=handle.site_id, exit_code=code)
        # Handle stays registered while listeners run so they can read its output
        for listener in self._listeners:
            try:
                await listener(handle.site_id, code)
            except Exception:
                logger.exception("exit_listener_failed", site_id=handle.site_id)
        if self._handles.get(handle.site_id) is handle:
            del self._handles[handle.site_id]

    async def terminate(self, handle: ProcessHandle) -> None:
        """Stop a PHP server: SIGTERM, then kill after the stop timeout."""
        handle.stopping = True
        process = handle.process
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.php_stop_timeout_sec)
            except TimeoutError:
                logger.warning("php_server_kill", site_id=handle.site_id, pid=handle.pid)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in [*handle.tasks, handle.watcher]:
            if task is not None and not task.done():
                task.cancel()
        if self._handles.get(handle.site_id) is handle:
            del self._handles[handle.site_id]
        logger.info("php_server_stopped", site_id=handle.site_id, exit_code=process.returncode)

    async def wait(self, handle: ProcessHandle) -> int | None:
        """Wait until the server exits and exit listeners have been notified."""
        code = await handle.process.wait()
        if handle.watcher is not None and not handle.stopping:
            await asyncio.shield(handle.watcher)
        return code

    async def terminate_all(self) -> None:
        for handle in list(self._handles.values()):
            await self.terminate(handle)

    async def php_version(self) -> str | None:
        """Version of the configured PHP binary, or None if it is unavailable."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.php_binary,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
        except (OSError, TimeoutError) as e:
            logger.warning("php_unavailable", binary=self.settings.php_binary, error=str(e))
            return None

        match = _PHP_VERSION_RE.search(stdout.decode("utf-8", errors="replace"))
        return match.group(1) if match else None
