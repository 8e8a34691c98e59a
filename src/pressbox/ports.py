"""Port allocation for PHP development servers.

The OS is the source of truth: a candidate port is handed out only if it is
not leased to another site, not held by a running site and passes a bind
test. Leases are in-memory bookkeeping and do not survive a restart.
"""

import asyncio
import errno
import socket

import structlog

from pressbox.errors import PortAllocationError
from pressbox.registry import SiteRegistry

logger = structlog.get_logger()


def _bind_test(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno not in (errno.EADDRINUSE, errno.EACCES):
                logger.debug("bind_test_error", port=port, error=str(e))
            return False
    return True


class PortAllocator:
    """Finds and leases free TCP ports."""

    def __init__(
        self,
        registry: SiteRegistry,
        range_start: int = 8000,
        range_end: int = 9000,
        reserved_ports: list[int] | None = None,
        host: str = "127.0.0.1",
    ):
        self.registry = registry
        self.range_start = range_start
        self.range_end = range_end
        self.reserved_ports = set(reserved_ports or [])
        self.host = host
        self._leases: dict[str, int] = {}  # site_id -> port
        self._lock = asyncio.Lock()

    async def is_port_free(self, port: int) -> bool:
        """Bind test at the OS level."""
        return await asyncio.to_thread(_bind_test, self.host, port)

    def _taken_by_others(self, site_id: str) -> set[int]:
        leased = {port for owner, port in self._leases.items() if owner != site_id}
        return leased | set(self.registry.held_ports(exclude=site_id))

    async def allocate(self, site_id: str, preferred: int | None = None) -> int:
        """Lease a port for ``site_id``.

        Args:
            site_id: Site the port is leased to
            preferred: Port to re-verify and keep if still free

        Returns:
            The leased port

        Raises:
            PortAllocationError: If no port in range is free
        """
        async with self._lock:
            taken = self._taken_by_others(site_id)

            if preferred is not None and preferred not in taken:
                if await self.is_port_free(preferred):
                    self._leases[site_id] = preferred
                    return preferred
                logger.info("preferred_port_busy", site_id=site_id, port=preferred)

            # Ports recorded by stopped sites are only reused once the range is full
            recorded = {s.port for s in self.registry.list() if s.id != site_id}
            for skip in (taken | recorded, taken):
                for port in range(self.range_start, self.range_end + 1):
                    if port in self.reserved_ports or port in skip:
                        continue
                    if await self.is_port_free(port):
                        self._leases[site_id] = port
                        logger.info("port_allocated", site_id=site_id, port=port)
                        return port

        raise PortAllocationError(
            f"No free port between {self.range_start} and {self.range_end}"
        )

    def release(self, site_id: str) -> None:
        """Drop the lease held by ``site_id``. No-op if there is none."""
        port = self._leases.pop(site_id, None)
        if port is not None:
            logger.debug("port_released", site_id=site_id, port=port)

    def leased_port(self, site_id: str) -> int | None:
        return self._leases.get(site_id)
