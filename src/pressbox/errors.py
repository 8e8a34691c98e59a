"""Typed errors surfaced by PressBox lifecycle operations.

Every error carries the ``step`` that failed so callers can tell
"no internet for the WordPress download" apart from "port exhausted" or
"PHP failed to start".
"""


class PressboxError(Exception):
    """Base class for all PressBox errors."""

    default_step = "unknown"

    def __init__(self, message: str, *, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.step = step or self.default_step

    def __str__(self) -> str:
        return f"[{self.step}] {self.message}"


class ValidationError(PressboxError):
    """Invalid site name, domain or configuration. Raised before any side effect."""

    default_step = "validate"


class SiteNotFoundError(PressboxError):
    """No site registered under the given ID."""

    default_step = "lookup"

    def __init__(self, site_id: str):
        super().__init__(f"Site not found: {site_id}")
        self.site_id = site_id


class ProvisioningError(PressboxError):
    """WordPress download, extraction or configuration failed."""

    default_step = "provision"


class PortAllocationError(PressboxError):
    """No free port in the configured scan window."""

    default_step = "allocate_port"


class DatabaseConnectionError(PressboxError):
    """Database engine unavailable or unreachable.

    Recovered inside ``start`` by falling back to SQLite.
    """

    default_step = "database"


class ProcessSpawnError(PressboxError):
    """PHP development server failed to launch or never became ready."""

    default_step = "spawn"

    def __init__(self, message: str, *, step: str | None = None, output: list[str] | None = None):
        super().__init__(message, step=step)
        self.output = output or []


class StateConflictError(PressboxError):
    """Operation not allowed in the site's current state."""

    default_step = "state"


class DeletionError(PressboxError):
    """Site directory could not be removed; the registry entry was kept."""

    default_step = "remove_directory"
