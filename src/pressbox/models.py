"""Data models for managed sites and discovered database servers."""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
import re
import secrets
import uuid

from pydantic import BaseModel, Field, field_validator

from pressbox.errors import ValidationError

RECORD_FILENAME = "pressbox-config.json"

# Hostname labels: letters, digits, hyphen; no leading/trailing hyphen
_DOMAIN_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_SLUG_INVALID_RE = re.compile(r"[^A-Za-z0-9_-]+")
MAX_SLUG_LENGTH = 64
# MySQL identifier limit is 64, user names are limited to 32
MAX_DB_IDENTIFIER_LENGTH = 32


class DatabaseEngine(str, Enum):
    """Supported database backends."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"

    @property
    def is_networked(self) -> bool:
        return self is not DatabaseEngine.SQLITE


class SiteStatus(str, Enum):
    """Lifecycle states. Only the orchestrator transitions them."""

    STOPPED = "stopped"
    PROVISIONING = "provisioning"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (SiteStatus.STARTING, SiteStatus.RUNNING, SiteStatus.STOPPING)


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_secret() -> str:
    """128-bit random secret, hex encoded."""
    return secrets.token_hex(16)


def generate_site_id() -> str:
    return uuid.uuid4().hex


def slugify_name(name: str) -> str:
    """Derive the on-disk directory name from a site name.

    Raises:
        ValidationError: If nothing usable is left after sanitizing.
    """
    slug = _SLUG_INVALID_RE.sub("-", name.strip()).strip("-_")
    if not slug:
        raise ValidationError(f"Site name {name!r} has no usable characters")
    if len(slug) > MAX_SLUG_LENGTH:
        raise ValidationError(f"Site name is longer than {MAX_SLUG_LENGTH} characters")
    # Windows reserves these device names
    if slug.upper() in {"CON", "PRN", "AUX", "NUL"}:
        raise ValidationError(f"Site name {name!r} is reserved")
    return slug


def database_identifier(slug: str, suffix: str = "") -> str:
    """Database/user name derived from the site slug.

    Lowercase ``[a-z0-9_]`` only, so it can be quoted safely as a MySQL
    identifier. ``suffix`` disambiguates sites whose slugs collide after
    normalization.
    """
    base = re.sub(r"[^a-z0-9_]", "_", slug.lower())
    tail = f"_{suffix}" if suffix else ""
    head = f"wp_{base}"[: MAX_DB_IDENTIFIER_LENGTH - len(tail)]
    return f"{head}{tail}"


def validate_domain(domain: str) -> str:
    domain = domain.strip().lower().rstrip(".")
    labels = domain.split(".")
    if not domain or len(domain) > 253 or not all(_DOMAIN_LABEL_RE.match(lb) for lb in labels):
        raise ValidationError(f"Invalid domain: {domain!r}")
    return domain


class DatabaseConfig(BaseModel):
    """Database backend of a site.

    ``root_password`` is only held in memory; the root credential used to
    reconnect comes from settings.
    """

    engine: DatabaseEngine
    name: str
    user: str
    password: str
    root_password: str | None = Field(default=None, exclude=True, repr=False)
    version: str | None = None
    port: int | None = None


class AdminCredentials(BaseModel):
    user: str = "admin"
    password: str = Field(default_factory=generate_secret, repr=False)
    email: str = "admin@localhost.test"


class SitePaths(BaseModel):
    """Filesystem layout of a site. Always derived, never taken from input."""

    root: Path
    wordpress_dir: Path
    database_dir: Path
    config_file: Path
    record_file: Path

    @classmethod
    def for_site(cls, sites_dir: Path, slug: str) -> "SitePaths":
        root = sites_dir / slug
        return cls(
            root=root,
            wordpress_dir=root,
            database_dir=root / "wp-content" / "database",
            config_file=root / "wp-config.php",
            record_file=root / RECORD_FILENAME,
        )


class Site(BaseModel):
    """One managed WordPress instance."""

    id: str
    name: str
    slug: str
    domain: str
    port: int
    php_version: str
    wordpress_version: str
    database: DatabaseConfig
    admin: AdminCredentials
    paths: SitePaths
    status: SiteStatus = SiteStatus.STOPPED
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def admin_url(self) -> str:
        return f"{self.url}/wp-admin"

    def with_status(self, status: SiteStatus, error: str | None = None) -> "Site":
        return self.model_copy(
            update={"status": status, "last_error": error, "updated_at": utc_now()}
        )

    def with_updates(self, **changes) -> "Site":
        return self.model_copy(update={**changes, "updated_at": utc_now()})


class CreateSiteRequest(BaseModel):
    """Input for creating a site."""

    name: str = Field(..., min_length=1, max_length=200)
    domain: str | None = None
    php_version: str | None = None
    wordpress_version: str | None = None
    database_engine: DatabaseEngine = DatabaseEngine.MYSQL
    admin_user: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_.@-]{1,60}$")
    admin_password: str | None = Field(default=None, min_length=8, repr=False)
    admin_email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+$")

    @field_validator("wordpress_version")
    @classmethod
    def validate_wordpress_version(cls, v: str | None) -> str | None:
        if v is not None and v != "latest" and not re.fullmatch(r"\d+\.\d+(\.\d+)?", v):
            raise ValueError(f"Invalid WordPress version: {v}")
        return v


class DatabaseServerRecord(BaseModel):
    """A database engine found on the host. Rebuilt on every query."""

    engine: DatabaseEngine
    version: str
    install_path: Path
    executable_path: Path
    data_path: Path
    listen_port: int
    pid: int | None = None
    is_running: bool = False

    @property
    def key(self) -> str:
        return f"{self.engine.value}-{self.version}-{self.listen_port}"
