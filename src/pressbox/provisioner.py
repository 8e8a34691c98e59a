"""WordPress provisioning: download, extract and configure site directories."""

import asyncio
from collections import defaultdict
import os
from pathlib import Path
import re
import shutil
import tempfile
import time
import zipfile

import httpx
import structlog

from pressbox.config import Settings
from pressbox.errors import ProvisioningError
from pressbox.models import DatabaseEngine, Site
from pressbox.registry import SiteRegistry, atomic_write
from pressbox.templates import (
    DATABASE_DIR_GUARD,
    DB_DROPIN,
    SQLITE_PLUGIN_SLUG,
    generate_salts,
    parse_salts,
    render_wp_config,
)

logger = structlog.get_logger()

_WP_VERSION_RE = re.compile(r"\$wp_version\s*=\s*'([^']+)'")


def _is_fresh(path: Path, max_age: float | None) -> bool:
    if not path.is_file():
        return False
    return max_age is None or time.time() - path.stat().st_mtime < max_age


def _safe_members(archive: zipfile.ZipFile, dest: Path, strip: str | None):
    """Yield (member, target path) pairs, rejecting entries escaping ``dest``."""
    root = dest.resolve()
    for info in archive.infolist():
        name = info.filename
        if strip:
            if not name.startswith(strip):
                continue
            name = name[len(strip) :]
        if not name:
            continue
        target = (root / name).resolve()
        if target != root and root not in target.parents:
            raise ProvisioningError(
                f"Archive entry escapes destination: {info.filename}", step="extract"
            )
        yield info, target


def _extract_zip(archive_path: Path, dest: Path, strip_prefix: str | None) -> int:
    count = 0
    with zipfile.ZipFile(archive_path) as archive:
        names = archive.namelist()
        strip = None
        if strip_prefix and all(n.startswith(strip_prefix) for n in names):
            strip = strip_prefix
        for info, target in _safe_members(archive, dest, strip):
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            count += 1
    return count


class WordPressProvisioner:
    """Downloads WordPress, lays out site directories and writes wp-config.php."""

    def __init__(self, settings: Settings, registry: SiteRegistry):
        self.settings = settings
        self.registry = registry
        self.cache_dir = settings.cache_dir
        self._download_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # === Download ===

    def _wordpress_url(self, version: str) -> str:
        if version == "latest":
            return self.settings.wordpress_latest_url
        return self.settings.wordpress_download_url.format(version=version)

    async def download(self, version: str) -> Path:
        """Fetch the WordPress archive for ``version``, cached after the first call.

        The ``latest`` archive is fetched again once it is older than
        ``wordpress_latest_max_age_sec``.

        Raises:
            ProvisioningError: step ``download`` on any network or IO failure
        """
        target = self.cache_dir / f"wordpress-{version}.zip"
        max_age = self.settings.wordpress_latest_max_age_sec if version == "latest" else None
        url = self._wordpress_url(version)
        return await self._fetch(url, target, step="download", max_age=max_age)

    async def _fetch(
        self, url: str, target: Path, *, step: str, max_age: float | None = None
    ) -> Path:
        async with self._download_locks[target.name]:
            if await asyncio.to_thread(_is_fresh, target, max_age):
                logger.debug("download_cache_hit", file=target.name)
                return target

            logger.info("download_started", url=url, file=target.name)
            try:
                await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=target.parent, prefix=f".{target.name}.", suffix=".part"
                )
                size = 0
                try:
                    with os.fdopen(fd, "wb") as fh:
                        async with httpx.AsyncClient(
                            follow_redirects=True, timeout=self.settings.http_timeout_sec
                        ) as client:
                            async with client.stream("GET", url) as response:
                                response.raise_for_status()
                                async for chunk in response.aiter_bytes():
                                    fh.write(chunk)
                                    size += len(chunk)
                    os.replace(tmp_name, target)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except (httpx.HTTPError, OSError) as e:
                if target.is_file():
                    logger.warning("download_refresh_failed", file=target.name, error=str(e))
                    return target
                logger.error("download_failed", url=url, error=str(e))
                raise ProvisioningError(f"Could not download {url}: {e}", step=step) from e

            logger.info("download_completed", file=target.name, bytes=size)
            return target

    # === Extraction ===

    async def extract(self, archive: Path, dest: Path) -> None:
        """Unpack a WordPress archive into ``dest``, dropping the ``wordpress/`` prefix.

        Raises:
            ProvisioningError: step ``extract`` if the archive is corrupt or unsafe
        """
        try:
            count = await asyncio.to_thread(_extract_zip, archive, dest, "wordpress/")
        except ProvisioningError:
            raise
        except (zipfile.BadZipFile, OSError) as e:
            raise ProvisioningError(f"Could not extract {archive.name}: {e}", step="extract") from e

        if not (dest / "wp-includes" / "version.php").is_file():
            raise ProvisioningError(f"{archive.name} does not contain WordPress", step="extract")
        logger.info("wordpress_extracted", dest=str(dest), files=count)

    def detect_wordpress_version(self, wordpress_dir: Path) -> str | None:
        """Read ``$wp_version`` from wp-includes/version.php."""
        try:
            text = (wordpress_dir / "wp-includes" / "version.php").read_text(encoding="utf-8")
        except OSError:
            return None
        match = _WP_VERSION_RE.search(text)
        return match.group(1) if match else None

    # === Configuration ===

    def _existing_salts(self, site: Site) -> dict[str, str] | None:
        try:
            return parse_salts(site.paths.config_file.read_text(encoding="utf-8"))
        except OSError:
            return None

    async def write_config(self, site: Site) -> None:
        """Render and atomically write wp-config.php.

        Salts of an existing config are kept so sessions survive a rewrite.
        """
        salts = await asyncio.to_thread(self._existing_salts, site) or generate_salts()
        try:
            content = render_wp_config(site, salts)
            await asyncio.to_thread(atomic_write, site.paths.config_file, content)
        except (OSError, ValueError) as e:
            raise ProvisioningError(
                f"Could not write wp-config.php: {e}", step="write_config"
            ) from e
        logger.debug("wp_config_written", site_id=site.id, engine=site.database.engine.value)

    async def _prepare_sqlite(self, site: Site) -> None:
        """Lay out everything the SQLite backend needs. Safe to call repeatedly."""
        content_dir = site.paths.wordpress_dir / "wp-content"
        plugin_dir = content_dir / "plugins" / SQLITE_PLUGIN_SLUG

        if not (plugin_dir / "wp-includes" / "sqlite" / "db.php").is_file():
            archive = await self._fetch(
                self.settings.sqlite_integration_url,
                self.cache_dir / f"{SQLITE_PLUGIN_SLUG}.zip",
                step="download_sqlite_plugin",
            )
            try:
                await asyncio.to_thread(
                    _extract_zip, archive, plugin_dir, f"{SQLITE_PLUGIN_SLUG}/"
                )
            except (zipfile.BadZipFile, OSError) as e:
                raise ProvisioningError(
                    f"Could not install SQLite plugin: {e}", step="sqlite_setup"
                ) from e

        def layout() -> None:
            site.paths.database_dir.mkdir(parents=True, exist_ok=True)
            guard = site.paths.database_dir / "index.php"
            if not guard.exists():
                guard.write_text(DATABASE_DIR_GUARD, encoding="utf-8")
            dropin = content_dir / "db.php"
            if not dropin.exists():
                atomic_write(dropin, DB_DROPIN)

        try:
            await asyncio.to_thread(layout)
        except OSError as e:
            raise ProvisioningError(
                f"Could not prepare SQLite storage: {e}", step="sqlite_setup"
            ) from e
        logger.debug("sqlite_prepared", site_id=site.id)

    async def provision(self, site: Site) -> Site:
        """Download, extract and configure a new site directory.

        Returns:
            The site with its concrete WordPress version recorded
        """
        archive = await self.download(site.wordpress_version)
        await self.extract(archive, site.paths.wordpress_dir)
        version = await asyncio.to_thread(self.detect_wordpress_version, site.paths.wordpress_dir)
        if version:
            site = site.with_updates(wordpress_version=version)
        if site.database.engine is DatabaseEngine.SQLITE:
            await self._prepare_sqlite(site)
        await self.write_config(site)
        return site

    async def reconfigure_for_fallback(self, site: Site) -> Site:
        """Switch an existing site to SQLite in place.

        The config rewrite and the registry update land together: if the
        registry write fails the previous wp-config.php is restored.
        """
        if site.database.engine is DatabaseEngine.SQLITE:
            await self._prepare_sqlite(site)
            return site

        await self._prepare_sqlite(site)
        config_file = site.paths.config_file
        previous = None
        if config_file.is_file():
            previous = await asyncio.to_thread(config_file.read_text, encoding="utf-8")

        fallback = site.with_updates(
            database=site.database.model_copy(
                update={"engine": DatabaseEngine.SQLITE, "version": None, "port": None}
            )
        )
        await self.write_config(fallback)
        try:
            await self.registry.upsert(fallback)
        except OSError as e:
            if previous is not None:
                await asyncio.to_thread(atomic_write, config_file, previous)
            raise ProvisioningError(
                f"Could not save site record: {e}", step="fallback"
            ) from e

        logger.warning(
            "database_fallback_applied",
            site_id=site.id,
            previous_engine=site.database.engine.value,
        )
        return fallback

