"""Persisted registry of managed sites.

Each site is stored as ``<site-root>/pressbox-config.json``. The registry is
loaded fully at startup and flushed on every mutation with a
write-temp-then-rename so a crash never leaves a half-written record.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
import os
from pathlib import Path
import shutil
import tempfile

from pydantic import ValidationError as PydanticValidationError
import structlog

from pressbox.errors import SiteNotFoundError
from pressbox.models import RECORD_FILENAME, Site, SitePaths, SiteStatus

logger = structlog.get_logger()

TRASH_PREFIX = ".trash-"


def atomic_write(path: Path, data: str) -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_record(path: Path) -> Site:
    return Site.model_validate_json(path.read_text(encoding="utf-8"))


class SiteRegistry:
    """Single source of truth for site existence and configuration."""

    def __init__(self, sites_dir: Path):
        self.sites_dir = sites_dir
        self._sites: dict[str, Site] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self) -> None:
        """(Re)load every record from disk.

        Sites that were active when the previous control process exited are
        reset to stopped; their ports are re-verified on the next start.
        """
        sites = await asyncio.to_thread(self._scan)
        self._sites = {site.id: site for site in sites}
        logger.info("registry_loaded", sites_dir=str(self.sites_dir), count=len(sites))

    def _scan(self) -> list[Site]:
        if not self.sites_dir.is_dir():
            return []

        sites: list[Site] = []
        for entry in sorted(self.sites_dir.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            record_file = entry / RECORD_FILENAME
            if not record_file.is_file():
                logger.debug("registry_skip_no_record", directory=entry.name)
                continue
            try:
                site = _read_record(record_file)
            except (OSError, PydanticValidationError) as e:
                logger.warning("registry_skip_invalid_record", directory=entry.name, error=str(e))
                continue

            # Paths follow the directory the record was found in
            paths = SitePaths.for_site(self.sites_dir, entry.name)
            site = site.model_copy(update={"paths": paths})
            if site.status.is_active or site.status is SiteStatus.PROVISIONING:
                site = site.with_status(SiteStatus.STOPPED)
            sites.append(site)
        return sites

    def list(self) -> list[Site]:
        return sorted(self._sites.values(), key=lambda s: s.created_at)

    def get(self, site_id: str) -> Site:
        site = self._sites.get(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return site

    def find_by_slug(self, slug: str) -> Site | None:
        for site in self._sites.values():
            if site.slug.lower() == slug.lower():
                return site
        return None

    def held_ports(self, exclude: str | None = None) -> dict[int, str]:
        """Ports of running sites, mapped to the owning site ID."""
        return {
            site.port: site.id
            for site in self._sites.values()
            if site.status is SiteStatus.RUNNING and site.id != exclude
        }

    async def upsert(self, site: Site) -> None:
        """Persist a site record. Calls for the same ID are serialized."""
        async with self._locks[site.id]:
            payload = site.model_dump_json(indent=2)
            await asyncio.to_thread(atomic_write, site.paths.record_file, payload)
            self._sites[site.id] = site
            logger.debug("registry_upserted", site_id=site.id, status=site.status.value)

    async def remove(self, site_id: str) -> None:
        """Drop a site record. The site directory is the caller's concern."""
        async with self._locks[site_id]:
            site = self._sites.pop(site_id, None)
            if site is None:
                return
            await asyncio.to_thread(site.paths.record_file.unlink, missing_ok=True)
            logger.debug("registry_removed", site_id=site_id)

    async def prune_broken(self, keep: set[str] | None = None) -> tuple[list[str], list[str]]:
        """Remove site directories without a valid record and leftover trash.

        Args:
            keep: Extra directory names to leave alone (sites being created)

        Returns:
            (cleaned, kept) directory names
        """
        known = {site.paths.root.name for site in self._sites.values()} | (keep or set())
        return await asyncio.to_thread(self._prune, known)

    def _prune(self, known: set[str]) -> tuple[list[str], list[str]]:
        cleaned: list[str] = []
        kept: list[str] = []
        if not self.sites_dir.is_dir():
            return cleaned, kept

        for entry in sorted(self.sites_dir.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name in known or (
                entry.name.startswith(".") and not entry.name.startswith(TRASH_PREFIX)
            ):
                kept.append(entry.name)
                continue
            if not entry.name.startswith(TRASH_PREFIX):
                try:
                    _read_record(entry / RECORD_FILENAME)
                    kept.append(entry.name)
                    continue
                except (OSError, PydanticValidationError):
                    pass
            try:
                shutil.rmtree(entry)
                cleaned.append(entry.name)
                logger.info("registry_pruned_directory", directory=entry.name)
            except OSError as e:
                logger.warning("registry_prune_failed", directory=entry.name, error=str(e))
        return cleaned, kept
