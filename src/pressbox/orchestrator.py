"""Site lifecycle orchestration.

The orchestrator is the only component that moves a site between states.
It composes the registry, port allocator, provisioner, database server
manager and process supervisor; none of those call each other.
"""

import asyncio
from collections import defaultdict
import shutil

import structlog

from pressbox.config import Settings, get_settings
from pressbox.db_servers import DatabaseServerManager
from pressbox.errors import (
    DatabaseConnectionError,
    DeletionError,
    PressboxError,
    ProvisioningError,
    SiteNotFoundError,
    StateConflictError,
    ValidationError,
)
from pressbox.logging_config import bind_site_context, clear_site_context
from pressbox.models import (
    AdminCredentials,
    CreateSiteRequest,
    DatabaseConfig,
    DatabaseEngine,
    DatabaseServerRecord,
    Site,
    SitePaths,
    SiteStatus,
    database_identifier,
    generate_secret,
    generate_site_id,
    slugify_name,
    validate_domain,
)
from pressbox.ports import PortAllocator
from pressbox.provisioner import WordPressProvisioner
from pressbox.registry import TRASH_PREFIX, SiteRegistry
from pressbox.retry import RetryPolicy
from pressbox.supervisor import ProcessSupervisor

logger = structlog.get_logger()


class SiteOrchestrator:
    """Owns site lifecycle transitions."""

    def __init__(
        self,
        settings: Settings,
        registry: SiteRegistry,
        ports: PortAllocator,
        provisioner: WordPressProvisioner,
        db_servers: DatabaseServerManager,
        supervisor: ProcessSupervisor,
    ):
        self.settings = settings
        self.registry = registry
        self.ports = ports
        self.provisioner = provisioner
        self.db_servers = db_servers
        self.supervisor = supervisor
        self.db_retry = RetryPolicy(
            max_attempts=settings.db_probe_attempts,
            delay=settings.db_probe_delay_sec,
            backoff=settings.db_probe_backoff,
            max_delay=settings.db_probe_max_delay_sec,
        )
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._create_lock = asyncio.Lock()
        # In-flight creates: directory names, domains and database names
        self._creating: set[str] = set()
        self._pending_domains: set[str] = set()
        self._pending_databases: set[str] = set()
        self.supervisor.add_exit_listener(self._on_php_exit)

    async def initialize(self) -> None:
        """Prepare storage and load persisted sites."""
        await asyncio.to_thread(self.settings.sites_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(self.settings.cache_dir.mkdir, parents=True, exist_ok=True)
        await self.registry.load()
        logger.info("orchestrator_initialized", home_dir=str(self.settings.home_dir))

    # === Queries ===

    def list_sites(self) -> list[Site]:
        return self.registry.list()

    def get_site(self, site_id: str) -> Site:
        return self.registry.get(site_id)

    async def get_database_server_statuses(self) -> list[DatabaseServerRecord]:
        return await self.db_servers.statuses()

    # === Create ===

    async def create_site(self, request: CreateSiteRequest) -> Site:
        """Provision a new site and register it as stopped.

        Nothing is registered and no directory is left behind on failure.

        Raises:
            ValidationError: Invalid or duplicate name/domain
            PortAllocationError: No free port
            ProvisioningError: Download, extraction or configuration failed
        """
        slug = slugify_name(request.name)
        domain = validate_domain(request.domain or f"{slug.lower().replace('_', '-')}.local")

        paths = SitePaths.for_site(self.settings.sites_dir, slug)
        site_id = generate_site_id()

        async with self._create_lock:
            creating = {name.lower() for name in self._creating}
            if self.registry.find_by_slug(slug) or slug.lower() in creating or paths.root.exists():
                raise ValidationError(f"A site named {slug!r} already exists")
            domains = {site.domain for site in self.registry.list()} | self._pending_domains
            if domain in domains:
                raise ValidationError(f"Domain {domain!r} is already used by another site")
            db_name = self._database_name(site_id, slug)

            self._creating.add(paths.root.name)
            self._pending_domains.add(domain)
            self._pending_databases.add(db_name)

        bind_site_context(site_id)
        try:
            return await self._create(site_id, slug, domain, db_name, paths, request)
        finally:
            self._creating.discard(paths.root.name)
            self._pending_domains.discard(domain)
            self._pending_databases.discard(db_name)
            self.ports.release(site_id)
            clear_site_context()

    async def _create(
        self,
        site_id: str,
        slug: str,
        domain: str,
        db_name: str,
        paths: SitePaths,
        request: CreateSiteRequest,
    ) -> Site:
        port = await self.ports.allocate(site_id)
        php_version = request.php_version or await self.supervisor.php_version() or "system"
        site = Site(
            id=site_id,
            name=request.name.strip(),
            slug=slug,
            domain=domain,
            port=port,
            php_version=php_version,
            wordpress_version=request.wordpress_version or self.settings.default_wordpress_version,
            database=self._database_config(db_name, request.database_engine),
            admin=self._admin_credentials(request),
            paths=paths,
            status=SiteStatus.PROVISIONING,
        )
        logger.info(
            "creating_site",
            name=site.name,
            slug=slug,
            port=port,
            engine=request.database_engine.value,
        )

        try:
            await asyncio.to_thread(paths.root.mkdir, parents=True, exist_ok=False)
        except OSError as e:
            raise ProvisioningError(
                f"Could not create {paths.root}: {e}", step="create_directory"
            ) from e

        try:
            site = await self.provisioner.provision(site)
            site = site.with_status(SiteStatus.STOPPED)
            try:
                await self.registry.upsert(site)
            except OSError as e:
                raise ProvisioningError(f"Could not save site record: {e}", step="register") from e
        except BaseException as e:
            logger.error("site_creation_failed", error=str(e))
            await asyncio.to_thread(shutil.rmtree, paths.root, True)
            raise

        logger.info("site_created", name=site.name, url=site.url)
        return site

    def _database_name(self, site_id: str, slug: str) -> str:
        name = database_identifier(slug)
        taken = {site.database.name for site in self.registry.list()} | self._pending_databases
        if name in taken:
            name = database_identifier(slug, suffix=site_id[:8])
        return name

    def _database_config(self, name: str, engine: DatabaseEngine) -> DatabaseConfig:
        return DatabaseConfig(
            engine=engine,
            name=name,
            user=name,
            password=generate_secret(),
            port=self.db_servers.default_port(engine) if engine.is_networked else None,
        )

    def _admin_credentials(self, request: CreateSiteRequest) -> AdminCredentials:
        overrides = {
            "user": request.admin_user,
            "password": request.admin_password,
            "email": request.admin_email,
        }
        return AdminCredentials(**{k: v for k, v in overrides.items() if v is not None})

    # === Start ===

    async def start_site(self, site_id: str) -> Site:
        """Bring a site to running.

        An unavailable MySQL/MariaDB engine is not an error: the site is
        switched to SQLite and started anyway.

        Raises:
            SiteNotFoundError: Unknown ID
            PortAllocationError: No free port
            ProvisioningError: The SQLite fallback could not be applied
            ProcessSpawnError: PHP failed to start
        """
        async with self._locks[site_id]:
            site = self.registry.get(site_id)
            if site.status is SiteStatus.RUNNING and self.supervisor.is_alive(
                self.supervisor.get_handle(site_id)
            ):
                logger.debug("site_already_running", site_id=site_id)
                return site

            bind_site_context(site_id)
            try:
                return await self._start(site)
            finally:
                clear_site_context()

    async def _start(self, site: Site) -> Site:
        site = site.with_status(SiteStatus.STARTING)
        await self.registry.upsert(site)

        try:
            port = await self.ports.allocate(site.id, preferred=site.port)
            rewrite_config = port != site.port
            if rewrite_config:
                logger.info("site_port_changed", old_port=site.port, new_port=port)
                site = site.with_updates(port=port)

            if site.database.engine.is_networked:
                site, rewrite_config = await self._prepare_database(site, rewrite_config)
            if rewrite_config:
                await self.provisioner.write_config(site)

            await self.supervisor.spawn(site)
        except Exception as e:
            self.ports.release(site.id)
            step = e.step if isinstance(e, PressboxError) else "start"
            logger.error("site_start_failed", step=step, error=str(e))
            try:
                await self.registry.upsert(site.with_status(SiteStatus.ERROR, str(e)))
            except OSError as record_error:
                logger.error("site_error_not_recorded", error=str(record_error))
            raise

        site = site.with_status(SiteStatus.RUNNING)
        await self.registry.upsert(site)
        logger.info("site_started", url=site.url, engine=site.database.engine.value)
        return site

    async def _prepare_database(self, site: Site, rewrite_config: bool) -> tuple[Site, bool]:
        """Get the site's engine ready, or switch the site to SQLite.

        Returns:
            (site, whether wp-config.php still needs rewriting)
        """
        try:
            record = await self._find_engine(site.database.engine)
            if not await self.db_servers.ensure_running(
                record, self.db_retry, site.database.root_password
            ):
                raise DatabaseConnectionError(
                    f"{record.engine.value} {record.version} did not accept connections "
                    f"within {self.db_retry.total_wait:.0f}s"
                )
            if site.database.port != record.listen_port or site.database.version != record.version:
                site = site.with_updates(
                    database=site.database.model_copy(
                        update={"port": record.listen_port, "version": record.version}
                    )
                )
                rewrite_config = True
            await self.db_servers.ensure_database(
                record, site.database, site.database.root_password
            )
            return site, rewrite_config
        except DatabaseConnectionError as e:
            logger.warning(
                "database_unavailable_falling_back",
                engine=site.database.engine.value,
                reason=e.message,
            )

        try:
            site = await self.provisioner.reconfigure_for_fallback(site)
        except PressboxError as e:
            raise ProvisioningError(f"SQLite fallback failed: {e.message}", step="fallback") from e
        return site, False

    async def _find_engine(self, engine: DatabaseEngine) -> DatabaseServerRecord:
        records = [r for r in await self.db_servers.discover() if r.engine is engine]
        if not records:
            raise DatabaseConnectionError(f"No {engine.value} installation found")
        for record in records:
            is_running, _ = await self.db_servers.status(record)
            if is_running:
                return record
        return records[0]

    # === Stop ===

    async def stop_site(self, site_id: str) -> Site:
        """Stop the site's PHP server. Database engines keep running."""
        async with self._locks[site_id]:
            return await self._stop(self.registry.get(site_id))

    async def _stop(self, site: Site) -> Site:
        handle = self.supervisor.get_handle(site.id)
        if handle is None and site.status is SiteStatus.STOPPED:
            return site

        if handle is not None:
            site = site.with_status(SiteStatus.STOPPING)
            await self.registry.upsert(site)
            await self.supervisor.terminate(handle)

        self.ports.release(site.id)
        site = site.with_status(SiteStatus.STOPPED)
        await self.registry.upsert(site)
        logger.info("site_stopped", site_id=site.id)
        return site

    async def _on_php_exit(self, site_id: str, exit_code: int | None) -> None:
        async with self._locks[site_id]:
            try:
                site = self.registry.get(site_id)
            except SiteNotFoundError:
                return
            if self.supervisor.is_alive(self.supervisor.get_handle(site_id)):
                return
            self.ports.release(site_id)
            output = self.supervisor.output(site_id)
            message = f"PHP server exited unexpectedly with code {exit_code}"
            if output:
                message = f"{message}: {output[-1]}"
            await self.registry.upsert(site.with_status(SiteStatus.ERROR, message))
            logger.error("site_crashed", site_id=site_id, exit_code=exit_code)

    # === Delete ===

    async def delete_site(self, site_id: str, force: bool = False) -> None:
        """Remove a site's files and registry entry.

        Raises:
            StateConflictError: The site is active and ``force`` is not set
            DeletionError: The directory could not be moved away; the site
                stays registered
        """
        async with self._locks[site_id]:
            site = self.registry.get(site_id)
            active = site.status.is_active or self.supervisor.get_handle(site_id) is not None
            if active:
                if not force:
                    raise StateConflictError(
                        f"Site {site.name} is {site.status.value}; stop it first"
                    )
                site = await self._stop(site)

            trash = self.settings.sites_dir / f"{TRASH_PREFIX}{site.id}"
            if site.paths.root.exists():
                try:
                    await asyncio.to_thread(site.paths.root.rename, trash)
                except OSError as e:
                    raise DeletionError(f"Could not remove {site.paths.root}: {e}") from e

            await self.registry.remove(site.id)
            self.ports.release(site.id)
            logger.info("site_deleted", site_id=site.id, name=site.name)

        try:
            await asyncio.to_thread(shutil.rmtree, trash)
        except FileNotFoundError:
            pass
        except OSError as e:
            # Left for prune
            logger.warning("site_trash_cleanup_failed", path=str(trash), error=str(e))

    async def prune_sites(self) -> tuple[list[str], list[str]]:
        """Remove directories without a valid site record."""
        return await self.registry.prune_broken(keep=set(self._creating))

    # === Shutdown ===

    async def shutdown(self) -> None:
        """Stop every PHP server. Database engines are left running."""
        for site in self.registry.list():
            if site.status.is_active or self.supervisor.get_handle(site.id) is not None:
                async with self._locks[site.id]:
                    await self._stop(self.registry.get(site.id))
        await self.supervisor.terminate_all()
        logger.info("orchestrator_shutdown")


def build_orchestrator(settings: Settings | None = None) -> SiteOrchestrator:
    """Wire the default collaborators."""
    settings = settings or get_settings()
    registry = SiteRegistry(settings.sites_dir)
    return SiteOrchestrator(
        settings=settings,
        registry=registry,
        ports=PortAllocator(
            registry,
            range_start=settings.port_range_start,
            range_end=settings.port_range_end,
            reserved_ports=settings.reserved_ports,
            host=settings.bind_host,
        ),
        provisioner=WordPressProvisioner(settings, registry),
        db_servers=DatabaseServerManager(settings),
        supervisor=ProcessSupervisor(settings),
    )
