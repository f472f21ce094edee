"""
Incident Sync Runtime
======================

Composition root and operational surface of the sync core.

Builds every service once with its dependencies injected and owns their
lifecycle:

STARTUP:
1. Create tables (when configured)
2. Recover runs and pushes interrupted by a previous process
3. Start the scheduler and the periodic jobs (poll, ledger sweep,
   store vectorization)
4. Kick off the startup bulk import when enabled or when the store is empty

SHUTDOWN:
1. Unschedule jobs and let in-flight runs finish
2. Stop the scheduler
3. Close owned clients and database connections
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from incident_sync import __version__
from incident_sync.config import Settings, get_settings
from incident_sync.core import ConfigurationException
from incident_sync.infrastructure.checkpoints import CheckpointStore
from incident_sync.infrastructure.database import Database
from incident_sync.infrastructure.llm import RotatingEmbeddingProvider
from incident_sync.infrastructure.ticketing import ITicketingClient, ServiceNowClient
from incident_sync.infrastructure.vectorstore import IVectorStore, MilvusVectorStore
from incident_sync.ingestion.application import (
    BulkImportOptions,
    BulkImportResult,
    BulkImportService,
    PollingService,
    PollResult,
)
from incident_sync.ingestion.domain import Ticket
from incident_sync.resolution.application import (
    PendingUpdateDTO,
    PendingUpdateSweeper,
    ResolutionInput,
    ResolutionSynchronizer,
    ResolveResult,
    SweepResult,
    UpdateStatistics,
)
from incident_sync.resolution.infrastructure.repositories import load_resolution_snapshots
from incident_sync.shared.infrastructure.clock import Clock, utc_now
from incident_sync.shared.infrastructure.logging import get_logger, setup_logging
from incident_sync.shared.infrastructure.scheduler import SyncScheduler
from incident_sync.vectorization.application import VectorizationPipeline, VectorizationRunResult

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class SyncRuntime:
    """
    Owns the sync services of one process.

    Dependencies may be injected; anything omitted is built from settings.
    Optional integrations that are not configured (ServiceNow credentials,
    embedding keys) leave the services that need them disabled instead of
    failing startup.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        database: Optional[Database] = None,
        client: Optional[ITicketingClient] = None,
        embeddings: Optional[RotatingEmbeddingProvider] = None,
        vector_store: Optional[IVectorStore] = None,
        scheduler: Optional[SyncScheduler] = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._settings = settings
        self._owns_database = database is None
        self._owns_client = client is None

        self.database = database or Database.from_settings(settings)
        self.scheduler = scheduler or SyncScheduler()
        self.client = client if client is not None else self._build_client(settings)
        self._checkpoints = CheckpointStore(self.database, clock)

        if embeddings is None:
            embeddings = self._build_embeddings(settings)
        if vector_store is None:
            vector_store = MilvusVectorStore.from_settings(settings)
        self.vector_store = vector_store

        self.vectorizer: Optional[VectorizationPipeline] = None
        if embeddings is not None:
            self.vectorizer = VectorizationPipeline.from_settings(
                settings,
                self.database,
                embeddings,
                vector_store,
                resolution_loader=load_resolution_snapshots,
                scheduler=self.scheduler,
                clock=clock,
                sleep=sleep,
            )

        self.poller: Optional[PollingService] = None
        self.bulk_importer: Optional[BulkImportService] = None
        if self.client is not None:
            self.poller = PollingService.from_settings(
                settings, self.database, self.client, self.scheduler, clock=clock, sleep=sleep
            )
            self.bulk_importer = BulkImportService.from_settings(
                settings, self.database, self.client, clock=clock, sleep=sleep
            )

        self.synchronizer = ResolutionSynchronizer.from_settings(
            settings, self.database, self.client, self.vectorizer, clock=clock, sleep=sleep
        )
        self.sweeper = PendingUpdateSweeper.from_settings(settings, self.synchronizer, self.scheduler)

        self._startup_import: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "SyncRuntime":
        """Configure logging and build a runtime from (cached) settings."""
        settings = settings or get_settings()
        setup_logging(settings.log_level, settings.environment)
        return cls(settings, **kwargs)

    @staticmethod
    def _build_client(settings: Settings) -> Optional[ITicketingClient]:
        if not settings.servicenow_configured:
            logger.warning("ServiceNow not configured - polling, bulk import and push disabled")
            return None
        return ServiceNowClient.from_settings(settings)

    @staticmethod
    def _build_embeddings(settings: Settings) -> Optional[RotatingEmbeddingProvider]:
        try:
            return RotatingEmbeddingProvider.from_settings(settings)
        except ConfigurationException as e:
            logger.warning(f"Embedding provider not available - vectorization disabled: {e.message}")
            return None

    @property
    def is_started(self) -> bool:
        return self._started

    # ========== Lifecycle ==========

    async def start(self) -> None:
        if self._started:
            logger.warning("Sync runtime already started")
            return

        logger.info("Starting incident sync", extra={
            "version": __version__,
            "environment": self._settings.environment,
        })

        if self._settings.auto_create_tables:
            await self.database.create_tables()

        await self._checkpoints.recover_interrupted()
        await self.synchronizer.recover_interrupted()

        await self.scheduler.start()

        if self.poller is not None and self._settings.polling_enabled:
            self.poller.start()
        self.sweeper.start()
        if self.vectorizer is not None and self._settings.vectorization_enabled:
            self.vectorizer.start()

        if await self._should_bulk_import():
            self._startup_import = asyncio.create_task(self._run_startup_import())

        self._started = True
        logger.info("Incident sync started")

    async def _should_bulk_import(self) -> bool:
        if self.bulk_importer is None:
            return False
        if self._settings.enable_bulk_import:
            return True
        if self._settings.auto_bulk_import_when_empty:
            return await self.bulk_importer.ticket_count() == 0
        return False

    async def _run_startup_import(self) -> None:
        try:
            result = await self.bulk_importer.bulk_import()
            logger.info("Startup bulk import finished", extra={"status": result.status})
        except Exception:
            logger.exception("Startup bulk import crashed")

    async def stop(self) -> None:
        """Stop scheduled work, letting in-flight runs finish."""
        if not self._started:
            return

        logger.info("Stopping incident sync")

        if self.poller is not None:
            await self.poller.stop()
        await self.sweeper.stop()
        if self.vectorizer is not None:
            await self.vectorizer.stop()

        if self._startup_import is not None and not self._startup_import.done():
            # The import checkpoints every page; the next start resumes it
            self._startup_import.cancel()
            try:
                await self._startup_import
            except asyncio.CancelledError:
                pass
        self._startup_import = None

        await self.scheduler.stop()

        if self._owns_client and self.client is not None:
            await self.client.close()
        if self._owns_database:
            await self.database.close()

        self._started = False
        logger.info("Incident sync stopped")

    # ========== Operations ==========

    def _require_poller(self) -> PollingService:
        if self.poller is None:
            raise ConfigurationException("Polling requires a configured ServiceNow client")
        return self.poller

    def _require_bulk_importer(self) -> BulkImportService:
        if self.bulk_importer is None:
            raise ConfigurationException("Bulk import requires a configured ServiceNow client")
        return self.bulk_importer

    def _require_vectorizer(self) -> VectorizationPipeline:
        if self.vectorizer is None:
            raise ConfigurationException("Vectorization requires a configured embedding provider")
        return self.vectorizer

    async def trigger_manual_poll(self) -> PollResult:
        return await self._require_poller().trigger_manual_poll()

    async def reset_polling_state(self) -> Dict[str, Any]:
        checkpoint = await self._require_poller().reset_polling_state()
        return checkpoint.to_dict()

    async def bulk_import(self, options: Optional[BulkImportOptions] = None) -> BulkImportResult:
        return await self._require_bulk_importer().bulk_import(options)

    async def get_bulk_import_status(self) -> Dict[str, Any]:
        return await self._require_bulk_importer().get_bulk_import_status()

    async def reset_bulk_import_state(self) -> None:
        await self._require_bulk_importer().reset_bulk_import_state()

    async def vectorize_store(self) -> VectorizationRunResult:
        return await self._require_vectorizer().vectorize_store()

    async def resolve(self, ticket: Ticket, data: ResolutionInput) -> ResolveResult:
        return await self.synchronizer.resolve(ticket, data)

    async def sweep_pending_updates(self) -> SweepResult:
        return await self.sweeper.sweep()

    async def get_update_statistics(self) -> UpdateStatistics:
        return await self.synchronizer.get_update_statistics()

    async def list_terminal_failures(self) -> List[PendingUpdateDTO]:
        return await self.synchronizer.list_terminal_failures()

    async def requeue_terminal(self, resolution_id: int) -> PendingUpdateDTO:
        return await self.synchronizer.requeue_terminal(resolution_id)

    # ========== Observability ==========

    async def status(self) -> Dict[str, Any]:
        """Per-stream status; readers never mutate checkpoints."""
        disabled = {"configured": False}
        return {
            "service": self._settings.app_name,
            "version": __version__,
            "environment": self._settings.environment,
            "started": self._started,
            "scheduler_running": self.scheduler.is_running,
            "polling": await self.poller.status() if self.poller else disabled,
            "bulk_import": await self.bulk_importer.get_bulk_import_status() if self.bulk_importer else disabled,
            "vectorization": await self.vectorizer.status() if self.vectorizer else disabled,
            "resolution_updates": (await self.synchronizer.get_update_statistics()).model_dump(),
            "sweep_in_flight": self.sweeper.in_flight,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Reachability of the canonical store, ServiceNow, the vector index and embeddings."""
        components: Dict[str, Dict[str, Any]] = {
            "database": await self.database.check_health(),
            "vector_store": await self.vector_store.check_health(),
        }
        if self.client is not None:
            components["servicenow"] = await self.client.check_health()
        if self.vectorizer is not None:
            components["embeddings"] = (await self.vectorizer.health_check())["embeddings"]

        return {
            "healthy": all(component.get("healthy") for component in components.values()),
            "version": __version__,
            "components": components,
        }
