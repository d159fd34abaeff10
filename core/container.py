"""
Service container — builds and wires every component from Settings.

Nothing here is a module-level singleton: each call to ``build_container``
returns an independent graph, so tests can run several side by side.

    queue ─▶ lease manager ─▶ worker pools ─▶ ActionDispatcher
                                                  │
    webhook ─▶ DistributionCoordinator ◀──────────┘ (process_inbound)
                 │          │
         PipelineCache   BotSessionEngine ─▶ WriteBehindSessionCache

Collaborator stores (contacts/conversations, operator directory, customers,
survey results) belong to the surrounding platform and are injected; the
in-memory implementations are used when none are given.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bots import BotDependencies, BotSessionEngine, WriteBehindSessionCache, default_registry
from channels.base import ChannelRegistry
from channels.factory import build_channel_registry
from config.settings import Settings, get_settings
from core.actions import ActionDispatcher
from core.coordinator import DistributionCoordinator
from database.session import create_engine_for, create_session_factory, init_db
from database.store_base import (
    ConversationStore, CustomerDirectory, OperatorDirectory, SurveyResultSink,
)
from database.store_factory import create_session_store
from database.store_memory import (
    InMemoryConversationStore, InMemoryCustomerDirectory,
    InMemoryOperatorDirectory, InMemorySurveyResultSink,
)
from job_queue.lease import LeaseManager
from job_queue.maintenance import QueueMaintenance
from job_queue.work_queue import WorkQueue, create_work_queue
from job_queue.worker_pool import WorkerPool
from models.schemas import utcnow
from notifications.notifier import Notifier, create_notifier
from notifications.rooms import ConversationNotifier
from routing.factory import PipelineCache, SqlRoutingConfigSource, StaticRoutingConfigSource
from routing.steps import RoutingDependencies

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    queue: WorkQueue
    leases: LeaseManager
    pools: list[WorkerPool]
    maintenance: QueueMaintenance
    pipelines: PipelineCache
    bots: BotSessionEngine
    coordinator: DistributionCoordinator
    dispatcher: ActionDispatcher
    channels: ChannelRegistry
    notifier: Notifier
    conversations: ConversationStore
    directory: OperatorDirectory
    engine: Optional[AsyncEngine] = None
    background: bool = True
    _started: bool = field(default=False, repr=False)

    async def start(self):
        """Create tables, load bot sessions, start pools and background loops."""
        if self._started:
            return
        if self.engine is not None:
            await init_db(self.engine)
        await self.notifier.connect()
        await self.channels.initialize_all()
        await self.bots.cache.load()
        if self.background:
            for pool in self.pools:
                await pool.start()
            await self.bots.start_watchdog()
            await self.maintenance.start_background()
        self._started = True
        logger.info("service_container_started", pools=[p.name for p in self.pools],
                    channels=self.channels.get_available())

    async def stop(self):
        if not self._started:
            return
        for pool in self.pools:
            await pool.stop()
        await self.maintenance.stop()
        await self.bots.stop()
        await self.channels.shutdown_all()
        await self.notifier.close()
        await self.queue.close()
        if self.engine is not None:
            await self.engine.dispose()
        self._started = False
        logger.info("service_container_stopped")

    async def drain(self, max_cycles: int = 100) -> int:
        """Run pool cycles until nothing is left to start (tests, CLI tools)."""
        started = 0
        for _ in range(max_cycles):
            launched = 0
            for pool in self.pools:
                launched += await pool.run_cycle()
                await pool.wait_idle()
            started += launched
            if not launched:
                break
        return started


def _build_pools(settings: Settings, queue: WorkQueue, leases: LeaseManager,
                 dispatcher: ActionDispatcher) -> list[WorkerPool]:
    pools = []
    dedicated = [t for t, o in settings.tenants.items() if o.dedicated_pool]
    for tenant in dedicated:
        cfg = settings.queue_for(tenant)
        pools.append(WorkerPool(
            queue, dispatcher,
            leases=LeaseManager(queue, cfg.lease_duration_s, owner_id=f"{leases.owner_id}:{tenant}"),
            max_concurrent_keys=cfg.max_concurrent_keys,
            poll_interval_ms=cfg.poll_interval_ms,
            jitter_ms=(cfg.jitter_min_ms, cfg.jitter_max_ms),
            tenant=tenant,
            name=tenant,
        ))
    cfg = settings.queue
    pools.append(WorkerPool(
        queue, dispatcher,
        leases=leases,
        max_concurrent_keys=cfg.max_concurrent_keys,
        poll_interval_ms=cfg.poll_interval_ms,
        jitter_ms=(cfg.jitter_min_ms, cfg.jitter_max_ms),
        excluded_tenants=dedicated,
        name="default",
    ))
    return pools


def build_container(
    settings: Optional[Settings] = None,
    *,
    conversations: Optional[ConversationStore] = None,
    directory: Optional[OperatorDirectory] = None,
    customers: Optional[CustomerDirectory] = None,
    surveys: Optional[SurveyResultSink] = None,
    channels: Optional[ChannelRegistry] = None,
    notifier: Optional[Notifier] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Callable[[], datetime] = utcnow,
    background: bool = True,
) -> ServiceContainer:
    settings = settings or get_settings()

    if conversations is None:
        conversations = InMemoryConversationStore()
    if directory is None:
        directory = InMemoryOperatorDirectory(
            conversations if isinstance(conversations, InMemoryConversationStore) else None
        )
    customers = customers or InMemoryCustomerDirectory()
    surveys = surveys or InMemorySurveyResultSink()

    engine = None
    needs_db = settings.queue.backend == "sql" or settings.routing.flow_source == "database"
    if needs_db and session_factory is None:
        engine = create_engine_for(settings.database.url, echo=settings.database.echo)
        session_factory = create_session_factory(engine)

    queue = create_work_queue(settings.queue.backend, session_factory=session_factory, clock=clock)
    leases = LeaseManager(
        queue, settings.queue.lease_duration_s, owner_id=settings.queue.worker_id or None, clock=clock,
    )
    maintenance = QueueMaintenance(
        queue,
        interval_seconds=settings.queue.maintenance_interval_s,
        retention_days=settings.queue.retention_days,
        stuck_after_seconds=settings.queue.stuck_after_s,
    )

    if settings.routing.flow_source == "database":
        source = SqlRoutingConfigSource(session_factory)
    else:
        source = StaticRoutingConfigSource(settings.routing.flows)
    pipelines = PipelineCache(
        RoutingDependencies(conversations, directory),
        source=source,
        max_iterations=settings.routing.max_iterations,
    )

    bots = BotSessionEngine(
        default_registry(),
        WriteBehindSessionCache(
            create_session_store(settings.bots.session_file),
            debounce_ms=settings.bots.flush_debounce_ms,
        ),
        BotDependencies(conversations, directory, customers, surveys, config_for=settings.bots_for),
        clock=clock,
        watchdog_interval_s=settings.bots.watchdog_interval_s,
    )

    channels = channels if channels is not None else build_channel_registry(settings.channels)
    notifier = notifier or create_notifier(settings.notifications)

    coordinator = DistributionCoordinator(queue, conversations, directory, pipelines, bots, settings)
    dispatcher = ActionDispatcher(conversations, channels, ConversationNotifier(notifier), coordinator)
    pools = _build_pools(settings, queue, leases, dispatcher)

    logger.info("service_container_built", queue_backend=settings.queue.backend,
                flow_source=settings.routing.flow_source, pools=len(pools))
    return ServiceContainer(
        settings=settings,
        queue=queue,
        leases=leases,
        pools=pools,
        maintenance=maintenance,
        pipelines=pipelines,
        bots=bots,
        coordinator=coordinator,
        dispatcher=dispatcher,
        channels=channels,
        notifier=notifier,
        conversations=conversations,
        directory=directory,
        engine=engine,
        background=background,
    )
