"""Shared test fixtures for SupportRouter."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from bots import BotDependencies, BotSessionEngine, WriteBehindSessionCache, default_registry
from channels.base import ChannelRegistry
from channels.loopback_adapter import LoopbackAdapter
from config.settings import BotConfig, QueueConfig, Settings
from core.container import build_container
from database.store_file import InMemorySessionSnapshotStore
from database.store_memory import (
    InMemoryConversationStore, InMemoryCustomerDirectory,
    InMemoryOperatorDirectory, InMemorySurveyResultSink,
)
from job_queue.work_queue import InMemoryWorkQueue
from models.schemas import OperatorRef, Sector
from notifications.notifier import InMemoryNotifier


class FakeClock:
    """Controllable clock: ``clock()`` returns the current fake time."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryWorkQueue(clock=clock)


# ──────────────────────────────────────────────────────────────
#  Collaborator stores
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def conversations():
    return InMemoryConversationStore()


@pytest.fixture
def directory(conversations):
    return InMemoryOperatorDirectory(conversations)


@pytest.fixture
def customers():
    return InMemoryCustomerDirectory()


@pytest.fixture
def surveys():
    return InMemorySurveyResultSink()


@pytest.fixture
def sales_sector(directory):
    """Tenant ``acme``, sector 1 "Vendas" with operators 10 (3 open) and 11 (1 open), both online."""
    sector = directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
    directory.add_operator(OperatorRef(id=10, tenant="acme", name="Ana", sector_id=1), online=True)
    directory.add_operator(OperatorRef(id=11, tenant="acme", name="Bia", sector_id=1), online=True)
    directory.set_open_conversations("acme", 10, 3)
    directory.set_open_conversations("acme", 11, 1)
    return sector


# ──────────────────────────────────────────────────────────────
#  Bots
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def bot_config():
    return BotConfig(flush_debounce_ms=0, satisfaction_timeout_ms=60_000)


@pytest.fixture
def bot_deps(conversations, directory, customers, surveys, bot_config):
    return BotDependencies(conversations, directory, customers, surveys, config_for=lambda tenant: bot_config)


@pytest_asyncio.fixture
async def bot_engine(bot_deps, clock):
    cache = WriteBehindSessionCache(InMemorySessionSnapshotStore(), debounce_ms=0)
    engine = BotSessionEngine(default_registry(), cache, bot_deps, clock=clock)
    yield engine
    await cache.close()


class RecordingActions:
    """BotActions double that records every side effect."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.closed: set[str] = set()

    def texts(self, conversation_id: str = None) -> list[str]:
        return [c[2] for c in self.calls
                if c[0] == "send_text" and (conversation_id is None or c[1] == conversation_id)]

    def named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def send_text(self, conversation_id, text, priority=0):
        self.calls.append(("send_text", conversation_id, text, priority))

    async def add_system_message(self, conversation_id, text):
        self.calls.append(("add_system_message", conversation_id, text))

    async def finish_conversation(self, conversation_id, reason):
        self.calls.append(("finish_conversation", conversation_id, reason))
        self.closed.add(conversation_id)

    async def hand_off_to_human(self, conversation_id, reason):
        self.calls.append(("hand_off_to_human", conversation_id, reason))

    async def transfer_to_sector(self, conversation_id, sector_id):
        self.calls.append(("transfer_to_sector", conversation_id, sector_id))

    async def transfer_to_operator(self, conversation_id, operator_id):
        self.calls.append(("transfer_to_operator", conversation_id, operator_id))

    async def conversation_is_open(self, conversation_id):
        return conversation_id not in self.closed


@pytest.fixture
def actions():
    return RecordingActions()


# ──────────────────────────────────────────────────────────────
#  Full service graph
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    return Settings(
        queue=QueueConfig(jitter_min_ms=0, jitter_max_ms=0, max_retries=2),
        bots=BotConfig(flush_debounce_ms=0),
    )


@pytest.fixture
def loopback():
    return LoopbackAdapter("main")


@pytest_asyncio.fixture
async def container(settings, conversations, directory, customers, surveys, loopback, clock):
    channels = ChannelRegistry()
    channels.register(loopback)
    services = build_container(
        settings,
        conversations=conversations,
        directory=directory,
        customers=customers,
        surveys=surveys,
        channels=channels,
        notifier=InMemoryNotifier(),
        clock=clock,
        background=False,
    )
    await services.start()
    yield services
    await services.stop()
