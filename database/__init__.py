"""
Database layer — work item persistence and collaborator stores.

  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async) for work items
    and persisted routing flows
  - In-memory collaborator stores (contacts, conversations, operators)
  - JSON / in-memory snapshot stores for bot sessions

Quick start:
  from database import create_engine_for, create_session_factory, init_db
  engine = create_engine_for("sqlite:///./support_router.db")
  await init_db(engine)
"""
from database.models import Base, WorkItemRow, RoutingFlowRow, RoutingStepRow
from database.session import (
    create_engine_for, create_session_factory, get_engine, get_session,
    get_session_factory, session_scope, init_db, close_db,
)
from database.store_base import (
    ConversationStore, OperatorDirectory, CustomerDirectory,
    SurveyResultSink, SessionSnapshotStore,
)
from database.store_memory import (
    InMemoryConversationStore, InMemoryOperatorDirectory,
    InMemoryCustomerDirectory, InMemorySurveyResultSink,
)
from database.store_file import JsonSessionSnapshotStore, InMemorySessionSnapshotStore
from database.store_factory import create_session_store

__all__ = [
    # ORM models
    "Base", "WorkItemRow", "RoutingFlowRow", "RoutingStepRow",
    # Session management
    "create_engine_for", "create_session_factory", "get_engine", "get_session",
    "get_session_factory", "session_scope", "init_db", "close_db",
    # Collaborator interfaces
    "ConversationStore", "OperatorDirectory", "CustomerDirectory",
    "SurveyResultSink", "SessionSnapshotStore",
    # In-memory backends
    "InMemoryConversationStore", "InMemoryOperatorDirectory",
    "InMemoryCustomerDirectory", "InMemorySurveyResultSink",
    # Snapshot stores
    "JsonSessionSnapshotStore", "InMemorySessionSnapshotStore",
    "create_session_store",
]
