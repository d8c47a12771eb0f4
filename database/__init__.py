"""
Database layer — Multi-backend persistence for deployments, delegated
access grants and conversation handoff state.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  deployment = await store.get_deployment("d1")
"""
from database.models import (
    Base, DeploymentRow, DeploymentAccessRow, ConversationHandoffRow,
)
from database.session import (
    get_engine, get_session, session_scope, init_db, close_db,
    create_engine_for_url, create_session_factory,
)
from database.store_base import BaseDeploymentStore
from database.store import SqlDeploymentStore
from database.store_memory import InMemoryDeploymentStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "DeploymentRow", "DeploymentAccessRow", "ConversationHandoffRow",
    # Session management
    "get_engine", "get_session", "session_scope", "init_db", "close_db",
    "create_engine_for_url", "create_session_factory",
    # Store interface
    "BaseDeploymentStore",
    # Store backends
    "SqlDeploymentStore", "InMemoryDeploymentStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
