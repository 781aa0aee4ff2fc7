"""Pytest configuration and fixtures for the console access backend tests."""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.base import Base
from app.core.database.engine import import_models
from app.features.permissions.models import (
    GroupPermission,
    PermissionAction,
    PermissionComponent,
    PermissionGroup,
    PermissionModule,
    PermissionPage,
    PermissionType,
    UserGroup,
)
from app.features.users.models import User, UserRole


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine shared by every session of one test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    import_models()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


async def _add(db, obj):
    db.add(obj)
    await db.commit()
    await db.refresh(obj)
    return obj


# ============================================================================
# Users
# ============================================================================

@pytest_asyncio.fixture
async def owner(db):
    return await _add(db, User(email="owner@example.com", name="Owner", role=UserRole.OWNER))


@pytest_asyncio.fixture
async def admin(db):
    return await _add(db, User(email="admin@example.com", name="Admin", role=UserRole.ADMIN))


@pytest_asyncio.fixture
async def alice(db):
    return await _add(db, User(email="alice@example.com", name="Alice", role=UserRole.USER))


@pytest_asyncio.fixture
async def bob(db):
    return await _add(db, User(email="bob@example.com", name="Bob", role=UserRole.USER))


# ============================================================================
# Registry
# ============================================================================

@pytest_asyncio.fixture
async def registry(db):
    """
    support (OWNER, ADMIN)
        chat: delete_message, send_message
        tickets: close_ticket
    finance (OWNER, ADMIN)
        invoices
    portfolio (OWNER)
    admin (OWNER, ADMIN)
    """
    db.add_all([
        PermissionModule(module_key="support", name="Support", allowed_roles=["OWNER", "ADMIN"]),
        PermissionModule(module_key="finance", name="Finance", allowed_roles=["OWNER", "ADMIN"]),
        PermissionModule(module_key="portfolio", name="Portfolio", allowed_roles=["OWNER"]),
        PermissionModule(module_key="admin", name="Administration", allowed_roles=["OWNER", "ADMIN"]),
        PermissionPage(module_key="support", page_key="chat", name="Chat", route_path="/support/chat"),
        PermissionPage(module_key="support", page_key="tickets", name="Tickets", route_path="/support/tickets"),
        PermissionPage(module_key="finance", page_key="invoices", name="Invoices", route_path="/finance/invoices"),
        PermissionComponent(
            page_key="support.chat", component_key="delete_message", name="Delete message", component_type="BUTTON",
        ),
        PermissionComponent(
            page_key="support.chat", component_key="send_message", name="Send message", component_type="BUTTON",
        ),
        PermissionComponent(
            page_key="support.tickets", component_key="close_ticket", name="Close ticket", component_type="BUTTON",
        ),
    ])
    await db.commit()


# ============================================================================
# Group helpers
# ============================================================================

@pytest.fixture
def make_group(db):
    """Create a group directly, bypassing service validation."""
    async def _make(name, *members, active=True):
        group = await _add(db, PermissionGroup(name=name, active=active))
        for user in members:
            db.add(UserGroup(user_id=user.id, group_id=group.id))
        await db.commit()
        return group
    return _make


@pytest.fixture
def add_entry(db):
    """Add a raw entry: ``await add_entry(group, "COMPONENT", "support", "chat.delete_message", "DELETE", granted=False)``."""
    async def _add_entry(group, permission_type, resource_type, resource_identifier, action, granted=True):
        return await _add(db, GroupPermission(
            group_id=group.id,
            permission_type=PermissionType(permission_type),
            resource_type=resource_type,
            resource_identifier=resource_identifier,
            action=PermissionAction(action),
            granted=granted,
        ))
    return _add_entry


@pytest.fixture
def mock_cache():
    """Mock permission cache that always misses."""
    cache = AsyncMock()
    cache.get_user_permissions.return_value = None
    cache.get_generation.return_value = "0:0"
    return cache
