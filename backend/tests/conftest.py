# tests/conftest.py - Shared test fixtures
import os
import uuid
import tempfile
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.setdefault("ATTACHMENT_STORAGE_ROOT", tempfile.mkdtemp(prefix="letterdesk-attachments-"))

from models import Base, Branch, Task, TaskLog, TaskPriority, TaskStatus, User, UserRole, utcnow
from auth import AuthService
from database import get_db_session
from main import app
from permissions import PermissionResolver, Requester
from rpc import ProcedureRegistry
from store import RecordStore


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def store(session_factory):
    """Record store on its own session and procedure registry (procedure availability not yet known)"""
    async with session_factory() as session:
        yield RecordStore(session, procedures=ProcedureRegistry())


async def reload_task(session_factory, task_id):
    """Read a task through a fresh session"""
    async with session_factory() as session:
        return await session.get(Task, task_id)


async def task_logs(session_factory, task_id):
    async with session_factory() as session:
        result = await session.execute(
            select(TaskLog).where(TaskLog.task_id == task_id).order_by(TaskLog.created_at)
        )
        return list(result.scalars().all())


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.state.permission_cache.invalidate()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_branch(db_session):
    branch = Branch(id=str(uuid.uuid4()), name="Head Office", code=f"HQ-{uuid.uuid4().hex[:6]}")
    db_session.add(branch)
    await db_session.commit()
    return branch


async def create_user(db_session, email, full_name, role=UserRole.USER, permissions=None,
                      branch=None, is_active=True, password="TestPassword123!"):
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        full_name=full_name,
        password_hash=AuthService.hash_password(password),
        role=role,
        branch_id=branch.id if branch else None,
        permissions=list(permissions or []),
        is_active=is_active,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session, test_branch):
    """Regular user with the role defaults only"""
    return await create_user(db_session, "testuser@letterdesk.dev", "Test User", branch=test_branch)


@pytest_asyncio.fixture
async def assignee_user(db_session, test_branch):
    """Regular user who may change the status of tasks assigned to them"""
    return await create_user(
        db_session, "assignee@letterdesk.dev", "Sara Assignee",
        permissions=["complete:tasks:own"], branch=test_branch,
    )


@pytest_asyncio.fixture
async def dispatcher_user(db_session, test_branch):
    """Regular user who may hand tasks to other users"""
    return await create_user(
        db_session, "dispatcher@letterdesk.dev", "Dina Dispatcher",
        permissions=["assign:tasks"], branch=test_branch,
    )


@pytest_asyncio.fixture
async def outsider_user(db_session, test_branch):
    return await create_user(db_session, "outsider@letterdesk.dev", "Omar Outsider", branch=test_branch)


@pytest_asyncio.fixture
async def admin_user(db_session, test_branch):
    return await create_user(
        db_session, "admin@letterdesk.dev", "Admin User",
        role=UserRole.ADMIN, branch=test_branch, password="AdminPassword123!",
    )


async def create_task(db_session, creator, assignee=None, status=TaskStatus.NEW, title="Prepare quarterly letter",
                      priority=TaskPriority.MEDIUM, due_in=None, description=None, branch_id=None):
    task = Task(
        id=str(uuid.uuid4()),
        title=title,
        description=description,
        status=status,
        priority=priority,
        created_by=creator.id,
        assigned_to=assignee.id if assignee else None,
        branch_id=branch_id or creator.branch_id,
        due_date=utcnow() + due_in if due_in is not None else None,
        is_active=True,
    )
    db_session.add(task)
    await db_session.commit()
    return task


async def requester_for(user, store, role_defaults=None) -> Requester:
    """Resolve a user the way the API does and wrap it as a Requester"""
    grants = await PermissionResolver(store, role_defaults=role_defaults).resolve(user)
    return Requester(id=user.id, grants=grants, branch_id=user.branch_id, display_name=user.full_name)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}


def days(n: float) -> timedelta:
    return timedelta(days=n)
