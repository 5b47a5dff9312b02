"""Shared pytest fixtures for the Atelier test suite.

Provides:
- db_engine: in-memory SQLite async engine with all tables
- db_session: SAVEPOINT-isolated async session (app commits don't leak)
- fake_redis / cache: in-memory stand-in for the Redis client
- factory: builds workspaces, members, clients, tasks and requirements
- client: AsyncClient with app.state wired to test collaborators
- login: logs the AsyncClient in as a principal
"""

import fnmatch
from contextlib import asynccontextmanager
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from uuid_extensions import uuid7

from src.auth.passwords import hash_password
from src.auth.principals import PrincipalHandle
from src.auth.session_guard import build_identity
from src.auth.tokens import generate_key_pair
from src.cache.redis_cache import RedisCache
from src.config.settings import Environment, Settings
from src.db.session import Base, get_async_session
from src.db.tables import ClientRow, MemberRow, RequirementRow, TaskRow, WorkspaceRow
from src.models.common import ClientStatus, PrincipalKind, RequirementStatus, TaskStatus
from src.models.identity import Identity
from src.rbac.catalog import bootstrap_workspace_roles, seed_permissions
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import ClientRepository, MemberRepository, WorkspaceRepository
from src.repositories.requirements import RequirementRepository
from src.repositories.roles import PermissionRepository, RoleRepository
from src.repositories.tasks import TaskRepository
from src.storage.attachments import LocalAttachmentStore
import src.db.tables  # noqa: F401 — register ORM models on Base.metadata

PASSWORD = "correct-horse-battery"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite async engine with all tables."""
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Provide a SAVEPOINT-isolated session.

    The outer transaction is never committed — it rolls back at teardown.
    Application code calling session.commit() triggers a SAVEPOINT release,
    which is then restarted so subsequent operations stay in the same
    outer transaction.
    """
    async with db_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        nested = await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(sync_session, transaction):  # noqa: ARG001
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = conn.sync_connection.begin_nested()

        yield session

        await session.close()
        await trans.rollback()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class FakeRedis:
    """The slice of ``redis.asyncio.Redis`` the cache uses, held in a dict."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


class UnreachableRedis:
    """Every call fails the way a dropped connection does."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def get(self, key: str) -> str | None:
        self._fail()

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._fail()

    async def delete(self, *keys: str) -> int:
        self._fail()

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        self._fail()
        yield ""

    async def ping(self) -> bool:
        self._fail()

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis) -> RedisCache:
    return RedisCache(fake_redis)


@pytest.fixture
def unreachable_redis() -> UnreachableRedis:
    return UnreachableRedis()


@pytest.fixture
def password() -> str:
    return PASSWORD


# ---------------------------------------------------------------------------
# Application collaborators
# ---------------------------------------------------------------------------


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    async def send_invite(self, *, to: str, workspace_name: str, link: str) -> bool:
        self.sent.append({"kind": "invite", "to": to, "workspace": workspace_name, "link": link})
        return not self.fail

    async def send_client_invite(self, *, to: str, workspace_name: str,
                                 client_name: str, link: str) -> bool:
        self.sent.append({
            "kind": "client_invite", "to": to, "workspace": workspace_name,
            "client": client_name, "link": link,
        })
        return not self.fail


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT=Environment.DEV,
        REDIS_URL="",
        ALLOW_REGISTRATION=True,
        ATTACHMENT_STORAGE_PATH=str(tmp_path / "uploads"),
        ATTACHMENT_URL_SECRET="test-secret",
        PUBLIC_BASE_URL="http://testserver",
        FRONTEND_URL="http://frontend.test",
    )


@pytest.fixture
def attachment_store(settings: Settings) -> LocalAttachmentStore:
    return LocalAttachmentStore(
        settings.ATTACHMENT_STORAGE_PATH,
        secret=settings.ATTACHMENT_URL_SECRET,
        base_url=settings.PUBLIC_BASE_URL,
        max_bytes=1024,
    )


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _email(prefix: str) -> str:
    return f"{prefix}-{uuid7().hex}@example.com"


class Factory:
    """Persists principals and work items straight through the repositories."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._catalog_seeded = False

    async def workspace(self, name: str = "Studio", email: str | None = None) -> WorkspaceRow:
        if not self._catalog_seeded:
            await seed_permissions(self.session)
            self._catalog_seeded = True
        keys = generate_key_pair()
        row = await WorkspaceRepository(self.session).create(
            workspace_id=uuid7(), name=name, owner_name=f"{name} Owner",
            email=email or _email("owner"), password_hash=hash_password(PASSWORD),
            private_key=keys.private_key, public_key=keys.public_key,
        )
        await bootstrap_workspace_roles(self.session, row.workspace_id)
        return row

    async def role(self, workspace: WorkspaceRow, name: str,
                   permissions: list[str]) -> UUID:
        roles = RoleRepository(self.session)
        ids = await PermissionRepository(self.session).ids_for_keys(permissions)
        row = await roles.create(
            role_id=uuid7(), workspace_id=workspace.workspace_id, name=name, permission_ids=ids,
        )
        return row.role_id

    async def role_id(self, workspace: WorkspaceRow, name: str) -> UUID:
        row = await RoleRepository(self.session).get_by_name(workspace.workspace_id, name)
        assert row is not None, name
        return row.role_id

    async def member(self, workspace: WorkspaceRow, *, role: str | None = None,
                     permissions: list[str] | None = None, name: str = "Mia Member",
                     email: str | None = None) -> MemberRow:
        """Member with a named existing role, an ad-hoc role, or no role."""
        role_id = None
        if permissions is not None:
            role_id = await self.role(workspace, f"role-{uuid7().hex}", permissions)
        elif role is not None:
            role_id = await self.role_id(workspace, role)
        keys = generate_key_pair()
        return await MemberRepository(self.session).create(
            member_id=uuid7(), workspace_id=workspace.workspace_id, name=name,
            email=email or _email("member"), password_hash=hash_password(PASSWORD),
            role_id=role_id, private_key=keys.private_key, public_key=keys.public_key,
        )

    async def client(self, workspace: WorkspaceRow, *, name: str = "Acme",
                     status: str = ClientStatus.ACTIVE, email: str | None = None,
                     portal: bool = True) -> ClientRow:
        """Client; ``portal`` gives it a password, keys and an email."""
        row = await ClientRepository(self.session).create(
            client_id=uuid7(), workspace_id=workspace.workspace_id, name=name,
            contact_name=f"{name} Contact",
            email=email or (_email("client") if portal else None), status=status,
        )
        if portal:
            keys = generate_key_pair()
            row.password_hash = hash_password(PASSWORD)
            row.private_key = keys.private_key
            row.public_key = keys.public_key
            await self.session.flush()
        return row

    async def task(self, workspace: WorkspaceRow, client: ClientRow, *,
                   created_by: UUID | None = None, assignees: list[UUID] | None = None,
                   status: str = TaskStatus.TODO, title: str = "Launch banner") -> TaskRow:
        return await TaskRepository(self.session).create(
            task_id=uuid7(), workspace_id=workspace.workspace_id, client_id=client.client_id,
            title=title, description="", created_by=created_by or workspace.workspace_id,
            assignees=assignees, status=status,
        )

    async def requirement(self, workspace: WorkspaceRow, client: ClientRow, *,
                          status: str = RequirementStatus.OPEN,
                          title: str = "New landing page",
                          task_ids: list[UUID] | None = None) -> RequirementRow:
        repo = RequirementRepository(self.session)
        row = await repo.create(
            requirement_id=uuid7(), workspace_id=workspace.workspace_id,
            client_id=client.client_id, title=title, description="", priority="MEDIUM",
            created_by=client.client_id, status=status,
        )
        for task_id in task_ids or []:
            await repo.link_task(row.requirement_id, task_id)
        return row

    async def identity(self, row: WorkspaceRow | MemberRow | ClientRow) -> Identity:
        """Identity exactly as the session guard would establish it."""
        if isinstance(row, WorkspaceRow):
            kind = PrincipalKind.OWNER
        elif isinstance(row, MemberRow):
            kind = PrincipalKind.MEMBER
        else:
            kind = PrincipalKind.CLIENT
        resolver = PermissionResolver(self.session, RedisCache(None))
        return await build_identity(PrincipalHandle(kind=kind, row=row), resolver)


@pytest.fixture
def factory(db_session: AsyncSession) -> Factory:
    return Factory(db_session)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
async def client(db_session, settings, cache, attachment_store, email_sender):
    """AsyncClient with get_async_session overridden to use the test session.

    ASGITransport does not run the lifespan, so app.state is filled here.
    """
    from src.api.main import app

    async def _override_session():
        yield db_session

    @asynccontextmanager
    async def _session_factory():
        yield db_session

    app.state.settings = settings
    app.state.session_factory = _session_factory
    app.state.cache = cache
    app.state.attachment_store = attachment_store
    app.state.email_sender = email_sender
    app.dependency_overrides[get_async_session] = _override_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def login(client: AsyncClient):
    """Log the shared AsyncClient in; cookies replace any previous session."""

    async def _login(email: str, password: str = PASSWORD, remember_me: bool = False) -> dict:
        client.cookies.clear()
        response = await client.post(
            "/v1/auth/login",
            json={"email": email, "password": password, "remember_me": remember_me},
        )
        assert response.status_code == 200, response.text
        return response.json()["user"]

    return _login

