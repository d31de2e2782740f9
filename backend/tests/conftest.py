# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("TRANSITION_BACKOFF_BASE_MS", "1")

from models import (
    Base, Organization, Project, ProjectMember, ProjectRole, ProjectVisibility,
    Task, Team, TeamMember, TeamRole, User, UserRole, UserStatus, task_assignees,
)
from auth import AuthService
from database import get_db_session
from main import app
from workflow import DEFAULT_COLUMNS

PASSWORD = "TestPassword123!"
# Hashing at bcrypt's default cost for every fixture user is slow
_PASSWORD_HASH = AuthService.hash_password(PASSWORD)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# USERS & ORGANISATIONS
# ============================================================

async def make_user(db, email: str, role: UserRole = UserRole.MEMBER, organization_id=None,
                    status: UserStatus = UserStatus.ACTIVE, display_name: str = "") -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name or email.split("@")[0],
        password_hash=_PASSWORD_HASH,
        role=role,
        status=status,
        organization_id=organization_id,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_org(db_session):
    """Organisation owned by the org_admin fixture user"""
    owner_id = str(uuid.uuid4())
    org = Organization(
        id=str(uuid.uuid4()),
        name="Test Organization",
        slug="test-org",
        owner_id=owner_id,
        settings={},
        is_active=True,
    )
    db_session.add(org)
    await db_session.commit()
    owner = User(
        id=owner_id,
        email="admin@taskflow.dev",
        display_name="Org Admin",
        password_hash=_PASSWORD_HASH,
        role=UserRole.ORG_ADMIN,
        status=UserStatus.ACTIVE,
        organization_id=org.id,
    )
    db_session.add(owner)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def other_org(db_session):
    org = Organization(
        id=str(uuid.uuid4()), name="Other Organization", slug="other-org",
        owner_id=str(uuid.uuid4()), settings={}, is_active=True,
    )
    db_session.add(org)
    await db_session.commit()
    return org


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    result = await db_session.get(User, test_org.owner_id)
    return result


@pytest_asyncio.fixture
async def super_admin(db_session):
    return await make_user(db_session, "superadmin@taskflow.dev", UserRole.SUPER_ADMIN)


@pytest_asyncio.fixture
async def team_lead(db_session, test_org):
    return await make_user(db_session, "lead@taskflow.dev", UserRole.TEAM_LEAD, test_org.id)


@pytest_asyncio.fixture
async def member(db_session, test_org):
    return await make_user(db_session, "member@taskflow.dev", UserRole.MEMBER, test_org.id)


@pytest_asyncio.fixture
async def other_member(db_session, test_org):
    return await make_user(db_session, "colleague@taskflow.dev", UserRole.MEMBER, test_org.id)


@pytest_asyncio.fixture
async def viewer(db_session, test_org):
    return await make_user(db_session, "viewer@taskflow.dev", UserRole.VIEWER, test_org.id)


@pytest_asyncio.fixture
async def inactive_member(db_session, test_org):
    return await make_user(db_session, "former@taskflow.dev", UserRole.MEMBER, test_org.id,
                           status=UserStatus.INACTIVE)


@pytest_asyncio.fixture
async def outsider(db_session, other_org):
    return await make_user(db_session, "outsider@elsewhere.dev", UserRole.ORG_ADMIN, other_org.id)


@pytest_asyncio.fixture
async def solo_user(db_session):
    """Individual user with no organisation"""
    return await make_user(db_session, "solo@taskflow.dev", UserRole.MEMBER)


# ============================================================
# TEAMS, PROJECTS, TASKS
# ============================================================

@pytest_asyncio.fixture
async def test_team(db_session, test_org, team_lead, member, admin_user):
    team = Team(
        id=str(uuid.uuid4()), organization_id=test_org.id, name="Platform",
        lead_id=team_lead.id, created_by=admin_user.id,
    )
    db_session.add(team)
    await db_session.flush()
    db_session.add_all([
        TeamMember(team_id=team.id, user_id=team_lead.id, role=TeamRole.LEAD),
        TeamMember(team_id=team.id, user_id=member.id, role=TeamRole.MEMBER),
    ])
    await db_session.commit()
    return team


async def make_project(db, creator: User, organization_id=None, team_id=None,
                       visibility: ProjectVisibility = ProjectVisibility.PRIVATE,
                       members: dict = None, columns: list = None) -> Project:
    project = Project(
        id=str(uuid.uuid4()),
        name="Board",
        organization_id=organization_id,
        team_id=team_id,
        visibility=visibility,
        created_by=creator.id,
        columns=columns if columns is not None else [dict(c) for c in DEFAULT_COLUMNS],
        version=1,
    )
    db.add(project)
    await db.flush()
    db.add(ProjectMember(project_id=project.id, user_id=creator.id, role=ProjectRole.ADMIN))
    for user_id, role in (members or {}).items():
        db.add(ProjectMember(project_id=project.id, user_id=user_id, role=role))
    await db.commit()
    await db.refresh(project, ["members"])
    return project


async def make_task(db, creator: User, project: Project = None, status: str = "todo",
                    assignees: list = ()) -> Task:
    task = Task(
        id=str(uuid.uuid4()),
        title="Write tests",
        status=status,
        project_id=project.id if project else None,
        created_by=creator.id,
        tags=[],
        version=1,
    )
    db.add(task)
    await db.flush()
    if assignees:
        await db.execute(
            insert(task_assignees), [{"task_id": task.id, "user_id": u.id} for u in assignees]
        )
    await db.commit()
    return task


@pytest_asyncio.fixture
async def org_project(db_session, test_org, admin_user, member, viewer):
    """Organisation project: member is a project member, viewer a project viewer"""
    return await make_project(
        db_session, admin_user, organization_id=test_org.id,
        members={member.id: ProjectRole.MEMBER, viewer.id: ProjectRole.VIEWER},
    )


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {AuthService.token_for(user)}"}
