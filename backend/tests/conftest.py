# tests/conftest.py - Shared test fixtures
import os
import uuid
from datetime import timedelta

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SMTP_HOST", None)

from models import Base, User, WorkspaceInvitation, WorkspaceMember, WorkspaceRole, utcnow
from auth import AuthService
from database import get_db_session
from email_service import EmailService, get_email_service
from errors import EmailDeliveryError
from invitations import InvitationService
from memberships import MembershipService
from main import app


class FakeEmailService(EmailService):
    """Records outgoing mail instead of talking to SMTP"""

    def __init__(self):
        super().__init__(host="smtp.test", port=2525)
        self.sent = []
        self.fail_for = set()

    async def send(self, to, subject, html_body, text_body=None):
        if to in self.fail_for:
            raise EmailDeliveryError(f"mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})


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
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def outbox():
    return FakeEmailService()


@pytest_asyncio.fixture
async def invitation_service(outbox):
    return InvitationService(outbox)


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, outbox):
    """HTTP test client with overridden DB and email dependencies"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: outbox
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def make_user(db, username: str, email: str = None) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email or f"{username}@kanbanly.dev",
        username=username,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def owner(db_session):
    return await make_user(db_session, "alice")


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await make_user(db_session, "bob")


@pytest_asyncio.fixture
async def member_user(db_session):
    return await make_user(db_session, "carol")


@pytest_asyncio.fixture
async def outsider(db_session):
    return await make_user(db_session, "dave")


@pytest_asyncio.fixture
async def workspace(db_session, owner, admin_user, member_user):
    """Workspace owned by alice, with bob as ADMIN and carol as MEMBER"""
    ws = await MembershipService.create_workspace(db_session, owner, "Acme Team", "Shared space")
    db_session.add_all([
        WorkspaceMember(workspace_id=ws.id, user_id=admin_user.id, role=WorkspaceRole.ADMIN),
        WorkspaceMember(workspace_id=ws.id, user_id=member_user.id, role=WorkspaceRole.MEMBER),
    ])
    await db_session.commit()
    return ws


async def expire_invitation(db, invitation_id: str) -> None:
    """Push an invitation's expiry into the past without touching its status"""
    invitation = await db.get(WorkspaceInvitation, invitation_id)
    invitation.expires_at = utcnow() - timedelta(hours=1)
    await db.commit()


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}
