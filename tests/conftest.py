# Copyright (C) 2024 ABI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Tests run against a throwaway SQLite database created here."""

import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import date, timedelta

_tmpdir = tempfile.mkdtemp(prefix="abi-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmpdir}/test.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["CREDENTIAL_FLOOR_MS"] = "0"
os.environ["APPROVAL_SWEEP_INTERVAL_SECONDS"] = "0"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from abi_server.auth import CSRF_COOKIE, CSRF_HEADER, SESSION_COOKIE, generate_csrf_token, hash_password  # noqa: E402
from abi_server.database import async_session_maker, engine  # noqa: E402
from abi_server.main import app  # noqa: E402
from abi_server.models import (  # noqa: E402
    Base,
    Company,
    CreditAccount,
    Invite,
    Profile,
    Session,
    Team,
    TeamMembership,
    User,
)
from abi_server.models.timestamp import utcnow  # noqa: E402
from abi_server.rate_limit import reset_rate_limits  # noqa: E402
from abi_server.services.invites import generate_code  # noqa: E402

PASSWORD = "Tr0ub4dor&3"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
async def schema(anyio_backend):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(schema):
    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def client(schema):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@dataclass
class Org:
    company: Company
    team: Team
    account: CreditAccount


class Factory:
    """Builds committed rows so that other sessions (HTTP, sweep) see them."""

    def __init__(self, db):
        self.db = db

    async def user(
        self,
        email: str | None = None,
        password: str | None = PASSWORD,
        verified: bool = True,
        reputation: int = 0,
        invite_slots: int = 0,
    ) -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:10]}@example.com",
            password_hash=hash_password(password) if password else None,
            email_verified_at=utcnow() if verified else None,
        )
        self.db.add(user)
        await self.db.flush()
        self.db.add(Profile(user_id=user.id, reputation=reputation, invite_slots=invite_slots))
        await self.db.commit()
        return user

    async def org(self, credits: int = 1000, bonus: int = 0) -> Org:
        company = Company(name=f"Company {uuid.uuid4().hex[:6]}")
        self.db.add(company)
        await self.db.flush()
        team = Team(company_id=company.id, name="General")
        account = CreditAccount(
            company_id=company.id,
            subscription_tier="standard",
            subscription_start=date.today(),
            subscription_end=date.today() + timedelta(days=365),
            total_credits=credits,
            bonus_credits=bonus,
        )
        self.db.add_all([team, account])
        await self.db.commit()
        return Org(company=company, team=team, account=account)

    async def member(self, org: Org, role: str = "member", user: User | None = None, team: Team | None = None) -> User:
        user = user or await self.user()
        self.db.add(TeamMembership(team_id=(team or org.team).id, user_id=user.id, role=role))
        await self.db.commit()
        return user

    async def invite(
        self,
        type: str = "link",
        email: str | None = None,
        max_uses: int = 5,
        use_count: int = 0,
        expires_in: timedelta | None = timedelta(days=7),
        code: str | None = None,
    ) -> Invite:
        invite = Invite(
            code=code or generate_code(),
            type=type,
            email=email,
            max_uses=max_uses,
            use_count=use_count,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
        )
        self.db.add(invite)
        await self.db.commit()
        return invite

    async def session_token(self, user: User, expires_in: timedelta = timedelta(days=1)) -> str:
        token = uuid.uuid4().hex + uuid.uuid4().hex
        self.db.add(Session(user_id=user.id, token=token, expires_at=utcnow() + expires_in))
        await self.db.commit()
        return token


@pytest.fixture
async def make(db):
    return Factory(db)


@pytest.fixture
async def login_as(make, schema):
    """Open an HTTP client carrying a fresh session and a matching CSRF cookie/header."""
    clients = []

    async def _login_as(user: User) -> AsyncClient:
        token = await make.session_token(user)
        csrf = generate_csrf_token()
        ac = AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            cookies={SESSION_COOKIE: token, CSRF_COOKIE: csrf},
            headers={CSRF_HEADER: csrf},
        )
        clients.append(ac)
        return ac

    yield _login_as
    for ac in clients:
        await ac.aclose()
