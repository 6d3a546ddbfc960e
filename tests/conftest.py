import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ENCRYPTION_KEY", "0" * 64)
os.environ.setdefault("LOG_FILENAME", os.devnull)

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from linkearn.database import Base, SHORT_CODE_ALPHABET
from linkearn.models import Link, User
from linkearn.server.services import build_services

START = datetime(2024, 3, 1, 0, 10, tzinfo=timezone.utc)

class FixedClock:
    """Deterministic clock; tests move it forward explicitly"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

async def fake_geo_lookup(ip_address: str):
    return ('US', 'United States')

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
def clock():
    return FixedClock()

@pytest.fixture
def services(session_factory, clock):
    return build_services(session_factory, clock, geo_lookup=fake_geo_lookup)

@pytest.fixture
def make_user(session_factory, clock):
    counter = {'n': 0}

    async def factory(**overrides) -> User:
        counter['n'] += 1
        n = counter['n']
        values = {
            'email': f'user{n}@example.com',
            'password_hash': 'x',
            'is_active': True,
            'is_admin': False,
            'balance': Decimal('0'),
            'total_earned': Decimal('0'),
            'referral_earnings': Decimal('0'),
            'referral_code': f'REF{n:05d}',
            # Old enough that referral timing checks stay quiet
            'created_at': clock() - timedelta(days=30),
        }
        values.update(overrides)
        async with session_factory() as session:
            user = User(**values)
            session.add(user)
            await session.commit()
            return user

    return factory

@pytest.fixture
def make_link(session_factory, clock):
    counter = {'n': 0}

    async def factory(user: User, **overrides) -> Link:
        counter['n'] += 1
        values = {
            'user_id': user.id,
            'short_code': 'Lnkab' + SHORT_CODE_ALPHABET[counter['n']],
            'original_url': 'https://example.com/target',
            'is_active': True,
            'total_clicks': 0,
            'unique_clicks': 0,
            'total_earned': Decimal('0'),
            'created_at': clock(),
        }
        values.update(overrides)
        async with session_factory() as session:
            link = Link(**values)
            session.add(link)
            await session.commit()
            return link

    return factory

@pytest.fixture
def fetch(session_factory):
    """Re-read a row by primary key in a fresh session"""
    async def getter(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)
    return getter
