"""
Shared fixtures: an in-memory SQLite database with the messaging tables,
plus in-process stand-ins for sockets, the push provider and the user
directory.
"""

import os

# Settings are read at import time; tests need a known secret and key
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

import itertools
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import reset_all_circuit_breakers
from app.db import models  # noqa: F401
from app.db.session import Base
from app.realtime.dispatcher import DeliveryDispatcher
from app.realtime.presence import ClientConnection, PresenceRegistry
from app.services.push_provider import PushMessage, PushProvider, PushReceipt, PushTicket
from app.services.user_directory import DirectoryUser, UserDirectory

ALICE = "user_alice"
BOB = "user_bob"
CAROL = "user_carol"

ALICE_TOKEN = "ExponentPushToken[alice-device]"
BOB_TOKEN = "ExponentPushToken[bob-device]"


class FakeTransport:
    """Socket stand-in that records every event sent to it"""

    def __init__(self, fail: bool = False):
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, event: dict) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.sent.append(event)

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.sent if e["type"] == event_type]

    def types(self) -> List[str]:
        return [e["type"] for e in self.sent]


class FakePushProvider(PushProvider):
    """Records pushes; answers with ok tickets unless told otherwise"""

    provider_name = "fake"

    def __init__(self):
        self.sent: List[PushMessage] = []
        self.receipts: Dict[str, PushReceipt] = {}
        self.receipt_requests: List[List[str]] = []
        self._ids = itertools.count(1)

    async def send(self, messages: List[PushMessage]) -> List[PushTicket]:
        self.sent.extend(messages)
        return [PushTicket(status="ok", id=f"ticket-{next(self._ids)}") for _ in messages]

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, PushReceipt]:
        self.receipt_requests.append(list(ticket_ids))
        return {tid: self.receipts[tid] for tid in ticket_ids if tid in self.receipts}


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: Optional[Dict[str, DirectoryUser]] = None):
        self.users = dict(users or {})
        self.lookups: List[str] = []

    async def find_user(self, user_id: str) -> Optional[DirectoryUser]:
        self.lookups.append(user_id)
        return self.users.get(user_id)


@pytest.fixture(autouse=True)
def closed_circuits():
    """Shared breakers (redis, expo_push) start every test closed."""
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def push_provider():
    return FakePushProvider()


@pytest.fixture
def directory():
    return InMemoryUserDirectory({
        ALICE: DirectoryUser(id=ALICE, name="Alice", push_token=ALICE_TOKEN),
        BOB: DirectoryUser(id=BOB, name="Bob", push_token=BOB_TOKEN),
        CAROL: DirectoryUser(id=CAROL, name="Carol", push_token=None),
    })


@pytest_asyncio.fixture
async def dispatcher(session_factory, presence, push_provider, directory):
    dispatcher = DeliveryDispatcher(session_factory, presence, push_provider, directory)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def connect(presence):
    """Register a fake socket for a user and return (connection, transport)."""
    def _connect(user_id: str, fail: bool = False):
        transport = FakeTransport(fail=fail)
        connection = ClientConnection(user_id, transport)
        presence.register(user_id, connection)
        return connection, transport
    return _connect
