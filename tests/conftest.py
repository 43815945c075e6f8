"""Shared fixtures for relay tests."""
import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from blobs import BlobStore
from ledger import HistoryLedger
from relay import BroadcastRouter, Connection, RelayPolicy
from sessions import SessionRegistry
from store import DurableLogStore

ADMIN_KEY = "s3cret"


class FakeSocket:
    """Stands in for a FastAPI WebSocket; records every frame sent to it."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Optional[int] = None

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == event]


class StuckSocket(FakeSocket):
    """A recipient that never finishes receiving."""

    def __init__(self):
        super().__init__()
        self._never = asyncio.Event()

    async def send_json(self, data):
        await self._never.wait()


class Room:
    def __init__(self, router: BroadcastRouter):
        self.router = router
        self.connections: List[Connection] = []
        self._counter = 0

    async def connect(self, socket: Optional[FakeSocket] = None, outbox_size: int = 256):
        self._counter += 1
        socket = socket or FakeSocket()
        connection = Connection(f"conn-{self._counter}", socket, outbox_size=outbox_size)
        self.connections.append(connection)
        await self.router.on_connect(connection)
        return connection, socket

    async def join(self, name: str, admin_key: Optional[str] = None):
        connection, socket = await self.connect()
        await self.router.dispatch(connection, {"type": "join", "name": name, "adminKey": admin_key})
        return connection, socket

    async def settle(self):
        for connection in self.connections:
            if not connection.closed:
                await connection.flush()

    async def close(self):
        for connection in self.connections:
            await connection.close()
        await self.router.store.aclose()


def make_router(tmp_path, policy: Optional[RelayPolicy] = None, max_bytes: int = 1024) -> BroadcastRouter:
    store = DurableLogStore(tmp_path / "messages.json")
    return BroadcastRouter(
        ledger=HistoryLedger(store.load()),
        sessions=SessionRegistry(ADMIN_KEY),
        store=store,
        blobs=BlobStore(tmp_path / "uploads", max_bytes=max_bytes),
        policy=policy,
    )


@pytest_asyncio.fixture
async def room(tmp_path):
    room = Room(make_router(tmp_path))
    yield room
    await room.close()


@pytest_asyncio.fixture
async def open_room(tmp_path):
    """Room that accepts submissions before join and has presence turned off."""
    policy = RelayPolicy(require_join_before_submit=False, presence_enabled=False)
    room = Room(make_router(tmp_path, policy=policy))
    yield room
    await room.close()


@pytest.fixture
def history_path(tmp_path):
    return tmp_path / "messages.json"
