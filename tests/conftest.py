"""Test fixtures: a fresh sqlite-backed app per test, a controllable clock and
an in-memory relay standing in for the WebSocket transport.

The app is driven over httpx's ASGITransport, so the client code under test
(ServerAPI, SessionOrchestrator) runs unchanged against the real routes.
ASGITransport does not run the lifespan, so the fixtures create the tables.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from client.api import ServerAPI
from client.orchestrator import ClientConfig, ReceivedMessage, SessionOrchestrator
from client.transport import Transport
from common.errors import Unavailable
from common.models import Audience
from crypto.envelope import MessageEnvelope
from crypto.keystore import KeyStore
from server.auth import TokenService
from server.config import Settings
from server.main import create_app


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class MemoryRelay:
    """Routes envelopes between MemoryTransports, checking transport tokens like /ws does."""

    def __init__(self, tokens: TokenService):
        self.tokens = tokens
        self.connections: Dict[str, "MemoryTransport"] = {}
        self.frames: List[Tuple[str, dict]] = []

    def transport(self) -> "MemoryTransport":
        return MemoryTransport(self)


class MemoryTransport(Transport):
    def __init__(self, relay: MemoryRelay):
        super().__init__()
        self.relay = relay
        self.user_id: Optional[str] = None
        self.connects = 0
        self.down = False

    @property
    def connected(self) -> bool:
        return self.user_id is not None and self.relay.connections.get(self.user_id) is self

    async def connect(self, user_id: str, token: str) -> None:
        if self.down:
            raise Unavailable("Relay unreachable")
        claims = self.relay.tokens.verify(token, Audience.TRANSPORT)
        self.connects += 1
        self.user_id = claims["sub"]
        self.relay.connections[self.user_id] = self

    async def send(self, envelope: MessageEnvelope, destination: str) -> None:
        if not self.connected:
            raise Unavailable("Not connected to relay")
        frame = envelope.to_dict()
        self.relay.frames.append((destination, frame))
        target = self.relay.connections.get(destination)
        # Delivered inline so tests can assert right after send_message returns
        if target is not None and target.handler is not None:
            await target.handler(frame)

    async def close(self) -> None:
        if self.connected:
            del self.relay.connections[self.user_id]
        self.user_id = None


class Peer:
    """One chat participant: an orchestrator plus what its UI would have shown."""

    def __init__(self, user: str, api: ServerAPI, orchestrator: SessionOrchestrator,
                 password: Optional[str] = None):
        self.user = user
        self.api = api
        self.password = password
        self.orchestrator = orchestrator
        self.inbox: List[ReceivedMessage] = []
        self.logins = 0
        orchestrator.add_listener(self.inbox.append)

    async def local_auth(self):
        self.logins += 1
        return await self.api.authenticate(self.user, self.password)

    async def start(self):
        await self.orchestrator.start(self.local_auth)
        return self

    @property
    def transport(self) -> MemoryTransport:
        return self.orchestrator.transport


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/e2e.db",
        jwt_secret="test-secret",
    )


@pytest_asyncio.fixture()
async def app(settings, clock):
    application = create_app(settings, clock=clock)
    await application.state.db.create_tables()
    yield application
    await application.state.db.dispose()


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client wired straight into the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def api(client):
    return ServerAPI("http://test", http_client=client)


@pytest.fixture()
def relay(app):
    return MemoryRelay(app.state.tokens)


@pytest.fixture()
def make_peer(api, relay, clock):
    """Factory for participants sharing one server and one relay."""

    def factory(user: str, transport: Optional[Transport] = None, keystore: Optional[KeyStore] = None,
                **config) -> Peer:
        config.setdefault("retry_backoff", 0)
        orchestrator = SessionOrchestrator(
            api,
            transport or relay.transport(),
            keystore=keystore,
            config=ClientConfig(server_url="http://test", **config),
            clock=clock,
        )
        return Peer(user, api, orchestrator)

    return factory


async def session_token(client: AsyncClient, user: str) -> str:
    r = await client.post("/authenticate", json={"user": user})
    assert r.status_code == 200
    return r.json()["authToken"]


async def scoped_token(client: AsyncClient, user: str, audience: Audience) -> str:
    bearer = {"Authorization": f"Bearer {await session_token(client, user)}"}
    r = await client.post(f"/{audience.value}-credentials", headers=bearer)
    assert r.status_code == 200
    return r.json()["token"]
