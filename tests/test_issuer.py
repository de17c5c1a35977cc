"""Credential issuer tests.

Covers:
1. Local login (open and password modes)
2. Transport / directory token issuance and profile provisioning
3. Audience scoping: a token is only accepted by the consumer it names
4. Expiry against the injected clock
5. Subject always taken from the verified session token
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from pydantic import ValidationError

from common.errors import Forbidden, ProvisioningError, Unauthenticated
from common.models import Audience, AuthSession
from server.config import Settings
from server.main import create_app

from conftest import scoped_token, session_token


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


# Local login


@pytest.mark.asyncio
async def test_authenticate_returns_session_token(client):
    token = await session_token(client, "alice")
    claims = jwt.get_unverified_claims(token)
    assert claims["sub"] == "alice"
    assert claims["aud"] == "session"


@pytest.mark.asyncio
async def test_authenticate_rejects_malformed_user(client):
    r = await client.post("/authenticate", json={"user": "not a valid id!"})
    assert r.status_code == 422


@pytest_asyncio.fixture()
async def password_client(settings, clock):
    app = create_app(settings.model_copy(update={"local_auth_mode": "password"}), clock=clock)
    await app.state.db.create_tables()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.db.dispose()


@pytest.mark.asyncio
async def test_password_mode(password_client):
    r = await password_client.post("/authenticate", json={"user": "alice", "password": "hunter2hunter2"})
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"

    r = await password_client.post("/register", json={"user": "alice", "password": "hunter2hunter2"})
    assert r.status_code == 200

    r = await password_client.post("/register", json={"user": "alice", "password": "something-else"})
    assert r.status_code == 403

    r = await password_client.post("/authenticate", json={"user": "alice", "password": "wrong-password"})
    assert r.status_code == 401

    r = await password_client.post("/authenticate", json={"user": "alice", "password": "hunter2hunter2"})
    assert r.status_code == 200


# Issuance


@pytest.mark.asyncio
async def test_transport_credentials_provision_profile(client, app):
    r = await client.post("/transport-credentials", headers=bearer(await session_token(client, "alice")))
    assert r.status_code == 200
    body = r.json()
    assert body["user"] == {"id": "alice", "role": "user", "image": None}
    assert body["apiKey"] == "local-relay"
    assert app.state.tokens.verify(body["token"], Audience.TRANSPORT)["sub"] == "alice"

    # Idempotent: a second issuance reuses the profile
    r = await client.post("/transport-credentials", headers=bearer(await session_token(client, "alice")))
    assert r.status_code == 200
    assert await app.state.db.list_users() == ["alice"]


@pytest.mark.asyncio
async def test_directory_credentials(client, app):
    token = await scoped_token(client, "alice", Audience.DIRECTORY)
    assert app.state.tokens.verify(token, Audience.DIRECTORY)["sub"] == "alice"


@pytest.mark.asyncio
async def test_scoped_token_lifetime(client, app, clock):
    token = await scoped_token(client, "alice", Audience.TRANSPORT)
    claims = jwt.get_unverified_claims(token)
    assert claims["exp"] - claims["iat"] == 15 * 60

    clock.advance(minutes=15)
    with pytest.raises(Unauthenticated):
        app.state.tokens.verify(token, Audience.TRANSPORT)


@pytest.mark.asyncio
async def test_missing_bearer_is_unauthenticated(client):
    r = await client.post("/transport-credentials")
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"

    r = await client.post("/transport-credentials", headers=bearer("garbage"))
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_expired_session_cannot_request_credentials(client, clock):
    token = await session_token(client, "alice")
    clock.advance(minutes=61)
    r = await client.post("/directory-credentials", headers=bearer(token))
    assert r.status_code == 401


# Audience scoping


@pytest.mark.asyncio
async def test_transport_token_rejected_by_directory(client):
    token = await scoped_token(client, "alice", Audience.TRANSPORT)
    r = await client.get("/directory/keys/alice", headers=bearer(token))
    assert r.status_code == 403
    assert r.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_scoped_token_cannot_mint_more_tokens(client):
    token = await scoped_token(client, "alice", Audience.DIRECTORY)
    r = await client.post("/transport-credentials", headers=bearer(token))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_token_from_another_secret_is_rejected(client):
    forged = jwt.encode({"sub": "alice", "aud": "directory", "exp": 4102444800}, "guess", algorithm="HS256")
    r = await client.get("/directory/keys/alice", headers=bearer(forged))
    assert r.status_code == 401


# Issuer service


@pytest.mark.asyncio
async def test_issuer_uses_subject_of_verified_token(app, clock):
    tokens = app.state.tokens
    token, issued_at, not_after = tokens.create_token("alice", Audience.SESSION, timedelta(minutes=5))
    lying = AuthSession(subject_id="bob", local_token=token, issued_at=issued_at, not_after=not_after)

    with pytest.raises(Unauthenticated):
        await app.state.issuer.issue(lying, Audience.DIRECTORY)

    honest = tokens.session_from_token(token)
    issued = await app.state.issuer.issue(honest, Audience.DIRECTORY)
    assert issued.subject_id == "alice"
    assert issued.not_after == (clock() + timedelta(minutes=15)).replace(microsecond=0)
    assert "token=" not in repr(issued)


@pytest.mark.asyncio
async def test_issuer_refuses_session_audience(app):
    token, issued_at, not_after = app.state.tokens.create_token("alice", Audience.SESSION, timedelta(minutes=5))
    session = AuthSession("alice", token, issued_at, not_after)
    with pytest.raises(Forbidden):
        await app.state.issuer.issue(session, Audience.SESSION)


@pytest.mark.asyncio
async def test_client_maps_issuer_failures(api, client, clock):
    session = await api.authenticate("alice")
    assert session.subject_id == "alice"
    assert not session.is_expired(clock())

    credentials = await api.transport_credentials(session)
    assert credentials.user.id == "alice"
    assert credentials.token.audience is Audience.TRANSPORT

    clock.advance(hours=2)
    with pytest.raises(Unauthenticated):
        await api.directory_credentials(session)


@pytest.mark.asyncio
async def test_provisioning_failure(api, app, monkeypatch):
    from sqlalchemy.exc import OperationalError

    async def broken(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(app.state.db, "upsert_user", broken)
    session = await api.authenticate("alice")
    with pytest.raises(ProvisioningError):
        await api.transport_credentials(session)


def test_settings_refuse_default_secret_in_production():
    with pytest.raises(ValidationError):
        Settings(environment="production")
    with pytest.raises(ValidationError):
        Settings(scoped_token_minutes=0)
