"""WebSocket relay tests (sync TestClient, which runs the app lifespan)."""

from datetime import timedelta

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from common.models import Audience
from server.main import WS_REPLACED, WS_UNAUTHENTICATED, create_app


@pytest.fixture()
def relay_app(settings, clock):
    app = create_app(settings, clock=clock)
    with TestClient(app) as http:
        yield app, http


def token_for(app, user, audience=Audience.TRANSPORT):
    token, _, _ = app.state.tokens.create_token(user, audience, timedelta(minutes=5))
    return token


def test_health(relay_app):
    _, http = relay_app
    assert http.get("/health").json() == {"status": "ok"}


def test_relay_forwards_opaque_envelopes(relay_app):
    app, http = relay_app
    with http.websocket_connect("/ws") as alice, http.websocket_connect("/ws") as bob:
        alice.send_json({"type": "auth", "token": token_for(app, "alice")})
        assert alice.receive_json() == {"type": "auth_success", "username": "alice"}
        bob.send_json({"type": "auth", "token": token_for(app, "bob")})
        assert bob.receive_json()["type"] == "auth_success"

        alice.send_json({"type": "message", "to": "bob", "envelope": {"ciphertext": "00ff"}})
        assert bob.receive_json() == {"type": "message", "from": "alice", "envelope": {"ciphertext": "00ff"}}
        assert alice.receive_json() == {"type": "delivered", "to": "bob"}

        alice.send_json({"type": "message", "to": "carol", "envelope": {}})
        assert alice.receive_json()["code"] == "offline"

        alice.send_json({"type": "ping"})
        assert alice.receive_json() == {"type": "pong"}


@pytest.mark.parametrize("audience, code", [
    (Audience.DIRECTORY, "forbidden"),
    (Audience.SESSION, "forbidden"),
])
def test_relay_requires_transport_token(relay_app, audience, code):
    app, http = relay_app
    with http.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": token_for(app, "alice", audience)})
        assert ws.receive_json()["code"] == code


def test_relay_rejects_expired_token(relay_app, clock):
    app, http = relay_app
    token = token_for(app, "alice")
    clock.advance(minutes=6)
    with http.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": token})
        assert ws.receive_json()["code"] == "unauthenticated"


def test_new_connection_closes_the_old_one(relay_app):
    app, http = relay_app
    with http.websocket_connect("/ws") as old, http.websocket_connect("/ws") as new, \
            http.websocket_connect("/ws") as bob:
        old.send_json({"type": "auth", "token": token_for(app, "alice")})
        assert old.receive_json()["type"] == "auth_success"
        new.send_json({"type": "auth", "token": token_for(app, "alice")})
        assert new.receive_json()["type"] == "auth_success"

        with pytest.raises(WebSocketDisconnect) as exc:
            old.receive_json()
        assert exc.value.code == WS_REPLACED

        bob.send_json({"type": "auth", "token": token_for(app, "bob")})
        assert bob.receive_json()["type"] == "auth_success"
        bob.send_json({"type": "message", "to": "alice", "envelope": {"ciphertext": "01"}})
        assert new.receive_json()["from"] == "bob"
        assert app.state.manager.active_connections.keys() == {"alice", "bob"}


@pytest.mark.parametrize("send", [
    lambda ws: ws.send_text("not json"),
    lambda ws: ws.send_text('["auth"]'),
    lambda ws: ws.send_bytes(b"\x80\x81"),
])
def test_malformed_auth_frame_is_refused(relay_app, send):
    _, http = relay_app
    with http.websocket_connect("/ws") as ws:
        send(ws)
        assert ws.receive_json()["code"] == "invalid_frame"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == WS_UNAUTHENTICATED


def test_non_string_token_is_unauthenticated(relay_app):
    _, http = relay_app
    with http.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": {"sub": "alice"}})
        assert ws.receive_json()["code"] == "unauthenticated"


def test_malformed_frames_keep_the_connection(relay_app):
    app, http = relay_app
    with http.websocket_connect("/ws") as ws:
        ws.send_json({"type": "auth", "token": token_for(app, "alice")})
        assert ws.receive_json()["type"] == "auth_success"

        ws.send_text("{broken")
        assert ws.receive_json()["code"] == "invalid_frame"
        ws.send_text("42")
        assert ws.receive_json()["code"] == "invalid_frame"
        ws.send_json({"type": "message", "to": ["bob"], "envelope": {}})
        assert ws.receive_json()["code"] == "invalid_frame"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
