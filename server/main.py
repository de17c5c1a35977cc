"""
FastAPI server for end-to-end encrypted chat.

This server:
- Escalates local sessions into transport and directory credentials
- Hosts the identity directory (public keys only)
- Relays encrypted envelopes via WebSocket (does NOT store or read messages)
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional
from datetime import datetime
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from common.errors import E2EError, Forbidden, Unauthenticated
from common.models import (
    Audience,
    AuthenticateRequest,
    AuthTokenResponse,
    DirectoryCredentialsResponse,
    KeyRecord,
    KeyRegistration,
    RegisterAccountRequest,
    RegisterAck,
    TransportCredentialsResponse,
    TransportUser,
    UserSummary,
    utcnow,
)
from crypto.keystore import public_key_from_hex
from .auth import LocalAuthenticator, TokenService, bearer_token
from .config import Settings, settings as default_settings
from .database import Database
from .directory import IdentityDirectory
from .issuer import CredentialIssuer

logger = logging.getLogger(__name__)

WS_UNAUTHENTICATED = 4401
WS_FORBIDDEN = 4403
WS_REPLACED = 4000


async def receive_frame(websocket: WebSocket) -> Optional[dict]:
    """
    Read one client frame.

    Returns:
        The decoded JSON object, or None for anything that is not one

    Raises:
        WebSocketDisconnect: Client went away
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    raw = message.get("text")
    if raw is None:
        raw = message.get("bytes")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


INVALID_FRAME = {"type": "error", "code": "invalid_frame", "message": "Frames must be JSON objects"}


class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def register(self, username: str, websocket: WebSocket):
        """Store an authenticated connection, closing any previous one"""
        previous = self.active_connections.get(username)
        self.active_connections[username] = websocket
        if previous is not None and previous is not websocket:
            logger.info("Replacing relay connection for %s", username)
            try:
                await previous.close(code=WS_REPLACED)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug("Superseded connection for %s already closed: %s", username, e)

    def disconnect(self, username: str, websocket: Optional[WebSocket] = None):
        """Remove a WebSocket connection"""
        current = self.active_connections.get(username)
        if current is not None and (websocket is None or current is websocket):
            del self.active_connections[username]

    async def send_message(self, username: str, message: dict) -> bool:
        """Send a frame to a specific user; False if they are not reachable"""
        websocket = self.active_connections.get(username)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning("Dropping dead connection for %s: %s", username, e)
            self.disconnect(username, websocket)
            return False


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def get_local_auth(request: Request) -> LocalAuthenticator:
    return request.app.state.local_auth


def get_issuer(request: Request) -> CredentialIssuer:
    return request.app.state.issuer


def get_directory(request: Request) -> IdentityDirectory:
    return request.app.state.directory


def get_db(request: Request) -> Database:
    return request.app.state.db


async def e2e_error_handler(request: Request, exc: E2EError) -> JSONResponse:
    """Translate typed errors into JSON error responses"""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def create_app(config: Optional[Settings] = None,
               clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use (environment-derived by default)
        clock: Time source for token issue/expiry checks
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await app.state.db.create_tables()
        logger.info("Database initialized (auth mode: %s)", config.local_auth_mode)
        yield
        await app.state.db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Encrypted Chat Server",
        description="Credential issuer, identity directory and ciphertext relay",
        version="1.0.0",
        lifespan=lifespan
    )

    db = Database(config.database_url)
    tokens = TokenService(config.jwt_secret, config.jwt_algorithm, clock=clock or utcnow)
    app.state.settings = config
    app.state.db = db
    app.state.tokens = tokens
    app.state.local_auth = LocalAuthenticator(
        db, tokens, mode=config.local_auth_mode, session_minutes=config.session_token_minutes
    )
    app.state.issuer = CredentialIssuer(
        db, tokens, token_minutes=config.scoped_token_minutes, default_role=config.default_role
    )
    app.state.directory = IdentityDirectory(db, tokens)
    app.state.manager = ConnectionManager()

    app.add_exception_handler(E2EError, e2e_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/authenticate", response_model=AuthTokenResponse)
    async def authenticate(body: AuthenticateRequest,
                           local_auth: LocalAuthenticator = Depends(get_local_auth)):
        """Local login: returns the session token used to request credentials"""
        session = await local_auth.authenticate(body.user, body.password)
        return AuthTokenResponse(auth_token=session.local_token)

    @app.post("/register", response_model=AuthTokenResponse)
    async def register_account(body: RegisterAccountRequest,
                               local_auth: LocalAuthenticator = Depends(get_local_auth)):
        """Create a password account (password auth mode)"""
        session = await local_auth.register_account(body.user, body.password)
        return AuthTokenResponse(auth_token=session.local_token)

    @app.post("/transport-credentials", response_model=TransportCredentialsResponse)
    async def transport_credentials(token: str = Depends(bearer_token),
                                    tokens: TokenService = Depends(get_tokens),
                                    issuer: CredentialIssuer = Depends(get_issuer)):
        """Issue a transport token and upsert the caller's transport profile"""
        session = tokens.session_from_token(token)
        scoped, profile = await issuer.issue_with_profile(session, Audience.TRANSPORT)
        return TransportCredentialsResponse(
            token=scoped.token,
            api_key=config.transport_api_key,
            user=TransportUser(id=profile.id, role=profile.role, image=profile.image),
        )

    @app.post("/directory-credentials", response_model=DirectoryCredentialsResponse)
    async def directory_credentials(token: str = Depends(bearer_token),
                                    tokens: TokenService = Depends(get_tokens),
                                    issuer: CredentialIssuer = Depends(get_issuer)):
        """Issue a directory token"""
        session = tokens.session_from_token(token)
        scoped = await issuer.issue(session, Audience.DIRECTORY)
        return DirectoryCredentialsResponse(token=scoped.token)

    @app.get("/users", response_model=List[UserSummary])
    async def list_users(token: str = Depends(bearer_token),
                         tokens: TokenService = Depends(get_tokens),
                         db: Database = Depends(get_db)):
        """List provisioned users for counterparty discovery"""
        tokens.session_from_token(token)
        return [UserSummary(id=user_id) for user_id in await db.list_users()]

    @app.put("/directory/keys/{identity_id}", response_model=RegisterAck)
    async def register_key(identity_id: str, body: KeyRegistration,
                           token: str = Depends(bearer_token),
                           directory: IdentityDirectory = Depends(get_directory)):
        """Publish (or rotate) the caller's identity public key"""
        public_key = public_key_from_hex(body.public_key)
        return await directory.register(identity_id, public_key, token)

    @app.get("/directory/keys/{identity_id}", response_model=KeyRecord)
    async def resolve_key(identity_id: str, token: str = Depends(bearer_token),
                          directory: IdentityDirectory = Depends(get_directory)):
        """Resolve a counterparty's current public key"""
        public_key, version = await directory.resolve(identity_id, token)
        return KeyRecord(identity_id=identity_id, public_key=public_key.hex(), version=version)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket relay for encrypted envelopes.

        Protocol:
        1. Client sends: {"type": "auth", "token": "<transport token>"}
        2. Server verifies and responds: {"type": "auth_success", "username": "..."}
        3. Client sends envelopes: {"type": "message", "to": "recipient", "envelope": {...}}
        4. Server relays to recipient: {"type": "message", "from": "sender", "envelope": {...}}
        """
        manager: ConnectionManager = app.state.manager
        username = None

        await websocket.accept()
        try:
            auth_data = await receive_frame(websocket)

            if auth_data is None:
                await websocket.send_json(INVALID_FRAME)
                await websocket.close(code=WS_UNAUTHENTICATED)
                return

            if auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "code": "unauthenticated",
                                           "message": "Authentication required"})
                await websocket.close(code=WS_UNAUTHENTICATED)
                return

            try:
                claims = tokens.verify(auth_data.get("token"), Audience.TRANSPORT)
            except (Unauthenticated, Forbidden) as e:
                await websocket.send_json({"type": "error", "code": e.code, "message": e.message})
                await websocket.close(code=WS_FORBIDDEN if isinstance(e, Forbidden) else WS_UNAUTHENTICATED)
                return

            username = claims["sub"]
            await manager.register(username, websocket)
            logger.info("Relay connection opened for %s", username)
            await websocket.send_json({
                "type": "auth_success",
                "username": username,
            })

            # Envelope relay loop
            while True:
                data = await receive_frame(websocket)

                if data is None:
                    await websocket.send_json(INVALID_FRAME)
                    continue

                if data.get("type") == "message":
                    recipient = data.get("to")
                    envelope = data.get("envelope")

                    if not isinstance(recipient, str) or not recipient or not isinstance(envelope, dict):
                        await websocket.send_json({
                            "type": "error",
                            "code": "invalid_frame",
                            "message": "Invalid message format"
                        })
                        continue

                    delivered = await manager.send_message(recipient, {
                        "type": "message",
                        "from": username,
                        "envelope": envelope
                    })
                    if delivered:
                        await websocket.send_json({"type": "delivered", "to": recipient})
                    else:
                        await websocket.send_json({
                            "type": "error",
                            "code": "offline",
                            "message": f"User {recipient} is offline"
                        })

                elif data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        finally:
            if username:
                manager.disconnect(username, websocket)
                logger.info("Relay connection closed for %s", username)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
