"""
Session orchestrator: the client-side state machine.

    UNAUTHENTICATED -> LOCAL_AUTHENTICATED -> TRANSPORT_READY
                    -> CRYPTO_READY -> CHANNEL_ACTIVE

Bootstrap steps run strictly in order, each awaiting the previous one's
output. After CHANNEL_ACTIVE, sends and receives are independent coroutines
and may interleave freely.

A failed step leaves the machine at the last state that completed and raises
a typed error. Transient failures (Timeout, Unavailable) are retried a
bounded number of times; beyond that, rebootstrap() is the recovery path.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from pydantic import BaseModel

from common.errors import (
    E2EError,
    EncryptionFailed,
    InvalidState,
    KeyInvalid,
    NotFound,
    SendFailed,
    Timeout,
    Unauthenticated,
    Unavailable,
    VerificationFailed,
)
from common.models import Audience, AuthSession, ScopedToken, TransportUser, utcnow
from crypto.envelope import MessageEnvelope
from crypto.keystore import IdentityKeyPair, KeyStore
from crypto.pipeline import open_envelope, seal
from .api import ServerAPI
from .directory_cache import DirectoryCache
from .transport import Transport

logger = logging.getLogger(__name__)

LocalAuth = Callable[[], Awaitable[AuthSession]]


class ClientConfig(BaseModel):
    """Client-side tuning knobs"""
    server_url: str = "http://localhost:8000"
    request_timeout: float = 10.0
    max_retries: int = 2
    retry_backoff: float = 0.2
    refresh_margin_seconds: int = 60
    retain_keys: bool = True
    # Counterparty keys are re-fetched after this long; None caches until logout
    directory_cache_max_age_seconds: Optional[float] = 300.0


class SessionState(enum.IntEnum):
    UNAUTHENTICATED = 0
    LOCAL_AUTHENTICATED = 1
    TRANSPORT_READY = 2
    CRYPTO_READY = 3
    CHANNEL_ACTIVE = 4


class DeliveryStatus(str, enum.Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class ReceivedMessage:
    """
    Outcome of processing one incoming envelope, as surfaced to the UI.

    plaintext is only ever set when status is VERIFIED.
    """
    status: DeliveryStatus
    sender_id: Optional[str]
    recipient_id: Optional[str]
    created_at: Optional[datetime]
    channel_id: Optional[str] = None
    plaintext: Optional[bytes] = field(default=None, repr=False)
    error: Optional[E2EError] = None

    @property
    def verified(self) -> bool:
        return self.status is DeliveryStatus.VERIFIED

    @property
    def text(self) -> Optional[str]:
        return self.plaintext.decode("utf-8", errors="replace") if self.plaintext is not None else None

    @property
    def notice(self) -> Optional[str]:
        """Human-readable status for anything that is not a verified message"""
        if self.status is DeliveryStatus.UNVERIFIED:
            return "message could not be verified"
        if self.status is DeliveryStatus.RETRYING:
            return "temporarily unable to process message, retrying"
        if self.status is DeliveryStatus.FAILED:
            return "message could not be processed"
        return None


@dataclass
class Channel:
    members: List[str]
    channel_id: Optional[str] = None


@dataclass
class ClientSession:
    """
    Everything one login owns. Created by login(), destroyed by logout().
    """
    auth: AuthSession
    local_auth: LocalAuth = field(repr=False)
    tokens: Dict[Audience, ScopedToken] = field(default_factory=dict, repr=False)
    transport_user: Optional[TransportUser] = None
    api_key: Optional[str] = None

    @property
    def subject_id(self) -> str:
        return self.auth.subject_id


Listener = Callable[[ReceivedMessage], Any]


class SessionOrchestrator:
    """Sequences credential issuance, key registration and messaging"""

    def __init__(self, api: ServerAPI, transport: Transport, keystore: Optional[KeyStore] = None,
                 config: Optional[ClientConfig] = None, clock: Callable[[], datetime] = utcnow):
        self.api = api
        self.transport = transport
        self.keystore = keystore or KeyStore()
        self.config = config or ClientConfig()
        self.clock = clock
        max_age = self.config.directory_cache_max_age_seconds
        self.cache = DirectoryCache(
            self._fetch_public_key,
            max_age=timedelta(seconds=max_age) if max_age is not None else None,
            clock=clock,
        )

        self._state = SessionState.UNAUTHENTICATED
        self._session: Optional[ClientSession] = None
        self._channel: Optional[Channel] = None
        self._token_locks: Dict[Audience, asyncio.Lock] = {
            Audience.TRANSPORT: asyncio.Lock(),
            Audience.DIRECTORY: asyncio.Lock(),
        }
        self._login_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._retry_tasks: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []

        self.transport.set_handler(self.receive_message)

    # State

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[ClientSession]:
        return self._session

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    @property
    def identity(self) -> Optional[IdentityKeyPair]:
        if not self._session:
            return None
        return self.keystore.get(self._session.subject_id)

    def _require(self, minimum: SessionState, operation: str):
        if self._state < minimum:
            raise InvalidState(f"{operation} requires {minimum.name}, current state is {self._state.name}")

    def _fall_back(self, state: SessionState):
        if self._state > state:
            logger.warning("Session state %s -> %s", self._state.name, state.name)
            self._state = state

    def add_listener(self, listener: Listener) -> None:
        """Register a UI callback for every processed incoming envelope"""
        self._listeners.append(listener)

    # Dependency calls

    async def _call(self, factory: Callable[[], Awaitable[Any]], what: str) -> Any:
        """Run one external call with a deadline and bounded transient retries"""
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(factory(), self.config.request_timeout)
            except asyncio.TimeoutError as e:
                error: E2EError = Timeout(f"{what} timed out", cause=e)
            except E2EError as e:
                if not e.retryable:
                    raise
                error = e
            if attempt >= self.config.max_retries:
                raise error
            attempt += 1
            logger.info("%s failed (%s), retry %d/%d", what, error.code, attempt, self.config.max_retries)
            await asyncio.sleep(self.config.retry_backoff * (2 ** (attempt - 1)))

    async def _relogin(self, stale: AuthSession) -> AuthSession:
        """Obtain a new AuthSession through the stored local auth provider"""
        async with self._login_lock:
            session = self._session
            if session is None:
                raise InvalidState("Logged out")
            if session.auth is not stale:
                return session.auth
            try:
                auth = await self._call(session.local_auth, "local auth")
            except E2EError:
                self._fall_back(SessionState.UNAUTHENTICATED)
                raise
            if auth.subject_id != session.subject_id:
                raise Unauthenticated("Local auth returned a different subject")
            session.auth = auth
            logger.info("Local session renewed for %s", auth.subject_id)
            return auth

    async def _issue(self, audience: Audience) -> ScopedToken:
        """Issue a token for audience, renewing the local session if needed"""
        session = self._session
        auth = session.auth
        if auth.is_expired(self.clock()):
            auth = await self._relogin(auth)

        async def request(current: AuthSession):
            if audience is Audience.TRANSPORT:
                credentials = await self._call(lambda: self.api.transport_credentials(current), "transport credentials")
                session.transport_user = credentials.user
                session.api_key = credentials.api_key
                return credentials.token
            return await self._call(lambda: self.api.directory_credentials(current), "directory credentials")

        try:
            try:
                token = await request(auth)
            except Unauthenticated:
                token = await request(await self._relogin(auth))
        except E2EError:
            self._fall_back(
                SessionState.LOCAL_AUTHENTICATED if audience is Audience.TRANSPORT else SessionState.TRANSPORT_READY
            )
            raise
        session.tokens[audience] = token
        return token

    async def _token(self, audience: Audience, stale: Optional[ScopedToken] = None) -> ScopedToken:
        """
        Current token for audience, re-issued when missing, near expiry, or
        when the caller reports `stale` was rejected.
        """
        margin = timedelta(seconds=self.config.refresh_margin_seconds)
        async with self._token_locks[audience]:
            session = self._session
            if session is None:
                raise InvalidState("Logged out")
            current = session.tokens.get(audience)
            if current is not None and current is not stale and not current.expires_within(margin, self.clock()):
                return current
            return await self._issue(audience)

    async def _with_token(self, audience: Audience, operation: Callable[[ScopedToken], Awaitable[Any]],
                          what: str) -> Any:
        """Run operation with one token; on rejection, retry once with a re-issued one"""
        token = await self._token(audience)
        try:
            return await self._call(lambda: operation(token), what)
        except Unauthenticated:
            token = await self._token(audience, stale=token)
            return await self._call(lambda: operation(token), what)

    async def _fetch_public_key(self, identity_id: str) -> bytes:
        return await self._with_token(
            Audience.DIRECTORY, lambda token: self.api.resolve_key(identity_id, token), f"resolve {identity_id}"
        )

    # Bootstrap

    async def login(self, local_auth: LocalAuth) -> ClientSession:
        """
        UNAUTHENTICATED -> LOCAL_AUTHENTICATED.

        Args:
            local_auth: Coroutine function producing an AuthSession; kept so an
                expired session can be renewed without user involvement
        """
        if self._state is not SessionState.UNAUTHENTICATED:
            raise InvalidState("Already logged in")
        auth = await self._call(local_auth, "local auth")
        self._session = ClientSession(auth=auth, local_auth=local_auth)
        self._state = SessionState.LOCAL_AUTHENTICATED
        logger.info("Logged in as %s", auth.subject_id)
        return self._session

    async def _connect_transport(self):
        token = await self._token(Audience.TRANSPORT)
        try:
            await self._call(lambda: self.transport.connect(token.subject_id, token.token), "transport connect")
        except Unauthenticated:
            token = await self._token(Audience.TRANSPORT, stale=token)
            await self._call(lambda: self.transport.connect(token.subject_id, token.token), "transport connect")

    async def _transport_step(self):
        """LOCAL_AUTHENTICATED -> TRANSPORT_READY"""
        try:
            await self._connect_transport()
        except E2EError:
            self._fall_back(SessionState.LOCAL_AUTHENTICATED)
            raise
        self._state = SessionState.TRANSPORT_READY

    async def _crypto_step(self):
        """TRANSPORT_READY -> CRYPTO_READY: publish our identity key"""
        subject = self._session.subject_id
        key_pair, created = self.keystore.get_or_create(subject)
        try:
            ack = await self._with_token(
                Audience.DIRECTORY,
                lambda token: self.api.register_key(subject, key_pair.public_key, token),
                "register key",
            )
        except E2EError:
            self._fall_back(SessionState.TRANSPORT_READY)
            raise
        logger.info("Identity %s ready (key %s, version %d%s)", subject, key_pair.fingerprint,
                    ack.version, ", new" if created else "")
        self._state = SessionState.CRYPTO_READY

    async def bootstrap(self):
        """Run every remaining step up to CRYPTO_READY, strictly in order"""
        self._require(SessionState.LOCAL_AUTHENTICATED, "bootstrap")
        if self._state is SessionState.LOCAL_AUTHENTICATED:
            await self._transport_step()
        if self._state is SessionState.TRANSPORT_READY:
            await self._crypto_step()

    async def start(self, local_auth: LocalAuth) -> ClientSession:
        """login() followed by bootstrap()"""
        session = await self.login(local_auth)
        await self.bootstrap()
        return session

    async def rebootstrap(self):
        """
        Explicit recovery: redo whatever steps are no longer complete and
        restore the open channel, if any.
        """
        if self._session is None:
            raise InvalidState("rebootstrap requires a login")
        if self._state is SessionState.UNAUTHENTICATED:
            await self._relogin(self._session.auth)
            self._session.tokens.clear()
            self._state = SessionState.LOCAL_AUTHENTICATED
        if self._state >= SessionState.TRANSPORT_READY and not self.transport.connected:
            self._fall_back(SessionState.LOCAL_AUTHENTICATED)
        await self.bootstrap()
        if self._channel is not None and self._state is SessionState.CRYPTO_READY:
            self._state = SessionState.CHANNEL_ACTIVE

    # Channels

    async def open_channel(self, members: Union[str, Sequence[str]],
                           channel_id: Optional[str] = None) -> Channel:
        """
        CRYPTO_READY -> CHANNEL_ACTIVE.

        Each member must have a registered key; NotFound is raised before the
        channel opens otherwise.
        """
        self._require(SessionState.CRYPTO_READY, "open_channel")
        if isinstance(members, str):
            members = [members]
        me = self._session.subject_id
        members = [m for m in dict.fromkeys(members) if m != me]
        if not members:
            raise InvalidState("A channel needs at least one counterparty")
        if len(members) > 1 and channel_id is None:
            raise InvalidState("Group channels need a channel_id")

        await asyncio.gather(*(self.resolve(member) for member in members))
        self._channel = Channel(members=members, channel_id=channel_id)
        self._state = SessionState.CHANNEL_ACTIVE
        logger.info("Channel active with %s", ", ".join(members))
        return self._channel

    # Messaging

    async def resolve(self, identity_id: str, fresh: bool = False) -> bytes:
        """Public key of identity_id, from cache or the directory"""
        self._require(SessionState.TRANSPORT_READY, "resolve")
        return await self.cache.resolve(identity_id, fresh=fresh)

    async def send_message(self, plaintext: Union[str, bytes], to: Optional[str] = None) -> List[MessageEnvelope]:
        """
        Encrypt plaintext for each recipient and hand the envelopes to the transport.

        Args:
            plaintext: Message text or bytes
            to: Single recipient; defaults to every member of the open channel

        Returns:
            The envelopes handed to the transport

        Raises:
            EncryptionFailed: A recipient key could not be resolved or used
            SendFailed: The transport did not accept an envelope
        """
        self._require(SessionState.CHANNEL_ACTIVE, "send_message")
        task = asyncio.current_task()
        self._pending.add(task)
        try:
            return await self._send(plaintext, to)
        finally:
            self._pending.discard(task)

    async def _send(self, plaintext: Union[str, bytes], to: Optional[str]) -> List[MessageEnvelope]:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        channel = self._channel
        recipients = [to] if to else list(channel.members)
        channel_id = channel.channel_id if channel and not to else None
        sender = self._session.subject_id

        try:
            keys = await asyncio.gather(*(self.resolve(r) for r in recipients))
        except E2EError as e:
            raise EncryptionFailed(f"Could not resolve recipient key: {e.message}", cause=e)

        key_pair = self.keystore.get(sender)
        if key_pair is None:
            raise EncryptionFailed("No local identity key")
        try:
            envelopes = [
                seal(plaintext, sender, recipient, key_pair.private_key, public_key, channel_id=channel_id)
                for recipient, public_key in zip(recipients, keys)
            ]
        except KeyInvalid as e:
            raise EncryptionFailed("Recipient key is unusable", cause=e)

        try:
            await self._ensure_transport()
        except E2EError as e:
            raise SendFailed(f"Transport not ready: {e.message}", cause=e)

        async def hand_off(envelope: MessageEnvelope):
            # Once handed over, delivery belongs to the transport
            await asyncio.shield(
                self._call(lambda: self.transport.send(envelope, envelope.recipient_id), "transport send")
            )

        try:
            await asyncio.gather(*(hand_off(envelope) for envelope in envelopes))
        except (Timeout, Unavailable) as e:
            raise SendFailed(f"Transport send failed: {e.message}", cause=e)
        return envelopes

    async def _ensure_transport(self):
        """Keep the transport token current and reconnect if the relay link dropped"""
        try:
            await self._token(Audience.TRANSPORT)
            if self.transport.connected:
                return
            await self._connect_transport()
        except E2EError:
            self._fall_back(SessionState.LOCAL_AUTHENTICATED)
            raise

    async def receive_message(self, envelope: Union[MessageEnvelope, Dict[str, Any]]) -> ReceivedMessage:
        """
        Verify and decrypt one incoming envelope and surface the outcome.

        Never raises for bad envelopes: forged, tampered or unverifiable
        input becomes an UNVERIFIED result, transient failures RETRYING.
        """
        try:
            parsed = envelope if isinstance(envelope, MessageEnvelope) else MessageEnvelope.from_dict(envelope)
        except VerificationFailed as e:
            return await self._surface(ReceivedMessage(DeliveryStatus.UNVERIFIED, None, None, None, error=e))

        result = await self._process(parsed)
        if result.status is DeliveryStatus.RETRYING:
            self._schedule_retry(parsed, attempt=1)
        return await self._surface(result)

    async def _process(self, envelope: MessageEnvelope) -> ReceivedMessage:
        def outcome(status: DeliveryStatus, plaintext: Optional[bytes] = None,
                    error: Optional[E2EError] = None) -> ReceivedMessage:
            return ReceivedMessage(status, envelope.sender_id, envelope.recipient_id, envelope.created_at,
                                   channel_id=envelope.channel_id, plaintext=plaintext, error=error)

        if self._state < SessionState.CRYPTO_READY or self._session is None:
            return outcome(DeliveryStatus.RETRYING, error=InvalidState("Session not ready"))
        me = self._session.subject_id
        key_pair = self.keystore.get(me)
        if envelope.recipient_id != me or key_pair is None:
            return outcome(DeliveryStatus.UNVERIFIED, error=VerificationFailed("Envelope not addressed to us"))

        try:
            try:
                sender_key = await self.resolve(envelope.sender_id)
                plaintext = open_envelope(envelope, sender_key, key_pair.private_key)
            except VerificationFailed:
                # The sender may have rotated; retry once against the current key
                sender_key = await self.resolve(envelope.sender_id, fresh=True)
                plaintext = open_envelope(envelope, sender_key, key_pair.private_key)
        except (VerificationFailed, NotFound, KeyInvalid) as e:
            logger.warning("Unverifiable envelope claiming sender %s: %s", envelope.sender_id, e.code)
            return outcome(DeliveryStatus.UNVERIFIED, error=e)
        except E2EError as e:
            return outcome(DeliveryStatus.RETRYING, error=e)
        return outcome(DeliveryStatus.VERIFIED, plaintext=plaintext)

    def _schedule_retry(self, envelope: MessageEnvelope, attempt: int):
        async def retry():
            await asyncio.sleep(self.config.retry_backoff * (2 ** attempt))
            result = await self._process(envelope)
            if result.status is DeliveryStatus.RETRYING:
                if attempt < self.config.max_retries:
                    self._schedule_retry(envelope, attempt + 1)
                else:
                    result = ReceivedMessage(DeliveryStatus.FAILED, result.sender_id, result.recipient_id,
                                             result.created_at, channel_id=result.channel_id, error=result.error)
            if result.status is not DeliveryStatus.RETRYING:
                await self._surface(result)

        task = asyncio.create_task(retry())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _surface(self, result: ReceivedMessage) -> ReceivedMessage:
        for listener in list(self._listeners):
            outcome = listener(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        return result

    # Key lifecycle

    async def rotate_identity_key(self) -> IdentityKeyPair:
        """
        Replace our key pair and republish the public half.

        The new pair only becomes active once the directory has accepted it;
        if publishing fails the previous pair stays in use.
        """
        self._require(SessionState.CRYPTO_READY, "rotate_identity_key")
        subject = self._session.subject_id
        key_pair = IdentityKeyPair.generate(subject)
        await self._with_token(
            Audience.DIRECTORY,
            lambda token: self.api.register_key(subject, key_pair.public_key, token),
            "register key",
        )
        self.keystore.put(key_pair)
        logger.info("Rotated identity key for %s (fingerprint %s)", subject, key_pair.fingerprint)
        return key_pair

    async def list_users(self) -> List[str]:
        """Counterparty discovery"""
        self._require(SessionState.LOCAL_AUTHENTICATED, "list_users")
        auth = self._session.auth
        if auth.is_expired(self.clock()):
            auth = await self._relogin(auth)
        try:
            return await self._call(lambda: self.api.list_users(auth), "list users")
        except Unauthenticated:
            auth = await self._relogin(auth)
            return await self._call(lambda: self.api.list_users(auth), "list users")

    async def logout(self):
        """
        Back to UNAUTHENTICATED: pending sends are dropped, tokens and cached
        keys are invalidated, and the private key is kept or discarded per
        the retain_keys policy.
        """
        current = asyncio.current_task()
        for task in list(self._pending) + list(self._retry_tasks):
            if task is not current:
                task.cancel()
        self._pending.clear()
        self._retry_tasks.clear()

        await self.transport.close()
        self.cache.clear()
        if self._session is not None:
            subject = self._session.subject_id
            self._session.tokens.clear()
            if not self.config.retain_keys:
                self.keystore.destroy(subject)
            logger.info("Logged out %s", subject)
        self._session = None
        self._channel = None
        self._state = SessionState.UNAUTHENTICATED
