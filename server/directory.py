"""
Identity directory (server side).

Maps identity ids to their current public key. Registration is only allowed
for the token's own subject; resolution is open to any directory token
holder. Registrations for the same identity are serialized so a rotation is
never observed half-written.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Tuple

from sqlalchemy.exc import SQLAlchemyError

from common.errors import Forbidden, NotFound, Unavailable
from common.models import Audience, RegisterAck
from crypto.keystore import load_public_key
from crypto.primitives import fingerprint
from .auth import TokenService
from .database import Database

logger = logging.getLogger(__name__)


class IdentityDirectory:
    """Registers and resolves identity public keys"""

    def __init__(self, db: Database, tokens: TokenService):
        self.db = db
        self.tokens = tokens
        # identity_id -> (lock, number of registrations holding or awaiting it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _identity_lock(self, identity_id: str):
        """Serialize registrations per identity; idle locks are dropped"""
        lock, users = self._locks.get(identity_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[identity_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[identity_id]
            if users == 1:
                del self._locks[identity_id]
            else:
                self._locks[identity_id] = (lock, users - 1)

    async def register(self, identity_id: str, public_key: bytes, directory_token: str) -> RegisterAck:
        """
        Bind public_key to identity_id.

        Unchanged keys are a no-op; a different key is a rotation that
        replaces the record in place.

        Raises:
            Unauthenticated: Token invalid or expired
            Forbidden: Token subject is not identity_id, or wrong audience
            KeyInvalid: Malformed public key
        """
        claims = self.tokens.verify(directory_token, Audience.DIRECTORY)
        if claims["sub"] != identity_id:
            raise Forbidden("Cannot register a key for another identity")
        load_public_key(public_key)

        async with self._identity_lock(identity_id):
            try:
                record, changed = await self.db.put_identity_key(identity_id, public_key.hex())
            except SQLAlchemyError as e:
                raise Unavailable("Directory storage unavailable", cause=e)

        if changed and record.version > 1:
            logger.info("Rotated key for %s to %s (version %d)", identity_id, fingerprint(public_key), record.version)
        elif changed:
            logger.info("Registered key for %s: %s", identity_id, fingerprint(public_key))
        return RegisterAck(identity_id=identity_id, changed=changed, version=record.version)

    async def resolve(self, identity_id: str, directory_token: str) -> Tuple[bytes, int]:
        """
        Look up the current public key of identity_id.

        Returns:
            Tuple of (public_key, version)

        Raises:
            Unauthenticated: Token invalid or expired
            Forbidden: Token issued for another audience
            NotFound: identity_id never registered
        """
        self.tokens.verify(directory_token, Audience.DIRECTORY)
        try:
            record = await self.db.get_identity_key(identity_id)
        except SQLAlchemyError as e:
            raise Unavailable("Directory storage unavailable", cause=e)
        if not record:
            raise NotFound(f"No public key registered for {identity_id}")
        return bytes.fromhex(record.public_key), record.version
