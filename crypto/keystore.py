"""
Identity key material and the client-side key store.

An identity key pair combines an Ed25519 signing key with an X25519
agreement key. The public half is what the directory publishes; the private
half never leaves the owning client.

Layout:
    public key  = ed25519_public (32) || x25519_public (32)
    private key = ed25519_seed (32)   || x25519_private (32)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from common.errors import KeyInvalid
from .primitives import (
    KEY_SIZE,
    generate_dh_keypair,
    generate_signing_keypair,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    serialize_signing_public_key,
    deserialize_signing_public_key,
    serialize_signing_private_key,
    deserialize_signing_private_key,
    fingerprint,
)

logger = logging.getLogger(__name__)

PUBLIC_KEY_SIZE = 2 * KEY_SIZE
PRIVATE_KEY_SIZE = 2 * KEY_SIZE


def _require_bytes(material, expected: int, what: str) -> bytes:
    if not isinstance(material, (bytes, bytearray)):
        raise KeyInvalid(f"{what} must be bytes")
    if len(material) != expected:
        raise KeyInvalid(f"{what} must be {expected} bytes, got {len(material)}")
    return bytes(material)


def load_public_key(public_key: bytes) -> Tuple[Ed25519PublicKey, X25519PublicKey]:
    """
    Parse a 64-byte identity public key.

    Returns:
        Tuple of (signing_public, agreement_public)

    Raises:
        KeyInvalid: If the material is malformed
    """
    raw = _require_bytes(public_key, PUBLIC_KEY_SIZE, "Public key")
    return deserialize_signing_public_key(raw[:KEY_SIZE]), deserialize_public_key(raw[KEY_SIZE:])


def load_private_key(private_key: bytes) -> Tuple[Ed25519PrivateKey, X25519PrivateKey]:
    """
    Parse a 64-byte identity private key.

    Returns:
        Tuple of (signing_private, agreement_private)

    Raises:
        KeyInvalid: If the material is malformed
    """
    raw = _require_bytes(private_key, PRIVATE_KEY_SIZE, "Private key")
    return deserialize_signing_private_key(raw[:KEY_SIZE]), deserialize_private_key(raw[KEY_SIZE:])


def public_key_from_hex(value: str) -> bytes:
    """Decode and validate a hex-encoded identity public key"""
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError) as e:
        raise KeyInvalid("Public key is not valid hex", cause=e)
    load_public_key(raw)
    return raw


@dataclass
class IdentityKeyPair:
    """
    Key pair bound to one identity.

    Attributes:
        identity_id: Stable identity the keys belong to
        public_key: 64-byte public half (safe to publish)
        private_key: 64-byte private half (never transmitted)
    """
    identity_id: str
    public_key: bytes
    private_key: bytes = field(repr=False)

    @classmethod
    def generate(cls, identity_id: str) -> 'IdentityKeyPair':
        """Generate a fresh key pair for an identity"""
        signing_private, signing_public = generate_signing_keypair()
        dh_private, dh_public = generate_dh_keypair()
        return cls(
            identity_id=identity_id,
            public_key=serialize_signing_public_key(signing_public) + serialize_public_key(dh_public),
            private_key=serialize_signing_private_key(signing_private) + serialize_private_key(dh_private),
        )

    @classmethod
    def from_private_key(cls, identity_id: str, private_key: bytes) -> 'IdentityKeyPair':
        """Rebuild a key pair (public half included) from its private half"""
        signing_private, dh_private = load_private_key(private_key)
        public_key = (
            serialize_signing_public_key(signing_private.public_key())
            + serialize_public_key(dh_private.public_key())
        )
        return cls(identity_id=identity_id, public_key=public_key, private_key=bytes(private_key))

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)


class KeyStore:
    """
    Holds the private key of each local identity.

    Exactly one key pair is active per identity; rotate() replaces it and the
    caller is responsible for republishing the public half.

    An optional storage backend (see client.storage.EncryptedStorage) keeps
    private keys across restarts; it must provide save_keys, load_keys and
    delete_keys.
    """

    def __init__(self, storage=None):
        self._keys: Dict[str, IdentityKeyPair] = {}
        self.storage = storage

    @staticmethod
    def _storage_key(identity_id: str) -> str:
        return f"identity:{identity_id}"

    def _persist(self, key_pair: IdentityKeyPair) -> None:
        if self.storage is not None:
            self.storage.save_keys(self._storage_key(key_pair.identity_id), {
                "private": key_pair.private_key.hex(),
            })

    def _load(self, identity_id: str) -> Optional[IdentityKeyPair]:
        if self.storage is None:
            return None
        data = self.storage.load_keys(self._storage_key(identity_id))
        if not data or "private" not in data:
            return None
        try:
            return IdentityKeyPair.from_private_key(identity_id, bytes.fromhex(data["private"]))
        except (KeyInvalid, ValueError):
            logger.warning("Stored identity key for %s is unreadable, ignoring it", identity_id)
            return None

    def get(self, identity_id: str) -> Optional[IdentityKeyPair]:
        key_pair = self._keys.get(identity_id)
        if key_pair is None:
            key_pair = self._load(identity_id)
            if key_pair is not None:
                self._keys[identity_id] = key_pair
        return key_pair

    def put(self, key_pair: IdentityKeyPair) -> None:
        load_private_key(key_pair.private_key)
        self._keys[key_pair.identity_id] = key_pair
        self._persist(key_pair)

    def get_or_create(self, identity_id: str) -> Tuple[IdentityKeyPair, bool]:
        """
        Return the active key pair, generating one on first use.

        Returns:
            Tuple of (key_pair, created)
        """
        key_pair = self.get(identity_id)
        if key_pair:
            return key_pair, False
        key_pair = IdentityKeyPair.generate(identity_id)
        self._keys[identity_id] = key_pair
        self._persist(key_pair)
        logger.info("Generated identity key for %s (fingerprint %s)", identity_id, key_pair.fingerprint)
        return key_pair, True

    def destroy(self, identity_id: str) -> None:
        """Discard an identity's private key"""
        removed = self._keys.pop(identity_id, None) is not None
        if self.storage is not None:
            self.storage.delete_keys(self._storage_key(identity_id))
            removed = True
        if removed:
            logger.info("Discarded identity key for %s", identity_id)

    def __contains__(self, identity_id: str) -> bool:
        return identity_id in self._keys
