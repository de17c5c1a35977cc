"""
Tests for the envelope pipeline and identity key handling.
"""

import dataclasses
from datetime import timedelta

import pytest

from common.errors import KeyInvalid, VerificationFailed
from crypto import IdentityKeyPair, KeyStore, MessageEnvelope, open_envelope, seal
from crypto.keystore import public_key_from_hex
from crypto.primitives import (
    decrypt_message,
    derive_message_key,
    dh_exchange,
    encrypt_message,
    generate_dh_keypair,
)


@pytest.fixture()
def alice():
    return IdentityKeyPair.generate("alice")


@pytest.fixture()
def bob():
    return IdentityKeyPair.generate("bob")


def seal_for_bob(alice, bob, plaintext=b"hi bob", **kwargs):
    return seal(plaintext, "alice", "bob", alice.private_key, bob.public_key, **kwargs)


def test_dh_exchange():
    """Both sides of an X25519 exchange agree"""
    alice_private, alice_public = generate_dh_keypair()
    bob_private, bob_public = generate_dh_keypair()

    alice_shared = dh_exchange(alice_private, bob_public)
    assert alice_shared == dh_exchange(bob_private, alice_public)
    assert len(alice_shared) == 32


def test_aead_rejects_wrong_key_and_associated_data():
    key = derive_message_key(b"s" * 32, salt=b"salt", info=b"info")
    ciphertext = encrypt_message(key, b"Hello, World!", b"header")

    assert decrypt_message(key, ciphertext, b"header") == b"Hello, World!"
    with pytest.raises(VerificationFailed):
        decrypt_message(b"1" * 32, ciphertext, b"header")
    with pytest.raises(VerificationFailed):
        decrypt_message(key, ciphertext, b"other header")


def test_envelope_round_trip(alice, bob):
    envelope = seal_for_bob(alice, bob)

    assert envelope.sender_id == "alice"
    assert envelope.recipient_id == "bob"
    assert b"hi bob" not in envelope.ciphertext
    assert open_envelope(envelope, alice.public_key, bob.private_key) == b"hi bob"


def test_each_envelope_uses_fresh_key_material(alice, bob):
    first = seal_for_bob(alice, bob)
    second = seal_for_bob(alice, bob)
    assert first.ciphertext != second.ciphertext


def test_wire_round_trip(alice, bob):
    envelope = seal_for_bob(alice, bob, channel_id="team")
    restored = MessageEnvelope.from_dict(envelope.to_dict())

    assert restored == envelope
    assert open_envelope(restored, alice.public_key, bob.private_key) == b"hi bob"


def test_tampered_ciphertext_is_rejected(alice, bob):
    envelope = seal_for_bob(alice, bob)
    flipped = bytearray(envelope.ciphertext)
    flipped[-1] ^= 0x01

    with pytest.raises(VerificationFailed):
        open_envelope(dataclasses.replace(envelope, ciphertext=bytes(flipped)), alice.public_key, bob.private_key)


@pytest.mark.parametrize("change", [
    {"sender_id": "mallory"},
    {"recipient_id": "carol"},
    {"channel_id": "other-channel"},
])
def test_tampered_header_is_rejected(alice, bob, change):
    envelope = seal_for_bob(alice, bob)
    with pytest.raises(VerificationFailed):
        open_envelope(dataclasses.replace(envelope, **change), alice.public_key, bob.private_key)


def test_tampered_timestamp_is_rejected(alice, bob):
    envelope = seal_for_bob(alice, bob)
    replayed = dataclasses.replace(envelope, created_at=envelope.created_at + timedelta(microseconds=1))
    with pytest.raises(VerificationFailed):
        open_envelope(replayed, alice.public_key, bob.private_key)


def test_impersonation_is_rejected(alice, bob):
    """Eve signs with her own key but claims to be alice"""
    eve = IdentityKeyPair.generate("eve")
    forged = seal(b"send me your password", "alice", "bob", eve.private_key, bob.public_key)

    with pytest.raises(VerificationFailed):
        open_envelope(forged, alice.public_key, bob.private_key)


def test_wrong_recipient_key_is_rejected(alice, bob):
    carol = IdentityKeyPair.generate("carol")
    envelope = seal_for_bob(alice, bob)
    with pytest.raises(VerificationFailed):
        open_envelope(envelope, alice.public_key, carol.private_key)


def test_malformed_keys_raise_key_invalid(alice, bob):
    with pytest.raises(KeyInvalid):
        seal_for_bob(alice, IdentityKeyPair("bob", b"\x00" * 10, b""))
    with pytest.raises(KeyInvalid):
        seal(b"x", "alice", "bob", b"short", bob.public_key)
    with pytest.raises(KeyInvalid):
        public_key_from_hex("not hex")
    with pytest.raises(KeyInvalid):
        public_key_from_hex("ab" * 63)


@pytest.mark.parametrize("frame", [
    {},
    {"sender_id": "alice", "recipient_id": "bob", "created_at": "yesterday", "ciphertext": "", "signature": ""},
    {"v": "env.v0", "sender_id": "alice", "recipient_id": "bob", "created_at": "2026-01-01T00:00:00+00:00",
     "ciphertext": "", "signature": ""},
    {"sender_id": "alice", "recipient_id": "bob", "created_at": "2026-01-01T00:00:00+00:00",
     "ciphertext": "zz", "signature": ""},
])
def test_malformed_envelope_dicts(frame):
    with pytest.raises(VerificationFailed):
        MessageEnvelope.from_dict(frame)


def test_key_pair_rebuilt_from_private_half(alice):
    rebuilt = IdentityKeyPair.from_private_key("alice", alice.private_key)
    assert rebuilt.public_key == alice.public_key
    assert rebuilt.fingerprint == alice.fingerprint
    assert "private_key" not in repr(rebuilt)


class DictStorage:
    def __init__(self):
        self.slots = {}

    def save_keys(self, key_type, key_data):
        self.slots[key_type] = dict(key_data)

    def load_keys(self, key_type):
        return self.slots.get(key_type)

    def delete_keys(self, key_type):
        self.slots.pop(key_type, None)


def test_keystore_lifecycle():
    storage = DictStorage()
    store = KeyStore(storage)

    key_pair, created = store.get_or_create("alice")
    assert created
    assert store.get_or_create("alice") == (key_pair, False)

    # A new process finds the same key in storage
    assert KeyStore(storage).get("alice").public_key == key_pair.public_key

    rotated = IdentityKeyPair.generate("alice")
    store.put(rotated)
    assert store.get("alice") == rotated
    assert KeyStore(storage).get("alice").public_key == rotated.public_key

    store.destroy("alice")
    assert store.get("alice") is None
    assert "alice" not in store
    assert storage.slots == {}
