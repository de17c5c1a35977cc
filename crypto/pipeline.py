"""
Encryption pipeline: plaintext <-> signed ciphertext envelope.

encrypt():
    1. Fresh ephemeral X25519 keypair
    2. DH(ephemeral, recipient agreement key) -> HKDF -> one-time AES key
    3. AES-256-GCM over the plaintext, with the envelope header as AAD
    4. Ed25519 signature by the sender over (header, ciphertext)

decrypt_and_verify() checks the signature before any plaintext is produced,
then decrypts. Either failure raises VerificationFailed; the caller never
sees plaintext from a forged or altered envelope.

Private keys are only ever parsed into local variables for the duration of
one call.
"""

import struct
from datetime import datetime
from typing import Optional, Tuple

from common.errors import KeyInvalid, VerificationFailed
from common.models import utcnow
from .envelope import MessageEnvelope, build_header
from .keystore import load_private_key, load_public_key
from .primitives import (
    KEY_SIZE,
    generate_dh_keypair,
    dh_exchange,
    derive_message_key,
    encrypt_message,
    decrypt_message,
    sign,
    verify_signature,
    serialize_public_key,
    serialize_signing_public_key,
    deserialize_public_key,
)

KDF_INFO = b"e2e-envelope/v1"


def _signed_data(header: bytes, ciphertext: bytes) -> bytes:
    return struct.pack(">I", len(header)) + header + ciphertext


def _kdf_info(sender_signing_public: bytes) -> bytes:
    return KDF_INFO + sender_signing_public


def encrypt(plaintext: bytes, sender_private_key: bytes, recipient_public_key: bytes,
            header: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Encrypt and sign a message for one recipient.

    Args:
        plaintext: Message bytes
        sender_private_key: Sender's 64-byte identity private key
        recipient_public_key: Recipient's 64-byte identity public key
        header: Canonical envelope metadata to authenticate

    Returns:
        Tuple of (ciphertext, signature)

    Raises:
        KeyInvalid: If either key is malformed
    """
    signing_private, _ = load_private_key(sender_private_key)
    _, recipient_dh_public = load_public_key(recipient_public_key)

    ephemeral_private, ephemeral_public = generate_dh_keypair()
    ephemeral_bytes = serialize_public_key(ephemeral_public)
    recipient_dh_bytes = serialize_public_key(recipient_dh_public)

    shared = dh_exchange(ephemeral_private, recipient_dh_public)
    message_key = derive_message_key(
        shared,
        salt=ephemeral_bytes + recipient_dh_bytes,
        info=_kdf_info(serialize_signing_public_key(signing_private.public_key())),
    )
    ciphertext = ephemeral_bytes + encrypt_message(message_key, plaintext, header)
    signature = sign(signing_private, _signed_data(header, ciphertext))
    return ciphertext, signature


def decrypt_and_verify(ciphertext: bytes, signature: bytes, sender_public_key: bytes,
                       recipient_private_key: bytes, header: bytes = b"") -> bytes:
    """
    Verify the sender's signature, then decrypt.

    Args:
        ciphertext: Output of encrypt()
        signature: Output of encrypt()
        sender_public_key: Claimed sender's 64-byte identity public key
        recipient_private_key: Our 64-byte identity private key
        header: Canonical envelope metadata, as passed to encrypt()

    Returns:
        Plaintext bytes

    Raises:
        KeyInvalid: If either key is malformed
        VerificationFailed: If the signature or the ciphertext does not authenticate
    """
    sender_signing_public, _ = load_public_key(sender_public_key)
    _, recipient_dh_private = load_private_key(recipient_private_key)

    verify_signature(sender_signing_public, signature, _signed_data(header, ciphertext))

    if len(ciphertext) < KEY_SIZE:
        raise VerificationFailed("Ciphertext too short")
    ephemeral_bytes = ciphertext[:KEY_SIZE]
    try:
        ephemeral_public = deserialize_public_key(ephemeral_bytes)
        shared = dh_exchange(recipient_dh_private, ephemeral_public)
    except KeyInvalid as e:
        raise VerificationFailed("Invalid ephemeral key", cause=e)

    message_key = derive_message_key(
        shared,
        salt=ephemeral_bytes + serialize_public_key(recipient_dh_private.public_key()),
        info=_kdf_info(serialize_signing_public_key(sender_signing_public)),
    )
    return decrypt_message(message_key, ciphertext[KEY_SIZE:], header)


def seal(plaintext: bytes, sender_id: str, recipient_id: str, sender_private_key: bytes,
         recipient_public_key: bytes, channel_id: Optional[str] = None,
         created_at: Optional[datetime] = None) -> MessageEnvelope:
    """Encrypt plaintext into a complete envelope"""
    created_at = created_at or utcnow()
    header = build_header(sender_id, recipient_id, created_at, channel_id)
    ciphertext, signature = encrypt(plaintext, sender_private_key, recipient_public_key, header)
    return MessageEnvelope(
        sender_id=sender_id,
        recipient_id=recipient_id,
        ciphertext=ciphertext,
        signature=signature,
        created_at=created_at,
        channel_id=channel_id,
    )


def open_envelope(envelope: MessageEnvelope, sender_public_key: bytes,
                  recipient_private_key: bytes) -> bytes:
    """Verify and decrypt an envelope"""
    return decrypt_and_verify(
        envelope.ciphertext,
        envelope.signature,
        sender_public_key,
        recipient_private_key,
        envelope.header(),
    )
