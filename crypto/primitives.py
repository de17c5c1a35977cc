"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
envelope pipeline: Ed25519 signatures, X25519 key agreement, HKDF key
derivation and AES-256-GCM authenticated encryption.

Library exceptions never escape this module: malformed key material becomes
KeyInvalid and failed authentication becomes VerificationFailed.
"""

import os
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from common.errors import KeyInvalid, VerificationFailed


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SIGNATURE_SIZE = 64


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_signing_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for digital signatures.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        KeyInvalid: If the peer key is a low-order point
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        raise KeyInvalid("Key agreement failed", cause=e)


def derive_message_key(shared_secret: bytes, salt: bytes, info: bytes) -> bytes:
    """
    Derive a one-time message key from a DH output (HKDF-SHA256).

    Args:
        shared_secret: DH exchange output
        salt: Public per-message salt (ephemeral || recipient key)
        info: Context string

    Returns:
        32-byte AES key
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=info
    )
    return hkdf.derive(shared_secret)


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        VerificationFailed: If the ciphertext does not authenticate
    """
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise VerificationFailed("Ciphertext too short")

    nonce = ciphertext[:NONCE_SIZE]
    actual_ciphertext = ciphertext[NONCE_SIZE:]

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag as e:
        raise VerificationFailed("Decryption failed", cause=e)


def sign(private_key: Ed25519PrivateKey, data: bytes) -> bytes:
    """Sign data with an Ed25519 private key"""
    return private_key.sign(data)


def verify_signature(public_key: Ed25519PublicKey, signature: bytes, data: bytes) -> None:
    """
    Verify an Ed25519 signature.

    Raises:
        VerificationFailed: If the signature does not match
    """
    if len(signature) != SIGNATURE_SIZE:
        raise VerificationFailed("Malformed signature")
    try:
        public_key.verify(signature, data)
    except InvalidSignature as e:
        raise VerificationFailed("Signature mismatch", cause=e)


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    try:
        return X25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise KeyInvalid("Malformed X25519 public key", cause=e)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    try:
        return X25519PrivateKey.from_private_bytes(key_bytes)
    except ValueError as e:
        raise KeyInvalid("Malformed X25519 private key", cause=e)


def serialize_signing_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_signing_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    try:
        return Ed25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise KeyInvalid("Malformed Ed25519 public key", cause=e)


def serialize_signing_private_key(private_key: Ed25519PrivateKey) -> bytes:
    """Serialize Ed25519 private key to its 32-byte seed"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_signing_private_key(key_bytes: bytes) -> Ed25519PrivateKey:
    """Deserialize a 32-byte seed to an Ed25519 private key"""
    try:
        return Ed25519PrivateKey.from_private_bytes(key_bytes)
    except ValueError as e:
        raise KeyInvalid("Malformed Ed25519 private key", cause=e)


def fingerprint(public_key: bytes) -> str:
    """Short, loggable fingerprint of public key material"""
    return hashlib.sha256(public_key).hexdigest()[:16]
