"""
Cryptographic module for end-to-end encrypted chat.

Implements the envelope pipeline with:
- Ed25519 identity signatures over every envelope
- X25519 ephemeral key agreement + HKDF per message
- AES-256-GCM authenticated encryption
"""

from .keystore import IdentityKeyPair, KeyStore, load_public_key, public_key_from_hex
from .envelope import MessageEnvelope, build_header
from .pipeline import encrypt, decrypt_and_verify, seal, open_envelope
from .primitives import fingerprint

__all__ = [
    'IdentityKeyPair',
    'KeyStore',
    'load_public_key',
    'public_key_from_hex',
    'MessageEnvelope',
    'build_header',
    'encrypt',
    'decrypt_and_verify',
    'seal',
    'open_envelope',
    'fingerprint'
]
