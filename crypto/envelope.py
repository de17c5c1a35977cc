"""
Message envelope: the signed ciphertext unit handed to the transport.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from common.errors import VerificationFailed


ENVELOPE_VERSION = "env.v1"


def _canonical_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class MessageEnvelope:
    """
    Signed, encrypted message addressed to one recipient.

    Attributes:
        sender_id: Identity that signed the envelope
        recipient_id: Identity the ciphertext is encrypted for
        ciphertext: ephemeral public key + nonce + AES-GCM ciphertext
        signature: Ed25519 signature over header() and ciphertext
        created_at: Creation time (UTC)
        channel_id: Group channel this pairwise copy belongs to, if any
    """
    sender_id: str
    recipient_id: str
    ciphertext: bytes = field(repr=False)
    signature: bytes = field(repr=False)
    created_at: datetime
    channel_id: Optional[str] = None

    def header(self) -> bytes:
        """Canonical encoding of every field except ciphertext and signature"""
        return build_header(self.sender_id, self.recipient_id, self.created_at, self.channel_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'v': ENVELOPE_VERSION,
            'sender_id': self.sender_id,
            'recipient_id': self.recipient_id,
            'channel_id': self.channel_id,
            'created_at': _canonical_time(self.created_at),
            'ciphertext': self.ciphertext.hex(),
            'signature': self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MessageEnvelope':
        """
        Create from dictionary.

        Raises:
            VerificationFailed: If the envelope is malformed
        """
        try:
            if data.get('v', ENVELOPE_VERSION) != ENVELOPE_VERSION:
                raise VerificationFailed(f"Unsupported envelope version {data.get('v')!r}")
            created_at = datetime.fromisoformat(data['created_at'])
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            channel_id = data.get('channel_id')
            return cls(
                sender_id=str(data['sender_id']),
                recipient_id=str(data['recipient_id']),
                ciphertext=bytes.fromhex(data['ciphertext']),
                signature=bytes.fromhex(data['signature']),
                created_at=created_at,
                channel_id=str(channel_id) if channel_id is not None else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise VerificationFailed("Malformed envelope", cause=e)


def build_header(sender_id: str, recipient_id: str, created_at: datetime,
                 channel_id: Optional[str] = None) -> bytes:
    """
    Canonical header bytes bound into the signature and the AEAD.

    Compact, key-sorted JSON so both ends produce identical bytes.
    """
    return json.dumps(
        {
            'v': ENVELOPE_VERSION,
            'sender_id': sender_id,
            'recipient_id': recipient_id,
            'channel_id': channel_id,
            'created_at': _canonical_time(created_at),
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode()
