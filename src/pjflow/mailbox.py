"""
End-to-end encrypted messages between the sender and the receiver mailboxes.

The directory only ever sees fixed-size HPKE ciphertexts addressed by a
short id derived from a mailbox public key.

Message A (sender -> receiver): reply public key (33 bytes) followed by
``psbt_base64 "\\n" query``. Message B (receiver -> sender): ``psbt_base64``.
Both plaintexts are zero-padded to `PADDED_MESSAGE_BYTES`.
"""

from __future__ import annotations

import hashlib

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec

from . import hpke
from .encoding import encode_data_part
from .errors import InvalidInput, PeerRejected


PADDED_MESSAGE_BYTES = 7168
_INFO_A = b"PjV2MsgA"
_INFO_B = b"PjV2MsgB"
_PUBKEY_LEN = 33


def short_id(public_key: ec.EllipticCurvePublicKey) -> str:
    """13-character mailbox id: first 8 bytes of sha256(compressed key), bech32 charset."""
    return encode_data_part(hashlib.sha256(hpke.serialize_public_key(public_key, compressed=True)).digest()[:8])


def _pad(plaintext: bytes) -> bytes:
    if len(plaintext) > PADDED_MESSAGE_BYTES:
        raise InvalidInput(
            f"Message of {len(plaintext)} bytes exceeds the {PADDED_MESSAGE_BYTES} byte limit"
        )
    return plaintext + b"\x00" * (PADDED_MESSAGE_BYTES - len(plaintext))


def _open(message: bytes, keypair: hpke.KeyPair, info: bytes, which: str) -> bytes:
    enc, ciphertext = message[:hpke.N_ENC], message[hpke.N_ENC:]
    try:
        return hpke.open_sealed(enc, keypair, info, b"", ciphertext)
    except (InvalidTag, ValueError) as e:
        raise PeerRejected(which, "message could not be decrypted") from e


def encrypt_message_a(body: bytes, reply_key: ec.EllipticCurvePublicKey,
                      receiver_key: ec.EllipticCurvePublicKey) -> bytes:
    plaintext = _pad(hpke.serialize_public_key(reply_key, compressed=True) + body)
    enc, ciphertext = hpke.seal(receiver_key, _INFO_A, b"", plaintext)
    return enc + ciphertext


def decrypt_message_a(message: bytes, receiver_keypair: hpke.KeyPair) -> tuple[bytes, ec.EllipticCurvePublicKey]:
    """Returns (body, reply public key)."""
    plaintext = _open(message, receiver_keypair, _INFO_A, "original message")
    try:
        reply_key = hpke.deserialize_public_key(plaintext[:_PUBKEY_LEN])
    except ValueError as e:
        raise PeerRejected("original message", "invalid reply key") from e
    return plaintext[_PUBKEY_LEN:].rstrip(b"\x00"), reply_key


def encrypt_message_b(body: bytes, reply_key: ec.EllipticCurvePublicKey) -> bytes:
    enc, ciphertext = hpke.seal(reply_key, _INFO_B, b"", _pad(body))
    return enc + ciphertext


def decrypt_message_b(message: bytes, reply_keypair: hpke.KeyPair) -> bytes:
    return _open(message, reply_keypair, _INFO_B, "proposal message").rstrip(b"\x00")
