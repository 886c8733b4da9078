"""
Hybrid Public Key Encryption (RFC 9180), base mode only.

Suite: DHKEM(secp256k1, HKDF-SHA256) / HKDF-SHA256 / ChaCha20-Poly1305.
Encapsulated keys are uncompressed SEC1 points (65 bytes).
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


KEM_ID = 0x0016
KDF_ID = 0x0001
AEAD_ID = 0x0003

N_SECRET = 32
N_ENC = 65
N_PK = 65
N_K = 32
N_N = 12
N_H = 32

MODE_BASE = 0x00

_KEM_SUITE_ID = b"KEM" + struct.pack(">H", KEM_ID)
_HPKE_SUITE_ID = b"HPKE" + struct.pack(">HHH", KEM_ID, KDF_ID, AEAD_ID)
_CURVE = ec.SECP256K1()


def extract(salt: bytes, ikm: bytes) -> bytes:
    return hmac.new(salt or b"\x00" * N_H, ikm, hashlib.sha256).digest()


def expand(prk: bytes, info: bytes, length: int) -> bytes:
    return HKDFExpand(algorithm=hashes.SHA256(), length=length, info=info).derive(prk)


def _labeled_extract(suite_id: bytes, salt: bytes, label: bytes, ikm: bytes) -> bytes:
    return extract(salt, b"HPKE-v1" + suite_id + label + ikm)


def _labeled_expand(suite_id: bytes, prk: bytes, label: bytes, info: bytes, length: int) -> bytes:
    labeled_info = struct.pack(">H", length) + b"HPKE-v1" + suite_id + label + info
    return expand(prk, labeled_info, length)


# ── keys ──────────────────────────────────────────────────────────

def serialize_public_key(key: ec.EllipticCurvePublicKey, compressed: bool = False) -> bytes:
    fmt = PublicFormat.CompressedPoint if compressed else PublicFormat.UncompressedPoint
    return key.public_bytes(Encoding.X962, fmt)


def deserialize_public_key(data: bytes) -> ec.EllipticCurvePublicKey:
    """Load a compressed or uncompressed secp256k1 point. Raises ValueError."""
    return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, data)


@dataclass(frozen=True)
class KeyPair:
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(ec.generate_private_key(_CURVE))

    @classmethod
    def from_secret_bytes(cls, secret: bytes) -> "KeyPair":
        if len(secret) != 32:
            raise ValueError("secp256k1 secret key must be 32 bytes")
        return cls(ec.derive_private_key(int.from_bytes(secret, "big"), _CURVE))

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def secret_bytes(self) -> bytes:
        return self.private_key.private_numbers().private_value.to_bytes(32, "big")

    def public_bytes(self, compressed: bool = True) -> bytes:
        return serialize_public_key(self.public_key, compressed)


# ── KEM ───────────────────────────────────────────────────────────

def _extract_and_expand(dh: bytes, kem_context: bytes) -> bytes:
    eae_prk = _labeled_extract(_KEM_SUITE_ID, b"", b"eae_prk", dh)
    return _labeled_expand(_KEM_SUITE_ID, eae_prk, b"shared_secret", kem_context, N_SECRET)


def encap(pk_r: ec.EllipticCurvePublicKey, ephemeral: KeyPair | None = None) -> tuple[bytes, bytes]:
    """Return (shared_secret, enc)."""
    ephemeral = ephemeral or KeyPair.generate()
    dh = ephemeral.private_key.exchange(ec.ECDH(), pk_r)
    enc = serialize_public_key(ephemeral.public_key)
    kem_context = enc + serialize_public_key(pk_r)
    return _extract_and_expand(dh, kem_context), enc


def decap(enc: bytes, sk_r: KeyPair) -> bytes:
    pk_e = deserialize_public_key(enc)
    dh = sk_r.private_key.exchange(ec.ECDH(), pk_e)
    kem_context = enc + serialize_public_key(sk_r.public_key)
    return _extract_and_expand(dh, kem_context)


# ── key schedule / context ────────────────────────────────────────

class Context:
    """Encryption context with an internal sequence number."""

    def __init__(self, key: bytes, base_nonce: bytes, exporter_secret: bytes):
        self._aead = ChaCha20Poly1305(key)
        self._base_nonce = base_nonce
        self._exporter_secret = exporter_secret
        self._seq = 0

    def _next_nonce(self) -> bytes:
        seq_bytes = self._seq.to_bytes(N_N, "big")
        self._seq += 1
        return bytes(a ^ b for a, b in zip(self._base_nonce, seq_bytes))

    def seal(self, aad: bytes, plaintext: bytes) -> bytes:
        return self._aead.encrypt(self._next_nonce(), plaintext, aad)

    def open(self, aad: bytes, ciphertext: bytes) -> bytes:
        """Raises cryptography.exceptions.InvalidTag on failure."""
        return self._aead.decrypt(self._next_nonce(), ciphertext, aad)

    def export(self, exporter_context: bytes, length: int) -> bytes:
        return _labeled_expand(_HPKE_SUITE_ID, self._exporter_secret, b"sec", exporter_context, length)


def _key_schedule(shared_secret: bytes, info: bytes) -> Context:
    psk_id_hash = _labeled_extract(_HPKE_SUITE_ID, b"", b"psk_id_hash", b"")
    info_hash = _labeled_extract(_HPKE_SUITE_ID, b"", b"info_hash", info)
    key_schedule_context = bytes([MODE_BASE]) + psk_id_hash + info_hash
    secret = _labeled_extract(_HPKE_SUITE_ID, shared_secret, b"secret", b"")
    key = _labeled_expand(_HPKE_SUITE_ID, secret, b"key", key_schedule_context, N_K)
    base_nonce = _labeled_expand(_HPKE_SUITE_ID, secret, b"base_nonce", key_schedule_context, N_N)
    exporter_secret = _labeled_expand(_HPKE_SUITE_ID, secret, b"exp", key_schedule_context, N_H)
    return Context(key, base_nonce, exporter_secret)


def setup_base_sender(pk_r: ec.EllipticCurvePublicKey, info: bytes) -> tuple[bytes, Context]:
    shared_secret, enc = encap(pk_r)
    return enc, _key_schedule(shared_secret, info)


def setup_base_receiver(enc: bytes, sk_r: KeyPair, info: bytes) -> Context:
    return _key_schedule(decap(enc, sk_r), info)


def seal(pk_r: ec.EllipticCurvePublicKey, info: bytes, aad: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
    """Single-shot seal; returns (enc, ciphertext)."""
    enc, ctx = setup_base_sender(pk_r, info)
    return enc, ctx.seal(aad, plaintext)


def open_sealed(enc: bytes, sk_r: KeyPair, info: bytes, aad: bytes, ciphertext: bytes) -> bytes:
    return setup_base_receiver(enc, sk_r, info).open(aad, ciphertext)
