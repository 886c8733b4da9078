"""
Oblivious HTTP (RFC 9458) client and gateway encapsulation.

A client encapsulates one Binary HTTP request for the gateway's public
key and receives an `OhttpContext`. That context decapsulates exactly one
response: a second `consume_response` call on the same context, even a
concurrent one, raises `ContextConsumedError`.
"""

from __future__ import annotations

import io
import logging
import os
import struct
import threading
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from . import bhttp, hpke
from .errors import ContextConsumedError, InvalidInput, TransportFailure


logger = logging.getLogger(__name__)

REQUEST_CONTENT_TYPE = "message/ohttp-req"
RESPONSE_CONTENT_TYPE = "message/ohttp-res"
KEYS_CONTENT_TYPE = "application/ohttp-keys"

_REQUEST_LABEL = b"message/bhttp request"
_RESPONSE_LABEL = b"message/bhttp response"
_RESPONSE_NONCE_LEN = max(hpke.N_N, hpke.N_K)


@dataclass(frozen=True, eq=False)
class OhttpKeys:
    """Gateway key configuration: key id and secp256k1 public key."""

    key_id: int
    public_key: ec.EllipticCurvePublicKey

    def _header(self) -> bytes:
        return struct.pack(">BHHH", self.key_id, hpke.KEM_ID, hpke.KDF_ID, hpke.AEAD_ID)

    def encode(self) -> bytes:
        """`application/ohttp-keys` form: one length-prefixed key config."""
        config = (
            struct.pack(">BH", self.key_id, hpke.KEM_ID)
            + hpke.serialize_public_key(self.public_key)
            + struct.pack(">HHH", 4, hpke.KDF_ID, hpke.AEAD_ID)
        )
        return struct.pack(">H", len(config)) + config

    @classmethod
    def decode(cls, data: bytes) -> "OhttpKeys":
        """Parse `application/ohttp-keys`, returning the first supported config."""
        f = io.BytesIO(data)
        try:
            while True:
                prefix = f.read(2)
                if not prefix:
                    break
                if len(prefix) != 2:
                    raise ValueError("Truncated key config length")
                config = f.read(struct.unpack(">H", prefix)[0])
                keys = cls._decode_config(config)
                if keys is not None:
                    return keys
        except (ValueError, struct.error) as e:
            raise InvalidInput(f"Invalid OHTTP keys: {e}") from e
        raise InvalidInput("No supported OHTTP key configuration")

    @classmethod
    def _decode_config(cls, config: bytes):
        key_id, kem_id = struct.unpack(">BH", config[:3])
        if kem_id != hpke.KEM_ID:
            return None
        pk_end = 3 + hpke.N_PK
        public_key = hpke.deserialize_public_key(config[3:pk_end])
        (sym_len,) = struct.unpack(">H", config[pk_end:pk_end + 2])
        sym = config[pk_end + 2:pk_end + 2 + sym_len]
        if len(sym) != sym_len or sym_len % 4:
            raise ValueError("Malformed symmetric algorithm list")
        for i in range(0, sym_len, 4):
            kdf_id, aead_id = struct.unpack(">HH", sym[i:i + 4])
            if kdf_id == hpke.KDF_ID and aead_id == hpke.AEAD_ID:
                return cls(key_id, public_key)
        return None

    def to_compact(self) -> bytes:
        """Key id followed by the compressed public key (34 bytes)."""
        return bytes([self.key_id]) + hpke.serialize_public_key(self.public_key, compressed=True)

    @classmethod
    def from_compact(cls, data: bytes) -> "OhttpKeys":
        if len(data) != 34:
            raise InvalidInput(f"Compact OHTTP keys must be 34 bytes, got {len(data)}")
        try:
            return cls(data[0], hpke.deserialize_public_key(data[1:]))
        except ValueError as e:
            raise InvalidInput(f"Invalid OHTTP public key: {e}") from e

    def __eq__(self, other):
        if not isinstance(other, OhttpKeys):
            return NotImplemented
        return self.to_compact() == other.to_compact()

    def __hash__(self):
        return hash(self.to_compact())


class OhttpContext:
    """Client-side state needed to open the paired response. Single use."""

    def __init__(self, enc: bytes, hpke_context: hpke.Context):
        self._enc = enc
        self._hpke_context = hpke_context
        self._lock = threading.Lock()
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def _take(self) -> hpke.Context:
        with self._lock:
            if self._consumed:
                raise ContextConsumedError("OHTTP context has already been used to process a response")
            self._consumed = True
            return self._hpke_context


def issue_request(keys: OhttpKeys, payload: bytes) -> tuple[bytes, OhttpContext]:
    """Encapsulate a Binary HTTP request for the gateway."""
    header = keys._header()
    enc, ctx = hpke.setup_base_sender(keys.public_key, _REQUEST_LABEL + b"\x00" + header)
    ciphertext = ctx.seal(b"", payload)
    logger.debug("Encapsulated OHTTP request (%d byte payload)", len(payload))
    return header + enc + ciphertext, OhttpContext(enc, ctx)


def _response_aead(secret: bytes, enc: bytes, response_nonce: bytes) -> tuple[ChaCha20Poly1305, bytes]:
    prk = hpke.extract(enc + response_nonce, secret)
    key = hpke.expand(prk, b"key", hpke.N_K)
    nonce = hpke.expand(prk, b"nonce", hpke.N_N)
    return ChaCha20Poly1305(key), nonce


def consume_response(data: bytes, context: OhttpContext) -> bytes:
    """Decapsulate the response paired with `context`; consumes the context."""
    hpke_context = context._take()
    if len(data) <= _RESPONSE_NONCE_LEN:
        raise TransportFailure("OHTTP response too short")
    response_nonce, ciphertext = data[:_RESPONSE_NONCE_LEN], data[_RESPONSE_NONCE_LEN:]
    secret = hpke_context.export(_RESPONSE_LABEL, hpke.N_K)
    aead, nonce = _response_aead(secret, context._enc, response_nonce)
    try:
        return aead.decrypt(nonce, ciphertext, b"")
    except InvalidTag as e:
        raise TransportFailure("OHTTP response failed to decrypt") from e


def encapsulate(keys: OhttpKeys, method: str, url: str, body: bytes = b"",
                headers=None) -> tuple[bytes, OhttpContext]:
    """Wrap an HTTP request to `url` as Binary HTTP and encapsulate it."""
    request = bhttp.Request.from_url(method, url, headers, body)
    return issue_request(keys, request.encode())


def decapsulate(data: bytes, context: OhttpContext) -> bhttp.Response:
    payload = consume_response(data, context)
    try:
        return bhttp.Response.decode(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise TransportFailure(f"Malformed Binary HTTP response: {e}") from e


# ── gateway side ──────────────────────────────────────────────────

class GatewayResponseContext:
    def __init__(self, enc: bytes, hpke_context: hpke.Context):
        self.enc = enc
        self._hpke_context = hpke_context

    def encapsulate_response(self, payload: bytes) -> bytes:
        response_nonce = os.urandom(_RESPONSE_NONCE_LEN)
        secret = self._hpke_context.export(_RESPONSE_LABEL, hpke.N_K)
        aead, nonce = _response_aead(secret, self.enc, response_nonce)
        return response_nonce + aead.encrypt(nonce, payload, b"")


class OhttpGateway:
    """Terminates OHTTP for a directory holding the private key."""

    def __init__(self, key_id: int = 1, keypair: hpke.KeyPair | None = None):
        self.key_id = key_id
        self.keypair = keypair or hpke.KeyPair.generate()

    @property
    def keys(self) -> OhttpKeys:
        return OhttpKeys(self.key_id, self.keypair.public_key)

    def decapsulate_request(self, data: bytes) -> tuple[bytes, GatewayResponseContext]:
        header_len = struct.calcsize(">BHHH")
        header = data[:header_len]
        if len(header) != header_len or header != self.keys._header():
            raise TransportFailure("Unknown OHTTP key configuration", status_code=400)
        enc = data[header_len:header_len + hpke.N_ENC]
        ciphertext = data[header_len + hpke.N_ENC:]
        try:
            ctx = hpke.setup_base_receiver(enc, self.keypair, _REQUEST_LABEL + b"\x00" + header)
            payload = ctx.open(b"", ciphertext)
        except (InvalidTag, ValueError) as e:
            raise TransportFailure("OHTTP request failed to decrypt", status_code=400) from e
        return payload, GatewayResponseContext(enc, ctx)
