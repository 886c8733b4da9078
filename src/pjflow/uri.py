"""
BIP21 payment URIs carrying Payjoin parameters.

``bitcoin:<address>?amount=<btc>&label=..&message=..&pj=<endpoint>&pjos=0``

The endpoint is the receiver's mailbox URL; its fragment carries the
session parameters ``EX1..`` (expiry), ``OH1..`` (OHTTP keys) and
``RK1..`` (receiver mailbox key) as checksum-less bech32 strings.
"""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import parse_qsl, quote

import httpx
from cryptography.hazmat.primitives.asymmetric import ec

from . import hpke
from .address import address_to_script
from .amount import btc_to_sat, check_sat, format_btc
from .encoding import decode_nochecksum, encode_nochecksum
from .errors import InvalidInput
from .ohttp import OhttpKeys


BIP21_SCHEME = "bitcoin"


# ── endpoint fragment ─────────────────────────────────────────────

def build_endpoint(
    directory: str,
    mailbox_id: str,
    expiry: int,
    ohttp_keys: OhttpKeys,
    receiver_key: ec.EllipticCurvePublicKey,
) -> str:
    params = [
        encode_nochecksum("EX", struct.pack("<I", expiry)),
        encode_nochecksum("OH", ohttp_keys.to_compact()),
        encode_nochecksum("RK", hpke.serialize_public_key(receiver_key, compressed=True)),
    ]
    return f"{directory.rstrip('/')}/{mailbox_id}#{'+'.join(sorted(params))}"


def _fragment_params(endpoint: str) -> dict[str, bytes]:
    _, _, fragment = endpoint.partition("#")
    params = {}
    for part in filter(None, fragment.split("+")):
        try:
            hrp, payload = decode_nochecksum(part)
        except ValueError as e:
            raise InvalidInput(f"Invalid endpoint fragment parameter {part!r}: {e}") from e
        if hrp in params:
            raise InvalidInput(f"Duplicate endpoint fragment parameter {hrp}")
        params[hrp] = payload
    return params


def endpoint_without_fragment(endpoint: str) -> str:
    return endpoint.partition("#")[0]


def _check_endpoint(endpoint: str) -> None:
    if not isinstance(endpoint, str):
        raise InvalidInput(f"Payjoin endpoint must be a string, got {type(endpoint).__name__}")
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as e:
        raise InvalidInput(f"Invalid Payjoin endpoint: {endpoint}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidInput(f"Invalid Payjoin endpoint: {endpoint}")


# ── builder ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class PayjoinUriBuilder:
    """Immutable BIP21 + Payjoin URI builder; each setter returns a new builder."""

    address: str
    endpoint: str
    amount_sat: Optional[int] = None
    message_text: Optional[str] = None
    label_text: Optional[str] = None
    output_substitution_disabled: bool = False

    def __post_init__(self):
        address_to_script(self.address)
        _check_endpoint(self.endpoint)

    def amount(self, amount_sat: int) -> "PayjoinUriBuilder":
        return replace(self, amount_sat=check_sat(amount_sat))

    def message(self, message: str) -> "PayjoinUriBuilder":
        return replace(self, message_text=message)

    def label(self, label: str) -> "PayjoinUriBuilder":
        return replace(self, label_text=label)

    def disable_output_substitution(self, disable: bool = True) -> "PayjoinUriBuilder":
        return replace(self, output_substitution_disabled=disable)

    def build(self) -> str:
        query = []
        if self.amount_sat is not None:
            query.append(f"amount={format_btc(self.amount_sat)}")
        if self.label_text is not None:
            query.append(f"label={quote(self.label_text, safe='')}")
        if self.message_text is not None:
            query.append(f"message={quote(self.message_text, safe='')}")
        query.append(f"pj={quote(self.endpoint, safe=':/')}")
        if self.output_substitution_disabled:
            query.append("pjos=0")
        return f"{BIP21_SCHEME}:{self.address}?{'&'.join(query)}"


# ── parser ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PayjoinUri:
    address: str
    endpoint: str
    amount_sat: Optional[int] = None
    label: Optional[str] = None
    message: Optional[str] = None
    output_substitution_disabled: bool = False

    def __post_init__(self):
        address_to_script(self.address)
        _check_endpoint(self.endpoint)
        if self.amount_sat is not None:
            check_sat(self.amount_sat)
        if not isinstance(self.output_substitution_disabled, bool):
            raise InvalidInput("output_substitution_disabled must be a bool")

    @classmethod
    def from_dict(cls, data: dict) -> "PayjoinUri":
        """Rebuild a persisted URI; the same checks as `parse` apply."""
        if not isinstance(data, dict):
            raise InvalidInput("Persisted URI must be a JSON object")
        try:
            return cls(
                address=data["address"],
                endpoint=data["endpoint"],
                amount_sat=data.get("amount_sat"),
                label=data.get("label"),
                message=data.get("message"),
                output_substitution_disabled=data.get("output_substitution_disabled", False),
            )
        except KeyError as e:
            raise InvalidInput(f"Persisted URI lacks {e}") from e

    @classmethod
    def parse(cls, text: str) -> "PayjoinUri":
        """Parse a BIP21 URI; InvalidInput unless it is well formed and has ``pj``."""
        text = text.strip()
        scheme, sep, rest = text.partition(":")
        if not sep or scheme.lower() != BIP21_SCHEME:
            raise InvalidInput(f"Not a bitcoin URI: {text!r}")
        address, _, query = rest.partition("?")
        address_to_script(address)

        fields: dict[str, str] = {}
        for key, value in parse_qsl(query, keep_blank_values=True):
            if key in fields:
                raise InvalidInput(f"Duplicate URI parameter {key}")
            fields[key] = value

        unknown_required = [k for k in fields if k.startswith("req-")]
        if unknown_required:
            raise InvalidInput(f"Unsupported required URI parameter {unknown_required[0]}")
        endpoint = fields.get("pj")
        if not endpoint:
            raise InvalidInput("URI does not support Payjoin")
        _check_endpoint(endpoint)
        pjos = fields.get("pjos", "1")
        if pjos not in ("0", "1"):
            raise InvalidInput(f"Invalid pjos value {pjos!r}")

        amount = btc_to_sat(fields["amount"]) if "amount" in fields else None
        return cls(
            address=address,
            endpoint=endpoint,
            amount_sat=amount,
            label=fields.get("label"),
            message=fields.get("message"),
            output_substitution_disabled=pjos == "0",
        )

    @property
    def script_pubkey(self) -> bytes:
        return address_to_script(self.address)

    @property
    def mailbox_url(self) -> str:
        return endpoint_without_fragment(self.endpoint)

    def exp(self) -> Optional[int]:
        """Expiry as a unix timestamp, if the endpoint carries one."""
        payload = _fragment_params(self.endpoint).get("EX")
        if payload is None:
            return None
        if len(payload) != 4:
            raise InvalidInput("Invalid EX1 parameter")
        return struct.unpack("<I", payload)[0]

    def is_expired(self, now: Optional[float] = None) -> bool:
        expiry = self.exp()
        return expiry is not None and (now if now is not None else time.time()) >= expiry

    def ohttp_keys(self) -> Optional[OhttpKeys]:
        payload = _fragment_params(self.endpoint).get("OH")
        return OhttpKeys.from_compact(payload) if payload is not None else None

    def receiver_key(self) -> Optional[ec.EllipticCurvePublicKey]:
        payload = _fragment_params(self.endpoint).get("RK")
        if payload is None:
            return None
        try:
            return hpke.deserialize_public_key(payload)
        except ValueError as e:
            raise InvalidInput("Invalid RK1 parameter") from e

    def to_dict(self) -> dict:
        d = {
            "address": self.address,
            "endpoint": self.endpoint,
            "amount_sat": self.amount_sat,
            "label": self.label,
            "message": self.message,
            "output_substitution_disabled": self.output_substitution_disabled,
            "exp": self.exp(),
        }
        return {k: v for k, v in d.items() if v is not None}
