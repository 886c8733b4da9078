"""
Checksum-less bech32 strings used by Payjoin v2 session parameters.

``EX1..``, ``OH1..`` and ``RK1..`` in the endpoint fragment, and mailbox
short ids, are upper-case bech32 data characters with no checksum.
"""

from __future__ import annotations

from bech32 import CHARSET, convertbits


def encode_data_part(payload: bytes) -> str:
    """Upper-case bech32 data characters for `payload`, no hrp."""
    return "".join(CHARSET[d] for d in convertbits(payload, 8, 5)).upper()


def encode_nochecksum(hrp: str, payload: bytes) -> str:
    return f"{hrp}1{encode_data_part(payload)}".upper()


def decode_nochecksum(value: str) -> tuple[str, bytes]:
    """``HRP1DATA`` to (upper-case hrp, payload). Raises ValueError."""
    if value.lower() != value and value.upper() != value:
        raise ValueError("mixed case")
    lowered = value.lower()
    pos = lowered.rfind("1")
    if pos < 1:
        raise ValueError("missing hrp")
    try:
        data = [CHARSET.index(c) for c in lowered[pos + 1:]]
    except ValueError as e:
        raise ValueError("invalid data character") from e
    payload = convertbits(data, 5, 8, False)
    if payload is None:
        raise ValueError("invalid padding")
    return lowered[:pos].upper(), bytes(payload)
