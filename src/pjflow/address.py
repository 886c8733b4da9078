"""Bitcoin address ⇄ scriptPubKey conversion on python-bitcointx."""

from __future__ import annotations

from typing import Optional

from bitcointx import ChainParams
from bitcointx.core.script import CScript
from bitcointx.wallet import CCoinAddress, CCoinAddressError

from .errors import InvalidInput


# network name -> bitcointx chain params; testnet and signet share encodings
NETWORKS = {
    "bitcoin": "bitcoin",
    "testnet": "bitcoin/testnet",
    "regtest": "bitcoin/regtest",
}


def _parse_address(address: str) -> tuple[str, CCoinAddress]:
    # bech32 may be written all upper-case, as in QR codes
    forms = [address, address.lower()] if address.isupper() else [address]
    for name, chain in NETWORKS.items():
        with ChainParams(chain):
            for form in forms:
                try:
                    return name, CCoinAddress(form)
                except (CCoinAddressError, ValueError):
                    continue
    raise InvalidInput(f"Invalid address {address!r}")


def address_to_script(address: str) -> bytes:
    """Return the scriptPubKey an address pays to. Raises InvalidInput."""
    if not isinstance(address, str):
        raise InvalidInput(f"Address must be a string, got {type(address).__name__}")
    _, parsed = _parse_address(address.strip())
    return bytes(parsed.to_scriptPubKey())


def address_network(address: str) -> str:
    return _parse_address(address.strip())[0]


def script_to_address(script: bytes, network: str = "bitcoin") -> Optional[str]:
    """Render a standard script as an address; None for non-standard scripts."""
    chain = NETWORKS.get(network)
    if chain is None:
        raise InvalidInput(f"Unknown network: {network}")
    with ChainParams(chain):
        try:
            return str(CCoinAddress.from_scriptPubKey(CScript(script)))
        except (CCoinAddressError, ValueError):
            return None
