"""Receiver-contributed inputs and replacement outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from bitcointx.core import CTransaction, CTxIn, CTxOut
from bitcointx.core.psbt import PSBT_Input
from bitcointx.core.script import CScript, CScriptWitness
from bitcointx.core.serialize import SerializationError

from .amount import btc_to_sat, check_sat
from .errors import InvalidInput, PayjoinError
from .psbt import InputType, input_type, make_outpoint, outpoint_str, utxo_for


logger = logging.getLogger(__name__)

# signing hints are the wallet's business once the input is in the proposal
_IGNORED_PSBT_FIELDS = ("partial_sigs", "bip32_derivation")


def _as_bytes(value: Any, name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)) and all(isinstance(b, int) for b in value):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise InvalidInput(f"{name} is not valid hex") from e
    raise InvalidInput(f"{name} must be bytes or hex, got {type(value).__name__}")


def _mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidInput(f"{name} must be a mapping, got {type(value).__name__}")
    return value


@dataclass
class InputPair:
    """A transaction input together with its PSBT metadata.

    Construction fails unless the previous output resolves: either a
    witness UTXO, or a non-witness transaction whose txid matches the
    outpoint and which has the referenced vout.
    """

    txin: CTxIn
    psbtin: PSBT_Input
    witness: tuple = field(default=())

    def __post_init__(self):
        self._utxo = utxo_for(self.txin, self.psbtin)
        check_sat(self._utxo.nValue)

    @property
    def outpoint(self):
        return self.txin.prevout

    @property
    def previous_output(self) -> str:
        """``txid:vout``"""
        return outpoint_str(self.txin.prevout)

    @property
    def utxo(self) -> CTxOut:
        return self._utxo

    @property
    def value(self) -> int:
        return self._utxo.nValue

    @property
    def script_pubkey(self) -> bytes:
        return bytes(self._utxo.scriptPubKey)

    @property
    def input_type(self) -> InputType:
        return input_type(self.txin, self.psbtin)

    def fresh_psbt_input(self) -> PSBT_Input:
        """Metadata for the proposal: UTXO and scripts, no final scripts."""
        psbtin = PSBT_Input()
        psbtin.utxo = self.psbtin.utxo
        psbtin.sighash_type = self.psbtin.sighash_type
        psbtin.redeem_script = self.psbtin.redeem_script
        psbtin.witness_script = self.psbtin.witness_script
        return psbtin

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InputPair":
        """Build from the host-friendly mapping.

        Keys: ``prevout`` (``txid``, ``vout``), optional ``script_sig``,
        ``witness``, ``sequence`` and ``psbt_data``. Byte fields accept
        bytes or hex. ``witness_utxo.amount`` is in BTC.
        """
        data = _mapping(data, "Input candidate")
        try:
            prevout = data["prevout"]
            outpoint = make_outpoint(prevout["txid"], prevout["vout"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Input candidate has no valid prevout: {e}") from e

        where = outpoint_str(outpoint)
        try:
            txin = CTxIn(
                outpoint,
                scriptSig=CScript(_as_bytes(data.get("script_sig") or b"", "script_sig")),
                nSequence=int(data.get("sequence", 0xFFFFFFFF)),
            )
            witness = tuple(_as_bytes(w, "witness") for w in data.get("witness") or [])
            psbt_data = _mapping(data.get("psbt_data") or {}, "psbt_data")
            psbtin = _psbt_input_from_dict(psbt_data, where)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidInput(f"Malformed input candidate {where}: {e}") from e
        return cls(txin, psbtin, witness)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "prevout": {"txid": self.previous_output.rpartition(":")[0], "vout": self.txin.prevout.n},
            "sequence": self.txin.nSequence,
        }
        if self.txin.scriptSig:
            d["script_sig"] = bytes(self.txin.scriptSig).hex()
        if self.witness:
            d["witness"] = [w.hex() for w in self.witness]
        d["psbt_data"] = _psbt_input_to_dict(self.psbtin)
        return d


def _psbt_input_from_dict(data: Mapping[str, Any], where: str) -> PSBT_Input:
    psbtin = PSBT_Input()
    utxo = None
    if data.get("non_witness_utxo") is not None:
        raw = _as_bytes(data["non_witness_utxo"], "non_witness_utxo")
        try:
            utxo = CTransaction.deserialize(raw)
        except SerializationError as e:
            raise InvalidInput(f"Invalid non_witness_utxo: {e}") from e
    if data.get("witness_utxo") is not None:
        witness_utxo = _mapping(data["witness_utxo"], "witness_utxo")
        if "amount_sat" in witness_utxo:
            value = check_sat(witness_utxo["amount_sat"])
        else:
            value = btc_to_sat(witness_utxo["amount"])
        script = _as_bytes(witness_utxo["script_pub_key"], "script_pub_key")
        # the witness form is what the proposal carries when both are given
        utxo = CTxOut(value, CScript(script))
    psbtin.utxo = utxo
    if data.get("sighash_type") is not None:
        psbtin.sighash_type = int(data["sighash_type"])
    if data.get("redeem_script") is not None:
        psbtin.redeem_script = CScript(_as_bytes(data["redeem_script"], "redeem_script"))
    if data.get("witness_script") is not None:
        psbtin.witness_script = CScript(_as_bytes(data["witness_script"], "witness_script"))
    if data.get("final_script_sig") is not None:
        psbtin.final_script_sig = CScript(_as_bytes(data["final_script_sig"], "final_script_sig"))
    if data.get("final_script_witness") is not None:
        psbtin.final_script_witness = CScriptWitness(
            [_as_bytes(w, "final_script_witness") for w in data["final_script_witness"]]
        )
    for name in _IGNORED_PSBT_FIELDS:
        if data.get(name):
            logger.warning("Input candidate %s: ignoring %s", where, name)
    return psbtin


def _psbt_input_to_dict(psbtin: PSBT_Input) -> dict:
    d: dict[str, Any] = {}
    utxo = psbtin.utxo
    if isinstance(utxo, CTxOut):
        d["witness_utxo"] = {
            "amount_sat": utxo.nValue,
            "script_pub_key": bytes(utxo.scriptPubKey).hex(),
        }
    elif utxo is not None:
        d["non_witness_utxo"] = utxo.serialize().hex()
    if psbtin.sighash_type is not None:
        d["sighash_type"] = int(psbtin.sighash_type)
    if psbtin.redeem_script:
        d["redeem_script"] = bytes(psbtin.redeem_script).hex()
    if psbtin.witness_script:
        d["witness_script"] = bytes(psbtin.witness_script).hex()
    if psbtin.final_script_sig:
        d["final_script_sig"] = bytes(psbtin.final_script_sig).hex()
    witness = psbtin.final_script_witness
    if witness is not None and len(witness.stack):
        d["final_script_witness"] = [bytes(w).hex() for w in witness.stack]
    return d


def coerce_candidates(candidates) -> list[InputPair]:
    """Turn InputPairs and mappings into InputPairs, dropping undecodable mappings."""
    usable = []
    for i, candidate in enumerate(candidates):
        if isinstance(candidate, InputPair):
            usable.append(candidate)
            continue
        try:
            usable.append(InputPair.from_dict(candidate))
        except PayjoinError as e:
            logger.warning("Dropping input candidate %d: %s", i, e)
    return usable


@dataclass(frozen=True)
class ReplacementOutput:
    script: bytes
    value: int

    def __post_init__(self):
        check_sat(self.value)
