"""
Payjoin accounting over python-bitcointx PSBTs.

Parsing, serialization and extraction are bitcointx's. What lives here is
what the negotiation needs on top: resolving each input's previous
output, predicting the signed weight from input types, fees and fee
rates, and rebuilding a PSBT around a changed input or output list.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Iterator, Optional, Sequence

from bitcointx.core import (
    COutPoint,
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    CTxOut,
    b2lx,
    lx,
)
from bitcointx.core.psbt import PSBT_Input, PSBT_Output, PartiallySignedTransaction
from bitcointx.core.script import CScript, CScriptWitness
from bitcointx.core.serialize import SerializationError

from .amount import WITNESS_SCALE_FACTOR, FeeRate
from .errors import InvalidInput


PSBT = PartiallySignedTransaction

_DECODE_ERRORS = (ValueError, TypeError, IndexError, SerializationError)


class ScriptType(str, Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    OTHER = "other"


def script_type(script: bytes) -> ScriptType:
    s = bytes(script)
    n = len(s)
    if n == 25 and s[:3] == b"\x76\xa9\x14" and s[23:] == b"\x88\xac":
        return ScriptType.P2PKH
    if n == 23 and s[:2] == b"\xa9\x14" and s[22] == 0x87:
        return ScriptType.P2SH
    if n == 22 and s[:2] == b"\x00\x14":
        return ScriptType.P2WPKH
    if n == 34 and s[:2] == b"\x00\x20":
        return ScriptType.P2WSH
    if n == 34 and s[:2] == b"\x51\x20":
        return ScriptType.P2TR
    return ScriptType.OTHER


class InputType(str, Enum):
    """Spend type of an input, used for weight prediction and privacy matching."""

    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"
    P2TR = "p2tr"
    OTHER = "other"

    @property
    def expected_weight(self) -> int:
        return _INPUT_WEIGHTS[self]


# Full input weight: outpoint, sequence, scriptSig and witness of a typical
# single-key spend.
_INPUT_WEIGHTS = {
    InputType.P2PKH: 592,
    InputType.P2SH_P2WPKH: 364,
    InputType.P2WPKH: 272,
    InputType.P2TR: 230,
    InputType.OTHER: 272,
}

# outpoint, empty scriptSig, sequence
_BARE_INPUT_WEIGHT = (32 + 4 + 1 + 4) * WITNESS_SCALE_FACTOR


# ── parsing ───────────────────────────────────────────────────────

def from_bytes(raw: bytes) -> PSBT:
    """Parse a binary PSBT. Raises InvalidInput."""
    try:
        return PartiallySignedTransaction.deserialize(bytes(raw))
    except _DECODE_ERRORS as e:
        raise InvalidInput(f"Invalid PSBT: {e}") from e


def from_base64(text: str) -> PSBT:
    try:
        raw = base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError, AttributeError) as e:
        raise InvalidInput(f"PSBT is not valid base64: {e}") from e
    return from_bytes(raw)


def copy_psbt(psbt: PSBT) -> PSBT:
    return PartiallySignedTransaction.deserialize(psbt.serialize())


# ── outpoints ─────────────────────────────────────────────────────

def make_outpoint(txid: str, vout: int) -> COutPoint:
    txid = str(txid)
    if len(txid) != 64:
        raise InvalidInput(f"Invalid txid {txid!r}")
    try:
        hash_ = lx(txid)
    except (ValueError, TypeError) as e:
        raise InvalidInput(f"Invalid txid {txid!r}") from e
    vout = int(vout)
    if not 0 <= vout <= 0xFFFFFFFF:
        raise InvalidInput(f"Invalid vout {vout}")
    return COutPoint(hash_, vout)


def parse_outpoint(text: str) -> COutPoint:
    """``txid:vout`` to a COutPoint."""
    txid, sep, vout = str(text).rpartition(":")
    if not sep:
        raise InvalidInput(f"Invalid outpoint {text!r}")
    try:
        return make_outpoint(txid, int(vout))
    except ValueError as e:
        raise InvalidInput(f"Invalid outpoint {text!r}") from e


def outpoint_str(prevout: COutPoint) -> str:
    return f"{b2lx(prevout.hash)}:{prevout.n}"


def txid(tx) -> str:
    return b2lx(tx.GetTxid())


def input_pairs(psbt: PSBT) -> Iterator[tuple]:
    """(txin, psbt input) for each input."""
    return zip(psbt.unsigned_tx.vin, psbt.inputs)


def outpoints(psbt: PSBT) -> list[str]:
    return [outpoint_str(txin.prevout) for txin in psbt.unsigned_tx.vin]


# ── previous outputs ──────────────────────────────────────────────

def utxo_for(txin, psbtin: PSBT_Input) -> CTxOut:
    """Previous output spent by `txin`. Raises InvalidInput."""
    utxo = psbtin.utxo
    if utxo is None:
        raise InvalidInput(f"Input {outpoint_str(txin.prevout)} is missing UTXO data")
    if isinstance(utxo, CTxOut):
        return utxo
    if utxo.GetTxid() != txin.prevout.hash:
        raise InvalidInput(f"Non-witness UTXO does not match {outpoint_str(txin.prevout)}")
    if txin.prevout.n >= len(utxo.vout):
        raise InvalidInput(f"Non-witness UTXO has no output {txin.prevout.n}")
    return utxo.vout[txin.prevout.n]


def input_utxo(psbt: PSBT, index: int) -> CTxOut:
    return utxo_for(psbt.unsigned_tx.vin[index], psbt.inputs[index])


def input_total(psbt: PSBT) -> int:
    return sum(input_utxo(psbt, i).nValue for i in range(len(psbt.inputs)))


def output_total(psbt: PSBT) -> int:
    return sum(txout.nValue for txout in psbt.unsigned_tx.vout)


def fee(psbt: PSBT) -> int:
    return input_total(psbt) - output_total(psbt)


def is_finalized(psbtin: PSBT_Input) -> bool:
    witness = psbtin.final_script_witness
    return bool(psbtin.final_script_sig) or (witness is not None and len(witness.stack) > 0)


def clear_finals(psbtin: PSBT_Input) -> None:
    psbtin.final_script_sig = CScript()
    psbtin.final_script_witness = CScriptWitness()


# ── weights and fees ──────────────────────────────────────────────

def input_type(txin, psbtin: PSBT_Input) -> InputType:
    kind = script_type(utxo_for(txin, psbtin).scriptPubKey)
    if kind == ScriptType.P2PKH:
        return InputType.P2PKH
    if kind == ScriptType.P2WPKH:
        return InputType.P2WPKH
    if kind == ScriptType.P2TR:
        return InputType.P2TR
    if kind == ScriptType.P2SH:
        redeem = bytes(psbtin.redeem_script or b"")
        sig = bytes(psbtin.final_script_sig or b"") or bytes(txin.scriptSig)
        if not redeem and sig and sig[0] == len(sig) - 1:
            redeem = sig[1:]
        if script_type(redeem) == ScriptType.P2WPKH:
            return InputType.P2SH_P2WPKH
    return InputType.OTHER


def predicted_weight(psbt: PSBT) -> int:
    """Weight of the fully signed transaction, predicted from input types."""
    tx = psbt.unsigned_tx
    types = [input_type(txin, psbtin) for txin, psbtin in input_pairs(psbt)]
    # unsigned serialization carries every input with an empty scriptSig
    weight = len(tx.serialize()) * WITNESS_SCALE_FACTOR - _BARE_INPUT_WEIGHT * len(types)
    if any(t != InputType.P2PKH for t in types):
        weight += 2  # segwit marker and flag
    return weight + sum(t.expected_weight for t in types)


def fee_rate(psbt: PSBT) -> FeeRate:
    return FeeRate.from_fee_and_weight(fee(psbt), predicted_weight(psbt))


def extract_tx(psbt: PSBT):
    """Signed transaction built from the final scripts. Raises InvalidInput."""
    try:
        return psbt.extract_transaction()
    except (ValueError, AssertionError) as e:
        raise InvalidInput(f"Cannot extract transaction: {e}") from e


def extract_tx_hex(psbt: PSBT) -> str:
    return extract_tx(psbt).serialize().hex()


def same_unsigned_tx(a: PSBT, b: PSBT) -> bool:
    return a.unsigned_tx.GetTxid() == b.unsigned_tx.GetTxid()


# ── rebuilding ────────────────────────────────────────────────────

def assemble(
    template: PSBT,
    vin: Sequence,
    vout: Sequence,
    inputs: Sequence[PSBT_Input],
    outputs: Sequence[Optional[PSBT_Output]],
) -> PSBT:
    """New PSBT with `template`'s version and locktime.

    `vin`/`vout` give prevout and sequence, value and script; `inputs` and
    `outputs` line up with them. A None output gets empty metadata.
    The metadata objects are reindexed and owned by the result.
    """
    tx = CMutableTransaction(
        vin=[CMutableTxIn(txin.prevout, nSequence=txin.nSequence) for txin in vin],
        vout=[CMutableTxOut(txout.nValue, txout.scriptPubKey) for txout in vout],
        nLockTime=template.unsigned_tx.nLockTime,
        nVersion=template.unsigned_tx.nVersion,
    )
    psbt = PartiallySignedTransaction(unsigned_tx=tx)
    for i, psbtin in enumerate(inputs):
        psbtin.index = i
        psbt.inputs[i] = psbtin
    for i, psbtout in enumerate(outputs):
        if psbtout is None:
            psbtout = PSBT_Output(index=i)
        psbtout.index = i
        psbt.outputs[i] = psbtout
    return psbt


def with_output_values(psbt: PSBT, values: dict[int, int]) -> PSBT:
    """Copy of `psbt` with the outputs at the given indices set to new values."""
    psbt = copy_psbt(psbt)
    vout = [
        CTxOut(values.get(i, txout.nValue), txout.scriptPubKey)
        for i, txout in enumerate(psbt.unsigned_tx.vout)
    ]
    return assemble(psbt, psbt.unsigned_tx.vin, vout, list(psbt.inputs), list(psbt.outputs))


def summary(psbt: PSBT) -> dict:
    """Plain-data description for display."""
    tx = psbt.unsigned_tx
    inputs = []
    for i, (txin, psbtin) in enumerate(input_pairs(psbt)):
        entry = {
            "outpoint": outpoint_str(txin.prevout),
            "sequence": txin.nSequence,
            "finalized": is_finalized(psbtin),
        }
        try:
            entry["value"] = input_utxo(psbt, i).nValue
            entry["script_type"] = input_type(txin, psbtin).value
        except InvalidInput:
            entry["value"] = None
        inputs.append(entry)
    result = {
        "txid": txid(tx),
        "version": tx.nVersion,
        "lock_time": tx.nLockTime,
        "inputs": inputs,
        "outputs": [
            {"value": txout.nValue, "script_pubkey": bytes(txout.scriptPubKey).hex()}
            for txout in tx.vout
        ],
    }
    if all(e["value"] is not None for e in inputs):
        result["fee"] = fee(psbt)
        result["fee_rate_sat_per_vb"] = str(fee_rate(psbt).to_sat_per_vb())
    return result
