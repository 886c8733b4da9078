"""
Transaction assembly for Payjoin proposals.

Functions over bitcointx PSBTs: validating the sender's original,
choosing a receiver input that does not give away which inputs belong to
whom, splicing it in, rebuilding receiver outputs and moving the extra
fee between the sender's fee output and the receiver's change. Each
change returns a new PSBT.
"""

from __future__ import annotations

import logging
import random
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence

from bitcointx.core import CMutableTxIn, CTxOut
from bitcointx.core.psbt import PSBT_Input, PSBT_Output
from bitcointx.core.script import CScript

from . import psbt as psbt_util
from .errors import FeePolicyViolation, InvalidInput
from .input_pair import InputPair, ReplacementOutput
from .psbt import PSBT, input_type, outpoint_str


logger = logging.getLogger(__name__)

_system_random = secrets.SystemRandom()


def validate_original(psbt: PSBT) -> None:
    """Every input resolves to a UTXO and the fee is not negative. Raises InvalidInput."""
    if not psbt.unsigned_tx.vin:
        raise InvalidInput("Original transaction has no inputs")
    if not psbt.unsigned_tx.vout:
        raise InvalidInput("Original transaction has no outputs")
    for i in range(len(psbt.inputs)):
        try:
            psbt_util.input_utxo(psbt, i)
        except InvalidInput as e:
            raise InvalidInput(f"Input {i}: {e}") from e
    fee = psbt_util.fee(psbt)
    if fee < 0:
        raise InvalidInput(f"Original transaction spends more than its inputs (fee {fee} sat)")


def magnitude(value: int) -> int:
    """Number of decimal digits of a satoshi value."""
    return len(str(value))


def _avoids_uih(psbt: PSBT, receiver_value: int, candidate_value: int) -> bool:
    """True if adding the candidate does not trigger the unnecessary-input heuristic.

    The heuristic only reads two-output transactions; anything else is
    not a match. The smallest input must stay larger than the smallest
    output once the candidate's value is credited to the receiver.
    """
    outputs = psbt.unsigned_tx.vout
    if len(outputs) != 2:
        return False
    min_out = min(o.nValue for o in outputs)
    min_in = min(psbt_util.input_utxo(psbt, i).nValue for i in range(len(psbt.inputs)))
    candidate_min_out = min(min_out, receiver_value + candidate_value)
    candidate_min_in = min(min_in, candidate_value)
    return candidate_min_in > candidate_min_out


def select_privacy_preserving(
    proposal: PSBT,
    candidates: Sequence[InputPair],
    receiver_value: int,
) -> InputPair:
    """Pick one candidate for the proposal as it stands, best privacy tier first.

    1. same script type and value magnitude as a sender input, avoiding UIH
    2. same script type and value magnitude
    3. the first candidate
    """
    if not candidates:
        raise InvalidInput("No usable input candidates")

    sender_types = set()
    sender_magnitudes = set()
    for i, (txin, psbtin) in enumerate(psbt_util.input_pairs(proposal)):
        sender_types.add(input_type(txin, psbtin))
        sender_magnitudes.add(magnitude(psbt_util.input_utxo(proposal, i).nValue))

    matching = [
        c for c in candidates
        if c.input_type in sender_types and magnitude(c.value) in sender_magnitudes
    ]
    for candidate in matching:
        if _avoids_uih(proposal, receiver_value, candidate.value):
            logger.debug("Selected candidate %s (type, magnitude, UIH)", candidate.previous_output)
            return candidate
    if matching:
        logger.debug("Selected candidate %s (type, magnitude)", matching[0].previous_output)
        return matching[0]
    logger.debug("Selected candidate %s (fallback)", candidates[0].previous_output)
    return candidates[0]


def insert_input(
    psbt: PSBT,
    pair: InputPair,
    sequence: int,
    rng: Optional[random.Random] = None,
) -> tuple[PSBT, int]:
    """Insert `pair` at a random position; returns the new PSBT and that position."""
    rng = rng or _system_random
    if pair.previous_output in psbt_util.outpoints(psbt):
        raise InvalidInput(f"Candidate {pair.previous_output} is already an input")
    psbt = psbt_util.copy_psbt(psbt)

    position = rng.randint(0, len(psbt.inputs))
    vin = list(psbt.unsigned_tx.vin)
    inputs = list(psbt.inputs)
    vin.insert(position, CMutableTxIn(pair.outpoint, nSequence=sequence))
    inputs.insert(position, pair.fresh_psbt_input())
    return psbt_util.assemble(psbt, vin, psbt.unsigned_tx.vout, inputs, list(psbt.outputs)), position


@dataclass
class OutputLayout:
    """Where the receiver's outputs sit after a rebuild."""

    receiver_indices: list[int]
    payee_index: Optional[int]
    change_index: int
    # old sender index -> new index
    sender_index_map: dict[int, int]


def rebuild_receiver_outputs(
    psbt: PSBT,
    receiver_indices: Sequence[int],
    replacements: Sequence[ReplacementOutput],
    drain_script: bytes,
    payee_script: Optional[bytes],
) -> tuple[PSBT, OutputLayout]:
    """Replace all receiver outputs.

    Replacements take the slots of the old receiver outputs in order;
    extras are appended. Value the replacements leave unallocated goes to
    the drain output, which is appended when no replacement pays to it.
    Sender outputs keep their relative order and metadata.
    """
    psbt = psbt_util.copy_psbt(psbt)
    old_outputs = psbt.unsigned_tx.vout
    receiver_set = set(receiver_indices)
    receiver_total = sum(old_outputs[i].nValue for i in receiver_indices)
    residual = receiver_total - sum(r.value for r in replacements)

    # (value, script, metadata or None)
    new_outputs: list[list] = []
    new_receiver: list[int] = []
    sender_map: dict[int, int] = {}
    pending = list(replacements)

    for i, txout in enumerate(old_outputs):
        if i in receiver_set:
            if pending:
                r = pending.pop(0)
                new_receiver.append(len(new_outputs))
                new_outputs.append([r.value, bytes(r.script), None])
            continue
        sender_map[i] = len(new_outputs)
        new_outputs.append([txout.nValue, bytes(txout.scriptPubKey), psbt.outputs[i]])
    for r in pending:
        new_receiver.append(len(new_outputs))
        new_outputs.append([r.value, bytes(r.script), None])

    drain_index = next((i for i in new_receiver if new_outputs[i][1] == drain_script), None)
    if drain_index is None:
        drain_index = len(new_outputs)
        new_receiver.append(drain_index)
        new_outputs.append([0, bytes(drain_script), None])
    if residual > 0:
        new_outputs[drain_index][0] += residual

    payee_index = None
    if payee_script is not None:
        payee_index = next((i for i in new_receiver if new_outputs[i][1] == payee_script), None)

    rebuilt = psbt_util.assemble(
        psbt,
        psbt.unsigned_tx.vin,
        [CTxOut(value, CScript(script)) for value, script, _ in new_outputs],
        list(psbt.inputs),
        [meta for _, _, meta in new_outputs],
    )
    return rebuilt, OutputLayout(new_receiver, payee_index, drain_index, sender_map)


def substitute_script(psbt: PSBT, index: int, script: bytes) -> PSBT:
    """Pay output `index` to `script` instead, dropping its metadata."""
    psbt = psbt_util.copy_psbt(psbt)
    vout = [
        CTxOut(txout.nValue, CScript(script) if i == index else txout.scriptPubKey)
        for i, txout in enumerate(psbt.unsigned_tx.vout)
    ]
    outputs = [None if i == index else meta for i, meta in enumerate(psbt.outputs)]
    return psbt_util.assemble(psbt, psbt.unsigned_tx.vin, vout, list(psbt.inputs), outputs)


def receiver_input_weight(psbt: PSBT, receiver_outpoints: Sequence[str]) -> int:
    owned = set(receiver_outpoints)
    return sum(
        input_type(txin, psbtin).expected_weight
        for txin, psbtin in psbt_util.input_pairs(psbt)
        if outpoint_str(txin.prevout) in owned
    )


def apply_fee(
    psbt: PSBT,
    additional_fee: int,
    sender_fee_index: Optional[int],
    max_sender_contribution: int,
    change_index: int,
) -> tuple[PSBT, int, int]:
    """Deduct `additional_fee`, sender first (up to its allowance), then receiver change.

    Returns ``(psbt, sender_share, receiver_share)``. Raises
    FeePolicyViolation when the receiver change cannot absorb its share.
    """
    outputs = psbt.unsigned_tx.vout
    values: dict[int, int] = {}
    sender_share = 0
    if sender_fee_index is not None and additional_fee > 0:
        sender_share = min(additional_fee, max_sender_contribution, outputs[sender_fee_index].nValue)
        values[sender_fee_index] = outputs[sender_fee_index].nValue - sender_share
    receiver_share = additional_fee - sender_share
    change_value = values.get(change_index, outputs[change_index].nValue)
    if receiver_share > change_value:
        raise FeePolicyViolation(
            f"Receiver change output ({change_value} sat) cannot pay "
            f"{receiver_share} sat of additional fee"
        )
    values[change_index] = change_value - receiver_share
    return psbt_util.with_output_values(psbt, values), sender_share, receiver_share


def strip_sender_inputs(psbt: PSBT, receiver_outpoints: Sequence[str]) -> None:
    """Clear sender inputs entirely and output metadata, keeping receiver UTXOs and finals."""
    owned = set(receiver_outpoints)
    for i, (txin, psbtin) in enumerate(psbt_util.input_pairs(psbt)):
        stripped = PSBT_Input(index=i)
        if outpoint_str(txin.prevout) in owned:
            stripped.utxo = psbtin.utxo
            stripped.final_script_sig = psbtin.final_script_sig
            stripped.final_script_witness = psbtin.final_script_witness
        psbt.inputs[i] = stripped
    for i in range(len(psbt.outputs)):
        psbt.outputs[i] = PSBT_Output(index=i)


def same_unsigned_tx(a: PSBT, b: PSBT) -> bool:
    return psbt_util.same_unsigned_tx(a, b)
