"""
Receiver side of a Payjoin v2 negotiation.

A `Receiver` owns a mailbox on the directory. Polling it yields an
`UnreviewedProposal`, and from there each stage class exposes only the
check or action that leads to the next one:

    UnreviewedProposal   check_broadcast_suitability / assume_interactive_receiver
    OwnershipChecked     check_inputs_not_owned
    ReplayChecked        check_no_inputs_seen_before
    OutputsClassified    identify_receiver_outputs
    OutputsCommitted     substitute_receiver_script / replace_receiver_outputs / commit_outputs
    InputsContributed    try_contribute_inputs
    ProposalCommitted    finalize_proposal
    FinalizedProposal    extract_v2_req / process_res

A successful transition consumes its stage; calling anything on a
consumed stage raises `StageConsumedError`. A failed transition works on
a private copy, so the stage stays usable and the call can be retried.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

import httpx
from cryptography.hazmat.primitives.asymmetric import ec

from . import assembler, hpke, mailbox, ohttp
from . import psbt as psbt_util
from .address import address_to_script
from .amount import FeeRate, coerce_fee_rate
from .callbacks import invoke, invoke_predicate
from .config import DEFAULT_EXPIRY_SECONDS
from .errors import (
    ExternalFailure,
    FeePolicyViolation,
    InvalidInput,
    OutputSubstitutionError,
    PeerRejected,
    ProtocolViolation,
    SessionExpiredError,
    StageConsumedError,
    TransportFailure,
)
from .input_pair import InputPair, ReplacementOutput, coerce_candidates
from .journal import EventType, NegotiationJournal, record
from .params import SenderParams
from .psbt import PSBT
from .request import PayjoinRequest
from .uri import PayjoinUriBuilder, build_endpoint


logger = logging.getLogger(__name__)

# Directory replies inside the OHTTP tunnel
_STATUS_MESSAGE = 200
_STATUS_ACCEPTED = (200, 204)
_STATUS_PENDING = 202


def _check_url(value: str, what: str) -> str:
    url = httpx.URL(value)
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidInput(f"Invalid {what} URL: {value}")
    return value.rstrip("/")


class Receiver:
    """A receiver session: mailbox key pair plus where to reach the directory."""

    def __init__(
        self,
        address: str,
        directory: str,
        ohttp_keys: ohttp.OhttpKeys,
        ohttp_relay: str,
        expire_after: Optional[int] = None,
        journal: Optional[NegotiationJournal] = None,
        keypair: Optional[hpke.KeyPair] = None,
        expiry: Optional[int] = None,
    ):
        address_to_script(address)
        self.address = address
        self.directory = _check_url(directory, "directory")
        self.ohttp_relay = _check_url(ohttp_relay, "OHTTP relay")
        if not isinstance(ohttp_keys, ohttp.OhttpKeys):
            raise InvalidInput("ohttp_keys must be OhttpKeys")
        self.ohttp_keys = ohttp_keys
        created = keypair is None
        self.keypair = keypair or hpke.KeyPair.generate()
        if expiry is None:
            lifetime = DEFAULT_EXPIRY_SECONDS if expire_after is None else int(expire_after)
            if lifetime <= 0:
                raise InvalidInput("expire_after must be positive")
            expiry = int(time.time()) + lifetime
        self.expiry = int(expiry)
        self.journal = journal
        if created:
            record(self.journal, EventType.SESSION_CREATED, session_id=self.id)

    @property
    def id(self) -> str:
        return mailbox.short_id(self.keypair.public_key)

    @property
    def mailbox_url(self) -> str:
        return f"{self.directory}/{self.id}"

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expiry

    def pj_url(self) -> str:
        return build_endpoint(self.directory, self.id, self.expiry, self.ohttp_keys, self.keypair.public_key)

    def pj_uri_builder(self) -> PayjoinUriBuilder:
        return PayjoinUriBuilder(self.address, self.pj_url())

    def extract_req(self) -> PayjoinRequest:
        """OHTTP-wrapped GET of this session's mailbox."""
        if self.is_expired:
            raise SessionExpiredError(self.expiry)
        body, ctx = ohttp.encapsulate(self.ohttp_keys, "GET", self.mailbox_url)
        logger.info("Receiver %s polling mailbox", self.id)
        return PayjoinRequest(self.ohttp_relay, body, context=ctx, session_id=self.id)

    def process_res(self, body: bytes, request: PayjoinRequest) -> Optional["UnreviewedProposal"]:
        """Open the directory's reply; None means nothing is waiting yet."""
        if request.session_id != self.id:
            raise ProtocolViolation("Request was issued by a different receiver session")
        response = ohttp.decapsulate(body, request.take_ohttp_context())
        if response.status == _STATUS_PENDING:
            logger.debug("Receiver %s: mailbox empty", self.id)
            return None
        if response.status != _STATUS_MESSAGE:
            raise TransportFailure(f"Directory returned {response.status}", status_code=response.status)

        plaintext, reply_key = mailbox.decrypt_message_a(response.content, self.keypair)
        try:
            text = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PeerRejected("original message", "body is not UTF-8") from e
        psbt_b64, _, query = text.partition("\n")
        try:
            original = psbt_util.from_base64(psbt_b64)
            params = SenderParams.from_query(query)
        except InvalidInput as e:
            raise PeerRejected("original message", str(e)) from e

        logger.info("Receiver %s: received original proposal", self.id)
        record(self.journal, EventType.PROPOSAL_RECEIVED, session_id=self.id, stage="UnreviewedProposal")
        state = _ProposalState(
            session=self,
            reply_key=reply_key,
            original=original,
            params=params,
            psbt=psbt_util.copy_psbt(original),
        )
        return UnreviewedProposal(state)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "directory": self.directory,
            "ohttp_keys": self.ohttp_keys.encode().hex(),
            "ohttp_relay": self.ohttp_relay,
            "expiry": self.expiry,
            "secret_key": self.keypair.secret_bytes().hex(),
        }

    @classmethod
    def from_dict(cls, data: dict, journal: Optional[NegotiationJournal] = None) -> "Receiver":
        try:
            return cls(
                address=data["address"],
                directory=data["directory"],
                ohttp_keys=ohttp.OhttpKeys.decode(bytes.fromhex(data["ohttp_keys"])),
                ohttp_relay=data["ohttp_relay"],
                journal=journal,
                keypair=hpke.KeyPair.from_secret_bytes(bytes.fromhex(data["secret_key"])),
                expiry=int(data["expiry"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Invalid receiver state: {e}") from e

    def to_json(self) -> str:
        from .persist import dump_state

        return dump_state(self)

    @classmethod
    def from_json(cls, text: str, journal: Optional[NegotiationJournal] = None) -> "Receiver":
        from .persist import load_state

        receiver = load_state(text, journal=journal)
        if not isinstance(receiver, cls):
            raise InvalidInput(f"Expected a receiver session, got {type(receiver).__name__}")
        return receiver

    def __repr__(self) -> str:
        return f"Receiver(id={self.id!r}, address={self.address!r}, expiry={self.expiry})"


# ── proposal state ────────────────────────────────────────────────

@dataclass
class _ProposalState:
    session: Receiver
    reply_key: ec.EllipticCurvePublicKey
    original: PSBT
    params: SenderParams
    psbt: PSBT
    receiver_outputs: list[int] = field(default_factory=list)
    payee_index: Optional[int] = None
    change_index: Optional[int] = None
    sender_fee_index: Optional[int] = None
    receiver_inputs: list[str] = field(default_factory=list)
    fee_rate: Optional[FeeRate] = None

    def copy(self) -> "_ProposalState":
        return _ProposalState(
            session=self.session,
            reply_key=self.reply_key,
            original=self.original,
            params=self.params,
            psbt=psbt_util.copy_psbt(self.psbt),
            receiver_outputs=list(self.receiver_outputs),
            payee_index=self.payee_index,
            change_index=self.change_index,
            sender_fee_index=self.sender_fee_index,
            receiver_inputs=list(self.receiver_inputs),
            fee_rate=self.fee_rate,
        )

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict(),
            "reply_key": hpke.serialize_public_key(self.reply_key, compressed=True).hex(),
            "original": self.original.to_base64(),
            "params": self.params.to_query(),
            "psbt": self.psbt.to_base64(),
            "receiver_outputs": list(self.receiver_outputs),
            "payee_index": self.payee_index,
            "change_index": self.change_index,
            "sender_fee_index": self.sender_fee_index,
            "receiver_inputs": list(self.receiver_inputs),
            "fee_rate": self.fee_rate.sat_per_kwu if self.fee_rate is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict, journal: Optional[NegotiationJournal] = None) -> "_ProposalState":
        try:
            receiver_inputs = [
                psbt_util.outpoint_str(psbt_util.parse_outpoint(text))
                for text in data.get("receiver_inputs") or []
            ]
            fee_rate = data.get("fee_rate")
            return cls(
                session=Receiver.from_dict(data["session"], journal=journal),
                reply_key=hpke.deserialize_public_key(bytes.fromhex(data["reply_key"])),
                original=psbt_util.from_base64(data["original"]),
                params=SenderParams.from_query(data["params"]),
                psbt=psbt_util.from_base64(data["psbt"]),
                receiver_outputs=[int(i) for i in data.get("receiver_outputs") or []],
                payee_index=data.get("payee_index"),
                change_index=data.get("change_index"),
                sender_fee_index=data.get("sender_fee_index"),
                receiver_inputs=receiver_inputs,
                fee_rate=FeeRate(int(fee_rate)) if fee_rate is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Invalid proposal state: {e}") from e


class _Stage:
    """Common plumbing: copy-on-transition and single consumption."""

    def __init__(self, state: _ProposalState):
        self._state = state
        self._consumed = False
        self._lock = threading.Lock()

    @classmethod
    def _validate(cls, state: _ProposalState) -> None:
        pass

    @property
    def session_id(self) -> str:
        return self._state.session.id

    def _check_live(self) -> None:
        if self._consumed:
            raise StageConsumedError(type(self).__name__)

    def _begin(self) -> _ProposalState:
        self._check_live()
        return self._state.copy()

    def _advance(self, next_cls, state: _ProposalState):
        with self._lock:
            self._check_live()
            self._consumed = True
        logger.info("Proposal %s: %s -> %s", self.session_id, type(self).__name__, next_cls.__name__)
        return next_cls(state)

    def _reject(self, event_check: str, error: Exception) -> None:
        record(
            self._state.session.journal,
            EventType.CHECK_FAILED,
            session_id=self.session_id,
            stage=type(self).__name__,
            success=False,
            reason=f"{event_check}: {error}",
        )

    def _passed(self, check: str) -> None:
        record(
            self._state.session.journal,
            EventType.CHECK_PASSED,
            session_id=self.session_id,
            stage=type(self).__name__,
            details={"check": check},
        )

    def to_dict(self) -> dict:
        return self._state.to_dict()

    @classmethod
    def from_dict(cls, data: dict, journal: Optional[NegotiationJournal] = None):
        state = _ProposalState.from_dict(data, journal=journal)
        cls._validate(state)
        return cls(state)


def _validate_outputs(state: _ProposalState) -> None:
    n = len(state.psbt.unsigned_tx.vout)
    if not state.receiver_outputs:
        raise InvalidInput("Proposal state has no receiver outputs")
    if any(not 0 <= i < n for i in state.receiver_outputs):
        raise InvalidInput("Receiver output index out of range")
    if state.payee_index is None or state.payee_index not in state.receiver_outputs:
        raise InvalidInput("Proposal state has no valid payee output")
    if state.change_index is None or state.change_index not in state.receiver_outputs:
        raise InvalidInput("Proposal state has no valid change output")
    if state.sender_fee_index is not None and not 0 <= state.sender_fee_index < n:
        raise InvalidInput("Sender fee output index out of range")


def _validate_inputs(state: _ProposalState) -> None:
    _validate_outputs(state)
    outpoints = set(psbt_util.outpoints(state.psbt))
    if not state.receiver_inputs or any(op not in outpoints for op in state.receiver_inputs):
        raise InvalidInput("Proposal state has no valid receiver inputs")


class UnreviewedProposal(_Stage):
    """Original PSBT as received from the sender."""

    def original_tx(self) -> str:
        """Fallback transaction hex, broadcastable if the negotiation fails."""
        self._check_live()
        return psbt_util.extract_tx_hex(self._state.original)

    def _check_structure(self, state: _ProposalState) -> None:
        original = state.original
        try:
            assembler.validate_original(original)
        except InvalidInput as e:
            raise PeerRejected("original psbt", str(e)) from e
        fc = state.params.fee_contribution
        if fc is not None and fc.output_index >= len(original.unsigned_tx.vout):
            raise PeerRejected("fee output", "additionalfeeoutputindex is out of range", index=fc.output_index)

    def check_broadcast_suitability(
        self,
        min_fee_rate: Any = None,
        broadcast_check: Optional[Callable[[str], bool]] = None,
    ) -> "OwnershipChecked":
        """Validate the original and ask the host whether it would broadcast it."""
        state = self._begin()
        try:
            self._check_structure(state)
            for i, psbtin in enumerate(state.original.inputs):
                if not psbt_util.is_finalized(psbtin):
                    raise PeerRejected("original psbt", "input is not finalized", index=i)
            min_rate = coerce_fee_rate(min_fee_rate)
            rate = psbt_util.fee_rate(state.original)
            if rate < min_rate:
                raise PeerRejected("original fee rate", f"{rate} is below the minimum {min_rate}")
            if broadcast_check is not None:
                tx_hex = psbt_util.extract_tx_hex(state.original)
                if not invoke_predicate("broadcast_check", broadcast_check, tx_hex):
                    raise PeerRejected("broadcast suitability", "host declined to broadcast the original")
        except PeerRejected as e:
            self._reject("broadcast suitability", e)
            raise
        self._passed("broadcast suitability")
        return self._advance(OwnershipChecked, state)

    def assume_interactive_receiver(self) -> "OwnershipChecked":
        """Skip the broadcast check; only the structural checks run."""
        state = self._begin()
        self._check_structure(state)
        return self._advance(OwnershipChecked, state)


class OwnershipChecked(_Stage):
    def check_inputs_not_owned(self, is_owned: Callable[[str], bool]) -> "ReplayChecked":
        state = self._begin()
        for i in range(len(state.original.inputs)):
            script = bytes(psbt_util.input_utxo(state.original, i).scriptPubKey)
            if invoke_predicate("is_owned", is_owned, script.hex()):
                error = PeerRejected("input ownership", "input belongs to the receiver", index=i)
                self._reject("input ownership", error)
                raise error
        self._passed("input ownership")
        return self._advance(ReplayChecked, state)


class ReplayChecked(_Stage):
    def check_no_inputs_seen_before(self, is_seen: Callable[[str], bool]) -> "OutputsClassified":
        state = self._begin()
        for i, txin in enumerate(state.original.unsigned_tx.vin):
            outpoint = psbt_util.outpoint_str(txin.prevout)
            if invoke_predicate("is_seen", is_seen, outpoint):
                error = PeerRejected("input replay", f"{outpoint} was seen before", index=i)
                self._reject("input replay", error)
                raise error
        self._passed("input replay")
        return self._advance(OutputsClassified, state)


class OutputsClassified(_Stage):
    def identify_receiver_outputs(self, classify_output: Callable[[str], bool]) -> "OutputsCommitted":
        state = self._begin()
        outputs = state.psbt.unsigned_tx.vout
        receiver = [
            i for i, txout in enumerate(outputs)
            if invoke_predicate("classify_output", classify_output, bytes(txout.scriptPubKey).hex())
        ]
        if not receiver:
            error = PeerRejected("receiver outputs", "no output pays the receiver")
            self._reject("receiver outputs", error)
            raise error

        address_script = address_to_script(state.session.address)
        payee = next((i for i in receiver if bytes(outputs[i].scriptPubKey) == address_script), receiver[0])
        fc = state.params.fee_contribution
        if fc is not None and fc.output_index in receiver:
            error = PeerRejected("fee output", "sender's fee output pays the receiver", index=fc.output_index)
            self._reject("fee output", error)
            raise error

        state.receiver_outputs = receiver
        state.payee_index = payee
        state.change_index = payee
        state.sender_fee_index = fc.output_index if fc is not None else None
        self._passed("receiver outputs")
        return self._advance(OutputsCommitted, state)


class OutputsCommitted(_Stage):
    """Receiver outputs identified; they may be changed until `commit_outputs`."""

    _validate = staticmethod(_validate_outputs)

    def is_output_substitution_disabled(self) -> bool:
        self._check_live()
        return self._state.params.disable_output_substitution

    def substitute_receiver_script(self, script: bytes) -> "OutputsCommitted":
        """Pay the payee output to a different script."""
        state = self._begin()
        if state.params.disable_output_substitution:
            raise OutputSubstitutionError("Sender disabled output substitution")
        state.psbt = assembler.substitute_script(state.psbt, state.payee_index, bytes(script))
        return self._advance(OutputsCommitted, state)

    def replace_receiver_outputs(
        self,
        outputs: Sequence[Any],
        drain_script: bytes,
    ) -> "OutputsCommitted":
        """Replace every receiver output; unallocated value goes to `drain_script`."""
        state = self._begin()
        replacements = [
            o if isinstance(o, ReplacementOutput) else ReplacementOutput(bytes(o[0]), int(o[1]))
            for o in outputs
        ]
        payee = state.psbt.unsigned_tx.vout[state.payee_index]
        payee_script = bytes(payee.scriptPubKey)
        if state.params.disable_output_substitution:
            kept = any(
                r.script == payee_script and r.value >= payee.nValue for r in replacements
            )
            if not kept and not (bytes(drain_script) == payee_script and not replacements):
                raise OutputSubstitutionError(
                    "Output substitution is disabled: the payee output must be kept"
                )

        state.psbt, layout = assembler.rebuild_receiver_outputs(
            state.psbt,
            state.receiver_outputs,
            replacements,
            bytes(drain_script),
            payee_script,
        )
        state.receiver_outputs = layout.receiver_indices
        state.change_index = layout.change_index
        state.payee_index = layout.payee_index if layout.payee_index is not None else layout.change_index
        if state.sender_fee_index is not None:
            state.sender_fee_index = layout.sender_index_map[state.sender_fee_index]
        return self._advance(OutputsCommitted, state)

    def commit_outputs(self) -> "InputsContributed":
        state = self._begin()
        record(
            state.session.journal,
            EventType.OUTPUTS_COMMITTED,
            session_id=self.session_id,
            details={"outputs": len(state.psbt.unsigned_tx.vout)},
        )
        return self._advance(InputsContributed, state)


class InputsContributed(_Stage):
    _validate = staticmethod(_validate_outputs)

    def try_contribute_inputs(self, candidates: Iterable[Any]) -> "ProposalCommitted":
        """Add exactly one receiver input, picked for privacy, and commit."""
        state = self._begin()
        psbt = state.psbt
        existing = set(psbt_util.outpoints(psbt))
        usable: list[InputPair] = []
        for pair in coerce_candidates(candidates):
            if pair.previous_output in existing:
                logger.warning("Dropping input candidate %s: already an input", pair.previous_output)
                continue
            usable.append(pair)
        if not usable:
            raise InvalidInput("No usable input candidates")

        change_value = psbt.unsigned_tx.vout[state.change_index].nValue
        chosen = assembler.select_privacy_preserving(psbt, usable, change_value)
        # keep the original absolute fee if the receiver's outputs grew
        shortfall = max(0, psbt_util.fee(state.original) - psbt_util.fee(psbt))
        credit = chosen.value - shortfall
        if credit < 0:
            raise InvalidInput(
                f"Contributed input {chosen.previous_output} cannot fund the receiver outputs"
            )

        sequence = state.original.unsigned_tx.vin[0].nSequence
        psbt, position = assembler.insert_input(psbt, chosen, sequence)
        state.psbt = psbt_util.with_output_values(psbt, {state.change_index: change_value + credit})
        state.receiver_inputs.append(chosen.previous_output)
        record(
            state.session.journal,
            EventType.INPUT_CONTRIBUTED,
            session_id=self.session_id,
            details={"outpoint": chosen.previous_output, "position": position},
        )
        return self._advance(ProposalCommitted, state)


class ProposalCommitted(_Stage):
    _validate = staticmethod(_validate_inputs)

    def psbt_to_sign(self) -> str:
        self._check_live()
        return self._state.psbt.to_base64()

    def finalize_proposal(
        self,
        min_fee_rate: Any = None,
        max_fee_rate: Any = None,
        wallet_signer: Optional[Callable[[str], str]] = None,
    ) -> "FinalizedProposal":
        """Apply fees, have the wallet sign, and check the fee rate lies in [min, max].

        Both bounds default to zero. `wallet_signer` takes and returns a
        base64 PSBT and is required.
        """
        state = self._begin()
        if wallet_signer is None:
            raise InvalidInput("finalize_proposal needs a wallet_signer")
        min_rate = coerce_fee_rate(min_fee_rate)
        max_rate = coerce_fee_rate(max_fee_rate)
        if min_rate > max_rate:
            raise FeePolicyViolation(
                f"Minimum fee rate {min_rate} exceeds maximum {max_rate}",
                min_fee_rate=min_rate,
                max_fee_rate=max_rate,
            )

        psbt = state.psbt
        rate = max(state.params.min_fee_rate, min_rate)
        added_weight = max(0, psbt_util.predicted_weight(psbt) - psbt_util.predicted_weight(state.original))
        additional_fee = rate.fee_for_weight(added_weight)
        # the sender only ever pays for our inputs, never for our extra outputs
        input_fee = rate.fee_for_weight(assembler.receiver_input_weight(psbt, state.receiver_inputs))
        fc = state.params.fee_contribution
        psbt, sender_share, receiver_share = assembler.apply_fee(
            psbt,
            additional_fee,
            state.sender_fee_index if fc is not None else None,
            min(fc.max_amount, input_fee) if fc is not None else 0,
            state.change_index,
        )
        logger.debug(
            "Proposal %s: additional fee %d sat (sender %d, receiver %d)",
            self.session_id, additional_fee, sender_share, receiver_share,
        )

        signed = self._sign(wallet_signer, psbt, state.receiver_inputs)
        effective = psbt_util.fee_rate(signed)
        if effective < min_rate or effective > max_rate:
            raise FeePolicyViolation(
                f"Effective fee rate {effective} is outside [{min_rate}, {max_rate}]",
                fee_rate=effective,
                min_fee_rate=min_rate,
                max_fee_rate=max_rate,
            )

        assembler.strip_sender_inputs(signed, state.receiver_inputs)
        state.psbt = signed
        state.fee_rate = effective
        record(
            state.session.journal,
            EventType.PROPOSAL_FINALIZED,
            session_id=self.session_id,
            details={"txid": psbt_util.txid(signed.unsigned_tx), "fee_rate_sat_per_kwu": effective.sat_per_kwu},
        )
        return self._advance(FinalizedProposal, state)

    @staticmethod
    def _sign(wallet_signer: Callable[[str], str], psbt: PSBT, receiver_inputs: list[str]) -> PSBT:
        result = invoke("sign_psbt", wallet_signer, psbt.to_base64())
        if not isinstance(result, str):
            raise ExternalFailure("sign_psbt", f"expected a base64 string, got {type(result).__name__}")
        try:
            signed = psbt_util.from_base64(result)
        except InvalidInput as e:
            raise ExternalFailure("sign_psbt", f"returned an unparseable PSBT: {e}") from e
        if not assembler.same_unsigned_tx(signed, psbt):
            raise ExternalFailure("sign_psbt", "signer changed the unsigned transaction")

        owned = set(receiver_inputs)
        for i, (txin, psbtin) in enumerate(psbt_util.input_pairs(signed)):
            if psbt_util.outpoint_str(txin.prevout) in owned and not psbt_util.is_finalized(psbtin):
                raise ExternalFailure("sign_psbt", f"receiver input {i} was not finalized")
            # signers may drop UTXO data; fee accounting needs it
            if psbtin.utxo is None:
                psbtin.utxo = psbt.inputs[i].utxo
        return signed


class FinalizedProposal(_Stage):
    """Signed, fee-checked proposal ready to be sent back to the sender."""

    @classmethod
    def _validate(cls, state: _ProposalState) -> None:
        _validate_inputs(state)
        if state.fee_rate is None:
            raise InvalidInput("Finalized proposal state has no fee rate")

    def utxos_to_be_locked(self) -> list[str]:
        return list(self._state.receiver_inputs)

    def is_output_substitution_disabled(self) -> bool:
        return self._state.params.disable_output_substitution

    def psbt(self) -> str:
        return self._state.psbt.to_base64()

    def get_txid(self) -> str:
        return psbt_util.txid(self._state.psbt.unsigned_tx)

    def fee_rate(self) -> FeeRate:
        return self._state.fee_rate

    def extract_v2_req(self) -> PayjoinRequest:
        """Encrypt the proposal for the sender's reply mailbox, wrapped in OHTTP."""
        session = self._state.session
        reply_key = self._state.reply_key
        body = mailbox.encrypt_message_b(self.psbt().encode("ascii"), reply_key)
        url = f"{session.directory}/{mailbox.short_id(reply_key)}"
        enc, ctx = ohttp.encapsulate(session.ohttp_keys, "POST", url, body)
        logger.info("Proposal %s: posting proposal to sender mailbox", self.session_id)
        record(session.journal, EventType.PROPOSAL_SENT, session_id=self.session_id)
        return PayjoinRequest(session.ohttp_relay, enc, context=ctx, session_id=session.id)

    def process_res(self, body: bytes, request: PayjoinRequest) -> bool:
        """True once the directory stored the proposal; False if it asked to retry later.

        The request's context is consumed either way: retrying needs a new
        `extract_v2_req()`.
        """
        if request.session_id != self.session_id:
            raise ProtocolViolation("Request was issued by a different receiver session")
        response = ohttp.decapsulate(body, request.take_ohttp_context())
        if response.status in _STATUS_ACCEPTED:
            logger.info("Proposal %s: directory accepted the proposal", self.session_id)
            record(self._state.session.journal, EventType.PROPOSAL_ACCEPTED, session_id=self.session_id)
            return True
        if response.status == _STATUS_PENDING:
            return False
        raise TransportFailure(f"Directory returned {response.status}", status_code=response.status)


STAGES = {
    cls.__name__: cls
    for cls in (
        UnreviewedProposal,
        OwnershipChecked,
        ReplayChecked,
        OutputsClassified,
        OutputsCommitted,
        InputsContributed,
        ProposalCommitted,
        FinalizedProposal,
    )
}
