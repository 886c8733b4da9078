"""
Sender side of a Payjoin v2 negotiation.

    builder = SenderBuilder.from_psbt_and_uri(original_psbt, uri)
    sender = builder.build_recommended(min_fee_rate)
    request, post_ctx = sender.extract_v2(relay)
    get_ctx = post_ctx.process_response(relay_reply)
    request, ohttp_ctx = get_ctx.extract_req(relay)
    proposal = get_ctx.process_response(relay_reply, ohttp_ctx)   # None: poll again

The proposal returned to the caller has passed the sender checks below and
carries the sender's input metadata again, ready to be signed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from . import assembler, hpke, mailbox, ohttp
from . import psbt as psbt_util
from .amount import check_sat, coerce_fee_rate
from .errors import (
    ContextConsumedError,
    InvalidInput,
    PeerRejected,
    SessionExpiredError,
    TransportFailure,
)
from .params import FeeContribution, SenderParams
from .psbt import PSBT, input_type, outpoint_str
from .request import PayjoinRequest
from .uri import PayjoinUri


logger = logging.getLogger(__name__)

_STATUS_MESSAGE = 200
_STATUS_ACCEPTED = (200, 204)
_STATUS_PENDING = 202


def _coerce_psbt(psbt: Union[PSBT, str]) -> PSBT:
    if isinstance(psbt, PSBT):
        return psbt_util.copy_psbt(psbt)
    if isinstance(psbt, str):
        return psbt_util.from_base64(psbt)
    raise InvalidInput(f"Expected a PSBT, got {type(psbt).__name__}")


def _coerce_uri(uri: Union[PayjoinUri, str]) -> PayjoinUri:
    if isinstance(uri, PayjoinUri):
        return uri
    if isinstance(uri, str):
        return PayjoinUri.parse(uri)
    raise InvalidInput(f"Expected a payjoin URI, got {type(uri).__name__}")


def _uri_to_dict(uri: PayjoinUri) -> dict:
    return {
        "address": uri.address,
        "endpoint": uri.endpoint,
        "amount_sat": uri.amount_sat,
        "label": uri.label,
        "message": uri.message,
        "output_substitution_disabled": uri.output_substitution_disabled,
    }


# ── builder ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SenderBuilder:
    psbt: PSBT
    uri: PayjoinUri
    disable_output_substitution: bool = False

    @classmethod
    def from_psbt_and_uri(cls, psbt: Union[PSBT, str], uri: Union[PayjoinUri, str]) -> "SenderBuilder":
        """Raises InvalidInput for a bad PSBT or a URI that cannot carry a v2 payjoin."""
        original = _coerce_psbt(psbt)
        parsed = _coerce_uri(uri)
        assembler.validate_original(original)
        if parsed.receiver_key() is None or parsed.ohttp_keys() is None:
            raise InvalidInput("Payjoin endpoint lacks the receiver key or OHTTP keys")
        return cls(original, parsed, parsed.output_substitution_disabled)

    def always_disable_output_substitution(self, disable: bool = True) -> "SenderBuilder":
        return replace(self, disable_output_substitution=disable or self.uri.output_substitution_disabled)

    def _payee_index(self) -> int:
        script = self.uri.script_pubkey
        for i, txout in enumerate(self.psbt.unsigned_tx.vout):
            if bytes(txout.scriptPubKey) == script:
                return i
        raise InvalidInput("Original transaction does not pay the URI address")

    def _build(self, contribution: Optional[FeeContribution], min_fee_rate: Any) -> "Sender":
        params = SenderParams(
            version=2,
            disable_output_substitution=self.disable_output_substitution,
            fee_contribution=contribution,
            min_fee_rate=coerce_fee_rate(min_fee_rate),
        )
        return Sender(psbt_util.copy_psbt(self.psbt), self.uri, params, self._payee_index())

    def build_non_incentivizing(self, min_fee_rate: Any = None) -> "Sender":
        """Sender that offers no fee contribution."""
        return self._build(None, min_fee_rate)

    def build_recommended(self, min_fee_rate: Any = None) -> "Sender":
        """Offer to pay for one receiver input of our own input type, from our change.

        Falls back to a non-incentivizing sender when the change output is
        ambiguous or the inputs are of mixed types.
        """
        payee = self._payee_index()
        outputs = self.psbt.unsigned_tx.vout
        others = [i for i in range(len(outputs)) if i != payee]
        if len(others) != 1:
            return self.build_non_incentivizing(min_fee_rate)
        types = {input_type(txin, psbtin) for txin, psbtin in psbt_util.input_pairs(self.psbt)}
        if len(types) != 1:
            return self.build_non_incentivizing(min_fee_rate)
        rate = coerce_fee_rate(min_fee_rate)
        contribution = rate.fee_for_weight(types.pop().expected_weight)
        return self.build_with_additional_fee(contribution, others[0], rate, clamp_to_max=True)

    def build_with_additional_fee(
        self,
        max_fee_contribution: int,
        change_index: Optional[int] = None,
        min_fee_rate: Any = None,
        clamp_to_max: bool = False,
    ) -> "Sender":
        max_fee_contribution = check_sat(max_fee_contribution)
        payee = self._payee_index()
        outputs = self.psbt.unsigned_tx.vout
        if change_index is None:
            others = [i for i in range(len(outputs)) if i != payee]
            if len(others) != 1:
                raise InvalidInput("Cannot determine the change output; pass change_index")
            change_index = others[0]
        if not 0 <= change_index < len(outputs):
            raise InvalidInput(f"Change output index {change_index} out of range")
        if change_index == payee:
            raise InvalidInput("Change output cannot be the payee output")
        change_value = outputs[change_index].nValue
        if max_fee_contribution > change_value:
            if not clamp_to_max:
                raise InvalidInput(
                    f"Fee contribution {max_fee_contribution} sat exceeds change output ({change_value} sat)"
                )
            max_fee_contribution = change_value
        return self._build(FeeContribution(max_fee_contribution, change_index), min_fee_rate)


# ── sender ────────────────────────────────────────────────────────

class Sender:
    def __init__(self, psbt: PSBT, uri: PayjoinUri, params: SenderParams, payee_index: int):
        self.psbt = psbt
        self.uri = uri
        self.params = params
        self.payee_index = payee_index

    @property
    def directory(self) -> str:
        return self.uri.mailbox_url.rsplit("/", 1)[0]

    def extract_v2(self, ohttp_relay: str) -> tuple[PayjoinRequest, "V2PostContext"]:
        """Encrypt the original PSBT for the receiver's mailbox and wrap it for the relay."""
        if self.uri.is_expired():
            raise SessionExpiredError(self.uri.exp())
        keys = self.uri.ohttp_keys()
        receiver_key = self.uri.receiver_key()
        if keys is None or receiver_key is None:
            raise InvalidInput("Payjoin endpoint lacks the receiver key or OHTTP keys")

        reply_keypair = hpke.KeyPair.generate()
        body = f"{self.psbt.to_base64()}\n{self.params.to_query()}".encode("utf-8")
        message = mailbox.encrypt_message_a(body, reply_keypair.public_key, receiver_key)
        enc, ohttp_ctx = ohttp.encapsulate(keys, "POST", self.uri.mailbox_url, message)
        logger.info("Sender posting original PSBT to %s", self.uri.mailbox_url)
        logger.debug("Original message %d bytes, encapsulated %d bytes", len(message), len(enc))

        post_ctx = V2PostContext(self, reply_keypair, ohttp_ctx)
        request = PayjoinRequest(ohttp_relay, enc, context=post_ctx, session_id=post_ctx.session_id)
        return request, post_ctx

    def to_dict(self) -> dict:
        return {
            "psbt": self.psbt.to_base64(),
            "uri": _uri_to_dict(self.uri),
            "params": self.params.to_query(),
            "payee_index": self.payee_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Sender":
        try:
            uri = PayjoinUri.from_dict(data["uri"])
            psbt = psbt_util.from_base64(data["psbt"])
            payee_index = int(data["payee_index"])
            params = SenderParams.from_query(data["params"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Invalid sender state: {e}") from e
        if uri.receiver_key() is None or uri.ohttp_keys() is None:
            raise InvalidInput("Sender state endpoint lacks the receiver key or OHTTP keys")
        if not 0 <= payee_index < len(psbt.unsigned_tx.vout):
            raise InvalidInput("Sender payee index out of range")
        if bytes(psbt.unsigned_tx.vout[payee_index].scriptPubKey) != uri.script_pubkey:
            raise InvalidInput("Sender payee output does not pay the URI address")
        return cls(psbt, uri, params, payee_index)


class V2PostContext:
    """Awaits the directory's acknowledgement of the original PSBT. Single use."""

    def __init__(self, sender: Sender, reply_keypair: hpke.KeyPair, ohttp_context: ohttp.OhttpContext):
        self.sender = sender
        self.reply_keypair = reply_keypair
        self.ohttp_context = ohttp_context
        self._used = False
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str:
        return mailbox.short_id(self.reply_keypair.public_key)

    def process_response(self, body: bytes) -> "V2GetContext":
        with self._lock:
            if self._used:
                raise ContextConsumedError("Post context was already used")
            self._used = True
        response = ohttp.decapsulate(body, self.ohttp_context)
        if response.status not in _STATUS_ACCEPTED:
            raise TransportFailure(f"Directory returned {response.status}", status_code=response.status)
        logger.info("Sender %s: original PSBT delivered", self.session_id)
        return V2GetContext(self.sender, self.reply_keypair)


class V2GetContext:
    """Polls the sender's reply mailbox for the receiver's proposal."""

    def __init__(self, sender: Sender, reply_keypair: hpke.KeyPair):
        self.sender = sender
        self.reply_keypair = reply_keypair

    @property
    def session_id(self) -> str:
        return mailbox.short_id(self.reply_keypair.public_key)

    def extract_req(self, ohttp_relay: str) -> tuple[PayjoinRequest, ohttp.OhttpContext]:
        if self.sender.uri.is_expired():
            raise SessionExpiredError(self.sender.uri.exp())
        url = f"{self.sender.directory}/{self.session_id}"
        enc, ctx = ohttp.encapsulate(self.sender.uri.ohttp_keys(), "GET", url)
        logger.info("Sender %s polling reply mailbox", self.session_id)
        return PayjoinRequest(ohttp_relay, enc, context=ctx, session_id=self.session_id), ctx

    def process_response(self, body: bytes, ohttp_ctx: ohttp.OhttpContext) -> Optional[str]:
        """Checked proposal PSBT (base64), or None when nothing has arrived yet."""
        response = ohttp.decapsulate(body, ohttp_ctx)
        if response.status == _STATUS_PENDING:
            return None
        if response.status != _STATUS_MESSAGE:
            raise TransportFailure(f"Directory returned {response.status}", status_code=response.status)
        plaintext = mailbox.decrypt_message_b(response.content, self.reply_keypair)
        try:
            proposal = psbt_util.from_base64(plaintext.decode("ascii"))
        except (UnicodeDecodeError, InvalidInput) as e:
            raise PeerRejected("proposal psbt", str(e)) from e
        checked = ProposalChecker(self.sender).check(proposal)
        logger.info("Sender %s: proposal accepted", self.session_id)
        return checked.to_base64()

    def to_dict(self) -> dict:
        return {
            "sender": self.sender.to_dict(),
            "reply_key": self.reply_keypair.secret_bytes().hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "V2GetContext":
        try:
            keypair = hpke.KeyPair.from_secret_bytes(bytes.fromhex(data["reply_key"]))
            sender = Sender.from_dict(data["sender"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Invalid sender poll state: {e}") from e
        return cls(sender, keypair)


# ── proposal checks ───────────────────────────────────────────────

class ProposalChecker:
    """Checks a receiver's proposal against our original before we sign it."""

    def __init__(self, sender: Sender):
        self.original = sender.psbt
        self.params = sender.params
        self.payee_index = sender.payee_index
        self.payee_script = sender.uri.script_pubkey

    def check(self, proposal: PSBT) -> PSBT:
        proposal = psbt_util.copy_psbt(proposal)
        original_tx = self.original.unsigned_tx
        if proposal.unsigned_tx.nVersion != original_tx.nVersion:
            raise PeerRejected("proposal", "transaction version changed")
        if proposal.unsigned_tx.nLockTime != original_tx.nLockTime:
            raise PeerRejected("proposal", "lock time changed")

        receiver_inputs = self._check_inputs(proposal)
        contributed = self._check_outputs(proposal)
        self._restore_sender_inputs(proposal)
        self._check_fees(proposal, receiver_inputs, contributed)
        return proposal

    def _check_inputs(self, proposal: PSBT) -> list[int]:
        originals = list(self.original.unsigned_tx.vin)
        original_outpoints = [outpoint_str(txin.prevout) for txin in originals]
        expected_sequence = originals[0].nSequence
        receiver_inputs = []
        cursor = 0
        for i, (txin, psbtin) in enumerate(psbt_util.input_pairs(proposal)):
            outpoint = outpoint_str(txin.prevout)
            if cursor < len(originals) and outpoint == original_outpoints[cursor]:
                if txin.nSequence != originals[cursor].nSequence:
                    raise PeerRejected("proposal inputs", "sender input sequence changed", index=i)
                if psbtin.utxo is not None:
                    raise PeerRejected("proposal inputs", "sender input carries UTXO data", index=i)
                if psbt_util.is_finalized(psbtin):
                    raise PeerRejected("proposal inputs", "sender input carries final scripts", index=i)
                cursor += 1
                continue
            if outpoint in original_outpoints:
                raise PeerRejected("proposal inputs", "sender inputs were reordered", index=i)
            if not psbt_util.is_finalized(psbtin):
                raise PeerRejected("proposal inputs", "receiver input is not finalized", index=i)
            try:
                psbt_util.input_utxo(proposal, i)
            except InvalidInput as e:
                raise PeerRejected("proposal inputs", "receiver input lacks UTXO data", index=i) from e
            if txin.nSequence != expected_sequence:
                raise PeerRejected("proposal inputs", "receiver input uses a different sequence", index=i)
            receiver_inputs.append(i)
        if cursor != len(originals):
            raise PeerRejected("proposal inputs", "an original input is missing")
        if not receiver_inputs:
            raise PeerRejected("proposal inputs", "receiver contributed no input")
        return receiver_inputs

    def _check_outputs(self, proposal: PSBT) -> int:
        """Returns the amount taken from our fee output."""
        originals = self.original.unsigned_tx.vout
        fc = self.params.fee_contribution
        disabled = self.params.disable_output_substitution
        contributed = 0
        cursor = 0
        for i, (txout, psbtout) in enumerate(zip(proposal.unsigned_tx.vout, proposal.outputs)):
            if psbtout.derivation_map:
                raise PeerRejected("proposal outputs", "output carries key derivation paths", index=i)
            if cursor >= len(originals):
                if disabled:
                    raise PeerRejected("proposal outputs", "new output with substitution disabled", index=i)
                continue
            original = originals[cursor]
            same_script = bytes(txout.scriptPubKey) == bytes(original.scriptPubKey)
            if fc is not None and cursor == fc.output_index and same_script:
                if txout.nValue < original.nValue:
                    contributed = original.nValue - txout.nValue
                    if contributed > fc.max_amount:
                        raise PeerRejected(
                            "fee contribution",
                            f"{contributed} sat exceeds the allowed {fc.max_amount} sat",
                            index=i,
                        )
                cursor += 1
            elif cursor == self.payee_index:
                if disabled and (not same_script or txout.nValue < original.nValue):
                    raise PeerRejected("payee output", "output substituted while disabled", index=i)
                cursor += 1
            elif same_script:
                if txout.nValue != original.nValue:
                    raise PeerRejected("proposal outputs", "sender output value changed", index=i)
                cursor += 1
            elif disabled:
                raise PeerRejected("proposal outputs", "new output with substitution disabled", index=i)
        if cursor != len(originals):
            raise PeerRejected("proposal outputs", "original outputs missing or reordered")
        return contributed

    def _restore_sender_inputs(self, proposal: PSBT) -> None:
        """Put our own input metadata back, minus the final scripts we will sign again."""
        ours = psbt_util.copy_psbt(self.original)
        by_outpoint = {
            outpoint_str(txin.prevout): psbtin for txin, psbtin in psbt_util.input_pairs(ours)
        }
        for i, txin in enumerate(proposal.unsigned_tx.vin):
            restored = by_outpoint.get(outpoint_str(txin.prevout))
            if restored is None:
                continue
            psbt_util.clear_finals(restored)
            restored.index = i
            proposal.inputs[i] = restored

    def _check_fees(self, proposal: PSBT, receiver_inputs: list[int], contributed: int) -> None:
        original_fee = psbt_util.fee(self.original)
        proposed_fee = psbt_util.fee(proposal)
        if proposed_fee < original_fee:
            raise PeerRejected("proposal fee", f"absolute fee decreased from {original_fee} to {proposed_fee} sat")
        if contributed > proposed_fee - original_fee:
            raise PeerRejected("fee contribution", "receiver took part of our fee contribution")

        vin = proposal.unsigned_tx.vin
        input_weight = sum(input_type(vin[i], proposal.inputs[i]).expected_weight for i in receiver_inputs)
        rate = max(psbt_util.fee_rate(self.original), self.params.min_fee_rate)
        if contributed > rate.fee_for_weight(input_weight):
            raise PeerRejected("fee contribution", "contribution pays for more than the receiver's inputs")

        proposed_rate = psbt_util.fee_rate(proposal)
        if proposed_rate < self.params.min_fee_rate:
            raise PeerRejected(
                "proposal fee rate",
                f"{proposed_rate} is below the minimum {self.params.min_fee_rate}",
            )
