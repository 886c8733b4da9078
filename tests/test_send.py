"""Tests for the sender builder, v2 contexts and proposal checks."""

import time

import pytest
from bitcointx.core import CTxOut
from bitcointx.core.script import CScript

from pjflow import psbt as psbt_util
from pjflow.amount import FeeRate
from pjflow.errors import ContextConsumedError, InvalidInput, PeerRejected, SessionExpiredError
from pjflow.params import SenderParams
from pjflow.receive import Receiver
from pjflow.send import ProposalChecker, Sender, SenderBuilder
from pjflow.uri import PayjoinUriBuilder

from fixtures.wallet import (
    DIRECTORY_URL,
    RECEIVER_ADDRESS,
    RECEIVER_DRAIN_SCRIPT,
    RECEIVER_INPUT_SCRIPT,
    RECEIVER_SCRIPT,
    RELAY_URL,
    SENDER_CHANGE_SCRIPT,
    SENDER_INPUT_SCRIPT,
    build_psbt,
    original_psbt,
    sign_all,
    txid,
)


SENDER_OUTPOINT = f"{txid(1)}:0"


@pytest.fixture
def uri(receiver):
    return receiver.pj_uri_builder().amount(50_000).build()


class TestSenderBuilder:
    def test_rejects_uri_without_session_parameters(self):
        plain = PayjoinUriBuilder(RECEIVER_ADDRESS, f"{DIRECTORY_URL}/ABCDEF").build()
        with pytest.raises(InvalidInput):
            SenderBuilder.from_psbt_and_uri(original_psbt(), plain)

    def test_rejects_uri_without_pj(self):
        with pytest.raises(InvalidInput):
            SenderBuilder.from_psbt_and_uri(original_psbt(), f"bitcoin:{RECEIVER_ADDRESS}?amount=0.0005")

    def test_rejects_malformed_psbt(self, uri):
        with pytest.raises(InvalidInput):
            SenderBuilder.from_psbt_and_uri("cHNidP8=", uri)

    def test_accepts_base64_psbt(self, uri):
        builder = SenderBuilder.from_psbt_and_uri(original_psbt().to_base64(), uri)
        assert psbt_util.same_unsigned_tx(builder.psbt, original_psbt())

    def test_recommended_contribution_covers_one_input(self, uri):
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(2)
        fc = sender.params.fee_contribution
        assert fc.output_index == 1
        # 272 WU at 500 sat/kwu
        assert fc.max_amount == 136
        assert sender.params.min_fee_rate == FeeRate(500)

    def test_recommended_without_change_is_non_incentivizing(self, uri):
        psbt = build_psbt([(txid(1), 0, 100_000, SENDER_INPUT_SCRIPT)], [(50_000, RECEIVER_SCRIPT)])
        sender = SenderBuilder.from_psbt_and_uri(psbt, uri).build_recommended(1)
        assert sender.params.fee_contribution is None

    def test_additional_fee_is_clamped_or_rejected(self, uri):
        builder = SenderBuilder.from_psbt_and_uri(original_psbt(change_value=100), uri)
        with pytest.raises(InvalidInput):
            builder.build_with_additional_fee(500, 1, 1, clamp_to_max=False)
        sender = builder.build_with_additional_fee(500, 1, 1, clamp_to_max=True)
        assert sender.params.fee_contribution.max_amount == 100

    def test_change_index_cannot_be_payee(self, uri):
        builder = SenderBuilder.from_psbt_and_uri(original_psbt(), uri)
        with pytest.raises(InvalidInput):
            builder.build_with_additional_fee(100, 0)
        with pytest.raises(InvalidInput):
            builder.build_with_additional_fee(100, 5)

    def test_missing_payee_output(self, uri):
        psbt = build_psbt(
            [(txid(1), 0, 100_000, SENDER_INPUT_SCRIPT)],
            [(50_000, RECEIVER_DRAIN_SCRIPT), (49_000, SENDER_CHANGE_SCRIPT)],
        )
        builder = SenderBuilder.from_psbt_and_uri(psbt, uri)
        with pytest.raises(InvalidInput):
            builder.build_recommended(1)

    def test_output_substitution_flag(self, uri):
        builder = SenderBuilder.from_psbt_and_uri(original_psbt(), uri)
        assert not builder.disable_output_substitution
        sender = builder.always_disable_output_substitution().build_non_incentivizing()
        assert sender.params.disable_output_substitution
        assert "disableoutputsubstitution=true" in sender.params.to_query()


class TestSenderRequests:
    def test_extract_v2_posts_to_receiver_mailbox(self, uri, receiver, directory):
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1)
        request, post_ctx = sender.extract_v2(RELAY_URL)
        assert request.url == RELAY_URL
        get_ctx = request.process_response(directory.handle(request.body))
        assert directory.requests[-1].method == "POST"
        assert directory.requests[-1].path == f"/{receiver.id}"
        assert receiver.id in directory.mailboxes
        assert get_ctx.session_id == post_ctx.session_id

    def test_post_context_is_single_use(self, uri, directory):
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1)
        request, post_ctx = sender.extract_v2(RELAY_URL)
        body = directory.handle(request.body)
        post_ctx.process_response(body)
        with pytest.raises(ContextConsumedError):
            post_ctx.process_response(body)

    def test_expired_uri(self, directory):
        receiver = Receiver(
            RECEIVER_ADDRESS, DIRECTORY_URL, directory.keys, RELAY_URL, expiry=int(time.time()) - 10
        )
        uri = receiver.pj_uri_builder().build()
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1)
        with pytest.raises(SessionExpiredError):
            sender.extract_v2(RELAY_URL)

    def test_poll_before_proposal_returns_none(self, exchange, directory):
        _, get_ctx = exchange()
        request, ohttp_ctx = get_ctx.extract_req(RELAY_URL)
        assert get_ctx.process_response(directory.handle(request.body), ohttp_ctx) is None
        assert directory.requests[-1].path == f"/{get_ctx.session_id}"

    def test_sender_state_round_trip(self, uri):
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1)
        restored = Sender.from_dict(sender.to_dict())
        assert restored.params == sender.params
        assert restored.payee_index == sender.payee_index
        assert restored.uri.mailbox_url == sender.uri.mailbox_url

    @pytest.mark.parametrize(
        "field, value",
        [
            ("address", "not-an-address"),
            ("endpoint", "nonsense"),
            ("endpoint", "ftp://directory.example/ABC"),
            ("amount_sat", -5),
        ],
    )
    def test_sender_state_with_invalid_uri_is_rejected(self, uri, field, value):
        data = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1).to_dict()
        data["uri"][field] = value
        with pytest.raises(InvalidInput):
            Sender.from_dict(data)

    def test_sender_state_payee_must_match_uri(self, uri):
        data = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_recommended(1).to_dict()
        data["payee_index"] = 1
        with pytest.raises(InvalidInput):
            Sender.from_dict(data)
        data["payee_index"] = 7
        with pytest.raises(InvalidInput):
            Sender.from_dict(data)


def _proposal(committed):
    stage, get_ctx = committed()
    finalized = stage.finalize_proposal(min_fee_rate=1, max_fee_rate=10, wallet_signer=sign_all)
    return psbt_util.from_base64(finalized.psbt()), get_ctx


def _sender_with(get_ctx, params):
    sender = get_ctx.sender
    return Sender(sender.psbt, sender.uri, params, sender.payee_index)


class TestProposalChecks:
    def test_valid_proposal_is_restored_for_signing(self, committed):
        proposal, get_ctx = _proposal(committed)
        checked = ProposalChecker(get_ctx.sender).check(proposal)
        original = original_psbt()
        for txin, psbtin in psbt_util.input_pairs(checked):
            if psbt_util.outpoint_str(txin.prevout) == SENDER_OUTPOINT:
                assert psbtin.utxo == original.inputs[0].utxo
                assert not psbt_util.is_finalized(psbtin)
            else:
                assert psbt_util.is_finalized(psbtin)

    def test_check_leaves_the_proposal_untouched(self, committed):
        proposal, get_ctx = _proposal(committed)
        before = proposal.to_base64()
        ProposalChecker(get_ctx.sender).check(proposal)
        assert proposal.to_base64() == before

    def test_missing_original_input(self, committed):
        proposal, get_ctx = _proposal(committed)
        keep = [i for i, op in enumerate(psbt_util.outpoints(proposal)) if op != SENDER_OUTPOINT]
        tampered = psbt_util.assemble(
            proposal,
            [proposal.unsigned_tx.vin[i] for i in keep],
            proposal.unsigned_tx.vout,
            [proposal.inputs[i] for i in keep],
            list(proposal.outputs),
        )
        with pytest.raises(PeerRejected):
            ProposalChecker(get_ctx.sender).check(tampered)

    def test_changed_lock_time(self, committed):
        proposal, get_ctx = _proposal(committed)
        template = build_psbt([(txid(1), 0, 1, SENDER_INPUT_SCRIPT)], [(1, SENDER_CHANGE_SCRIPT)], lock_time=500)
        tampered = psbt_util.assemble(
            template,
            proposal.unsigned_tx.vin,
            proposal.unsigned_tx.vout,
            list(proposal.inputs),
            list(proposal.outputs),
        )
        with pytest.raises(PeerRejected):
            ProposalChecker(get_ctx.sender).check(tampered)

    def test_excess_fee_taken_from_change(self, committed):
        proposal, get_ctx = _proposal(committed)
        change = proposal.unsigned_tx.vout[1].nValue
        tampered = psbt_util.with_output_values(proposal, {1: change - 1_000})
        with pytest.raises(PeerRejected) as exc:
            ProposalChecker(get_ctx.sender).check(tampered)
        assert exc.value.check == "fee contribution"

    def test_receiver_input_must_be_finalized(self, committed):
        proposal, get_ctx = _proposal(committed)
        for txin, psbtin in psbt_util.input_pairs(proposal):
            if psbt_util.outpoint_str(txin.prevout) != SENDER_OUTPOINT:
                psbt_util.clear_finals(psbtin)
        with pytest.raises(PeerRejected):
            ProposalChecker(get_ctx.sender).check(proposal)

    def test_sender_input_with_utxo_data_is_rejected(self, committed):
        proposal, get_ctx = _proposal(committed)
        for txin, psbtin in psbt_util.input_pairs(proposal):
            if psbt_util.outpoint_str(txin.prevout) == SENDER_OUTPOINT:
                psbtin.utxo = original_psbt().inputs[0].utxo
        with pytest.raises(PeerRejected):
            ProposalChecker(get_ctx.sender).check(proposal)

    def test_new_output_rejected_when_substitution_disabled(self, committed):
        proposal, get_ctx = _proposal(committed)
        params = get_ctx.sender.params
        sender = _sender_with(
            get_ctx,
            SenderParams(
                disable_output_substitution=True,
                fee_contribution=params.fee_contribution,
                min_fee_rate=params.min_fee_rate,
            ),
        )
        vout = list(proposal.unsigned_tx.vout)
        vout[0] = CTxOut(vout[0].nValue - 1_000, vout[0].scriptPubKey)
        vout.append(CTxOut(1_000, CScript(RECEIVER_INPUT_SCRIPT)))
        tampered = psbt_util.assemble(
            proposal, proposal.unsigned_tx.vin, vout, list(proposal.inputs), list(proposal.outputs) + [None]
        )
        with pytest.raises(PeerRejected):
            ProposalChecker(sender).check(tampered)

    def test_sender_output_value_change(self, committed):
        proposal, get_ctx = _proposal(committed)
        sender = _sender_with(get_ctx, SenderParams(min_fee_rate=get_ctx.sender.params.min_fee_rate))
        # no contribution allowed, yet the change output shrank
        assert bytes(proposal.unsigned_tx.vout[1].scriptPubKey) == SENDER_CHANGE_SCRIPT
        with pytest.raises(PeerRejected):
            ProposalChecker(sender).check(proposal)

    def test_fee_rate_below_minimum(self, committed):
        proposal, get_ctx = _proposal(committed)
        sender = _sender_with(
            get_ctx,
            SenderParams(
                fee_contribution=get_ctx.sender.params.fee_contribution,
                min_fee_rate=FeeRate.from_sat_per_vb(50),
            ),
        )
        with pytest.raises(PeerRejected):
            ProposalChecker(sender).check(proposal)
