"""Shared fixtures: an in-memory directory, a receiver session and the exchange up to a proposal."""

import pytest

from pjflow.receive import Receiver
from pjflow.send import SenderBuilder

from fixtures.directory import InMemoryDirectory
from fixtures.wallet import (
    DIRECTORY_URL,
    RECEIVER_ADDRESS,
    RELAY_URL,
    is_receiver_script,
    original_psbt,
    receiver_candidate,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("PJFLOW_HOME", str(tmp_path / "pjflow-home"))
    monkeypatch.delenv("PJFLOW_JOURNAL_HMAC_KEY", raising=False)


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def receiver(directory):
    return Receiver(RECEIVER_ADDRESS, DIRECTORY_URL, directory.keys, RELAY_URL)


@pytest.fixture
def exchange(directory, receiver):
    """Deliver an original PSBT to the receiver.

    Returns a function giving ``(UnreviewedProposal, V2GetContext)``.
    """

    def run(psbt=None, min_fee_rate=1, disable_output_substitution=False, contribute=True):
        uri = receiver.pj_uri_builder().amount(50_000).build()
        builder = SenderBuilder.from_psbt_and_uri(psbt or original_psbt(), uri)
        if disable_output_substitution:
            builder = builder.always_disable_output_substitution()
        if contribute:
            sender = builder.build_recommended(min_fee_rate)
        else:
            sender = builder.build_non_incentivizing(min_fee_rate)
        request, post_ctx = sender.extract_v2(RELAY_URL)
        get_ctx = post_ctx.process_response(directory.handle(request.body))

        poll = receiver.extract_req()
        proposal = receiver.process_res(directory.handle(poll.body), poll)
        assert proposal is not None
        return proposal, get_ctx

    return run


@pytest.fixture
def committed(exchange):
    """Run the receiver checks and contribute one input: returns (ProposalCommitted, V2GetContext)."""

    def run(**kwargs):
        proposal, get_ctx = exchange(**kwargs)
        stage = (
            proposal.check_broadcast_suitability(None, lambda tx_hex: True)
            .check_inputs_not_owned(lambda script: False)
            .check_no_inputs_seen_before(lambda outpoint: False)
            .identify_receiver_outputs(is_receiver_script)
            .commit_outputs()
            .try_contribute_inputs([receiver_candidate()])
        )
        return stage, get_ctx

    return run
