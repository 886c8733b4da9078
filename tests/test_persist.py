"""Tests for session serialization and the file-backed session store."""

import json
import stat

import pytest

from pjflow.errors import InvalidInput, StageConsumedError
from pjflow.persist import SessionStore, dump_state, load_state
from pjflow.receive import (
    FinalizedProposal,
    InputsContributed,
    OutputsCommitted,
    ProposalCommitted,
    Receiver,
    UnreviewedProposal,
)
from pjflow.send import Sender, SenderBuilder, V2GetContext
from pjflow.storage import make_private, replace_json, session_file

from fixtures.wallet import is_receiver_script, original_psbt, receiver_candidate, sign_all


def _outputs_committed(proposal):
    return (
        proposal.check_broadcast_suitability(None, lambda tx_hex: True)
        .check_inputs_not_owned(lambda script: False)
        .check_no_inputs_seen_before(lambda outpoint: False)
        .identify_receiver_outputs(is_receiver_script)
    )


class TestStateRoundTrip:
    def test_receiver(self, receiver):
        restored = load_state(dump_state(receiver))
        assert isinstance(restored, Receiver)
        assert restored.id == receiver.id
        assert restored.ohttp_keys == receiver.ohttp_keys
        assert restored.ohttp_relay == receiver.ohttp_relay

    def test_every_receiver_stage(self, exchange):
        proposal, _ = exchange()
        assert isinstance(load_state(dump_state(proposal)), UnreviewedProposal)

        outputs = _outputs_committed(proposal)
        restored = load_state(dump_state(outputs))
        assert isinstance(restored, OutputsCommitted)
        assert restored.is_output_substitution_disabled() == outputs.is_output_substitution_disabled()

        inputs = restored.commit_outputs()
        assert isinstance(load_state(dump_state(inputs)), InputsContributed)

        committed = inputs.try_contribute_inputs([receiver_candidate()])
        restored_committed = load_state(dump_state(committed))
        assert isinstance(restored_committed, ProposalCommitted)
        assert restored_committed.psbt_to_sign() == committed.psbt_to_sign()

        finalized = restored_committed.finalize_proposal(min_fee_rate=1, max_fee_rate=10, wallet_signer=sign_all)
        restored_final = load_state(dump_state(finalized))
        assert isinstance(restored_final, FinalizedProposal)
        assert restored_final.get_txid() == finalized.get_txid()
        assert restored_final.fee_rate() == finalized.fee_rate()
        assert restored_final.utxos_to_be_locked() == finalized.utxos_to_be_locked()

    def test_restored_copy_is_independent_of_consumed_stage(self, exchange):
        proposal, _ = exchange()
        outputs = _outputs_committed(proposal)
        snapshot = dump_state(outputs)
        outputs.commit_outputs()
        with pytest.raises(StageConsumedError):
            outputs.commit_outputs()
        assert isinstance(load_state(snapshot).commit_outputs(), InputsContributed)

    def test_sender_and_poll_context(self, receiver, exchange):
        _, get_ctx = exchange()
        restored = load_state(dump_state(get_ctx))
        assert isinstance(restored, V2GetContext)
        assert restored.session_id == get_ctx.session_id

        uri = receiver.pj_uri_builder().build()
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_non_incentivizing()
        restored_sender = load_state(dump_state(sender))
        assert isinstance(restored_sender, Sender)
        assert restored_sender.params == sender.params

    def test_inconsistent_stage_state_is_rejected(self, exchange):
        proposal, _ = exchange()
        envelope = json.loads(dump_state(_outputs_committed(proposal)))
        envelope["data"]["payee_index"] = 7
        with pytest.raises(InvalidInput):
            load_state(json.dumps(envelope))

    def test_finalized_state_needs_receiver_inputs(self, committed):
        stage, _ = committed()
        finalized = stage.finalize_proposal(min_fee_rate=1, max_fee_rate=10, wallet_signer=sign_all)
        envelope = json.loads(dump_state(finalized))
        envelope["data"]["receiver_inputs"] = []
        with pytest.raises(InvalidInput):
            load_state(json.dumps(envelope))

    @pytest.mark.parametrize(
        "field, value",
        [("address", "not-an-address"), ("endpoint", "nonsense")],
    )
    def test_invalid_persisted_sender_is_rejected(self, receiver, field, value):
        uri = receiver.pj_uri_builder().build()
        sender = SenderBuilder.from_psbt_and_uri(original_psbt(), uri).build_non_incentivizing()
        envelope = json.loads(dump_state(sender))
        envelope["data"]["uri"][field] = value
        with pytest.raises(InvalidInput):
            load_state(json.dumps(envelope))

    def test_invalid_persisted_poll_context_is_rejected(self, exchange):
        _, get_ctx = exchange()
        envelope = json.loads(dump_state(get_ctx))
        envelope["data"]["sender"]["uri"]["address"] = "not-an-address"
        with pytest.raises(InvalidInput):
            load_state(json.dumps(envelope))

    def test_unknown_type_and_version(self, receiver):
        envelope = json.loads(dump_state(receiver))
        with pytest.raises(InvalidInput):
            load_state(json.dumps({**envelope, "type": "Wallet"}))
        with pytest.raises(InvalidInput):
            load_state(json.dumps({**envelope, "version": 99}))
        with pytest.raises(InvalidInput):
            load_state("{not json")

    def test_unpersistable_object(self):
        with pytest.raises(InvalidInput):
            dump_state(object())


class TestSessionStore:
    def test_save_load_list_delete(self, tmp_path, receiver, exchange):
        store = SessionStore(tmp_path / "sessions")
        proposal, get_ctx = exchange()
        store.save("recv-1", receiver)
        store.save("send-1", get_ctx)

        loaded = store.load("recv-1")
        assert loaded.id == receiver.id
        assert store.load("send-1").session_id == get_ctx.session_id
        assert store.load("missing") is None

        listed = {s["session_id"]: s["type"] for s in store.list()}
        assert listed == {"recv-1": "Receiver", "send-1": "V2GetContext"}

        assert store.load_raw("recv-1")["session_id"] == "recv-1"
        assert store.delete("recv-1") is True
        assert store.delete("recv-1") is False
        assert [s["session_id"] for s in store.list()] == ["send-1"]

    def test_save_replaces_previous_state(self, tmp_path, exchange):
        store = SessionStore(tmp_path / "sessions")
        proposal, _ = exchange()
        store.save("recv", proposal)
        store.save("recv", _outputs_committed(proposal))
        assert isinstance(store.load("recv"), OutputsCommitted)
        assert len(store.list()) == 1

    def test_identifier_cannot_escape_store(self, tmp_path, receiver):
        store = SessionStore(tmp_path / "sessions")
        store.save("../escape", receiver)
        assert not (tmp_path / "escape.json").exists()
        assert store.load("../escape").id == receiver.id

    def test_defaults_to_configured_home(self, tmp_path):
        store = SessionStore()
        assert store.base_dir == tmp_path / "pjflow-home" / "sessions"
        assert store.base_dir.is_dir()

    def test_store_files_are_private(self, tmp_path, receiver):
        store = SessionStore(tmp_path / "sessions")
        store.save("recv", receiver)
        assert stat.S_IMODE(store.base_dir.stat().st_mode) == 0o700
        assert stat.S_IMODE((store.base_dir / "recv.json").stat().st_mode) == 0o600
        assert not list(store.base_dir.glob(".recv.json.*"))


class TestStorage:
    def test_session_file_stays_in_store(self, tmp_path):
        assert session_file(tmp_path, "AB-cd_1") == (tmp_path / "AB-cd_1.json").resolve()
        assert session_file(tmp_path, "../x/y").parent == tmp_path.resolve()
        for bad in ("", None, 7):
            with pytest.raises(InvalidInput):
                session_file(tmp_path, bad)

    def test_make_private(self, tmp_path):
        path = make_private(tmp_path / "a" / "b" / "file")
        assert path.exists()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700

    def test_replace_json(self, tmp_path):
        target = tmp_path / "state.json"
        replace_json(target, {"b": 1, "a": [1, 2]})
        replace_json(target, {"c": True})
        assert json.loads(target.read_text()) == {"c": True}
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
