"""
pjflow: Payjoin v2 negotiation core.

Receiver and sender state machines for BIP78 payjoins carried over an
asynchronous directory: end-to-end encrypted mailboxes reached through an
Oblivious HTTP relay.
"""

__version__ = "0.1.0"

from .amount import FeeRate, btc_to_sat, format_btc, sat_to_btc
from .errors import (
    ContextConsumedError,
    ExternalFailure,
    FeePolicyViolation,
    InvalidInput,
    JournalIntegrityError,
    OutputSubstitutionError,
    PayjoinError,
    PeerRejected,
    ProtocolViolation,
    SessionExpiredError,
    StageConsumedError,
    TransportFailure,
)
from .input_pair import InputPair, ReplacementOutput
from .journal import EventType, NegotiationJournal
from .ohttp import OhttpContext, OhttpKeys, consume_response, issue_request
from .params import FeeContribution, SenderParams
from .persist import SessionStore, dump_state, load_state
from .psbt import PSBT
from .receive import (
    FinalizedProposal,
    InputsContributed,
    OutputsClassified,
    OutputsCommitted,
    OwnershipChecked,
    ProposalCommitted,
    Receiver,
    ReplayChecked,
    UnreviewedProposal,
)
from .request import PayjoinRequest
from .send import Sender, SenderBuilder, V2GetContext, V2PostContext
from .uri import PayjoinUri, PayjoinUriBuilder

__all__ = [
    "FeeRate", "btc_to_sat", "format_btc", "sat_to_btc",
    "PayjoinError", "InvalidInput", "OutputSubstitutionError", "ProtocolViolation",
    "ContextConsumedError", "StageConsumedError", "SessionExpiredError",
    "PeerRejected", "FeePolicyViolation", "ExternalFailure", "TransportFailure",
    "JournalIntegrityError",
    "InputPair", "ReplacementOutput", "EventType", "NegotiationJournal",
    "OhttpContext", "OhttpKeys", "consume_response", "issue_request",
    "FeeContribution", "SenderParams", "SessionStore", "dump_state", "load_state",
    "PSBT", "Receiver", "UnreviewedProposal", "OwnershipChecked", "ReplayChecked",
    "OutputsClassified", "OutputsCommitted", "InputsContributed", "ProposalCommitted",
    "FinalizedProposal", "PayjoinRequest", "Sender", "SenderBuilder",
    "V2PostContext", "V2GetContext", "PayjoinUri", "PayjoinUriBuilder",
]
