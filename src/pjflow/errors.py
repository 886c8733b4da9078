"""
pjflow error types.

Specific exceptions for different failure modes, enabling callers
to decide whether to abort the payment, adjust and retry, or poll again.
"""

from __future__ import annotations

from typing import Optional


class PayjoinError(Exception):
    """Base error for all pjflow operations."""
    pass


# Input errors
class InvalidInput(PayjoinError):
    """Malformed address, URI, PSBT, script or amount."""
    pass


class OutputSubstitutionError(InvalidInput):
    """Receiver tried to change outputs the sender forbade changing."""
    pass


# Protocol errors
class ProtocolViolation(PayjoinError):
    """Operation called out of order or on spent state."""
    pass


class ContextConsumedError(ProtocolViolation):
    """Transport context was already used to process a response."""
    pass


class StageConsumedError(ProtocolViolation):
    """Negotiation stage was already advanced."""
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"{stage} has already been consumed by a previous transition")


class SessionExpiredError(ProtocolViolation):
    """Negotiation session is past its expiry."""
    def __init__(self, expiry: int):
        self.expiry = expiry
        super().__init__(f"Session expired at {expiry}")


# Peer errors
class PeerRejected(PayjoinError):
    """A check on peer-supplied data failed."""
    def __init__(self, check: str, message: str, index: Optional[int] = None):
        self.check = check
        self.index = index
        where = f" (index {index})" if index is not None else ""
        super().__init__(f"{check} failed{where}: {message}")


# Fee errors
class FeePolicyViolation(PayjoinError):
    """Resulting fee rate is outside the caller's bounds."""
    def __init__(self, message: str, fee_rate=None, min_fee_rate=None, max_fee_rate=None):
        self.fee_rate = fee_rate
        self.min_fee_rate = min_fee_rate
        self.max_fee_rate = max_fee_rate
        super().__init__(message)


# Host errors
class ExternalFailure(PayjoinError):
    """A host-supplied callback raised or returned garbage."""
    def __init__(self, callback: str, message: str):
        self.callback = callback
        super().__init__(f"{callback}: {message}")


# Network errors
class TransportFailure(PayjoinError):
    """Relay/directory level failures, opaque to the negotiation."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# Journal errors
class JournalIntegrityError(PayjoinError):
    """Negotiation journal failed verification."""
    def __init__(self, seq: int, message: str):
        self.seq = seq
        super().__init__(f"Journal entry {seq}: {message}")
