"""
Negotiation journal.

One JSON line per negotiation event, keyed by session and stage. Lines
carry a sequence number and an HMAC over the previous line's MAC plus
their own body, so an edited, removed or reordered line breaks
verification. Sessions only write when a journal is injected.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import PayjoinConfig
from .errors import JournalIntegrityError
from .storage import make_private


logger = logging.getLogger(__name__)

JOURNAL_HMAC_KEY_ENV = "PJFLOW_JOURNAL_HMAC_KEY"


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    PROPOSAL_RECEIVED = "proposal_received"
    CHECK_PASSED = "check_passed"
    CHECK_FAILED = "check_failed"
    OUTPUTS_COMMITTED = "outputs_committed"
    INPUT_CONTRIBUTED = "input_contributed"
    PROPOSAL_FINALIZED = "proposal_finalized"
    PROPOSAL_SENT = "proposal_sent"
    PROPOSAL_ACCEPTED = "proposal_accepted"


@dataclass
class JournalEntry:
    seq: int
    event_type: EventType
    session_id: Optional[str]
    stage: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    at: float = 0.0

    def body(self) -> dict:
        return {
            "seq": self.seq,
            "at": self.at,
            "event": self.event_type.value,
            "session": self.session_id,
            "stage": self.stage,
            "ok": self.success,
            "reason": self.reason,
            "details": self.details,
        }

    @classmethod
    def from_body(cls, body: dict) -> "JournalEntry":
        return cls(
            seq=body["seq"],
            event_type=EventType(body["event"]),
            session_id=body.get("session"),
            stage=body.get("stage"),
            success=body.get("ok", True),
            reason=body.get("reason"),
            details=body.get("details") or {},
            at=body.get("at", 0.0),
        )


class NegotiationJournal:
    """Append-only, MAC-chained negotiation log in a private JSONL file."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        config = PayjoinConfig.from_env()
        self.path = make_private(path or config.journal_path)
        self.key_path = key_path or config.journal_key_path
        self._key = self._key_bytes()
        self._lock = threading.Lock()
        self._seq, self._mac = 0, ""
        for entry, mac in self._replay():
            self._seq, self._mac = entry.seq, mac

    def _key_bytes(self) -> bytes:
        shared = os.getenv(JOURNAL_HMAC_KEY_ENV)
        if shared:
            return shared.encode()
        make_private(self.key_path)
        stored = self.key_path.read_text().strip()
        if stored:
            return bytes.fromhex(stored)
        key = secrets.token_bytes(32)
        self.key_path.write_text(key.hex())
        logger.info("Created journal key at %s", self.key_path)
        return key

    def _mac_for(self, body: dict, prev_mac: str) -> str:
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, (prev_mac + canonical).encode(), hashlib.sha256).hexdigest()

    def _replay(self) -> Iterator[tuple[JournalEntry, str]]:
        """Yield every entry with its MAC, verifying the chain as it goes."""
        prev_mac = ""
        expected_seq = 1
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    mac = record.pop("mac")
                    seq = record["seq"]
                except (json.JSONDecodeError, KeyError, AttributeError) as e:
                    raise JournalIntegrityError(expected_seq, f"unreadable line: {e}") from e
                if seq != expected_seq:
                    raise JournalIntegrityError(expected_seq, f"found entry {seq}, entries are missing or reordered")
                if not hmac.compare_digest(self._mac_for(record, prev_mac), mac):
                    raise JournalIntegrityError(seq, "MAC mismatch")
                yield JournalEntry.from_body(record), mac
                prev_mac = mac
                expected_seq += 1

    def log(
        self,
        event_type: EventType,
        session_id: Optional[str] = None,
        stage: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> JournalEntry:
        with self._lock:
            entry = JournalEntry(
                seq=self._seq + 1,
                event_type=event_type,
                session_id=session_id,
                stage=stage,
                success=success,
                reason=reason,
                details=details or {},
                at=time.time(),
            )
            body = entry.body()
            mac = self._mac_for(body, self._mac)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps({**body, "mac": mac}, separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._seq, self._mac = entry.seq, mac
        return entry

    def verify(self) -> int:
        """Check the whole chain; returns the number of entries."""
        return sum(1 for _ in self._replay())

    def events(
        self,
        session_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> list[JournalEntry]:
        """Entries of one session and/or event type, after verifying the chain."""
        return [
            entry for entry, _ in self._replay()
            if (session_id is None or entry.session_id == session_id)
            and (event_type is None or entry.event_type == event_type)
        ]


def record(journal: Optional[NegotiationJournal], event_type: EventType, **kwargs) -> None:
    """Log to `journal` when one is configured."""
    if journal is not None:
        journal.log(event_type, **kwargs)
