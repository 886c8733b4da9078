"""Session serialization and the file-backed session store."""

from __future__ import annotations

import fcntl
import json
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from .config import PayjoinConfig
from .errors import InvalidInput
from .journal import NegotiationJournal
from .receive import STAGES, Receiver
from .send import Sender, V2GetContext
from .storage import SESSION_SUFFIX, make_private, replace_json, session_file


STATE_VERSION = 1

_SIMPLE_TYPES = {
    "Receiver": Receiver,
    "Sender": Sender,
    "V2GetContext": V2GetContext,
}


def to_envelope(obj: Any) -> dict:
    name = type(obj).__name__
    if name not in _SIMPLE_TYPES and name not in STAGES:
        raise InvalidInput(f"Cannot persist {name}")
    return {"type": name, "version": STATE_VERSION, "data": obj.to_dict()}


def from_envelope(envelope: dict, journal: Optional[NegotiationJournal] = None) -> Any:
    if not isinstance(envelope, dict):
        raise InvalidInput("Session state must be a JSON object")
    name = envelope.get("type")
    if envelope.get("version") != STATE_VERSION:
        raise InvalidInput(f"Unsupported session state version {envelope.get('version')!r}")
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise InvalidInput("Session state has no data")

    if name in STAGES:
        return STAGES[name].from_dict(data, journal=journal)
    if name == "Receiver":
        return Receiver.from_dict(data, journal=journal)
    if name in _SIMPLE_TYPES:
        return _SIMPLE_TYPES[name].from_dict(data)
    raise InvalidInput(f"Unknown session state type {name!r}")


def dump_state(obj: Any) -> str:
    """Serialize a receiver, any receiver stage, a sender or a sender poll context."""
    return json.dumps(to_envelope(obj), sort_keys=True)


def load_state(text: str, journal: Optional[NegotiationJournal] = None) -> Any:
    """Inverse of `dump_state`. Raises InvalidInput on unknown or inconsistent state."""
    try:
        envelope = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Session state is not valid JSON: {e}") from e
    return from_envelope(envelope, journal=journal)


class SessionStore:
    """File-backed session store with lock-based concurrency control."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or PayjoinConfig.from_env().sessions_dir
        make_private(self.base_dir, directory=True)
        self._lock_path = make_private(self.base_dir / ".lock")

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _session_path(self, session_id: str) -> Path:
        return session_file(self.base_dir, session_id)

    def _read(self, path: Path) -> dict:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def save(self, session_id: str, obj: Any) -> None:
        """Persist the current state of a session, replacing any previous one."""
        payload = to_envelope(obj)
        payload["session_id"] = session_id
        payload["saved_at"] = int(time.time())
        with self._lock():
            replace_json(self._session_path(session_id), payload)

    def load(self, session_id: str, journal: Optional[NegotiationJournal] = None) -> Optional[Any]:
        with self._lock():
            path = self._session_path(session_id)
            if not path.exists():
                return None
            envelope = self._read(path)
        return from_envelope(envelope, journal=journal)

    def load_raw(self, session_id: str) -> Optional[dict]:
        with self._lock():
            path = self._session_path(session_id)
            if not path.exists():
                return None
            return self._read(path)

    def list(self) -> list[dict]:
        """Summaries of stored sessions, most recently saved first."""
        sessions = []
        with self._lock():
            for path in sorted(self.base_dir.glob(f"*{SESSION_SUFFIX}")):
                raw = self._read(path)
                sessions.append({
                    "session_id": raw.get("session_id", path.stem),
                    "type": raw.get("type"),
                    "saved_at": raw.get("saved_at", 0),
                })
        sessions.sort(key=lambda s: s["saved_at"], reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        with self._lock():
            path = self._session_path(session_id)
            if not path.exists():
                return False
            path.unlink()
            return True
