"""Owner-only files for session state and the journal."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path

from .errors import InvalidInput


SESSION_SUFFIX = ".json"

# mailbox ids are bech32 characters; anything else is replaced
_NOT_ID_CHAR = re.compile(r"[^A-Za-z0-9_-]")


def make_private(path: Path, directory: bool = False) -> Path:
    """Create `path` (and its parents) if missing; 0700 for directories, 0600 for files."""
    if directory:
        path.mkdir(parents=True, exist_ok=True)
        path.chmod(0o700)
    else:
        make_private(path.parent, directory=True)
        path.touch(exist_ok=True)
        path.chmod(0o600)
    return path


def session_file(store_dir: Path, session_id: str) -> Path:
    """Where the state of `session_id` lives inside `store_dir`."""
    if not isinstance(session_id, str) or not session_id:
        raise InvalidInput("Session id must be a non-empty string")
    target = (store_dir / (_NOT_ID_CHAR.sub("_", session_id) + SESSION_SUFFIX)).resolve()
    if target.parent != store_dir.resolve():
        raise InvalidInput(f"Session id {session_id!r} does not name a file in the store")
    return target


def replace_json(path: Path, payload: dict) -> None:
    """Write `payload` beside `path` with owner-only mode, then rename it into place."""
    staging = path.with_name(f".{path.name}.{os.getpid()}")
    fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(staging, path)
