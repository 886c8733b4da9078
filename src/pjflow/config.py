"""Environment-driven configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import InvalidInput


PJFLOW_HOME_ENV = "PJFLOW_HOME"
PJFLOW_OHTTP_RELAY_ENV = "PJFLOW_OHTTP_RELAY"
PJFLOW_DIRECTORY_ENV = "PJFLOW_DIRECTORY"
PJFLOW_HTTP_TIMEOUT_ENV = "PJFLOW_HTTP_TIMEOUT"
PJFLOW_EXPIRY_ENV = "PJFLOW_EXPIRY"

DEFAULT_HOME = Path.home() / ".pjflow"
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_EXPIRY_SECONDS = 86_400


@dataclass
class PayjoinConfig:
    home: Path = field(default_factory=lambda: DEFAULT_HOME)
    ohttp_relay: Optional[str] = None
    directory: Optional[str] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def journal_path(self) -> Path:
        return self.home / "journal.jsonl"

    @property
    def journal_key_path(self) -> Path:
        return self.home / "secrets" / "journal_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "PayjoinConfig":
        env = os.environ if environ is None else environ
        home = env.get(PJFLOW_HOME_ENV)
        try:
            timeout = float(env.get(PJFLOW_HTTP_TIMEOUT_ENV, DEFAULT_HTTP_TIMEOUT))
            expiry = int(env.get(PJFLOW_EXPIRY_ENV, DEFAULT_EXPIRY_SECONDS))
        except ValueError as e:
            raise InvalidInput(f"Invalid numeric configuration value: {e}") from e
        if timeout <= 0 or expiry <= 0:
            raise InvalidInput("Timeout and expiry must be positive")
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            ohttp_relay=env.get(PJFLOW_OHTTP_RELAY_ENV) or None,
            directory=env.get(PJFLOW_DIRECTORY_ENV) or None,
            http_timeout=timeout,
            expiry_seconds=expiry,
        )
