"""Outbound encrypted requests and the context slot paired with each."""

from __future__ import annotations

import threading
from typing import Any, Optional

from .errors import ProtocolViolation
from .ohttp import REQUEST_CONTENT_TYPE, OhttpContext


class PayjoinRequest:
    """An encapsulated request ready to POST to the OHTTP relay.

    The context needed to read the reply travels with the request and can
    be taken out exactly once.
    """

    def __init__(self, url: str, body: bytes, context: Any = None,
                 content_type: str = REQUEST_CONTENT_TYPE, session_id: Optional[str] = None):
        self.url = url
        self.body = body
        self.content_type = content_type
        self.session_id = session_id
        self._context = context
        self._lock = threading.Lock()

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": self.content_type}

    def has_context(self) -> bool:
        return self._context is not None

    def take_context(self) -> Any:
        with self._lock:
            context, self._context = self._context, None
        if context is None:
            raise ProtocolViolation("Request context is missing or was already taken")
        return context

    def take_ohttp_context(self) -> OhttpContext:
        """Remove and return the OHTTP context. Raises ProtocolViolation if absent."""
        context = self.take_context()
        ctx = getattr(context, "ohttp_context", context)
        if not isinstance(ctx, OhttpContext):
            raise ProtocolViolation("Request does not carry an OHTTP context")
        return ctx

    def process_response(self, body: bytes):
        """Consume the sender post context stored in this request."""
        context = self.take_context()
        process = getattr(context, "process_response", None)
        if process is None:
            raise ProtocolViolation("Request does not carry a post context")
        return process(body)

    def __repr__(self) -> str:
        return f"PayjoinRequest(url={self.url!r}, body={len(self.body)} bytes)"
