"""In-memory payjoin directory terminating OHTTP, for end-to-end tests."""

from __future__ import annotations

import httpx

from pjflow import bhttp
from pjflow.ohttp import OhttpGateway


class InMemoryDirectory:
    """Mailbox store behind an OHTTP gateway.

    GET of a mailbox returns (and removes) its message or 202; POST stores
    the body. `handle` takes and returns encapsulated bytes, as the relay
    would forward them.
    """

    def __init__(self):
        self.gateway = OhttpGateway(key_id=1)
        self.mailboxes: dict[str, bytes] = {}
        self.requests: list[bhttp.Request] = []
        self.fail_with: int | None = None

    @property
    def keys(self):
        return self.gateway.keys

    def _respond(self, request: bhttp.Request) -> bhttp.Response:
        if self.fail_with is not None:
            return bhttp.Response(self.fail_with)
        mailbox_id = request.path.rsplit("/", 1)[-1]
        if request.method == "GET":
            if mailbox_id in self.mailboxes:
                return bhttp.Response(200, content=self.mailboxes.pop(mailbox_id))
            return bhttp.Response(202)
        if request.method == "POST":
            self.mailboxes[mailbox_id] = request.content
            return bhttp.Response(200)
        return bhttp.Response(405)

    def handle(self, body: bytes) -> bytes:
        payload, ctx = self.gateway.decapsulate_request(body)
        request = bhttp.Request.decode(payload)
        self.requests.append(request)
        return ctx.encapsulate_response(self._respond(request).encode())

    def transport(self) -> httpx.MockTransport:
        """httpx transport acting as relay plus the directory's key endpoint."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET" and request.url.path == "/.well-known/ohttp-gateway":
                return httpx.Response(200, content=self.keys.encode())
            if request.method == "POST":
                return httpx.Response(200, content=self.handle(request.content))
            return httpx.Response(404)

        return httpx.MockTransport(handler)
