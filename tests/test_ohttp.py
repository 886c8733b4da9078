"""Tests for HPKE, OHTTP encapsulation, Binary HTTP and mailbox messages."""

import threading

import pytest
from cryptography.exceptions import InvalidTag

from pjflow import bhttp, hpke, mailbox, ohttp
from pjflow.errors import ContextConsumedError, InvalidInput, PeerRejected, TransportFailure


@pytest.fixture
def gateway():
    return ohttp.OhttpGateway(key_id=7)


def test_hpke_seal_and_open():
    recipient = hpke.KeyPair.generate()
    enc, ciphertext = hpke.seal(recipient.public_key, b"info", b"aad", b"secret")
    assert len(enc) == hpke.N_ENC
    assert hpke.open_sealed(enc, recipient, b"info", b"aad", ciphertext) == b"secret"
    with pytest.raises(InvalidTag):
        hpke.open_sealed(enc, recipient, b"other info", b"aad", ciphertext)


def test_keypair_secret_round_trip():
    keypair = hpke.KeyPair.generate()
    restored = hpke.KeyPair.from_secret_bytes(keypair.secret_bytes())
    assert restored.public_bytes() == keypair.public_bytes()
    assert len(keypair.public_bytes()) == 33
    with pytest.raises(ValueError):
        hpke.KeyPair.from_secret_bytes(b"short")


def test_keys_encodings(gateway):
    keys = gateway.keys
    assert ohttp.OhttpKeys.decode(keys.encode()) == keys
    compact = keys.to_compact()
    assert len(compact) == 34
    assert compact[0] == 7
    assert ohttp.OhttpKeys.from_compact(compact) == keys
    with pytest.raises(InvalidInput):
        ohttp.OhttpKeys.from_compact(compact[:-1])


def test_keys_decode_skips_unsupported_configs(gateway):
    unsupported = b"\x00\x03\x01\x00\x20"
    assert ohttp.OhttpKeys.decode(unsupported + gateway.keys.encode()) == gateway.keys
    with pytest.raises(InvalidInput):
        ohttp.OhttpKeys.decode(unsupported)


def test_request_response_round_trip(gateway):
    body, ctx = ohttp.encapsulate(gateway.keys, "POST", "https://directory.example/ABC", b"hello")
    payload, response_ctx = gateway.decapsulate_request(body)
    request = bhttp.Request.decode(payload)
    assert request.method == "POST"
    assert request.url == "https://directory.example/ABC"
    assert request.content == b"hello"

    reply = response_ctx.encapsulate_response(bhttp.Response(202).encode())
    response = ohttp.decapsulate(reply, ctx)
    assert response.status == 202
    assert ctx.consumed


def test_context_is_single_use(gateway):
    body, ctx = ohttp.encapsulate(gateway.keys, "GET", "https://directory.example/ABC")
    _, response_ctx = gateway.decapsulate_request(body)
    reply = response_ctx.encapsulate_response(bhttp.Response(200, content=b"x").encode())
    assert ohttp.decapsulate(reply, ctx).content == b"x"
    with pytest.raises(ContextConsumedError):
        ohttp.decapsulate(reply, ctx)


def test_concurrent_consumers_only_one_wins(gateway):
    body, ctx = ohttp.encapsulate(gateway.keys, "GET", "https://directory.example/ABC")
    _, response_ctx = gateway.decapsulate_request(body)
    reply = response_ctx.encapsulate_response(bhttp.Response(200).encode())
    outcomes = []

    def consume():
        try:
            ohttp.consume_response(reply, ctx)
            outcomes.append("ok")
        except ContextConsumedError:
            outcomes.append("consumed")

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ["consumed"] * 7 + ["ok"]


def test_tampered_response_is_transport_failure(gateway):
    body, ctx = ohttp.encapsulate(gateway.keys, "GET", "https://directory.example/ABC")
    _, response_ctx = gateway.decapsulate_request(body)
    reply = bytearray(response_ctx.encapsulate_response(bhttp.Response(200).encode()))
    reply[-1] ^= 1
    with pytest.raises(TransportFailure):
        ohttp.decapsulate(bytes(reply), ctx)


def test_gateway_rejects_foreign_key_config(gateway):
    other = ohttp.OhttpGateway(key_id=7)
    body, _ = ohttp.encapsulate(other.keys, "GET", "https://directory.example/ABC")
    with pytest.raises(TransportFailure):
        gateway.decapsulate_request(body)


def test_bhttp_request_with_port_and_headers():
    request = bhttp.Request.from_url(
        "GET", "http://localhost:8080/mailbox?x=1", [("accept", "message/ohttp-res")]
    )
    decoded = bhttp.Request.decode(request.encode())
    assert decoded.authority == "localhost:8080"
    assert decoded.path == "/mailbox?x=1"
    assert decoded.headers == [("accept", "message/ohttp-res")]


def test_bhttp_response_rejects_informational():
    with pytest.raises(ValueError):
        bhttp.Response.decode(bhttp.Response(103).encode())


def test_mailbox_messages():
    receiver = hpke.KeyPair.generate()
    reply = hpke.KeyPair.generate()

    message_a = mailbox.encrypt_message_a(b"original psbt", reply.public_key, receiver.public_key)
    assert len(message_a) == hpke.N_ENC + mailbox.PADDED_MESSAGE_BYTES + 16
    body, reply_key = mailbox.decrypt_message_a(message_a, receiver)
    assert body == b"original psbt"
    assert hpke.serialize_public_key(reply_key, compressed=True) == reply.public_bytes()

    message_b = mailbox.encrypt_message_b(b"proposal psbt", reply_key)
    assert len(message_b) == len(message_a)
    assert mailbox.decrypt_message_b(message_b, reply) == b"proposal psbt"

    with pytest.raises(PeerRejected):
        mailbox.decrypt_message_b(message_b, receiver)
    with pytest.raises(PeerRejected):
        mailbox.decrypt_message_a(message_b, receiver)


def test_mailbox_message_size_limit():
    reply = hpke.KeyPair.generate()
    with pytest.raises(InvalidInput):
        mailbox.encrypt_message_b(bytes(mailbox.PADDED_MESSAGE_BYTES + 1), reply.public_key)
