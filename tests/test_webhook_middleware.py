"""Tests for ValidateWebhookMiddleware.

Covers:
- Valid signature → downstream runs and reads the identical body
- Missing / malformed / mismatched signature → error handler, downstream never runs
- Custom error handler
- Chunked bodies, client disconnects and transport failures while draining
- Non-HTTP scopes pass through
- Bad key fails at construction
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from typing import Any

import anyio
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from datatrans_gateway.core.exceptions import (
    BodyReadError,
    ConfigurationError,
    MissingSignatureError,
    SignatureMismatchError,
    WebhookError,
)
from datatrans_gateway.middleware.webhook import (
    TeeSink,
    ValidateWebhookMiddleware,
    WebhookOption,
    replay_receive,
    validate_webhook,
)

TEST_KEY_HEX = "617364666173645e25405e26256661"
TEST_KEY = b"asdfasd^%@^&%fa"
TEST_TIMESTAMP = "1559303131511"
TEST_BODY = b'{"transactionId": "210215103042148501"}'


def _sign(body: bytes, timestamp: str = TEST_TIMESTAMP, key: bytes = TEST_KEY) -> str:
    digest = hmac.new(key, timestamp.encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},s0={digest}"


class _Downstream:
    """Echo app that records every call and the body it saw."""

    def __init__(self) -> None:
        self.bodies: list[bytes] = []
        self.app = FastAPI()

        @self.app.post("/")
        async def echo(request: Request) -> PlainTextResponse:
            first = await request.body()
            second = await request.body()
            assert first == second
            self.bodies.append(first)
            return PlainTextResponse(b"success:" + first)

    @property
    def calls(self) -> int:
        return len(self.bodies)


@pytest.fixture()
def downstream() -> _Downstream:
    return _Downstream()


@pytest.fixture()
def client(downstream: _Downstream) -> TestClient:
    wrapped = ValidateWebhookMiddleware(downstream.app, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
    return TestClient(wrapped)


# =============================================================================
#  HTTP-level behaviour
# =============================================================================


class TestValidSignature:
    def test_downstream_receives_identical_body(
        self, client: TestClient, downstream: _Downstream
    ) -> None:
        response = client.post(
            "/", content=TEST_BODY, headers={"Datatrans-Signature": _sign(TEST_BODY)}
        )
        assert response.status_code == 200
        assert response.content == b"success:" + TEST_BODY
        assert downstream.bodies == [TEST_BODY]

    def test_header_name_case_insensitive(
        self, client: TestClient, downstream: _Downstream
    ) -> None:
        response = client.post(
            "/", content=TEST_BODY, headers={"datatrans-signature": _sign(TEST_BODY)}
        )
        assert response.status_code == 200
        assert downstream.calls == 1

    def test_empty_body_with_valid_signature(
        self, client: TestClient, downstream: _Downstream
    ) -> None:
        response = client.post("/", content=b"", headers={"Datatrans-Signature": _sign(b"")})
        assert response.status_code == 200
        assert downstream.bodies == [b""]

    def test_large_body(self, client: TestClient, downstream: _Downstream) -> None:
        body = b"x" * (256 * 1024)
        response = client.post("/", content=body, headers={"Datatrans-Signature": _sign(body)})
        assert response.status_code == 200
        assert downstream.bodies == [body]


class TestRejection:
    def test_missing_header(self, client: TestClient, downstream: _Downstream) -> None:
        response = client.post("/", content=TEST_BODY)
        assert response.status_code == 500
        assert response.text == "malformed header Datatrans-Signature"
        assert downstream.calls == 0

    @pytest.mark.parametrize(
        "header_value",
        [
            "t=,s0=",
            ",",
            "t=1559303131511s0=33",
            "t=1559303131511,s0=not-hex",
            f"t=,s0={'00' * 32}",
        ],
    )
    def test_malformed_header(
        self, client: TestClient, downstream: _Downstream, header_value: str
    ) -> None:
        response = client.post(
            "/", content=TEST_BODY, headers={"Datatrans-Signature": header_value}
        )
        assert response.status_code == 500
        assert response.text == "malformed header Datatrans-Signature"
        assert downstream.calls == 0

    def test_wrong_hash_same_length(self, client: TestClient, downstream: _Downstream) -> None:
        response = client.post(
            "/",
            content=TEST_BODY,
            headers={"Datatrans-Signature": f"t={TEST_TIMESTAMP},s0={'00' * 32}"},
        )
        assert response.status_code == 500
        assert response.text == "mismatch of Datatrans-Signature"
        assert downstream.calls == 0

    def test_tampered_body(self, client: TestClient, downstream: _Downstream) -> None:
        tampered = TEST_BODY.replace(b"8501", b"8502")
        response = client.post(
            "/", content=tampered, headers={"Datatrans-Signature": _sign(TEST_BODY)}
        )
        assert response.status_code == 500
        assert response.text == "mismatch of Datatrans-Signature"
        assert downstream.calls == 0

    def test_signed_with_other_key(self, client: TestClient, downstream: _Downstream) -> None:
        response = client.post(
            "/",
            content=TEST_BODY,
            headers={"Datatrans-Signature": _sign(TEST_BODY, key=b"another key")},
        )
        assert response.status_code == 500
        assert downstream.calls == 0

    def test_custom_error_handler(self, downstream: _Downstream) -> None:
        seen: list[WebhookError] = []

        def handler(error: WebhookError) -> ASGIApp:
            seen.append(error)
            return JSONResponse({"error": error.kind}, status_code=401)

        wrapped = ValidateWebhookMiddleware(
            downstream.app, WebhookOption(sign2_hmac_key=TEST_KEY_HEX, error_handler=handler)
        )
        client = TestClient(wrapped)

        missing = client.post("/", content=TEST_BODY)
        mismatch = client.post(
            "/", content=TEST_BODY, headers={"Datatrans-Signature": _sign(b"other")}
        )

        assert missing.status_code == 401
        assert missing.json() == {"error": "missing_signature"}
        assert mismatch.json() == {"error": "signature_mismatch"}
        assert [type(e) for e in seen] == [MissingSignatureError, SignatureMismatchError]
        assert downstream.calls == 0


# =============================================================================
#  Construction
# =============================================================================


class TestConstruction:
    @pytest.mark.parametrize("hex_key", ["zz", "abc", ""])
    def test_bad_key_fails_at_construction(self, hex_key: str) -> None:
        with pytest.raises(ConfigurationError):
            ValidateWebhookMiddleware(FastAPI(), WebhookOption(sign2_hmac_key=hex_key))

    def test_factory_fails_before_wrapping(self) -> None:
        with pytest.raises(ConfigurationError):
            validate_webhook(WebhookOption(sign2_hmac_key="not hex"))

    def test_factory_wraps_app(self, downstream: _Downstream) -> None:
        wrap = validate_webhook(WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        client = TestClient(wrap(downstream.app))
        response = client.post(
            "/", content=TEST_BODY, headers={"Datatrans-Signature": _sign(TEST_BODY)}
        )
        assert response.status_code == 200


# =============================================================================
#  ASGI-level behaviour
# =============================================================================


def _scope(headers: dict[str, str]) -> Scope:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/",
        "raw_path": b"/",
        "root_path": "",
        "query_string": b"",
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }


def _receive_from(messages: list[Any]) -> Receive:
    pending = list(messages)

    async def receive() -> Message:
        if not pending:
            return {"type": "http.disconnect"}
        item = pending.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    return receive


class _RecordingApp:
    """Raw ASGI app that drains ``receive`` itself and records the messages."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.called = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.called = True
        if scope["type"] != "http":
            return
        more_body = True
        while more_body:
            message = await receive()
            self.messages.append(message)
            more_body = message.get("more_body", False)
        await PlainTextResponse("ok")(scope, receive, send)


async def _run(app: ASGIApp, scope: Scope, receive: Receive) -> list[Message]:
    sent: list[Message] = []

    async def send(message: Message) -> None:
        sent.append(message)

    await app(scope, receive, send)
    return sent


@pytest.mark.anyio
class TestASGI:
    async def test_chunked_body_replayed_as_one_message(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        receive = _receive_from(
            [
                {"type": "http.request", "body": TEST_BODY[:10], "more_body": True},
                {"type": "http.request", "body": TEST_BODY[10:20], "more_body": True},
                {"type": "http.request", "body": TEST_BODY[20:], "more_body": False},
            ]
        )

        sent = await _run(middleware, _scope({"Datatrans-Signature": _sign(TEST_BODY)}), receive)

        assert sent[0]["status"] == 200
        assert inner.messages == [{"type": "http.request", "body": TEST_BODY, "more_body": False}]

    async def test_disconnect_before_body_complete(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        receive = _receive_from(
            [
                {"type": "http.request", "body": TEST_BODY[:10], "more_body": True},
                {"type": "http.disconnect"},
            ]
        )

        sent = await _run(middleware, _scope({"Datatrans-Signature": _sign(TEST_BODY)}), receive)

        assert sent[0]["status"] == 500
        assert sent[1]["body"] == b"ValidateWebhook: copy failed"
        assert inner.called is False

    @pytest.mark.parametrize(
        "failure",
        [OSError("reset by peer"), anyio.BrokenResourceError(), anyio.EndOfStream()],
    )
    async def test_transport_failure_while_draining(self, failure: Exception) -> None:
        inner = _RecordingApp()
        seen: list[WebhookError] = []

        def handler(error: WebhookError) -> ASGIApp:
            seen.append(error)
            return PlainTextResponse("nope", status_code=400)

        middleware = ValidateWebhookMiddleware(
            inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX, error_handler=handler)
        )
        receive = _receive_from(
            [{"type": "http.request", "body": TEST_BODY[:5], "more_body": True}, failure]
        )

        sent = await _run(middleware, _scope({"Datatrans-Signature": _sign(TEST_BODY)}), receive)

        assert sent[0]["status"] == 400
        assert len(seen) == 1
        assert isinstance(seen[0], BodyReadError)
        assert seen[0].__cause__ is failure
        assert inner.called is False

    async def test_programming_error_in_receive_is_not_a_body_read_failure(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        receive = _receive_from([RuntimeError("receive() called out of order")])

        with pytest.raises(RuntimeError, match="out of order"):
            await _run(middleware, _scope({"Datatrans-Signature": _sign(TEST_BODY)}), receive)

        assert inner.called is False

    async def test_cancelled_drain_propagates(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        receive = _receive_from(
            [
                {"type": "http.request", "body": TEST_BODY[:5], "more_body": True},
                asyncio.CancelledError(),
            ]
        )
        sent: list[Message] = []

        async def send(message: Message) -> None:
            sent.append(message)

        with pytest.raises(asyncio.CancelledError):
            await middleware(_scope({"Datatrans-Signature": _sign(TEST_BODY)}), receive, send)

        assert inner.called is False
        assert sent == []

    async def test_timestamp_hashed_as_wire_bytes(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        raw_timestamp = b"\xe91559303131511"
        digest = hmac.new(TEST_KEY, raw_timestamp + TEST_BODY, hashlib.sha256).hexdigest()
        # _scope encodes header values as latin-1, so this puts raw_timestamp on the wire.
        header = f"t={raw_timestamp.decode('latin-1')},s0={digest}"
        receive = _receive_from([{"type": "http.request", "body": TEST_BODY, "more_body": False}])

        sent = await _run(middleware, _scope({"Datatrans-Signature": header}), receive)

        assert sent[0]["status"] == 200
        assert inner.called is True

    async def test_missing_signature_does_not_read_body(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))
        reads: list[int] = []

        async def receive() -> Message:
            reads.append(1)
            return {"type": "http.request", "body": TEST_BODY, "more_body": False}

        sent = await _run(middleware, _scope({}), receive)

        assert sent[0]["status"] == 500
        assert reads == []
        assert inner.called is False

    async def test_non_http_scope_passes_through(self) -> None:
        inner = _RecordingApp()
        middleware = ValidateWebhookMiddleware(inner, WebhookOption(sign2_hmac_key=TEST_KEY_HEX))

        await _run(middleware, {"type": "lifespan"}, _receive_from([]))

        assert inner.called is True

    async def test_replay_then_defers_to_original(self) -> None:
        receive = replay_receive(b"payload", _receive_from([]))

        first = await receive()
        second = await receive()

        assert first == {"type": "http.request", "body": b"payload", "more_body": False}
        assert second == {"type": "http.disconnect"}


class TestTeeSink:
    def test_writes_every_chunk_to_every_sink(self) -> None:
        left: list[bytes] = []
        right: list[bytes] = []
        sink = TeeSink(left.append, right.append)

        assert sink.write(b"abc") == 3
        sink.write(b"de")

        assert left == right == [b"abc", b"de"]
