"""ASGI middleware that rejects Datatrans webhooks with a bad signature.

Every request that reaches the wrapped application has proven, via the
Datatrans-Signature header, that it was produced by a holder of the Sign2
HMAC key.  Flow per request:

  1. Parse the signature header (missing / malformed → reject)
  2. Drain the body into a replay buffer AND the HMAC at the same time
  3. Swap ``receive`` for one that replays the buffered body
  4. Compare digests in constant time (mismatch → reject)
  5. Call the wrapped app, which reads the identical body bytes

Exactly one of {wrapped app, error handler} runs per request.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from dataclasses import dataclass

import anyio
from starlette.datastructures import Headers
from starlette.requests import ClientDisconnect
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from datatrans_gateway.core.exceptions import (
    BodyReadError,
    MissingSignatureError,
    SignatureMismatchError,
    WebhookError,
)
from datatrans_gateway.core.security import (
    SIGNATURE_HEADER,
    VerifierConfig,
    extract_time_and_hash,
    new_signer,
    signatures_match,
)

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[WebhookError], ASGIApp]

# What a server may raise from receive() when the connection breaks mid-body.
_BODY_READ_ERRORS = (
    OSError,
    ClientDisconnect,
    anyio.BrokenResourceError,
    anyio.ClosedResourceError,
    anyio.EndOfStream,
)


def default_error_handler(error: WebhookError) -> ASGIApp:
    """500 with the error text as body."""
    return PlainTextResponse(str(error), status_code=500)


@dataclass(frozen=True)
class WebhookOption:
    """Configuration of the webhook check.

    https://api-reference.datatrans.ch/#section/Webhook/Webhook-signing
    """

    sign2_hmac_key: str
    error_handler: ErrorHandler | None = None


class TeeSink:
    """Fan-out writer: each chunk is passed to every sink, in order."""

    def __init__(self, *sinks: Callable[[bytes], object]) -> None:
        self._sinks = sinks

    def write(self, chunk: bytes) -> int:
        for sink in self._sinks:
            sink(chunk)
        return len(chunk)


async def drain_body(receive: Receive, sink: TeeSink) -> None:
    """Read ``http.request`` messages until the body is complete.

    Raises:
        BodyReadError: If the transport fails or the client disconnects first.
    """
    more_body = True
    while more_body:
        try:
            message = await receive()
        except _BODY_READ_ERRORS as exc:
            raise BodyReadError() from exc

        if message["type"] == "http.disconnect":
            raise BodyReadError()

        sink.write(message.get("body", b""))
        more_body = message.get("more_body", False)


def replay_receive(body: bytes, receive: Receive) -> Receive:
    """Return a ``receive`` that yields ``body`` once, then defers to ``receive``.

    Later calls go to the original channel so downstream still sees
    ``http.disconnect``.
    """
    replayed = False

    async def _receive() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return _receive


class ValidateWebhookMiddleware:
    """Pure ASGI middleware enforcing the Datatrans webhook signature.

    The key is decoded here, so a bad key fails at construction time and
    a broken middleware can never be installed.

    Raises:
        ConfigurationError: If ``option.sign2_hmac_key`` is not usable.
    """

    def __init__(self, app: ASGIApp, option: WebhookOption) -> None:
        self.app = app
        self.config = VerifierConfig.from_hex(option.sign2_hmac_key)
        self.error_handler = option.error_handler or default_error_handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Datatrans-Signature: t=1559303131511,s0=33819a1220fd8e38fc5bad3f57ef31095fac0deb38c001ba347e694f48ffe2fc
        signature = extract_time_and_hash(Headers(scope=scope).get(SIGNATURE_HEADER, ""))
        if signature.is_empty:
            await self._reject(MissingSignatureError(), scope, receive, send)
            return

        signer = new_signer(self.config, signature.timestamp)
        buffer = io.BytesIO()
        try:
            await drain_body(receive, TeeSink(buffer.write, signer.update))
        except BodyReadError as exc:
            await self._reject(exc, scope, receive, send)
            return

        # The original stream is exhausted; from here on only the copy is read.
        receive = replay_receive(buffer.getvalue(), receive)

        if not signatures_match(signer.digest(), signature.hash):
            await self._reject(SignatureMismatchError(), scope, receive, send)
            return

        await self.app(scope, receive, send)

    async def _reject(
        self,
        error: WebhookError,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        logger.warning(
            "Webhook rejected: %s",
            error,
            extra={"kind": error.kind, "path": scope.get("path", "")},
        )
        response = self.error_handler(error)
        await response(scope, receive, send)


def validate_webhook(option: WebhookOption) -> Callable[[ASGIApp], ValidateWebhookMiddleware]:
    """Check ``option`` now and return a function that wraps an ASGI app.

    Raises:
        ConfigurationError: If the key cannot be decoded.
    """
    VerifierConfig.from_hex(option.sign2_hmac_key)

    def wrap(app: ASGIApp) -> ValidateWebhookMiddleware:
        return ValidateWebhookMiddleware(app, option)

    return wrap
