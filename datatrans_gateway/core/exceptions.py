"""Domain-specific exceptions for the Datatrans gateway.

Webhook failures are handled inside the middleware and turned into
responses; client failures propagate to the caller.  Never raise bare
Exception or use generic error types.
"""

from __future__ import annotations


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(Exception):
    """Settings are unusable. Raised at construction, before any request is served."""


# =============================================================================
# Webhook / Security
# =============================================================================


class WebhookError(Exception):
    """Base exception for an inbound webhook that must not reach the handler."""

    kind: str = "webhook_error"


class MissingSignatureError(WebhookError):
    """Datatrans-Signature header is absent or does not parse."""

    kind = "missing_signature"

    def __init__(self, message: str = "malformed header Datatrans-Signature") -> None:
        super().__init__(message)


class SignatureMismatchError(WebhookError):
    """Computed HMAC does not match the hash claimed by the header."""

    kind = "signature_mismatch"

    def __init__(self, message: str = "mismatch of Datatrans-Signature") -> None:
        super().__init__(message)


class BodyReadError(WebhookError):
    """The request body could not be drained for hashing."""

    kind = "body_read_failed"

    def __init__(self, message: str = "ValidateWebhook: copy failed") -> None:
        super().__init__(message)


# =============================================================================
# Datatrans API
# =============================================================================


class DatatransError(Exception):
    """Base exception for all Datatrans API client failures."""


class DatatransRequestError(DatatransError):
    """Request arguments were rejected before any network I/O."""


class MerchantNotFoundError(DatatransError):
    """The selected internal merchant ID was never registered with the client."""

    def __init__(self, internal_id: str) -> None:
        self.internal_id = internal_id
        super().__init__(f"ClientID {internal_id!r} not found in list of merchants")


class DatatransTransportError(DatatransError):
    """The HTTP request could not be executed (DNS, TLS, timeout, ...)."""


class DatatransAPIError(DatatransError):
    """Datatrans answered with a non-2xx status and a structured error body.

    See https://docs.datatrans.ch/docs/error-messages
    """

    def __init__(self, http_status_code: int, code: str = "", message: str = "") -> None:
        self.http_status_code = http_status_code
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.code:
            return f"HTTPStatusCode:{self.http_status_code}"
        return (
            f"HTTPStatusCode:{self.http_status_code} "
            f"Code:{self.code!r}, Message:{self.message!r}"
        )
