"""HMAC-SHA256 webhook signature verification for Datatrans callbacks.

Datatrans signs every webhook with the merchant's "Sign2" HMAC key:

    Datatrans-Signature: t=1559303131511,s0=33819a1220fd8e38fc5bad3f57ef31095fac0deb38c001ba347e694f48ffe2fc

where ``s0 = HMAC-SHA256(key, timestamp || raw_body)``.  Uses
hmac.compare_digest() for constant-time comparison to prevent timing
attacks.

See https://api-reference.datatrans.ch/#section/Webhook/Webhook-signing

Note: the timestamp is part of the signed material but its freshness is
NOT checked.  A captured request can be replayed for as long as the key
is valid.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
from dataclasses import dataclass

from datatrans_gateway.core.exceptions import ConfigurationError

SIGNATURE_HEADER = "Datatrans-Signature"

# The wire format is fixed: "t=" before the timestamp, ",s0=" before the hash.
# Offsets are skipped blindly, the prefixes themselves are never inspected.
_TIME_PREFIX_LEN = 2
_HASH_PREFIX_LEN = 4


@dataclass(frozen=True)
class SignatureHeader:
    """Parsed value of the Datatrans-Signature header."""

    timestamp: str = ""
    hash: bytes = b""

    @property
    def is_empty(self) -> bool:
        """True when either part is missing: the request carries no usable signature."""
        return not self.timestamp or not self.hash

    def to_header(self) -> str:
        return f"t={self.timestamp},s0={self.hash.hex()}"


@dataclass(frozen=True)
class VerifierConfig:
    """Immutable HMAC key shared read-only by every request."""

    secret_key: bytes

    @classmethod
    def from_hex(cls, hex_key: str) -> VerifierConfig:
        """Decode the hex-encoded Sign2 HMAC key from the Datatrans merchant backend.

        Raises:
            ConfigurationError: If the key is not valid hex or is empty.
        """
        try:
            key = binascii.unhexlify(hex_key)
        except ValueError as exc:
            raise ConfigurationError("failed to hex decode Sign2HMACKey") from exc
        if not key:
            raise ConfigurationError("Sign2HMACKey is empty")
        return cls(secret_key=key)


def extract_time_and_hash(header_value: str) -> SignatureHeader:
    """Split a ``t=<ts>,s0=<hex>`` header into timestamp and raw hash bytes.

    Never raises.  Anything that does not fit the layout yields an empty
    timestamp and hash; an undecodable hex part yields an empty hash only.
    """
    if not header_value:
        return SignatureHeader()

    comma = header_value.find(",")
    if comma < 1:
        return SignatureHeader()

    timestamp = header_value[_TIME_PREFIX_LEN:comma]
    if len(header_value) < comma + _HASH_PREFIX_LEN:
        return SignatureHeader()

    try:
        digest = binascii.unhexlify(header_value[comma + _HASH_PREFIX_LEN:])
    except ValueError:
        digest = b""
    return SignatureHeader(timestamp=timestamp, hash=digest)


def new_signer(config: VerifierConfig, timestamp: str) -> hmac.HMAC:
    """Return an HMAC accumulator already fed with the timestamp bytes.

    The caller streams the raw body into it with ``update()``.
    """
    signer = hmac.new(key=config.secret_key, digestmod=hashlib.sha256)
    # ASGI header values are latin-1 decoded; this recovers the wire bytes.
    signer.update(timestamp.encode("latin-1"))
    return signer


def compute_signature(config: VerifierConfig, timestamp: str, body: bytes) -> bytes:
    signer = new_signer(config, timestamp)
    signer.update(body)
    return signer.digest()


def signatures_match(computed: bytes, claimed: bytes) -> bool:
    # CRITICAL: constant-time comparison; also False for unequal lengths.
    return hmac.compare_digest(computed, claimed)


def verify_signature(
    config: VerifierConfig,
    timestamp: str,
    body: bytes,
    claimed_hash: bytes,
) -> bool:
    """Check that ``claimed_hash`` is the HMAC-SHA256 of ``timestamp || body``."""
    return signatures_match(compute_signature(config, timestamp, body), claimed_hash)


def sign_header(config: VerifierConfig, timestamp: str, body: bytes) -> str:
    """Build the header value Datatrans would send for ``body`` at ``timestamp``."""
    return SignatureHeader(timestamp, compute_signature(config, timestamp, body)).to_header()
