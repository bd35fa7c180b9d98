"""Datatrans transaction API client.

Wraps the Datatrans REST API with:
- HTTP basic auth per merchant (several merchants can share one client)
- Sandbox / production endpoint selection per merchant
- Optional idempotency keys on POST requests
- Structured error decoding into ``DatatransAPIError``

All methods use httpx.AsyncClient.  Sync callers should use asyncio.run()
or a dedicated event loop.

See https://docs.datatrans.ch/docs/api-endpoints
"""

from __future__ import annotations

import copy
import hashlib
import logging
import ssl
from dataclasses import dataclass
from typing import TypeVar

import httpx
from pydantic import ValidationError

from datatrans_gateway.core.exceptions import (
    ConfigurationError,
    DatatransAPIError,
    DatatransError,
    DatatransRequestError,
    DatatransTransportError,
    MerchantNotFoundError,
)
from datatrans_gateway.models.dto import (
    DatatransModel,
    DatatransResponse,
    ErrorResponse,
    RequestAuthorize,
    RequestAuthorizeTransaction,
    RequestCredit,
    RequestCreditAuthorize,
    RequestInitialize,
    RequestReconciliationsSales,
    RequestReconciliationsSale,
    RequestSecureFieldsInit,
    RequestSecureFieldsUpdate,
    RequestSettle,
    RequestValidateAlias,
    ResponseAlias,
    ResponseAuthorize,
    ResponseCardMasked,
    ResponseInitialize,
    ResponseReconciliationsSale,
    ResponseReconciliationsSales,
    ResponseStatus,
    marshal_json,
)

logger = logging.getLogger(__name__)

ENDPOINT_URL_SANDBOX = "https://api.sandbox.datatrans.com"
ENDPOINT_URL_PRODUCTION = "https://api.datatrans.com"

PATH_BASE = "/v1/transactions"
PATH_STATUS = PATH_BASE + "/{}"
PATH_CREDIT = PATH_BASE + "/{}/credit"
PATH_CREDIT_AUTHORIZE = PATH_BASE + "/credit"
PATH_CANCEL = PATH_BASE + "/{}/cancel"
PATH_SETTLE = PATH_BASE + "/{}/settle"
PATH_VALIDATE = PATH_BASE + "/validate"
PATH_AUTHORIZE_TRANSACTION = PATH_BASE + "/{}/authorize"
PATH_AUTHORIZE = PATH_BASE + "/authorize"
PATH_INITIALIZE = PATH_BASE
PATH_SECURE_FIELDS = PATH_BASE + "/secureFields"
PATH_SECURE_FIELDS_UPDATE = PATH_BASE + "/secureFields/{}"
PATH_ALIASES = "/v1/aliases"
PATH_ALIASES_DELETE = "/v1/aliases/{}"
PATH_RECONCILIATIONS_SALES = "/v1/reconciliations/sales"
PATH_RECONCILIATIONS_SALES_BULK = "/v1/reconciliations/sales/bulk"

DEFAULT_TIMEOUT_SECONDS = 30.0

_ResponseT = TypeVar("_ResponseT", bound=DatatransResponse)


@dataclass(frozen=True)
class MerchantOption:
    """Credentials and behaviour flags for one Datatrans merchant account.

    ``internal_id`` is your own key for the merchant; the merchant with the
    empty ID is used unless ``DatatransClient.with_merchant`` selects another.
    """

    merchant_id: str  # basic auth user
    password: str  # basic auth password
    internal_id: str = ""
    enable_production: bool = False
    # Datatrans stores idempotency keys for 3 minutes; a retried request
    # with the same key inside that window returns the original result.
    enable_idempotency: bool = False
    disable_raw_json_body: bool = False

    @property
    def host(self) -> str:
        return ENDPOINT_URL_PRODUCTION if self.enable_production else ENDPOINT_URL_SANDBOX


def _tls_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def idempotency_key(internal_id: str, host: str, path: str, body: bytes) -> str:
    """Deterministic key: the same request to the same merchant yields the same key."""
    digest = hashlib.blake2b(digest_size=8)
    digest.update(f"{internal_id}{host}{path}".encode("utf-8"))
    digest.update(body)
    return digest.hexdigest()


class DatatransClient:
    """Async Datatrans API client.

    Pass ``transport`` to replace the network layer (``httpx.MockTransport``
    in tests).
    """

    def __init__(
        self,
        *merchants: MerchantOption,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not merchants:
            raise ConfigurationError("no merchants applied")

        self._merchants: dict[str, MerchantOption] = {}
        for merchant in merchants:
            if merchant.internal_id in self._merchants:
                raise ConfigurationError(f"InternalID {merchant.internal_id!r} already exists")
            self._merchants[merchant.internal_id] = merchant

        self._transport = transport
        self._timeout = timeout
        self._verify = _tls_context() if transport is None else True
        self.internal_id = ""

    def with_merchant(self, internal_id: str) -> DatatransClient:
        """Return a shallow clone bound to ``internal_id``."""
        clone = copy.copy(self)
        clone.internal_id = internal_id
        return clone

    # ------------------------------------------------------------------
    #  Core request method
    # ------------------------------------------------------------------

    def _merchant(self) -> MerchantOption:
        try:
            return self._merchants[self.internal_id]
        except KeyError:
            raise MerchantNotFoundError(self.internal_id) from None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        post_data: DatatransModel | None = None,
        response_model: type[_ResponseT] | None = None,
    ) -> _ResponseT | None:
        """Send an authenticated request and decode the JSON answer."""
        merchant = self._merchant()
        host = merchant.host

        headers = {"Accept": "application/json"}
        body: bytes | None = None
        if post_data is not None:
            body = marshal_json(post_data)
            headers["Content-Type"] = "application/json"
        if method == "POST" and merchant.enable_idempotency:
            headers["Idempotency-Key"] = idempotency_key(
                self.internal_id, host, path, body or b""
            )

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                verify=self._verify,
            ) as client:
                response = await client.request(
                    method,
                    host + path,
                    content=body,
                    headers=headers,
                    auth=(merchant.merchant_id, merchant.password),
                )
        except httpx.HTTPError as exc:
            raise DatatransTransportError(
                f"ClientID:{self.internal_id!r}: failed to execute HTTP request: {exc}"
            ) from exc

        if not response.is_success:
            error = _decode_error(response)
            logger.warning(
                "Datatrans API error",
                extra={
                    "internal_id": self.internal_id,
                    "path": path,
                    "status_code": error.http_status_code,
                    "code": error.code,
                },
            )
            raise error

        if response_model is None:
            return None

        try:
            result = response_model.model_validate_json(response.content or b"{}")
        except ValidationError as exc:
            raise DatatransError(
                f"ClientID:{self.internal_id!r}: failed to unmarshal HTTP response: {exc}"
            ) from exc

        if isinstance(result, ResponseInitialize):
            location = response.headers.get("Location", "")
            if location:
                result.location = location
        if not merchant.disable_raw_json_body:
            result.raw_json = response.content

        return result

    # ------------------------------------------------------------------
    #  Public API methods
    # ------------------------------------------------------------------

    async def status(self, transaction_id: str) -> ResponseStatus:
        """Fetch the current status of a transaction."""
        if not transaction_id:
            raise DatatransRequestError("transactionID cannot be empty")
        return await self._request(
            "GET", PATH_STATUS.format(transaction_id), response_model=ResponseStatus
        )

    async def credit(self, transaction_id: str, request: RequestCredit) -> ResponseCardMasked:
        """Credit a settled transaction.  The settled amount must not be exceeded."""
        if not transaction_id or not request.currency or not request.refno:
            raise DatatransRequestError("neither currency nor refno nor transactionID can be empty")
        return await self._request(
            "POST",
            PATH_CREDIT.format(transaction_id),
            post_data=request,
            response_model=ResponseCardMasked,
        )

    async def credit_authorize(self, request: RequestCreditAuthorize) -> ResponseCardMasked:
        """Credit a cardholder without a previous debit."""
        if not request.currency or not request.refno or request.amount == 0:
            raise DatatransRequestError("neither currency nor refno nor amount can be empty")
        return await self._request(
            "POST", PATH_CREDIT_AUTHORIZE, post_data=request, response_model=ResponseCardMasked
        )

    async def cancel(self, transaction_id: str, refno: str) -> None:
        """Release the blocked amount of an authorized (or settled) transaction."""
        if not transaction_id or not refno:
            raise DatatransRequestError("neither transactionID nor refno can be empty")
        await self._request(
            "POST",
            PATH_CANCEL.format(transaction_id),
            post_data=_CancelBody(refno=refno),
        )

    async def settle(self, transaction_id: str, request: RequestSettle) -> None:
        """Settle ("capture") a previously authorized transaction.

        Not needed if the transaction was initialized with ``autoSettle``.
        """
        if (
            not transaction_id
            or request.amount == 0
            or not request.currency
            or not request.refno
        ):
            raise DatatransRequestError(
                "neither transactionID nor refno nor amount nor currency can be empty"
            )
        await self._request("POST", PATH_SETTLE.format(transaction_id), post_data=request)

    async def validate_alias(self, request: RequestValidateAlias) -> ResponseCardMasked:
        """Validate an existing alias without blocking any amount."""
        if not request.currency or not request.refno:
            raise DatatransRequestError("neither currency nor refno can be empty")
        return await self._request(
            "POST", PATH_VALIDATE, post_data=request, response_model=ResponseCardMasked
        )

    async def authorize_transaction(
        self, transaction_id: str, request: RequestAuthorizeTransaction
    ) -> ResponseAuthorize:
        """Authorize a transaction that was initialized as authentication-only (3D)."""
        if not transaction_id or not request.refno:
            raise DatatransRequestError("neither transactionID nor refno can be empty")
        return await self._request(
            "POST",
            PATH_AUTHORIZE_TRANSACTION.format(transaction_id),
            post_data=request,
            response_model=ResponseAuthorize,
        )

    async def authorize(self, request: RequestAuthorize) -> ResponseCardMasked:
        """Authorize without user interaction, e.g. merchant-initiated with an alias."""
        if request.amount == 0 or not request.currency or not request.refno:
            raise DatatransRequestError("neither amount nor currency nor refno can be empty")
        return await self._request(
            "POST", PATH_AUTHORIZE, post_data=request, response_model=ResponseCardMasked
        )

    async def initialize(self, request: RequestInitialize) -> ResponseInitialize:
        """Initialize a transaction for the payment page.

        Datatrans answers 201 with the ``transactionId`` in the body and the
        payment page URL in the Location header.
        """
        if request.amount == 0 or not request.currency or not request.refno:
            raise DatatransRequestError("neither amount nor currency nor refno can be empty")
        return await self._request(
            "POST", PATH_INITIALIZE, post_data=request, response_model=ResponseInitialize
        )

    async def secure_fields_init(self, request: RequestSecureFieldsInit) -> ResponseInitialize:
        if request.amount == 0 or not request.currency or not request.return_url:
            raise DatatransRequestError("neither amount nor currency nor returnURL can be empty")
        return await self._request(
            "POST", PATH_SECURE_FIELDS, post_data=request, response_model=ResponseInitialize
        )

    async def secure_fields_update(
        self, transaction_id: str, request: RequestSecureFieldsUpdate
    ) -> None:
        """Update the amount of a Secure Fields transaction before the 3D step."""
        if not transaction_id or request.amount == 0 or not request.currency:
            raise DatatransRequestError(
                "neither transactionID nor amount nor currency can be empty"
            )
        await self._request(
            "PATCH", PATH_SECURE_FIELDS_UPDATE.format(transaction_id), post_data=request
        )

    async def alias_convert(self, legacy_alias: str) -> str:
        """Convert a legacy numeric or masked alias to the current alias format."""
        if not legacy_alias:
            raise DatatransRequestError("legacyAlias cannot be empty")
        result = await self._request(
            "POST",
            PATH_ALIASES,
            post_data=_LegacyAlias(legacy_alias=legacy_alias),
            response_model=ResponseAlias,
        )
        return result.alias

    async def alias_delete(self, alias: str) -> None:
        """Delete an alias with immediate effect."""
        if not alias:
            raise DatatransRequestError("alias cannot be empty")
        await self._request("DELETE", PATH_ALIASES_DELETE.format(alias))

    async def reconciliations_sales(
        self, sale: RequestReconciliationsSale
    ) -> ResponseReconciliationsSale:
        """Report a single sale; matched by ``transactionId``."""
        return await self._request(
            "POST",
            PATH_RECONCILIATIONS_SALES,
            post_data=sale,
            response_model=ResponseReconciliationsSale,
        )

    async def reconciliations_sales_bulk(
        self, sales: RequestReconciliationsSales
    ) -> ResponseReconciliationsSales:
        return await self._request(
            "POST",
            PATH_RECONCILIATIONS_SALES_BULK,
            post_data=sales,
            response_model=ResponseReconciliationsSales,
        )


class _CancelBody(DatatransModel):
    refno: str


class _LegacyAlias(DatatransModel):
    legacy_alias: str


def _decode_error(response: httpx.Response) -> DatatransAPIError:
    try:
        detail = ErrorResponse.model_validate_json(response.content).error
    except ValidationError:
        return DatatransAPIError(
            response.status_code, code="UNKNOWN", message=response.text[:200]
        )
    return DatatransAPIError(response.status_code, detail.code, detail.message)
