"""Request / response models for the Datatrans JSON API.

Field names are snake_case in Python and camelCase on the wire, generated
by ``to_camel``.  A few Datatrans keys are not camelCase (``refno``,
``refno2``, ``twi``) and are named or aliased explicitly.

Request models accept ``custom_fields``: extra top-level JSON keys merged
into the payload by ``marshal_json``, for API fields not modelled here.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DatatransModel(BaseModel):
    """Base for every API model: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class DatatransRequest(DatatransModel):
    custom_fields: dict[str, Any] = Field(default_factory=dict, exclude=True)


class DatatransResponse(DatatransModel):
    # Raw body as received, kept unless the merchant disables it.
    raw_json: bytes | None = Field(default=None, exclude=True)


def marshal_json(post_data: DatatransModel) -> bytes:
    """Encode ``post_data`` to JSON, merging ``custom_fields`` over the top level.

    Custom fields overwrite keys produced by the model itself.
    """
    payload = post_data.model_dump(mode="json", by_alias=True, exclude_none=True)
    custom_fields = getattr(post_data, "custom_fields", None)
    if custom_fields:
        payload.update(custom_fields)
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


# =============================================================================
#  Shared pieces
# =============================================================================


class CardAlias(DatatransModel):
    alias: str
    expiry_month: str
    expiry_year: str


class CardMaskedSimple(DatatransModel):
    masked: str = ""


class CardInfo(DatatransModel):
    brand: str = ""
    type: str = ""
    usage: str = ""
    country: str = ""
    issuer: str = ""


class CardExtended(DatatransModel):
    masked: str = ""
    expiry_month: str = ""
    expiry_year: str = ""
    info: CardInfo = Field(default_factory=CardInfo)


class Redirect(DatatransModel):
    success_url: str | None = None
    cancel_url: str | None = None
    error_url: str | None = None


class WebhookTarget(DatatransModel):
    url: str


# =============================================================================
#  Requests
# =============================================================================


class RequestSettle(DatatransRequest):
    amount: int
    currency: str
    refno: str
    refno2: str | None = None
    extensions: dict[str, Any] | None = None


class RequestCredit(DatatransRequest):
    amount: int
    currency: str
    refno: str
    refno2: str | None = None
    extensions: dict[str, Any] | None = None


class RequestCreditAuthorize(DatatransRequest):
    currency: str
    refno: str
    amount: int
    card: CardAlias | None = None
    auto_settle: bool | None = None
    refno2: str | None = None


class RequestValidateAlias(DatatransRequest):
    currency: str
    refno: str
    card: CardAlias | None = None
    refno2: str | None = None


class RequestAuthorize(DatatransRequest):
    amount: int
    currency: str
    refno: str
    card: CardAlias | None = None
    auto_settle: bool | None = None
    refno2: str | None = None


class RequestAuthorizeTransaction(DatatransRequest):
    refno: str
    amount: int | None = None
    auto_settle: bool | None = None
    refno2: str | None = None


class RequestInitialize(DatatransRequest):
    amount: int
    currency: str
    refno: str
    payment_methods: list[str] | None = None
    language: str | None = None
    auto_settle: bool | None = None
    redirect: Redirect | None = None
    webhook: WebhookTarget | None = None
    refno2: str | None = None


class RequestSecureFieldsInit(DatatransRequest):
    amount: int
    currency: str
    return_url: str


class RequestSecureFieldsUpdate(DatatransRequest):
    amount: int
    currency: str


class RequestReconciliationsSale(DatatransRequest):
    date: datetime
    transaction_id: str
    currency: str
    amount: int
    type: str
    refno: str


class RequestReconciliationsSales(DatatransRequest):
    sales: list[RequestReconciliationsSale]


# =============================================================================
#  Responses
# =============================================================================


class ErrorDetail(DatatransModel):
    code: str = ""
    message: str = ""


class ErrorResponse(DatatransModel):
    """Body of every non-2xx Datatrans answer: ``{"error": {"code", "message"}}``."""

    error: ErrorDetail = Field(default_factory=ErrorDetail)


class ResponseAuthorize(DatatransResponse):
    acquirer_authorization_code: str = ""


class ResponseCardMasked(DatatransResponse):
    transaction_id: str = ""
    acquirer_authorization_code: str = ""
    card: CardMaskedSimple | None = None  # only set by credit_authorize


class ResponseInitialize(DatatransResponse):
    transaction_id: str = ""
    # Copied from the Location header: payment page URL for redirect mode.
    location: str = ""


class ResponseAlias(DatatransResponse):
    alias: str = ""


class InitDetail(DatatransModel):
    expires: datetime | None = None


class AuthorizeDetail(DatatransModel):
    amount: int = 0
    acquirer_authorization_code: str = ""


class StatusDetail(DatatransModel):
    init: InitDetail = Field(default_factory=InitDetail)
    authorize: AuthorizeDetail = Field(default_factory=AuthorizeDetail)


class TwintInfo(DatatransModel):
    alias: str = ""


class History(DatatransModel):
    action: str = ""
    amount: int = 0
    source: str = ""
    date: datetime | None = None
    success: bool = False
    ip: str = ""


class ResponseStatus(DatatransResponse):
    transaction_id: str = ""
    type: str = ""
    status: str = ""
    currency: str = ""
    refno: str = ""
    payment_method: str = ""
    detail: StatusDetail = Field(default_factory=StatusDetail)
    card: CardExtended | None = None
    twint: TwintInfo | None = Field(default=None, alias="twi")
    history: list[History] = Field(default_factory=list)


class ResponseReconciliationsSale(DatatransResponse):
    transaction_id: str = ""
    sale_date: datetime | None = None
    reported_date: datetime | None = None
    match_result: str = ""


class ResponseReconciliationsSales(DatatransResponse):
    sales: list[ResponseReconciliationsSale] = Field(default_factory=list)


class WebhookEvent(ResponseStatus):
    """Payload Datatrans POSTs to the merchant webhook URL.

    Same shape as the status API response.
    """
