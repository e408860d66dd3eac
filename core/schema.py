"""
Pydantic schema for one provider's receipt extraction JSON. Used by services.extraction_service.
Lenient on input (camelCase, snake_case and legacy Spanish keys); strict on output (RawFields).
"""
from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from core.models import RawFields
from utils.normalize import parse_amount, parse_date_iso, parse_time_hhmm

_NULL_STRINGS = {"", "null", "none", "n/a", "na", "-", "undefined"}


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _clean_optional_str(v: Any) -> str | None:
    if v is None or isinstance(v, (dict, list)):
        return None
    s = str(v).strip()
    if s.lower() in _NULL_STRINGS:
        return None
    return s


def _clamp_score(v: Any) -> int:
    if v is None or isinstance(v, bool):
        return 0
    try:
        return max(0, min(100, int(round(float(v)))))
    except (TypeError, ValueError, OverflowError):
        return 0


def _coerce_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in ("1", "true", "yes", "si", "sí")


# ---------------------------------------------------------------------------
# Receipt extraction (one model call)
# ---------------------------------------------------------------------------


class RawFieldsSchema(BaseModel):
    """Structured receipt data as returned by a vision model."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    bank_name: str = Field(default="", validation_alias=_alias("bankName", "bank_name", "banco"))
    city: str | None = Field(default=None, validation_alias=_alias("city", "ciudad"))
    account_or_convenio: str = Field(
        default="", validation_alias=_alias("accountOrConvenio", "account_or_convenio", "cuenta")
    )
    amount: int = Field(default=0, validation_alias=_alias("amount", "valor", "monto"))
    date: str | None = Field(default=None, validation_alias=_alias("date", "fecha"))
    time: str | None = Field(default=None, validation_alias=_alias("time", "hora"))
    rrn: str | None = Field(default=None, validation_alias=_alias("rrn", "RRN"))
    receipt_number: str | None = Field(
        default=None, validation_alias=_alias("receiptNumber", "receipt_number", "recibo")
    )
    approval_code: str | None = Field(
        default=None, validation_alias=_alias("approvalCode", "approval_code", "apro")
    )
    operation_number: str | None = Field(
        default=None, validation_alias=_alias("operationNumber", "operation_number", "operacion")
    )
    voucher_number: str | None = Field(
        default=None, validation_alias=_alias("voucherNumber", "voucher_number", "comprobante")
    )
    transaction_id: str | None = Field(
        default=None,
        validation_alias=_alias("transactionId", "transaction_id", "uniqueTransactionId"),
    )
    payment_reference: str | None = Field(
        default=None, validation_alias=_alias("paymentReference", "payment_reference", "referencia")
    )
    client_code: str | None = Field(default=None, validation_alias=_alias("clientCode", "client_code"))
    raw_text: str = Field(default="", validation_alias=_alias("rawText", "raw_text"))
    image_quality_score: int = Field(
        default=0, validation_alias=_alias("imageQualityScore", "image_quality_score")
    )
    confidence_score: int = Field(default=0, validation_alias=_alias("confidenceScore", "confidence_score"))
    is_screenshot: bool = Field(default=False, validation_alias=_alias("isScreenshot", "is_screenshot"))
    has_physical_receipt: bool = Field(
        default=False, validation_alias=_alias("hasPhysicalReceipt", "has_physical_receipt")
    )
    is_readable: bool = Field(default=False, validation_alias=_alias("isReadable", "is_readable"))
    has_ambiguous_numbers: bool = Field(
        default=False, validation_alias=_alias("hasAmbiguousNumbers", "has_ambiguous_numbers")
    )
    ambiguous_fields: list[str] = Field(
        default_factory=list, validation_alias=_alias("ambiguousFields", "ambiguous_fields")
    )

    @field_validator(
        "city",
        "rrn",
        "receipt_number",
        "approval_code",
        "operation_number",
        "voucher_number",
        "transaction_id",
        "payment_reference",
        "client_code",
        mode="before",
    )
    @classmethod
    def optional_text(cls, v: Any) -> str | None:
        return _clean_optional_str(v)

    @field_validator("bank_name", "account_or_convenio", "raw_text", mode="before")
    @classmethod
    def required_text(cls, v: Any) -> str:
        return _clean_optional_str(v) or ""

    @field_validator("amount", mode="before")
    @classmethod
    def amount_non_negative_int(cls, v: Any) -> int:
        return parse_amount(v)

    @field_validator("date", mode="before")
    @classmethod
    def iso_date(cls, v: Any) -> str | None:
        return parse_date_iso(v)

    @field_validator("time", mode="before")
    @classmethod
    def hhmm_time(cls, v: Any) -> str | None:
        return parse_time_hhmm(v)

    @field_validator("image_quality_score", "confidence_score", mode="before")
    @classmethod
    def score_0_100(cls, v: Any) -> int:
        return _clamp_score(v)

    @field_validator(
        "is_screenshot", "has_physical_receipt", "is_readable", "has_ambiguous_numbers", mode="before"
    )
    @classmethod
    def boolean(cls, v: Any) -> bool:
        return _coerce_bool(v)

    @field_validator("ambiguous_fields", mode="before")
    @classmethod
    def field_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if isinstance(v, (list, tuple)):
            return [str(x).strip() for x in v if x is not None and str(x).strip()]
        return []

    def to_raw_fields(self) -> RawFields:
        data = self.model_dump()
        data["ambiguous_fields"] = tuple(data["ambiguous_fields"])
        return RawFields(**data)
