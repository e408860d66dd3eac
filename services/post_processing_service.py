"""
Post-processing: deterministic bank-format corrections applied to each model call's RawFields.
Rules are pure functions of (RawFields) -> RawFields, run in a fixed order; no model dependency.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Callable, Sequence

from core.interfaces import IPostProcessingService
from core.models import IDENTIFIER_FIELDS, KnownClient, RawFields
from utils.normalize import normalize_account, normalize_identifier

logger = logging.getLogger(__name__)

Rule = Callable[[RawFields], RawFields]

# Identifier-like token: at least 4 chars and at least one digit.
_TOKEN = r"((?=[A-Z\-]*\d)[A-Z0-9][A-Z0-9\-]{3,})"
_SEP = r"\s*(?:No\.?|N[°º]|#)?\s*[:.]?\s*"


def _find(pattern: re.Pattern[str], text: str) -> str | None:
    m = pattern.search(text or "")
    return m.group(1).strip() if m else None


def _fold(text: str) -> str:
    """Lowercase and strip accents: 'Cervecería Unión' -> 'cerveceria union'."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


# ---------------------------------------------------------------------------
# 1. ACH Colombia / PSE: the CUS line is the unique identifier
# ---------------------------------------------------------------------------

_PSE_MARKERS = re.compile(r"\bPSE\b|\bACH\s+COLOMBIA\b|C[óo]digo\s+[úu]nico\s+de\s+seguimiento", re.IGNORECASE)
_CUS_LINE = re.compile(
    r"(?:\bCUS\b|C[óo]digo\s+[úu]nico(?:\s+de\s+seguimiento)?)" + _SEP + _TOKEN,
    re.IGNORECASE,
)
_TICKET_LINE = re.compile(
    r"(?:\bTicket\b|(?:\bNo\.?|\bN[úu]mero)\s*(?:de\s+)?Transacci[óo]n)" + _SEP + _TOKEN,
    re.IGNORECASE,
)


def correct_pse_identifier(raw: RawFields) -> RawFields:
    """Re-derive the CUS from the transcript and put it where extractors put the Ticket number."""
    if not _PSE_MARKERS.search(raw.raw_text or ""):
        return raw
    cus = _find(_CUS_LINE, raw.raw_text)
    if not cus:
        return raw
    ticket = normalize_identifier(_find(_TICKET_LINE, raw.raw_text))
    changes: dict[str, str] = {"transaction_id": cus}
    for name in IDENTIFIER_FIELDS:
        value = getattr(raw, name)
        if ticket and value and normalize_identifier(value) == ticket:
            changes[name] = cus
    if not raw.operation_number and "operation_number" not in changes:
        changes["operation_number"] = cus
    return raw.with_changes(**changes)


# ---------------------------------------------------------------------------
# 2. Mobile-app success screens
# ---------------------------------------------------------------------------

_APP_MARKERS = re.compile(
    r"¡?\s*Pago\s+exitoso|Transferencia\s+exitosa|Env[íi]o\s+exitoso|\bNequi\b",
    re.IGNORECASE,
)
_APP_VOUCHER = re.compile(r"\bComprobante" + _SEP + _TOKEN, re.IGNORECASE)
_APP_OPERATION = re.compile(
    r"(?:\bReferencia|\bNo\.?\s*de\s+operaci[óo]n|\bN[úu]mero\s+de\s+operaci[óo]n)" + _SEP + _TOKEN,
    re.IGNORECASE,
)
_APP_ACCOUNT = re.compile(
    r"(?:Producto\s+destino|Cuenta\s+destino|N[úu]mero\s+de\s+producto)\s*[:.]?\s*(\d[\d\- ]{2,}\d)",
    re.IGNORECASE,
)


def normalize_app_screenshot(raw: RawFields) -> RawFields:
    if not _APP_MARKERS.search(raw.raw_text or ""):
        return raw
    text = raw.raw_text
    changes: dict[str, object] = {"is_screenshot": True, "has_physical_receipt": False}
    if not raw.voucher_number:
        voucher = _find(_APP_VOUCHER, text)
        if voucher:
            changes["voucher_number"] = voucher
    if not raw.operation_number:
        operation = _find(_APP_OPERATION, text)
        if operation:
            changes["operation_number"] = operation
    if not raw.account_or_convenio:
        account = _find(_APP_ACCOUNT, text)
        if account:
            changes["account_or_convenio"] = re.sub(r"\s+", "", account)
    return raw.with_changes(**changes)


# ---------------------------------------------------------------------------
# 3. Thermal point-of-sale receipts (Redeban, corresponsal bancario)
# ---------------------------------------------------------------------------

_THERMAL_MARKERS = re.compile(r"\bREDEBAN\b|\bCORRESPONSAL\b", re.IGNORECASE)
_RRN_MARK = re.compile(r"\bRRN\b", re.IGNORECASE)
_APRO_MARK = re.compile(r"\bAPRO", re.IGNORECASE)

_THERMAL_FIELDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("rrn", re.compile(r"\bRRN\s*[:.]?\s*(\d{4,})", re.IGNORECASE)),
    ("receipt_number", re.compile(r"\bRECIBO" + _SEP + r"(\d{3,})", re.IGNORECASE)),
    ("approval_code", re.compile(r"\bAPRO(?:B(?:ACI[ÓO]N)?)?\.?\s*[:.]?\s*" + _TOKEN, re.IGNORECASE)),
    ("account_or_convenio", re.compile(r"\bCONVENIO" + _SEP + r"(\d{3,})", re.IGNORECASE)),
    ("payment_reference", re.compile(r"\bREF(?:ERENCIA)?\.?(?:\s*1\b)?\s*[:.]?\s*(\d{3,})", re.IGNORECASE)),
)


def _is_thermal(text: str) -> bool:
    return bool(_THERMAL_MARKERS.search(text) or (_RRN_MARK.search(text) and _APRO_MARK.search(text)))


def normalize_thermal_receipt(raw: RawFields) -> RawFields:
    text = raw.raw_text or ""
    if not _is_thermal(text):
        return raw
    changes: dict[str, object] = {}
    for name, pattern in _THERMAL_FIELDS:
        if getattr(raw, name):
            continue
        value = _find(pattern, text)
        if value:
            changes[name] = value
    merged = raw.with_changes(**changes)
    if merged.rrn or merged.receipt_number or merged.approval_code:
        merged = merged.with_changes(has_physical_receipt=True)
    return merged


# ---------------------------------------------------------------------------
# 4. Known partner client codes
# ---------------------------------------------------------------------------


def _matches_client(raw: RawFields, client: KnownClient) -> bool:
    folded = _fold(raw.raw_text)
    if any(_fold(k) in folded for k in client.keywords if k):
        return True
    convenio = normalize_account(raw.account_or_convenio)
    if convenio and any(normalize_account(c) == convenio for c in client.convenios):
        return True
    return bool(client.code) and (client.code in (raw.raw_text or "") or client.code in (raw.payment_reference or ""))


def _mentions_alias(raw: RawFields, client: KnownClient) -> bool:
    reference = normalize_account(raw.payment_reference)
    for alias in client.reference_aliases:
        key = normalize_account(alias)
        if not key:
            continue
        if reference == key or alias in (raw.raw_text or ""):
            return True
    return False


def make_known_client_rule(clients: Sequence[KnownClient]) -> Rule:
    """Build the partner override rule for the configured clients (first match wins)."""
    clients = tuple(clients)

    def apply_known_clients(raw: RawFields) -> RawFields:
        for client in clients:
            changes: dict[str, str] = {}
            # an alias rewrite makes the code appear in payment_reference, so it implies a match
            aliased = _mentions_alias(raw, client)
            if aliased or _matches_client(raw, client):
                changes["client_code"] = client.code
            if aliased:
                changes["payment_reference"] = client.code
            if changes:
                return raw.with_changes(**changes)
        return raw

    return apply_known_clients


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PostProcessingService(IPostProcessingService):
    """Applies the ordered rule pipeline; each rule sees the previous rule's output."""

    def __init__(self, known_clients: Sequence[KnownClient] = ()) -> None:
        self._rules: tuple[Rule, ...] = (
            correct_pse_identifier,
            normalize_app_screenshot,
            normalize_thermal_receipt,
            make_known_client_rule(known_clients),
        )

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def apply(self, raw: RawFields) -> RawFields:
        out = raw
        for rule in self._rules:
            out = rule(out)
        if out is not raw:
            changed = [
                name for name in RawFields.__dataclass_fields__ if getattr(out, name) != getattr(raw, name)
            ]
            logger.debug("Post-processing rewrote fields: %s", ", ".join(changed))
        return out
