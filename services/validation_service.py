"""
Validation and deduplication: reconciled extraction + corpus -> terminal status.
Rules run in a fixed order and the first match wins. The engine never mutates the corpus;
validate_batch keeps its own session list so record K sees records 1..K-1.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import replace
from typing import Iterable, Mapping, Sequence

from core.models import (
    IDENTIFIER_FIELDS,
    PRIMARY_IDENTIFIER_ORDER,
    Candidate,
    ConsignmentRecord,
    RawFields,
    ValidationOutcome,
    ValidationStatus,
    WhitelistEntry,
    WhitelistKind,
)
from utils.normalize import digits_only, normalize_account

logger = logging.getLogger(__name__)

DEFAULT_MIN_QUALITY_SCORE = 60
DEFAULT_AMOUNT_TOLERANCE = 50
MIN_STRICT_ID_DIGITS = 4

FIELD_LABELS: dict[str, str] = {
    "rrn": "RRN",
    "receipt_number": "RECIBO",
    "approval_code": "APRO",
    "operation_number": "OPERACION",
    "voucher_number": "COMPROBANTE",
    "transaction_id": "ID TRANSACCION",
}


def _primary_identifier(data: RawFields) -> tuple[str, str] | None:
    """(field name, value) of the first non-empty identifier in PRIMARY_IDENTIFIER_ORDER."""
    for name in PRIMARY_IDENTIFIER_ORDER:
        value = getattr(data, name)
        if value and str(value).strip():
            return name, str(value).strip()
    return None


def _corpus_identifier_digits(record: ConsignmentRecord) -> set[str]:
    out = set()
    for name in IDENTIFIER_FIELDS:
        d = digits_only(getattr(record.data, name))
        if d:
            out.add(d)
    return out


class ValidationEngine:
    """
    Quality gate -> strict identifier duplicate -> heuristic duplicate -> authorization -> VALID.
    Thresholds are configurable; relaxed authorization trades precision for recall on short values.
    """

    def __init__(
        self,
        whitelist: Sequence[WhitelistEntry] = (),
        common_references: Sequence[str] = (),
        *,
        min_quality_score: int = DEFAULT_MIN_QUALITY_SCORE,
        amount_tolerance: int = DEFAULT_AMOUNT_TOLERANCE,
        relaxed_authorization: bool = True,
    ) -> None:
        self._accounts = {normalize_account(e.value) for e in whitelist if e.kind is WhitelistKind.ACCOUNT} - {""}
        self._convenios = {normalize_account(e.value) for e in whitelist if e.kind is WhitelistKind.CONVENIO} - {""}
        self._common_refs = {normalize_account(r) for r in common_references} - {""}
        self._min_quality = min_quality_score
        self._tolerance = amount_tolerance
        self._relaxed = relaxed_authorization

    # -- rules ---------------------------------------------------------------

    def _check_quality(self, data: RawFields) -> ValidationOutcome | None:
        if data.is_readable and data.image_quality_score >= self._min_quality:
            return None
        detail = "" if data.is_readable else " Imagen ilegible."
        return ValidationOutcome(
            ValidationStatus.LOW_QUALITY,
            f"Calidad insuficiente ({data.image_quality_score}/100, requiere {self._min_quality}).{detail}",
        )

    def _check_strict_duplicate(
        self, data: RawFields, corpus: Sequence[ConsignmentRecord], image_hash: str
    ) -> ValidationOutcome | None:
        if image_hash and any(r.image_hash == image_hash for r in corpus):
            return ValidationOutcome(
                ValidationStatus.DUPLICATE,
                "Imagen duplicada: esta misma foto ya fue subida anteriormente",
            )
        primary = _primary_identifier(data)
        if primary is None:
            return None
        name, value = primary
        digits = digits_only(value)
        if len(digits) < MIN_STRICT_ID_DIGITS:
            return None
        for record in corpus:
            if digits in _corpus_identifier_digits(record):
                return ValidationOutcome(
                    ValidationStatus.DUPLICATE,
                    f'{FIELD_LABELS[name]} DUPLICADO: "{value}" ya existe (registro {record.id})',
                )
        return None

    def _check_heuristic_duplicate(
        self, data: RawFields, corpus: Sequence[ConsignmentRecord]
    ) -> ValidationOutcome | None:
        if not data.date:
            return None
        reference = normalize_account(data.payment_reference)
        for record in corpus:
            other = record.data
            if other.date != data.date or abs(other.amount - data.amount) > self._tolerance:
                continue
            if reference and normalize_account(other.payment_reference) == reference:
                return ValidationOutcome(
                    ValidationStatus.DUPLICATE,
                    f"Duplicado: monto (${data.amount}), fecha ({data.date}) y referencia {data.payment_reference} "
                    f"coinciden con {record.id}",
                )
            if data.time and other.time and data.time[:5] == other.time[:5]:
                return ValidationOutcome(
                    ValidationStatus.DUPLICATE,
                    f"Duplicado: monto (${data.amount}), fecha ({data.date}) y hora ({data.time}) "
                    f"coinciden con {record.id}",
                )
        return None

    def _check_authorization(self, data: RawFields) -> ValidationOutcome | None:
        account = normalize_account(data.account_or_convenio)
        if not account and data.payment_reference:
            reference = normalize_account(data.payment_reference)
            for allowed in sorted(self._accounts):
                if allowed in reference:
                    account = allowed
                    break
        if account and (account in self._accounts or account in self._convenios or account in self._common_refs):
            return None
        if self._relaxed and self._relaxed_match(account, data.raw_text):
            logger.info("Relaxed authorization match for account %r", data.account_or_convenio)
            return None
        return ValidationOutcome(
            ValidationStatus.INVALID_ACCOUNT,
            f"Cuenta/Convenio '{data.account_or_convenio or 'No detectado'}' no autorizado.",
        )

    def _relaxed_match(self, account: str, raw_text: str) -> bool:
        transcript = re.sub(r"\s", "", raw_text or "")
        for allowed in self._accounts | self._convenios:
            if (account and allowed in account) or (transcript and allowed in transcript):
                return True
        return False

    # -- public API ----------------------------------------------------------

    def validate(
        self,
        data: RawFields,
        corpus: Sequence[ConsignmentRecord] = (),
        image_hash: str = "",
    ) -> ValidationOutcome:
        outcome = (
            self._check_quality(data)
            or self._check_strict_duplicate(data, corpus, image_hash)
            or self._check_heuristic_duplicate(data, corpus)
            or self._check_authorization(data)
        )
        if outcome is not None:
            return self._log(outcome)
        return ValidationOutcome(ValidationStatus.VALID, "OK")

    @staticmethod
    def _log(outcome: ValidationOutcome) -> ValidationOutcome:
        logger.info("Validation rejected: %s - %s", outcome.status.value, outcome.message)
        return outcome

    def validate_batch(
        self,
        candidates: Sequence[Candidate],
        history: Iterable[ConsignmentRecord] = (),
    ) -> list[ConsignmentRecord]:
        """Validate in submission order; each VALID record joins the session corpus for later candidates."""
        session: list[ConsignmentRecord] = list(history)
        records: list[ConsignmentRecord] = []
        for candidate in candidates:
            outcome = self.validate(candidate.data, session, candidate.image_hash)
            record = ConsignmentRecord(
                id=candidate.id,
                data=candidate.data,
                status=outcome.status,
                status_message=outcome.message,
                image_ref=candidate.image_ref,
                image_hash=candidate.image_hash,
                created_at=candidate.created_at,
            )
            records.append(record)
            if outcome.accepted:
                session.append(record)
        return records

    def verify_numbers(
        self,
        record: ConsignmentRecord,
        numbers: Mapping[str, str | None],
        verified_by: str,
        corpus: Sequence[ConsignmentRecord] = (),
        at: float | None = None,
    ) -> ConsignmentRecord:
        """
        Apply human-verified identifiers. A verified number already present in the corpus
        (other than this record) makes the record DUPLICATE; otherwise it becomes VALID.
        The previously extracted numbers are kept in original_numbers.
        """
        unknown = set(numbers) - set(IDENTIFIER_FIELDS)
        if unknown:
            raise ValueError(f"Not identifier fields: {sorted(unknown)}")
        at = time.time() if at is None else at
        changes = {k: str(v).strip() for k, v in numbers.items() if v and str(v).strip()}
        original = {k: getattr(record.data, k) for k in changes}
        data = record.data.with_changes(**changes)
        others = [r for r in corpus if r.id != record.id]
        status, message = ValidationStatus.VALID, f"Números verificados por {verified_by}"
        for name, value in changes.items():
            digits = digits_only(value)
            value_key = value.lower()
            for other in others:
                raw_ids = {str(v).strip().lower() for v in other.data.identifiers().values() if v}
                if value_key in raw_ids or (
                    len(digits) >= MIN_STRICT_ID_DIGITS and digits in _corpus_identifier_digits(other)
                ):
                    status = ValidationStatus.DUPLICATE
                    message = f'DUPLICADO: {FIELD_LABELS[name]} "{value}" ya existe en la base de datos'
                    break
            if status is ValidationStatus.DUPLICATE:
                break
        if status is ValidationStatus.DUPLICATE:
            logger.warning("Verified number rejected for %s: %s", record.id, message)
        return replace(
            record,
            data=data,
            status=status,
            status_message=message,
            verified_by=verified_by,
            verified_at=at,
            original_numbers={**original, **record.original_numbers},
        )
