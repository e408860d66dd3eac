"""
Unit tests for the validation & deduplication engine.
Tests: rule order, quality gate, strict/heuristic duplicates, authorization (exact and relaxed),
batch ordering, manual number verification and authorization overlays.
"""
from __future__ import annotations

import pytest

from core.models import (
    Candidate,
    ConsignmentRecord,
    ExtractionResult,
    ValidationStatus,
    WhitelistEntry,
    WhitelistKind,
)
from services.validation_service import ValidationEngine

WHITELIST = [
    WhitelistEntry("24500020949", "Bancolombia ahorros", WhitelistKind.ACCOUNT),
    WhitelistEntry("425832797", "Davivienda corriente", WhitelistKind.ACCOUNT),
    WhitelistEntry("56885", "Recaudo", WhitelistKind.CONVENIO),
]
COMMON_REFS = ["10813353"]


def _data(**overrides) -> ExtractionResult:
    values = dict(
        bank_name="Bancolombia",
        account_or_convenio="24500020949",
        amount=150000,
        date="2025-05-01",
        time="10:15",
        raw_text="Comprobante Bancolombia",
        image_quality_score=90,
        confidence_score=85,
        is_readable=True,
    )
    values.update(overrides)
    return ExtractionResult(**values)


def _record(record_id: str = "hist-1", image_hash: str = "", **overrides) -> ConsignmentRecord:
    return ConsignmentRecord(
        id=record_id,
        data=_data(**overrides),
        status=ValidationStatus.VALID,
        status_message="OK",
        image_hash=image_hash,
    )


@pytest.fixture
def engine() -> ValidationEngine:
    return ValidationEngine(WHITELIST, COMMON_REFS, min_quality_score=60, amount_tolerance=50)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_heuristic_duplicate_by_amount_date_reference(engine: ValidationEngine) -> None:
    candidate = _data(rrn=None, payment_reference="10813353")
    history = [_record(payment_reference="10813353")]
    outcome = engine.validate(candidate, history)
    assert outcome.status is ValidationStatus.DUPLICATE


def test_leading_zero_account_is_authorized(engine: ValidationEngine) -> None:
    outcome = engine.validate(_data(account_or_convenio="0024500020949"))
    assert outcome.status is ValidationStatus.VALID
    assert outcome.accepted


def test_low_quality_message_embeds_score_and_threshold(engine: ValidationEngine) -> None:
    outcome = engine.validate(_data(image_quality_score=40, is_readable=True))
    assert outcome.status is ValidationStatus.LOW_QUALITY
    assert "40" in outcome.message
    assert "60" in outcome.message


def test_unreadable_is_low_quality_even_with_high_score(engine: ValidationEngine) -> None:
    outcome = engine.validate(_data(image_quality_score=95, is_readable=False))
    assert outcome.status is ValidationStatus.LOW_QUALITY


def test_quality_gate_runs_before_duplicates(engine: ValidationEngine) -> None:
    history = [_record(operation_number="778899")]
    outcome = engine.validate(_data(operation_number="778899", image_quality_score=10), history)
    assert outcome.status is ValidationStatus.LOW_QUALITY


# ---------------------------------------------------------------------------
# Strict duplicates
# ---------------------------------------------------------------------------


def test_strict_duplicate_matches_any_corpus_identifier(engine: ValidationEngine) -> None:
    history = [_record(rrn="12-345678", amount=999999, date="2024-01-01")]
    outcome = engine.validate(_data(transaction_id="CUS 12345678"), history)
    assert outcome.status is ValidationStatus.DUPLICATE
    assert "12345678" in outcome.message


def test_short_identifiers_are_not_strict_keys(engine: ValidationEngine) -> None:
    history = [_record(approval_code="123", amount=999999, date="2024-01-01")]
    outcome = engine.validate(_data(approval_code="123"), history)
    assert outcome.status is ValidationStatus.VALID


def test_same_image_hash_is_duplicate(engine: ValidationEngine) -> None:
    history = [_record(image_hash="abc", amount=1, date="2020-01-01")]
    outcome = engine.validate(_data(), history, image_hash="abc")
    assert outcome.status is ValidationStatus.DUPLICATE


# ---------------------------------------------------------------------------
# Heuristic duplicates
# ---------------------------------------------------------------------------


def test_heuristic_duplicate_by_time_within_tolerance(engine: ValidationEngine) -> None:
    history = [_record(amount=150040, time="10:15")]
    outcome = engine.validate(_data(amount=150000, time="10:15"), history)
    assert outcome.status is ValidationStatus.DUPLICATE


def test_amount_outside_tolerance_is_not_duplicate(engine: ValidationEngine) -> None:
    history = [_record(amount=150060)]
    assert engine.validate(_data(amount=150000), history).status is ValidationStatus.VALID


def test_missing_time_never_triggers_time_rule(engine: ValidationEngine) -> None:
    history = [_record(time=None)]
    assert engine.validate(_data(time=None), history).status is ValidationStatus.VALID


def test_missing_time_does_not_block_reference_rule(engine: ValidationEngine) -> None:
    history = [_record(time="09:00", payment_reference="REF-4455")]
    outcome = engine.validate(_data(time=None, payment_reference="REF 9999"), history)
    assert outcome.status is ValidationStatus.VALID
    outcome = engine.validate(_data(time=None, payment_reference="REF 4455"), history)
    assert outcome.status is ValidationStatus.DUPLICATE


def test_different_date_is_not_duplicate(engine: ValidationEngine) -> None:
    history = [_record(date="2025-05-02")]
    assert engine.validate(_data(), history).status is ValidationStatus.VALID


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides",
    [
        {"account_or_convenio": "425-832-797"},
        {"account_or_convenio": "56885"},
        {"account_or_convenio": "10813353"},
        {"account_or_convenio": "", "payment_reference": "Cta 24500020949"},
    ],
)
def test_authorized_accounts(engine: ValidationEngine, overrides: dict) -> None:
    assert engine.validate(_data(**overrides)).status is ValidationStatus.VALID


def test_relaxed_authorization_can_be_disabled() -> None:
    data = _data(account_or_convenio="999", raw_text="Cuenta destino 245 000 209 49")
    relaxed = ValidationEngine(WHITELIST, COMMON_REFS, relaxed_authorization=True)
    strict = ValidationEngine(WHITELIST, COMMON_REFS, relaxed_authorization=False)
    assert relaxed.validate(data).status is ValidationStatus.VALID
    outcome = strict.validate(data)
    assert outcome.status is ValidationStatus.INVALID_ACCOUNT
    assert "999" in outcome.message


def test_unknown_account_is_rejected(engine: ValidationEngine) -> None:
    outcome = engine.validate(_data(account_or_convenio="", raw_text="sin cuenta"))
    assert outcome.status is ValidationStatus.INVALID_ACCOUNT
    assert "No detectado" in outcome.message


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def _candidate(cid: str, **overrides) -> Candidate:
    return Candidate(id=cid, data=_data(**overrides), image_hash=f"hash-{cid}")


def test_batch_second_of_identical_pair_is_duplicate(engine: ValidationEngine) -> None:
    a = _candidate("a", operation_number="778899")
    b = _candidate("b", operation_number="778899")
    forward = engine.validate_batch([a, b])
    backward = engine.validate_batch([b, a])
    assert [r.status for r in forward] == [ValidationStatus.VALID, ValidationStatus.DUPLICATE]
    assert [r.status for r in backward] == [ValidationStatus.VALID, ValidationStatus.DUPLICATE]
    assert [r.id for r in forward] == ["a", "b"]
    assert forward[0].image_hash == "hash-a"


@pytest.mark.parametrize(
    "first, second",
    [
        # amount within tolerance, same date, same reference, different times
        (
            {"amount": 150000, "time": "10:15", "payment_reference": "REF-4455"},
            {"amount": 150030, "time": "11:40", "payment_reference": "REF 4455"},
        ),
        # amount within tolerance, same date, same time, no reference
        (
            {"amount": 150000, "time": "10:15", "payment_reference": None},
            {"amount": 150020, "time": "10:15", "payment_reference": None},
        ),
    ],
)
def test_batch_heuristic_duplicate_is_order_symmetric(engine: ValidationEngine, first: dict, second: dict) -> None:
    a = _candidate("a", **first)
    b = _candidate("b", **second)
    assert a.data.primary_identifier is None
    assert b.data.primary_identifier is None
    forward = engine.validate_batch([a, b])
    backward = engine.validate_batch([b, a])
    assert [r.status for r in forward] == [ValidationStatus.VALID, ValidationStatus.DUPLICATE]
    assert [r.status for r in backward] == [ValidationStatus.VALID, ValidationStatus.DUPLICATE]
    assert [r.id for r in backward] == ["b", "a"]


def test_batch_rejected_records_do_not_join_session(engine: ValidationEngine) -> None:
    blurry = _candidate("a", operation_number="778899", image_quality_score=20)
    clear = _candidate("b", operation_number="778899")
    records = engine.validate_batch([blurry, clear])
    assert [r.status for r in records] == [ValidationStatus.LOW_QUALITY, ValidationStatus.VALID]


def test_batch_sees_history(engine: ValidationEngine) -> None:
    records = engine.validate_batch([_candidate("a", operation_number="778899")], [_record(operation_number="778899")])
    assert records[0].status is ValidationStatus.DUPLICATE


# ---------------------------------------------------------------------------
# Manual overlays
# ---------------------------------------------------------------------------


def test_verify_numbers_accepts_new_number(engine: ValidationEngine) -> None:
    record = ConsignmentRecord(
        id="r1",
        data=_data(rrn="11"),
        status=ValidationStatus.INVALID_ACCOUNT,
        status_message="x",
    )
    verified = engine.verify_numbers(record, {"rrn": "556677"}, "ana", corpus=[record], at=123.0)
    assert verified.status is ValidationStatus.VALID
    assert verified.data.rrn == "556677"
    assert verified.original_numbers == {"rrn": "11"}
    assert verified.verified_by == "ana"
    assert verified.verified_at == 123.0
    assert "ana" in verified.status_message


def test_verify_numbers_detects_existing_number(engine: ValidationEngine) -> None:
    record = _record("r1", rrn="11")
    other = _record("r2", operation_number="5566-77")
    verified = engine.verify_numbers(record, {"rrn": "556677"}, "ana", corpus=[record, other])
    assert verified.status is ValidationStatus.DUPLICATE
    assert "DUPLICADO" in verified.status_message
    assert "556677" in verified.status_message


def test_verify_numbers_rejects_non_identifier_fields(engine: ValidationEngine) -> None:
    with pytest.raises(ValueError):
        engine.verify_numbers(_record(), {"amount": "5000"}, "ana")


def test_manual_authorization_keeps_extracted_fields() -> None:
    record = ConsignmentRecord(
        id="r1",
        data=_data(account_or_convenio="999"),
        status=ValidationStatus.INVALID_ACCOUNT,
        status_message="Cuenta/Convenio '999' no autorizado.",
    )
    authorized = record.with_authorization("luis", "ticket-42", at=50.0)
    assert authorized.status is ValidationStatus.VALID
    assert authorized.data == record.data
    assert authorized.authorized_by == "luis"
    assert authorized.authorization_ref == "ticket-42"
    assert authorized.authorized_at == 50.0
