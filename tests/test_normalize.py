"""
Unit tests for field normalizers and the provider JSON schema.
Tests: amount/date/time coercion, identifier keys, idempotence, schema defaults and aliases.
"""
from __future__ import annotations

import pytest

from core.schema import RawFieldsSchema
from utils.normalize import (
    collapse_whitespace,
    digits_no_leading_zeros,
    digits_only,
    normalize_account,
    normalize_identifier,
    parse_amount,
    parse_date_iso,
    parse_time_hhmm,
    strip_date_separators,
)


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$ 1.000.000,00", 1000000),
        ("120,000,000.00", 120000000),
        ("150.000", 150000),
        ("1400000", 1400000),
        (150000.0, 150000),
        ("", 0),
        (None, 0),
        ("sin valor", 0),
        (-500, 0),
        (float("inf"), 0),
        (float("-inf"), 0),
        (float("nan"), 0),
    ],
)
def test_parse_amount(raw, expected) -> None:
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-01-15", "2024-01-15"),
        ("15/01/2024", "2024-01-15"),
        ("15 ENE 2024", "2024-01-15"),
        ("3 de diciembre de 2023", "2023-12-03"),
        ("2024-01-15T10:30:00", "2024-01-15"),
        ("2024-02-30", None),
        ("ayer", None),
        ("", None),
    ],
)
def test_parse_date_iso(raw, expected) -> None:
    assert parse_date_iso(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("14:30", "14:30"),
        ("14:30:22", "14:30"),
        ("2:05 PM", "14:05"),
        ("12:10 a. m.", "00:10"),
        ("9:07", "09:07"),
        ("25:00", None),
        ("sin hora", None),
    ],
)
def test_parse_time_hhmm(raw, expected) -> None:
    assert parse_time_hhmm(raw) == expected


def test_identifier_and_account_keys() -> None:
    assert normalize_account("0024500-020949") == "24500020949"
    assert normalize_account(" 245 000 209 49 ") == "24500020949"
    assert normalize_account(None) == ""
    assert normalize_identifier("ab-12 34.") == "AB1234"
    assert digits_only("RRN: 00-1234") == "001234"
    assert digits_no_leading_zeros("00-1234") == "1234"
    assert strip_date_separators("2024-01-15") == "20240115"
    assert collapse_whitespace("  Banco  de Bogotá ") == "bancodebogotá"


@pytest.mark.parametrize(
    "fn, value",
    [
        (normalize_account, "0024500-020949"),
        (normalize_identifier, "ab-12 34."),
        (digits_only, "RRN 00-1234"),
        (digits_no_leading_zeros, "00-1234"),
        (collapse_whitespace, " Banco  Agrario "),
        (strip_date_separators, "2024/01/15"),
        (parse_amount, "$ 1.000.000,00"),
        (parse_date_iso, "15 ENE 2024"),
        (parse_time_hhmm, "2:05 PM"),
    ],
)
def test_normalizers_are_idempotent(fn, value) -> None:
    once = fn(value)
    assert fn(once) == once


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def test_schema_defaults_on_partial_output() -> None:
    """Missing numeric/bool fields default to 0/False; missing identifiers are None, never fabricated."""
    raw = RawFieldsSchema.model_validate({"bankName": "Bancolombia"}).to_raw_fields()
    assert raw.bank_name == "Bancolombia"
    assert raw.amount == 0
    assert raw.image_quality_score == 0
    assert raw.confidence_score == 0
    assert raw.is_readable is False
    assert raw.rrn is None
    assert raw.transaction_id is None
    assert raw.ambiguous_fields == ()


def test_schema_coerces_and_accepts_aliases() -> None:
    data = {
        "banco": "Davivienda",
        "valor": "$ 250.000",
        "fecha": "05/03/2024",
        "hora": "3:15 pm",
        "uniqueTransactionId": " 998877 ",
        "rrn": "null",
        "imageQualityScore": 130,
        "confidenceScore": "87.6",
        "isReadable": "true",
        "ambiguousFields": "rrn",
        "unexpected": "ignored",
    }
    raw = RawFieldsSchema.model_validate(data).to_raw_fields()
    assert raw.bank_name == "Davivienda"
    assert raw.amount == 250000
    assert raw.date == "2024-03-05"
    assert raw.time == "15:15"
    assert raw.transaction_id == "998877"
    assert raw.rrn is None
    assert raw.image_quality_score == 100
    assert raw.confidence_score == 88
    assert raw.is_readable is True
    assert raw.ambiguous_fields == ("rrn",)
