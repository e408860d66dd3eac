"""
Unit tests for consensus reconciliation and the orchestrator.
Demonstrates: fake extraction services (no model calls), in-memory cache, triple-check voting,
dual-provider agreement scoring, failure exclusion and round timeout.
"""
from __future__ import annotations

import threading
from typing import Sequence

import pytest

from core.exceptions import (
    ConfigError,
    ExtractionUnavailable,
    InvalidImage,
    ModelProtocolError,
    ModelUnavailable,
)
from core.interfaces import IExtractionService, IPostProcessingService
from core.models import ConsensusStrategy, RawFields, TrainingExample
from services.consensus_service import (
    DISAGREEMENT_MARKER,
    ConsensusOrchestrator,
    agreement_score,
    majority_identifier,
    reconcile_dual,
    reconcile_triple,
)
from utils.result_cache import InMemoryCacheStore, ResultCache


# ---------------------------------------------------------------------------
# Fake implementations (test doubles)
# ---------------------------------------------------------------------------


class FakeExtractionService(IExtractionService):
    """Returns (or raises) the configured outcomes in call order; the last one repeats."""

    def __init__(self, name: str, outcomes: Sequence[RawFields | Exception], block: threading.Event | None = None):
        self._name = name
        self._outcomes = list(outcomes)
        self._block = block
        self._lock = threading.Lock()
        self.calls = 0

    @property
    def provider_name(self) -> str:
        return self._name

    def extract(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        prompt_context: Sequence[TrainingExample] = (),
    ) -> RawFields:
        with self._lock:
            outcome = self._outcomes[min(self.calls, len(self._outcomes) - 1)]
            self.calls += 1
        if self._block is not None:
            self._block.wait(timeout=5)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class PassThroughPostProcessor(IPostProcessingService):
    def __init__(self) -> None:
        self.applied = 0

    def apply(self, raw: RawFields) -> RawFields:
        self.applied += 1
        return raw


def _raw(**overrides) -> RawFields:
    values = dict(
        bank_name="Bancolombia",
        account_or_convenio="24500020949",
        amount=150000,
        date="2025-05-01",
        time="10:15",
        operation_number="778899",
        rrn="445566",
        confidence_score=80,
        image_quality_score=90,
        is_readable=True,
    )
    values.update(overrides)
    return RawFields(**values)


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(InMemoryCacheStore())


# ---------------------------------------------------------------------------
# Majority vote
# ---------------------------------------------------------------------------


def test_majority_identifier_exact_then_digits() -> None:
    assert majority_identifier(["123456", "123456", "123466"]) == ("123456", False)
    assert majority_identifier(["AB-12", "ab12", "XY99"]) == ("AB-12", False)
    assert majority_identifier(["RRN 123456", "123456", "999999"]) == ("RRN 123456", False)
    assert majority_identifier(["111", "222", "333"]) == (None, True)
    assert majority_identifier(["111", None, ""]) == ("111", False)
    assert majority_identifier([None, None, None]) == (None, False)


# ---------------------------------------------------------------------------
# Triple check
# ---------------------------------------------------------------------------


def test_triple_agreement_overrides_and_adds_bonus() -> None:
    results = [
        _raw(operation_number="778899", confidence_score=80, amount=150000),
        _raw(operation_number="778-899", confidence_score=85, amount=150000),
        _raw(operation_number="778899", confidence_score=70, amount=15000),
    ]
    out = reconcile_triple(results)
    assert out.confidence_score == 90
    assert out.amount == 150000
    assert out.has_ambiguous_numbers is False
    assert out.ambiguous_fields == ()
    assert out.operation_number in ("778899", "778-899")


def test_triple_bonus_capped_at_100() -> None:
    out = reconcile_triple([_raw(confidence_score=98), _raw(confidence_score=97), _raw(confidence_score=96)])
    assert out.confidence_score == 100


def test_triple_contested_critical_field_reduces_confidence() -> None:
    results = [
        _raw(rrn="111111", confidence_score=80),
        _raw(rrn="222222", confidence_score=75),
        _raw(rrn="333333", confidence_score=70),
    ]
    out = reconcile_triple(results)
    assert out.has_ambiguous_numbers is True
    assert "rrn" in out.ambiguous_fields
    assert out.confidence_score == 65
    assert out.rrn == "111111"


def test_triple_multiple_contested_fields_cap_at_50() -> None:
    results = [
        _raw(rrn="111111", receipt_number="9001", confidence_score=80),
        _raw(rrn="222222", receipt_number="9002", confidence_score=75),
        _raw(rrn="333333", receipt_number="9003", confidence_score=70),
    ]
    out = reconcile_triple(results)
    assert out.confidence_score == 50
    assert set(out.ambiguous_fields) >= {"rrn", "receipt_number"}


@pytest.mark.parametrize("base_conf, expected", [(60, 55), (50, 50), (95, 80)])
def test_triple_single_contest_floor_never_raises(base_conf: int, expected: int) -> None:
    results = [
        _raw(operation_number="A1111", confidence_score=base_conf),
        _raw(operation_number="B2222", confidence_score=base_conf - 1),
        _raw(operation_number="C3333", confidence_score=base_conf - 2),
    ]
    assert reconcile_triple(results).confidence_score == expected


def test_triple_non_critical_contest_keeps_base_value() -> None:
    results = [
        _raw(approval_code="A111", confidence_score=80),
        _raw(approval_code="B222", confidence_score=70),
        _raw(approval_code="C333", confidence_score=60),
    ]
    out = reconcile_triple(results)
    assert out.approval_code == "A111"
    assert out.has_ambiguous_numbers is False
    assert out.confidence_score == 85
    assert out.ambiguous_fields == ("approval_code",)


def test_triple_agreement_keeps_unsettled_self_reported_fields() -> None:
    results = [
        _raw(confidence_score=90, ambiguous_fields=("rrn", "city")),
        _raw(confidence_score=80),
        _raw(confidence_score=70),
    ]
    out = reconcile_triple(results)
    # rrn was settled by the vote; city was not voted on
    assert out.ambiguous_fields == ("city",)
    assert out.has_ambiguous_numbers is False


def test_triple_single_survivor_gets_no_bonus() -> None:
    out = reconcile_triple([_raw(confidence_score=70)])
    assert out.confidence_score == 70


# ---------------------------------------------------------------------------
# Dual provider
# ---------------------------------------------------------------------------


def test_agreement_score_normalizes_fields() -> None:
    a = _raw(amount=150000, date="2025-05-01", account_or_convenio="0024500020949", bank_name="Banco  Agrario")
    b = _raw(amount=150000, date="20250501", account_or_convenio="24500020949", bank_name="banco agrario")
    assert agreement_score(a, b) == 100
    assert agreement_score(RawFields(), RawFields()) == 0


def test_dual_high_agreement_picks_higher_confidence() -> None:
    a = _raw(confidence_score=90, bank_name="Bancolombia")
    b = _raw(confidence_score=95, bank_name="Bancolombia S.A.")
    chosen, score, second = reconcile_dual(a, b)
    assert 80 <= score < 100
    assert chosen == b
    assert second is True


def test_dual_tie_goes_to_first() -> None:
    a = _raw(confidence_score=90)
    b = _raw(confidence_score=90, bank_name="Otro")
    chosen, _score, second = reconcile_dual(a, b)
    assert chosen == a
    assert second is False


def test_dual_disagreement_caps_second() -> None:
    a = _raw(confidence_score=95)
    b = _raw(amount=99000, date="2025-05-02", operation_number="1", rrn="2", confidence_score=92)
    chosen, score, second = reconcile_dual(a, b)
    assert score < 80
    assert second is True
    assert chosen.amount == 99000
    assert chosen.confidence_score == 70
    assert chosen.has_ambiguous_numbers is True
    assert DISAGREEMENT_MARKER in chosen.ambiguous_fields


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def test_triple_check_calls_three_times_and_caches(cache: ResultCache) -> None:
    svc = FakeExtractionService("openai", [_raw(confidence_score=80)])
    post = PassThroughPostProcessor()
    orch = ConsensusOrchestrator([svc], post, cache=cache, strategy=ConsensusStrategy.TRIPLE_CHECK)
    result = orch.extract(b"img", "hash-1")
    assert svc.calls == 3
    assert post.applied == 3
    assert result.used_provider == "openai"
    assert result.strategy == "triple_check"
    assert result.from_cache is False
    assert result.confidence == 85

    again = orch.extract(b"img", "hash-1")
    assert svc.calls == 3
    assert again.from_cache is True
    assert again.operation_number == result.operation_number


def test_failed_calls_are_excluded(cache: ResultCache) -> None:
    svc = FakeExtractionService("openai", [ModelUnavailable("down"), ModelProtocolError("bad json"), _raw()])
    orch = ConsensusOrchestrator([svc], PassThroughPostProcessor(), cache=cache)
    result = orch.extract(b"img", "hash-2")
    assert result.operation_number == "778899"
    assert result.confidence == 80


def test_all_calls_failing_raises_and_writes_nothing(cache: ResultCache) -> None:
    svc = FakeExtractionService("openai", [ModelUnavailable("down")])
    orch = ConsensusOrchestrator([svc], PassThroughPostProcessor(), cache=cache)
    with pytest.raises(ExtractionUnavailable):
        orch.extract(b"img", "hash-3", trace_id="t-3")
    assert cache.stats().size == 0


def test_invalid_image_is_surfaced(cache: ResultCache) -> None:
    svc = FakeExtractionService("openai", [InvalidImage("unreadable")])
    orch = ConsensusOrchestrator([svc], PassThroughPostProcessor(), cache=cache)
    with pytest.raises(InvalidImage):
        orch.extract(b"img", "hash-4")
    assert cache.stats().size == 0


def test_dual_provider_scenario_picks_more_confident_b(cache: ResultCache) -> None:
    a = FakeExtractionService("openai", [_raw(confidence_score=90, bank_name="Bancolombia")])
    b = FakeExtractionService("gemini", [_raw(confidence_score=95, bank_name="Bancolombia S.A.", city="Cali")])
    orch = ConsensusOrchestrator([a, b], PassThroughPostProcessor(), cache=cache, strategy="dual_provider")
    result = orch.extract(b"img", "hash-5")
    assert (a.calls, b.calls) == (1, 1)
    assert result.used_provider == "gemini"
    assert result.city == "Cali"
    assert result.confidence == 95
    assert result.agreement_score is not None and result.agreement_score >= 80
    assert result.from_cache is False


def test_dual_provider_needs_distinct_providers() -> None:
    svc = FakeExtractionService("openai", [_raw()])
    with pytest.raises(ConfigError):
        ConsensusOrchestrator([svc, svc], PassThroughPostProcessor(), strategy=ConsensusStrategy.DUAL_PROVIDER)
    with pytest.raises(ConfigError):
        ConsensusOrchestrator([svc], PassThroughPostProcessor(), strategy=ConsensusStrategy.DUAL_PROVIDER)


def test_dual_provider_survivor_used_when_other_fails(cache: ResultCache) -> None:
    a = FakeExtractionService("openai", [ModelUnavailable("down")])
    b = FakeExtractionService("gemini", [_raw(confidence_score=77)])
    orch = ConsensusOrchestrator([a, b], PassThroughPostProcessor(), cache=cache, strategy="dual_provider")
    result = orch.extract(b"img", "hash-6")
    assert result.used_provider == "gemini"
    assert result.confidence == 77
    assert result.agreement_score is None


def test_single_strategy_makes_one_call() -> None:
    svc = FakeExtractionService("ollama", [_raw(confidence_score=66)])
    orch = ConsensusOrchestrator([svc], PassThroughPostProcessor(), strategy=ConsensusStrategy.SINGLE)
    result = orch.extract(b"img", "hash-7")
    assert svc.calls == 1
    assert result.confidence == 66
    assert result.strategy == "single"


def test_round_timeout_discards_late_calls(cache: ResultCache) -> None:
    release = threading.Event()
    fast = FakeExtractionService("openai", [_raw(confidence_score=81)])
    slow = FakeExtractionService("gemini", [_raw(confidence_score=99)], block=release)
    orch = ConsensusOrchestrator(
        [fast, slow], PassThroughPostProcessor(), cache=cache, strategy="dual_provider", round_timeout_sec=0.2
    )
    try:
        result = orch.extract(b"img", "hash-8")
    finally:
        release.set()
    assert result.used_provider == "openai"
    assert result.confidence == 81
