"""
Consensus orchestration: N extraction calls for one image -> one reconciled ExtractionResult.
Calls run concurrently and are joined on all completions; reconciliation is a pure function
of the successful, post-processed call results.
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import replace
from typing import Any, Callable, Sequence

from core.exceptions import ConfigError, ConsignmentError, ExtractionUnavailable, InvalidImage
from core.interfaces import IExtractionService, IPostProcessingService
from core.models import (
    IDENTIFIER_FIELDS,
    IDENTITY_CRITICAL_FIELDS,
    ConsensusStrategy,
    ExtractionResult,
    RawFields,
    TrainingExample,
)
from utils.normalize import (
    collapse_whitespace,
    digits_no_leading_zeros,
    digits_only,
    normalize_identifier,
    strip_date_separators,
)
from utils.result_cache import ResultCache

logger = logging.getLogger(__name__)

TRIPLE_CHECK_CALLS = 3
AGREEMENT_THRESHOLD = 80
DISAGREEMENT_CONFIDENCE_CAP = 70
MULTI_CONTEST_CONFIDENCE_CAP = 50
SINGLE_CONTEST_PENALTY = 15
SINGLE_CONTEST_FLOOR = 55
AGREEMENT_BONUS = 5
DISAGREEMENT_MARKER = "consensus_disagreement"

# Fields compared between two providers, each with its normalizer.
CRITICAL_FIELD_NORMALIZERS: tuple[tuple[str, Callable[[Any], str]], ...] = (
    ("amount", digits_no_leading_zeros),
    ("date", strip_date_separators),
    ("voucher_number", digits_no_leading_zeros),
    ("operation_number", digits_no_leading_zeros),
    ("rrn", digits_no_leading_zeros),
    ("account_or_convenio", digits_no_leading_zeros),
    ("bank_name", collapse_whitespace),
)


# ---------------------------------------------------------------------------
# Triple check (same provider, three calls)
# ---------------------------------------------------------------------------


def _group_winner(values: Sequence[str], key: Callable[[str], str]) -> str | None:
    """First value whose key is shared by at least one other value; None if no pair agrees."""
    keys = [key(v) for v in values]
    counts = Counter(k for k in keys if k)
    if not counts:
        return None
    best_key, best_count = max(counts.items(), key=lambda kv: (kv[1], -keys.index(kv[0])))
    if best_count < 2:
        return None
    return values[keys.index(best_key)]


def majority_identifier(values: Sequence[str | None]) -> tuple[str | None, bool]:
    """
    Majority of one identifier field across calls, in call order.
    Exact match after normalize_identifier, then digits-only match.
    Returns (value, contested); contested means >= 2 readings and no two agree.
    """
    present = [str(v).strip() for v in values if v is not None and str(v).strip()]
    if not present:
        return None, False
    winner = _group_winner(present, normalize_identifier)
    if winner is None:
        winner = _group_winner(present, digits_only)
    if winner is not None:
        return winner, False
    if len(present) == 1:
        return present[0], False
    return None, True


def _majority_plain(values: Sequence[Any]) -> Any | None:
    present = [v for v in values if v not in (None, "", 0)]
    counts = Counter(present)
    if not counts:
        return None
    value, count = counts.most_common(1)[0]
    return value if count >= 2 else None


def reconcile_triple(results: Sequence[RawFields]) -> ExtractionResult:
    """
    Vote over successful calls (at least one). Base is the highest self-confidence call.
    A contested identity-critical field lowers confidence and flags ambiguity; otherwise
    majority identifiers, amount and date override the base and confidence gets a bonus.
    """
    if not results:
        raise ValueError("reconcile_triple needs at least one result")
    ordered = sorted(results, key=lambda r: r.confidence_score, reverse=True)
    base = ordered[0]
    votes = {name: majority_identifier([getattr(r, name) for r in ordered]) for name in IDENTIFIER_FIELDS}
    contested = [name for name, (_, is_contested) in votes.items() if is_contested]

    if any(name in IDENTITY_CRITICAL_FIELDS for name in contested):
        conf = base.confidence_score
        if len(contested) > 1:
            conf = min(conf, MULTI_CONTEST_CONFIDENCE_CAP)
        else:
            conf = min(conf, max(conf - SINGLE_CONTEST_PENALTY, SINGLE_CONTEST_FLOOR))
        ambiguous = tuple(dict.fromkeys(base.ambiguous_fields + tuple(contested)))
        logger.warning("Triple check contested fields %s; confidence %s -> %s", contested, base.confidence_score, conf)
        return ExtractionResult.from_raw(
            base,
            confidence_score=conf,
            has_ambiguous_numbers=True,
            ambiguous_fields=ambiguous,
        )

    changes: dict[str, Any] = {name: value for name, (value, _) in votes.items() if value is not None}
    amount = _majority_plain([r.amount for r in ordered])
    if amount is not None:
        changes["amount"] = amount
    date = _majority_plain([r.date for r in ordered])
    if date is not None:
        changes["date"] = date
    conf = base.confidence_score
    if len(results) >= 2:
        conf = min(100, conf + AGREEMENT_BONUS)
    # Non-critical contests and self-reported doubts the vote did not settle stay visible for review.
    unresolved = tuple(f for f in base.ambiguous_fields if f not in changes)
    ambiguous = tuple(dict.fromkeys(unresolved + tuple(contested)))
    return ExtractionResult.from_raw(
        base,
        **changes,
        confidence_score=conf,
        has_ambiguous_numbers=False,
        ambiguous_fields=ambiguous,
    )


# ---------------------------------------------------------------------------
# Dual provider
# ---------------------------------------------------------------------------


def agreement_score(a: RawFields, b: RawFields) -> int:
    """Percent of compared critical fields that match after normalization; 0 when nothing compared."""
    compared = matched = 0
    for name, normalize in CRITICAL_FIELD_NORMALIZERS:
        left = normalize(getattr(a, name))
        right = normalize(getattr(b, name))
        if not left and not right:
            continue
        compared += 1
        if left and right and left == right:
            matched += 1
    if compared == 0:
        return 0
    return int(round(matched * 100.0 / compared))


def reconcile_dual(first: RawFields, second: RawFields) -> tuple[RawFields, int, bool]:
    """
    Returns (chosen result, score, second_chosen). Score >= threshold picks the higher
    self-confidence (ties to first); otherwise second, capped and flagged.
    """
    score = agreement_score(first, second)
    if score >= AGREEMENT_THRESHOLD:
        if second.confidence_score > first.confidence_score:
            return second, score, True
        return first, score, False
    ambiguous = tuple(dict.fromkeys(second.ambiguous_fields + (DISAGREEMENT_MARKER,)))
    flagged = second.with_changes(
        confidence_score=min(second.confidence_score, DISAGREEMENT_CONFIDENCE_CAP),
        has_ambiguous_numbers=True,
        ambiguous_fields=ambiguous,
    )
    return flagged, score, True


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ConsensusOrchestrator:
    """
    Cache lookup -> concurrent extraction round -> post-process -> reconcile -> cache write.
    Services, post-processor and cache are injected.
    """

    def __init__(
        self,
        services: Sequence[IExtractionService],
        post_processor: IPostProcessingService,
        *,
        cache: ResultCache | None = None,
        strategy: ConsensusStrategy | str = ConsensusStrategy.TRIPLE_CHECK,
        round_timeout_sec: float = 180.0,
    ) -> None:
        if not services:
            raise ConfigError("ConsensusOrchestrator needs at least one extraction service")
        self._strategy = ConsensusStrategy(strategy)
        if self._strategy is ConsensusStrategy.DUAL_PROVIDER:
            if len(services) < 2 or services[0].provider_name == services[1].provider_name:
                raise ConfigError("dual_provider consensus needs two distinct providers")
        self._services = list(services)
        self._post = post_processor
        self._cache = cache
        self._round_timeout_sec = round_timeout_sec

    @property
    def strategy(self) -> ConsensusStrategy:
        return self._strategy

    def _plan(self) -> list[IExtractionService]:
        if self._strategy is ConsensusStrategy.TRIPLE_CHECK:
            return [self._services[0]] * TRIPLE_CHECK_CALLS
        if self._strategy is ConsensusStrategy.DUAL_PROVIDER:
            return self._services[:2]
        return self._services[:1]

    def _run_round(
        self,
        calls: list[IExtractionService],
        image_bytes: bytes,
        mime_type: str,
        prompt_context: Sequence[TrainingExample],
        trace_id: str,
    ) -> list[RawFields | None]:
        """Run all calls concurrently; join on all or the round deadline. Failed/late calls are None."""
        outcomes: list[RawFields | None] = [None] * len(calls)
        errors: list[ConsignmentError] = []
        executor = ThreadPoolExecutor(max_workers=len(calls), thread_name_prefix="consensus")
        try:
            futures: dict[Future[RawFields], int] = {
                executor.submit(svc.extract, image_bytes, mime_type, prompt_context): i
                for i, svc in enumerate(calls)
            }
            try:
                for future in as_completed(futures, timeout=self._round_timeout_sec):
                    idx = futures[future]
                    try:
                        outcomes[idx] = future.result()
                    except InvalidImage as e:
                        e.trace_id = e.trace_id or trace_id
                        raise
                    except ConsignmentError as e:
                        errors.append(e)
                        logger.warning(
                            "Extraction call %s/%s (%s) failed: %s", idx + 1, len(calls), calls[idx].provider_name, e
                        )
            except FuturesTimeout:
                late = sum(1 for f in futures if not f.done())
                logger.warning("Consensus round timed out after %.1fs; discarding %s pending call(s)",
                               self._round_timeout_sec, late)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        if all(o is None for o in outcomes):
            cause = errors[-1] if errors else None
            raise ExtractionUnavailable(
                f"All {len(calls)} extraction call(s) failed" + (f": {cause}" if cause else " (timeout)"),
                trace_id=trace_id,
            ) from cause
        return outcomes

    def extract(
        self,
        image_bytes: bytes,
        image_hash: str,
        mime_type: str = "image/jpeg",
        prompt_context: Sequence[TrainingExample] = (),
        trace_id: str = "",
    ) -> ExtractionResult:
        if self._cache is not None:
            entry = self._cache.get(image_hash)
            if entry is not None:
                logger.info("Cache hit for %s (provider=%s)", image_hash[:12], entry.provider_used)
                return replace(entry.result, from_cache=True)

        calls = self._plan()
        outcomes = self._run_round(calls, image_bytes, mime_type, prompt_context, trace_id)
        processed: list[tuple[IExtractionService, RawFields]] = [
            (calls[i], self._post.apply(raw)) for i, raw in enumerate(outcomes) if raw is not None
        ]

        if self._strategy is ConsensusStrategy.DUAL_PROVIDER and len(processed) == 2:
            (first_svc, first), (second_svc, second) = processed
            chosen, score, second_chosen = reconcile_dual(first, second)
            provider = second_svc.provider_name if second_chosen else first_svc.provider_name
            if score < AGREEMENT_THRESHOLD:
                logger.warning(
                    "Providers disagree (score=%s < %s); using %s with capped confidence",
                    score, AGREEMENT_THRESHOLD, provider,
                )
            result = ExtractionResult.from_raw(
                chosen, used_provider=provider, strategy=self._strategy.value, agreement_score=score
            )
        elif self._strategy is ConsensusStrategy.TRIPLE_CHECK:
            result = ExtractionResult.from_raw(
                reconcile_triple([raw for _, raw in processed]),
                used_provider=processed[0][0].provider_name,
                strategy=self._strategy.value,
            )
        else:
            svc, raw = processed[0]
            if self._strategy is ConsensusStrategy.DUAL_PROVIDER:
                logger.warning("Only %s answered in dual_provider mode; using its result unreconciled", svc.provider_name)
            result = ExtractionResult.from_raw(raw, used_provider=svc.provider_name, strategy=self._strategy.value)

        if self._cache is not None:
            try:
                self._cache.put(image_hash, result, result.used_provider)
            except OSError as e:
                logger.warning("Cache write failed for %s: %s", image_hash[:12], e)
        return result
