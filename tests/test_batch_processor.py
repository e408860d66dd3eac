"""
Unit tests for ConsignmentPipeline and BatchProcessor.
Tests: submission-order validation, failed files, stop_on_first_error, parallel extraction,
history filtering/fallback and history sync. Uses fakes; no model calls.
"""
from __future__ import annotations

import hashlib
import io
from pathlib import Path
from typing import Sequence

import pytest
from PIL import Image

from core.exceptions import HistoryStoreError, InvalidImage
from core.interfaces import IExtractionService, IHistoryStore, IPostProcessingService
from core.models import (
    AppendResult,
    ConsensusStrategy,
    ConsignmentRecord,
    ExtractionResult,
    HistoryFilter,
    RawFields,
    TrainingExample,
    ValidationStatus,
    WhitelistEntry,
)
from pipeline import BatchProcessor, ConsignmentPipeline, image_content_hash
from services.consensus_service import ConsensusOrchestrator
from services.validation_service import ValidationEngine


# ---------------------------------------------------------------------------
# Fake implementations (test doubles)
# ---------------------------------------------------------------------------


class FakeExtractionService(IExtractionService):
    def __init__(self, raw: RawFields) -> None:
        self._raw = raw
        self.calls = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    def extract(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        prompt_context: Sequence[TrainingExample] = (),
    ) -> RawFields:
        self.calls += 1
        return self._raw


class NoOpPostProcessor(IPostProcessingService):
    def apply(self, raw: RawFields) -> RawFields:
        return raw


class FakeHistoryStore(IHistoryStore):
    def __init__(self, records: Sequence[ConsignmentRecord] = (), fail: bool = False) -> None:
        self.records = list(records)
        self.fail = fail
        self.appended: list[ConsignmentRecord] = []
        self.queries: list[HistoryFilter | None] = []

    def fetch_history(self, query: HistoryFilter | None = None) -> list[ConsignmentRecord]:
        self.queries.append(query)
        if self.fail:
            raise HistoryStoreError("offline")
        return list(self.records)

    def append_records(self, records: Sequence[ConsignmentRecord]) -> AppendResult:
        self.appended.extend(records)
        return AppendResult(True, f"{len(records)} enviados")


RAW = RawFields(
    bank_name="Bancolombia",
    account_or_convenio="24500020949",
    amount=150000,
    date="2025-05-01",
    time="10:15",
    operation_number="778899",
    confidence_score=85,
    image_quality_score=90,
    is_readable=True,
)


def _png(path: Path, color: tuple[int, int, int]) -> Path:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    path.write_bytes(buf.getvalue())
    return path


def _pipeline(history: IHistoryStore | None = None, raw: RawFields = RAW) -> ConsignmentPipeline:
    orchestrator = ConsensusOrchestrator(
        [FakeExtractionService(raw)], NoOpPostProcessor(), strategy=ConsensusStrategy.SINGLE
    )
    engine = ValidationEngine([WhitelistEntry("24500020949")], min_quality_score=60)
    return ConsignmentPipeline(orchestrator, engine, history_store=history, clock=lambda: 42.0)


def _history_record(status: ValidationStatus, **overrides) -> ConsignmentRecord:
    return ConsignmentRecord(
        id="sheet-0",
        data=ExtractionResult.from_raw(RAW, **overrides),
        status=status,
        status_message="",
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def test_image_content_hash_is_sha256() -> None:
    assert image_content_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()


def test_extract_path_builds_candidate(tmp_path: Path) -> None:
    path = _png(tmp_path / "a.png", (255, 0, 0))
    candidate = _pipeline().extract_path(path)
    assert candidate.image_ref == str(path)
    assert candidate.image_hash == image_content_hash(path.read_bytes())
    assert candidate.created_at == 42.0
    assert candidate.data.used_provider == "fake"
    assert candidate.data.operation_number == "778899"


def test_extract_bytes_rejects_non_images() -> None:
    with pytest.raises(InvalidImage):
        _pipeline().extract_bytes(b"definitely not an image")


def test_history_keeps_only_accepted_records(tmp_path: Path) -> None:
    store = FakeHistoryStore(
        [
            _history_record(ValidationStatus.DUPLICATE),
            _history_record(ValidationStatus.VALID, operation_number="123456", amount=1, date="2020-01-01"),
        ]
    )
    pipeline = _pipeline(store)
    history = pipeline.load_history()
    assert [r.data.operation_number for r in history] == ["123456"]
    # a rejected sheet row never makes a new receipt a duplicate
    records = pipeline.process_paths([_png(tmp_path / "a.png", (1, 2, 3))])
    assert records[0].status is ValidationStatus.VALID
    assert store.queries[0] == HistoryFilter(limit=None)


def test_unreachable_history_validates_against_session_only(tmp_path: Path) -> None:
    pipeline = _pipeline(FakeHistoryStore(fail=True))
    assert pipeline.load_history() == []
    records = pipeline.process_paths([_png(tmp_path / "a.png", (1, 2, 3))])
    assert records[0].status is ValidationStatus.VALID


def test_history_duplicate_is_detected(tmp_path: Path) -> None:
    pipeline = _pipeline(FakeHistoryStore([_history_record(ValidationStatus.VALID)]))
    records = pipeline.process_paths([_png(tmp_path / "a.png", (1, 2, 3))])
    assert records[0].status is ValidationStatus.DUPLICATE


def test_sync_history_without_store() -> None:
    result = _pipeline().sync_history([])
    assert result.success is False


def test_sync_history_and_authorize(tmp_path: Path) -> None:
    store = FakeHistoryStore()
    pipeline = _pipeline(store)
    records = pipeline.process_paths([_png(tmp_path / "a.png", (1, 2, 3))])
    assert pipeline.sync_history(records).success is True
    assert store.appended == records

    authorized = pipeline.authorize(records[0], "ana", "ticket-1")
    assert authorized.authorized_at == 42.0
    assert authorized.status is ValidationStatus.VALID


# ---------------------------------------------------------------------------
# BatchProcessor
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("max_workers", [1, 2])
def test_second_identical_receipt_is_duplicate(tmp_path: Path, max_workers: int) -> None:
    paths = [_png(tmp_path / "a.png", (255, 0, 0)), _png(tmp_path / "b.png", (0, 255, 0))]
    records, metrics = BatchProcessor(_pipeline(), max_workers=max_workers).process_batch(paths)
    assert [r.image_ref for r in records] == [str(p) for p in paths]
    assert [r.status for r in records] == [ValidationStatus.VALID, ValidationStatus.DUPLICATE]
    assert metrics.total_processed == 2
    assert metrics.valid_count == 1
    assert metrics.duplicate_count == 1
    assert metrics.failed_count == 0


def test_missing_and_invalid_files_count_as_failed(tmp_path: Path) -> None:
    good = _png(tmp_path / "a.png", (255, 0, 0))
    bad = tmp_path / "b.png"
    bad.write_bytes(b"not a png")
    records, metrics = BatchProcessor(_pipeline()).process_batch([tmp_path / "missing.png", bad, good])
    assert len(records) == 1
    assert records[0].status is ValidationStatus.VALID
    assert metrics.failed_count == 2
    assert metrics.total_processed == 1


def test_stop_on_first_error_reraises(tmp_path: Path) -> None:
    bad = tmp_path / "b.png"
    bad.write_bytes(b"not a png")
    with pytest.raises(InvalidImage) as info:
        BatchProcessor(_pipeline()).process_batch([bad], stop_on_first_error=True)
    assert info.value.trace_id == "b.png"


def test_empty_batch() -> None:
    records, metrics = BatchProcessor(_pipeline(), max_workers=3).process_batch([])
    assert records == []
    assert metrics.total_processed == 0
