"""
Consignment pipeline: image -> Candidate (consensus extraction) -> ConsignmentRecord (validation).
Does not know which model is used; orchestrator, engine and history store are injected.
Flow: read + hash image -> orchestrator.extract (cache / N calls / reconcile) -> validate_batch against history.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from pathlib import Path
from typing import Callable, Mapping, Sequence

from core.exceptions import HistoryStoreError
from core.interfaces import IHistoryStore
from core.models import (
    AppendResult,
    Candidate,
    ConsignmentRecord,
    HistoryFilter,
    TrainingExample,
    ValidationStatus,
)
from services.consensus_service import ConsensusOrchestrator
from services.validation_service import ValidationEngine
from utils.image_utils import read_image_file, validate_image_bytes
from utils.logger import log_structured

logger = logging.getLogger(__name__)


def image_content_hash(image_bytes: bytes) -> str:
    """SHA-256 hex digest of the raw image bytes; the cache key and image identity."""
    return hashlib.sha256(image_bytes).hexdigest()


class ConsignmentPipeline:
    """
    Single entry points extract_path / extract_bytes -> Candidate, validate -> records.
    No global state; history is fetched once per validate call.
    """

    def __init__(
        self,
        orchestrator: ConsensusOrchestrator,
        validation_engine: ValidationEngine,
        *,
        history_store: IHistoryStore | None = None,
        history_filter: HistoryFilter | None = None,
        training_examples: Sequence[TrainingExample] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._orchestrator = orchestrator
        self._engine = validation_engine
        self._history = history_store
        self._history_filter = history_filter or HistoryFilter(limit=None)
        self._training_examples = tuple(training_examples)
        self._clock = clock

    @property
    def engine(self) -> ValidationEngine:
        return self._engine

    def extract_bytes(
        self,
        image_bytes: bytes,
        *,
        image_ref: str = "",
        mime_type: str | None = None,
    ) -> Candidate:
        """Consensus extraction for one image. Raises InvalidImage / ExtractionUnavailable."""
        mime = mime_type or validate_image_bytes(image_bytes)
        image_hash = image_content_hash(image_bytes)
        trace_id = str(uuid.uuid4())
        start = time.perf_counter()
        data = self._orchestrator.extract(
            image_bytes,
            image_hash,
            mime_type=mime,
            prompt_context=self._training_examples,
            trace_id=trace_id,
        )
        log_structured(
            logger,
            logging.INFO,
            "Extracted receipt",
            trace_id=trace_id,
            image=image_ref or image_hash[:12],
            provider=data.used_provider,
            confidence=data.confidence,
            from_cache=data.from_cache,
            elapsed_sec=round(time.perf_counter() - start, 3),
        )
        return Candidate(
            id=trace_id,
            data=data,
            image_hash=image_hash,
            image_ref=image_ref,
            created_at=self._clock(),
        )

    def extract_path(self, path: str | Path) -> Candidate:
        p = Path(path)
        image_bytes, mime = read_image_file(p)
        return self.extract_bytes(image_bytes, image_ref=str(p), mime_type=mime)

    def load_history(self) -> list[ConsignmentRecord]:
        """Accepted records from the remote history store. An unreachable store yields an empty corpus."""
        if self._history is None:
            return []
        try:
            records = self._history.fetch_history(self._history_filter)
        except HistoryStoreError as e:
            logger.warning("History unavailable, validating against the session only: %s", e)
            return []
        return [r for r in records if r.status is ValidationStatus.VALID]

    def validate(
        self,
        candidates: Sequence[Candidate],
        history: Sequence[ConsignmentRecord] | None = None,
    ) -> list[ConsignmentRecord]:
        """Validate candidates in submission order against history plus earlier accepted candidates."""
        corpus = self.load_history() if history is None else list(history)
        logger.info("Validating %s candidate(s) against %s history record(s)", len(candidates), len(corpus))
        return self._engine.validate_batch(candidates, corpus)

    def process_paths(self, paths: Sequence[str | Path]) -> list[ConsignmentRecord]:
        """Sequential extract + validate. Use BatchProcessor for parallel extraction."""
        return self.validate([self.extract_path(p) for p in paths])

    # -- manual review overlays ---------------------------------------------

    def authorize(self, record: ConsignmentRecord, authorized_by: str, authorization_ref: str) -> ConsignmentRecord:
        logger.info("Record %s manually authorized by %s (ref=%s)", record.id, authorized_by, authorization_ref)
        return record.with_authorization(authorized_by, authorization_ref, self._clock())

    def verify_numbers(
        self,
        record: ConsignmentRecord,
        numbers: Mapping[str, str | None],
        verified_by: str,
        corpus: Sequence[ConsignmentRecord] = (),
    ) -> ConsignmentRecord:
        return self._engine.verify_numbers(record, numbers, verified_by, corpus, at=self._clock())

    def sync_history(self, records: Sequence[ConsignmentRecord]) -> AppendResult:
        """Append accepted records to the remote history store."""
        if self._history is None:
            return AppendResult(False, "History store not configured")
        result = self._history.append_records(records)
        if result.success:
            logger.info("History sync: %s", result.message)
        else:
            logger.warning("History sync failed: %s", result.message)
        return result
