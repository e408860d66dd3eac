"""
Batch processor: list of image files -> extract each (in parallel), validate all in submission order.
Does not duplicate pipeline logic; uses ConsignmentPipeline.extract_path() and validate().
Extraction runs on a ThreadPoolExecutor (max_workers); validation is sequential so record K
sees every accepted record 1..K-1.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Sequence

from core.exceptions import ConsignmentError
from core.models import BatchMetrics, Candidate, ConsignmentRecord
from pipeline.consignment_pipeline import ConsignmentPipeline

logger = logging.getLogger(__name__)


def _extract_one_indexed(
    index: int,
    pipeline: ConsignmentPipeline,
    path: str | Path,
) -> tuple[int, Candidate | None, ConsignmentError | None]:
    """Extract one file. Returns (index, candidate, error); missing files count as failures."""
    p = Path(path)
    if not p.exists():
        logger.warning("Skip missing file: %s", p)
        return (index, None, None)
    logger.info("Processing file=%s", p.name)
    try:
        return (index, pipeline.extract_path(p), None)
    except ConsignmentError as e:
        e.trace_id = e.trace_id or p.name
        logger.error("Batch item failed file=%s: %s", p.name, e)
        return (index, None, e)


class BatchProcessor:
    """
    Process multiple receipt images; extraction in parallel (or sequentially when max_workers=1).
    Injected pipeline; collects BatchMetrics.
    """

    def __init__(self, pipeline: ConsignmentPipeline, max_workers: int = 1) -> None:
        self._pipeline = pipeline
        self._max_workers = max(1, int(max_workers))

    def _extract_all(
        self,
        file_paths: Sequence[str | Path],
        stop_on_first_error: bool,
    ) -> list[tuple[Candidate | None, ConsignmentError | None]]:
        if self._max_workers == 1:
            out: list[tuple[Candidate | None, ConsignmentError | None]] = []
            for i, path in enumerate(file_paths):
                _index, candidate, err = _extract_one_indexed(i, self._pipeline, path)
                if err is not None and stop_on_first_error:
                    raise err
                out.append((candidate, err))
            return out

        completed_by_index: dict[int, tuple[Candidate | None, ConsignmentError | None]] = {}
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="batch") as executor:
            futures = {
                executor.submit(_extract_one_indexed, i, self._pipeline, path): i
                for i, path in enumerate(file_paths)
            }
            for future in as_completed(futures):
                _index, candidate, err = future.result()
                completed_by_index[futures[future]] = (candidate, err)
                if err is not None and stop_on_first_error:
                    for pending in futures:
                        pending.cancel()
                    raise err
        return [completed_by_index.get(i, (None, None)) for i in range(len(file_paths))]

    def process_batch(
        self,
        file_paths: Sequence[str | Path],
        *,
        stop_on_first_error: bool = False,
    ) -> tuple[list[ConsignmentRecord], BatchMetrics]:
        """
        Extract every file, then validate the successful ones in submission order.
        Returns (records, metrics). On error: if stop_on_first_error, re-raise; else log,
        continue and increment failed_count.
        """
        metrics = BatchMetrics()
        start = time.perf_counter()
        extracted = self._extract_all(file_paths, stop_on_first_error)
        candidates = [c for c, _err in extracted if c is not None]
        metrics.failed_count = len(extracted) - len(candidates)
        records = self._pipeline.validate(candidates) if candidates else []
        for record in records:
            metrics.record(record)
        metrics.total_time_sec = time.perf_counter() - start
        logger.info("Batch complete: %s", metrics.to_dict())
        return records, metrics
