"""
Consignment receipt processing: entry point.

Modes:
  1. Batch (default): every image in INPUT → consensus extraction → validation → consignments.json / .csv
  2. Cache maintenance: --cache-stats, --cache-sweep [HOURS], --cache-clear, --bump-ruleset

Usage:
  python main.py [--input DIR] [--strategy single|triple_check|dual_provider] [--workers N] [--output-dir DIR] [--sync]

- Extraction: one call (single), three calls to the primary provider (triple_check) or one call to each of two
  providers (dual_provider); results are cached by image hash under the current ruleset version.
- Validation: quality gate → duplicate by identifier → heuristic duplicate → account/convenio whitelist.
  Accepted records from the history sheet (HISTORY_SCRIPT_URL) are part of the duplicate corpus.
- --sync: append accepted records to the history sheet after the batch.
"""
from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from core.exceptions import ConfigError, ConsignmentError
from core.models import ConsensusStrategy, ConsignmentRecord
from pipeline.batch_processor import BatchProcessor
from pipeline.consignment_pipeline import ConsignmentPipeline
from providers.factory import create_provider
from services.consensus_service import ConsensusOrchestrator
from services.extraction_service import ExtractionService
from services.history_service import SheetsHistoryStore
from services.post_processing_service import PostProcessingService
from services.validation_service import ValidationEngine
from utils.config import AppConfig, ProviderConfig, load_config
from utils.image_utils import list_image_files
from utils.logger import setup_logging
from utils.result_cache import JsonFileCacheStore, ResultCache

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def create_extraction_service(provider: ProviderConfig, max_training_examples: int) -> ExtractionService:
    llm = create_provider(
        provider.name,
        base_url=provider.base_url or None,
        api_key=provider.api_key,
        model=provider.model,
        timeout_sec=provider.timeout_sec,
    )
    return ExtractionService(
        llm,
        name=provider.name,
        model=provider.model,
        max_retries=provider.max_retries,
        retry_delay_sec=provider.retry_delay_sec,
        max_tokens=provider.max_tokens,
        max_training_examples=max_training_examples,
    )


def create_cache(config: AppConfig) -> ResultCache | None:
    if not config.cache.enabled:
        return None
    return ResultCache(JsonFileCacheStore(config.cache.cache_dir), expiration_hours=config.cache.expiration_hours)


def create_pipeline(config: AppConfig) -> ConsignmentPipeline:
    """Build the full pipeline from config. All dependencies are injected from here."""
    max_examples = config.consensus.max_training_examples
    services = [create_extraction_service(config.primary_provider, max_examples)]
    if config.consensus.strategy == ConsensusStrategy.DUAL_PROVIDER.value and config.secondary_provider:
        services.append(create_extraction_service(config.secondary_provider, max_examples))
    orchestrator = ConsensusOrchestrator(
        services,
        PostProcessingService(known_clients=config.validation.known_clients),
        cache=create_cache(config),
        strategy=config.consensus.strategy,
        round_timeout_sec=config.consensus.round_timeout_sec,
    )
    engine = ValidationEngine(
        config.validation.whitelist,
        config.validation.common_references,
        min_quality_score=config.validation.min_quality_score,
        amount_tolerance=config.validation.amount_tolerance,
        relaxed_authorization=config.validation.relaxed_authorization,
    )
    history = None
    if config.history.script_url:
        history = SheetsHistoryStore(
            config.history.script_url,
            timeout_sec=config.history.timeout_sec,
            account_holder=config.history.account_holder,
        )
    return ConsignmentPipeline(orchestrator, engine, history_store=history)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def record_to_dict(record: ConsignmentRecord) -> dict[str, Any]:
    d = asdict(record)
    d["status"] = record.status.value
    d["data"]["ambiguous_fields"] = list(record.data.ambiguous_fields)
    return d


def save_records_json(records: list[ConsignmentRecord], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump([record_to_dict(r) for r in records], f, indent=2, ensure_ascii=False)
    logger.info("Saved batch output to %s", path)


def save_records_csv(records: list[ConsignmentRecord], path: Path) -> None:
    """One row per record with the fields an operator reviews."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if not records:
        return
    rows = []
    for r in records:
        d = r.data
        rows.append({
            "id": r.id,
            "image": r.image_ref,
            "status": r.status.value,
            "status_message": r.status_message,
            "bank": d.bank_name,
            "account_or_convenio": d.account_or_convenio,
            "amount": d.amount,
            "date": d.date or "",
            "time": d.time or "",
            "primary_identifier": d.primary_identifier or "",
            "payment_reference": d.payment_reference or "",
            "client_code": d.client_code or "",
            "confidence": d.confidence,
            "ambiguous_fields": "|".join(d.ambiguous_fields),
            "provider": d.used_provider,
            "from_cache": d.from_cache,
        })
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=rows[0].keys())
        w.writeheader()
        w.writerows(rows)
    logger.info("Saved records CSV to %s", path)


# ---------------------------------------------------------------------------
# Cache maintenance
# ---------------------------------------------------------------------------


def run_cache_command(args: argparse.Namespace, config: AppConfig) -> int:
    cache = ResultCache(JsonFileCacheStore(config.cache.cache_dir), expiration_hours=config.cache.expiration_hours)
    if args.bump_ruleset:
        print(f"Ruleset version is now v{cache.bump_ruleset_version()}")
    if args.cache_sweep is not None:
        window = args.cache_sweep if args.cache_sweep > 0 else None
        print(f"Swept {cache.sweep_expired(window)} expired entries")
    if args.cache_clear:
        print(f"Cleared {cache.clear()} entries")
    if args.cache_stats:
        stats = cache.stats()
        print(f"  cache_dir: {config.cache.cache_dir}")
        print(f"  ruleset_version: v{cache.ruleset_version}")
        print(f"  size: {stats.size}")
        print(f"  oldest_created_at: {stats.oldest_created_at}")
    return 0


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Consignment receipts: consensus extraction, deduplication and account validation",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml (default: ./config.yaml)")
    parser.add_argument("--input", "-i", default=None, help="Folder with receipt images (default: input_root)")
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in ConsensusStrategy],
        default=None,
        help="Consensus strategy (default: CONSENSUS_STRATEGY or triple_check)",
    )
    parser.add_argument("--workers", "-w", type=int, default=None, help="Parallel extraction workers (default: 1)")
    parser.add_argument("--output-dir", "-o", default=None, help="Directory for outputs (default: output_dir)")
    parser.add_argument("--no-cache", action="store_true", help="Skip the result cache for this run")
    parser.add_argument("--sync", action="store_true", help="Append accepted records to the history sheet")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    maintenance = parser.add_argument_group("cache maintenance")
    maintenance.add_argument("--cache-stats", action="store_true", help="Print cache size and ruleset version")
    maintenance.add_argument(
        "--cache-sweep",
        type=float,
        nargs="?",
        const=0,
        default=None,
        metavar="HOURS",
        help="Delete entries older than HOURS (default: expiration_hours)",
    )
    maintenance.add_argument("--cache-clear", action="store_true", help="Delete every cache entry")
    maintenance.add_argument(
        "--bump-ruleset",
        action="store_true",
        help="Advance the ruleset version; every cached result becomes stale",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
        overrides: dict[str, Any] = {}
        if args.input is not None:
            overrides["input_root"] = args.input
        if args.output_dir is not None:
            overrides["output_dir"] = args.output_dir
        if args.workers is not None:
            overrides["max_workers"] = args.workers
        if args.log_level:
            overrides["log_level"] = args.log_level
        if args.strategy:
            overrides["consensus"] = replace(config.consensus, strategy=args.strategy)
        if args.no_cache:
            overrides["cache"] = replace(config.cache, enabled=False)
        config = config.with_overrides(**overrides)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level)

    if args.cache_stats or args.cache_clear or args.bump_ruleset or args.cache_sweep is not None:
        return run_cache_command(args, config)

    input_root = Path(config.input_root)
    files = list_image_files(input_root)
    if not files:
        print(f"No receipt images found in {input_root}", file=sys.stderr)
        return 1
    logger.info(
        "Processing %s image(s) from %s (strategy=%s, provider=%s)",
        len(files),
        input_root,
        config.consensus.strategy,
        config.primary_provider.name,
    )

    try:
        pipeline = create_pipeline(config)
        processor = BatchProcessor(pipeline, max_workers=config.max_workers)
        records, metrics = processor.process_batch(files)
    except ConsignmentError as e:
        logger.error("Batch aborted: %s", e)
        return 1

    out_dir = Path(config.output_dir)
    out_json = out_dir / "consignments.json"
    out_csv = out_dir / "consignments.csv"
    save_records_json(records, out_json)
    save_records_csv(records, out_csv)

    if args.sync:
        result = pipeline.sync_history(records)
        print(f"History sync: {'ok' if result.success else 'failed'} - {result.message}")

    m = metrics.to_dict()
    print("Batch complete.")
    print(f"  total_processed: {m['total_processed']}")
    print(f"  valid: {m['valid_count']}")
    print(f"  duplicate: {m['duplicate_count']}")
    print(f"  invalid_account: {m['invalid_account_count']}")
    print(f"  low_quality: {m['low_quality_count']}")
    print(f"  from_cache: {m['from_cache_count']}")
    print(f"  failed: {m['failed_count']}")
    print(f"  time_sec: {m['total_time_sec']}")
    print(f"  output: {out_json}, {out_csv}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
