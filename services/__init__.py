"""Pipeline services: extraction, post-processing, consensus, validation, history."""

from services.extraction_service import ExtractionService
from services.post_processing_service import PostProcessingService
from services.consensus_service import ConsensusOrchestrator
from services.validation_service import ValidationEngine
from services.history_service import SheetsHistoryStore

__all__ = [
    "ExtractionService",
    "PostProcessingService",
    "ConsensusOrchestrator",
    "ValidationEngine",
    "SheetsHistoryStore",
]
