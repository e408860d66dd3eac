"""Core layer: interfaces, models, exceptions."""

from core.interfaces import (
    ICacheStore,
    IExtractionService,
    IHistoryStore,
    ILLMProvider,
    IPostProcessingService,
)
from core.models import (
    BatchMetrics,
    CacheEntry,
    ConsensusStrategy,
    ConsignmentRecord,
    ExtractionResult,
    RawFields,
    TrainingExample,
    ValidationOutcome,
    ValidationStatus,
    WhitelistEntry,
    WhitelistKind,
)
from core.exceptions import (
    CacheCorrupt,
    ConfigError,
    ConsignmentError,
    ExtractionUnavailable,
    HistoryStoreError,
    InvalidImage,
    ModelProtocolError,
    ModelUnavailable,
    RateLimited,
    TransientModelError,
)

__all__ = [
    "ICacheStore",
    "IExtractionService",
    "IHistoryStore",
    "ILLMProvider",
    "IPostProcessingService",
    "BatchMetrics",
    "CacheEntry",
    "ConsensusStrategy",
    "ConsignmentRecord",
    "ExtractionResult",
    "RawFields",
    "TrainingExample",
    "ValidationOutcome",
    "ValidationStatus",
    "WhitelistEntry",
    "WhitelistKind",
    "CacheCorrupt",
    "ConfigError",
    "ConsignmentError",
    "ExtractionUnavailable",
    "HistoryStoreError",
    "InvalidImage",
    "ModelProtocolError",
    "ModelUnavailable",
    "RateLimited",
    "TransientModelError",
]
