"""Pipeline: single-image consensus extraction and batch validation."""

from pipeline.consignment_pipeline import ConsignmentPipeline, image_content_hash
from pipeline.batch_processor import BatchProcessor

__all__ = [
    "ConsignmentPipeline",
    "BatchProcessor",
    "image_content_hash",
]
