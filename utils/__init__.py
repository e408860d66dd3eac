"""Shared utilities: config, logger, retry, image_utils, normalize, result cache."""

from utils.config import AppConfig, load_config
from utils.logger import get_logger, setup_logging
from utils.retry import with_retry
from utils.image_utils import image_to_data_url, validate_image_bytes

__all__ = [
    "AppConfig",
    "load_config",
    "get_logger",
    "setup_logging",
    "with_retry",
    "image_to_data_url",
    "validate_image_bytes",
]
