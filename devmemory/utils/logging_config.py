"""
Logging setup shared by the search, ingestion and backend modules.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Client libraries that log every request at INFO/DEBUG
TRANSPORT_LOGGERS = ('opensearch', 'urllib3', 'botocore', 'gremlinpython', 'aiohttp')


def _level(config: Optional[AppConfig]) -> int:
    if config is None:
        from .config import config as default_config
        config = default_config
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        config: AppConfig instance, uses default if None
    """
    level = _level(config)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])

    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None
    """
    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger
