import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from .config import get_settings

file_handler = None


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO):
    global file_handler
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s')
    # Close previous file handler if it exists
    if file_handler:
        file_handler.close()
        file_handler = None
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers = [stream_handler]
    log_dir = log_dir or get_settings().LOG_DIR
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, 'run_control.log')
        # Daily rotation, keep 14 days
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(formatter)
        handlers.insert(0, file_handler)
    root_logger.handlers = handlers
    if file_handler:
        root_logger.info("[BOOT] Logging initialized and writing to %s", file_handler.baseFilename)
    else:
        root_logger.info("[BOOT] Logging initialized (stream only)")


def close_logging():
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None
