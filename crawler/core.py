"""
FILE DESCRIPTION: Foundational module for global configuration constants and logging.
KEY FUNCTIONS/CLASSES: setup_logger, CompanyFormatter, CrawlError hierarchy
"""

import logging
import sys
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

# Load .env from the repository root before any env lookups
load_dotenv(Path(__file__).resolve().parents[1] / '.env')

# Network timeout for HTTP requests (seconds)
REQUEST_TIMEOUT = int(os.getenv("CRAWL_REQUEST_TIMEOUT", 30))

# Worker scaling parameters
DEFAULT_WORKERS = int(os.getenv("CRAWL_WORKERS", 4))

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Cache-Control": "max-age=0",
}

# Playwright / headless rendering waiting periods (seconds)
JS_GOTO_TIMEOUT = 25
JS_WAIT_TIMEOUT = 10

# Default working directory for checkpoints, control and status files
STATE_DIR = Path(os.getenv("CRAWL_STATE_DIR", Path(__file__).resolve().parents[1] / 'data'))


# === ERRORS ===

class CrawlError(Exception):
    """Base class for all errors raised by the crawl engine."""


class ConfigError(CrawlError):
    """Invalid run configuration. Maps to a `failed` exit at startup."""


class StartupError(CrawlError):
    """Fatal problem detected before any worker was started (bad seed, etc)."""


class StorageUnavailable(CrawlError):
    """The storage collaborator could not be reached."""


class RenderError(CrawlError):
    """The headless renderer failed or timed out."""


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', record.name)
        return f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"


def setup_logger(name="crawler", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if name != "crawler":
        logger.propagate = True
        setup_logger("crawler", log_file=log_file, level=level)
        return logger

    if logger.handlers:
        if log_file and not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
            _attach_file_handler(logger, log_file)
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(CompanyFormatter())
    logger.addHandler(console_handler)

    if log_file:
        _attach_file_handler(logger, log_file)

    return logger


def _attach_file_handler(logger, log_file):
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(CompanyFormatter())
    logger.addHandler(file_handler)


# Global logger instance
logger = setup_logger()
