"""Console and JSON-lines logging with operation-scoped fields.

Call sites attach context through ``extra``::

    logger.info("Phase 2 started", extra={'operation_id': op_id, 'step': 'Phase 2'})

Both formatters pick up the fields listed in STRUCTURED_FIELDS.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

STRUCTURED_FIELDS = ('operation_id', 'schedule_id', 'service', 'step', 'duration')

NOISY_LOGGERS = ('boto3', 'botocore', 'urllib3')


def structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in STRUCTURED_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
            **structured_fields(record),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colourised single-line output prefixed with operation context.

    Example:
        10:42:07 INFO     [3f2a9c1e core-ledger] Start requested
    """

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, '')
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        tags = []
        if hasattr(record, 'operation_id'):
            tags.append(str(record.operation_id)[:8])
        if hasattr(record, 'schedule_id'):
            tags.append(f"schedule {str(record.schedule_id)[:8]}")
        if hasattr(record, 'service'):
            tags.append(str(record.service))
        prefix = f"[{' '.join(tags)}] " if tags else ""

        line = f"{clock} {color}{record.levelname:<8}{self.RESET} {prefix}{record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.daycycle/logs') -> Optional[Path]:
    """Configure the root logger for a daycycle process.

    The console shows records at log_level; the daily JSON-lines file under
    log_dir keeps everything from DEBUG up.

    Args:
        log_level: debug, info, warning or error
        log_dir: Directory for the log file, or None for console only

    Returns:
        Path of the log file, or None when file logging is off
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_dir else level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    log_file = None
    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / f"daycycle-{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
