"""
Logging Configuration for the Sandbox Isolation Engine.

Adds the VERBOSE and SECURITY levels and installs a text or JSON formatter
on the root logger. Modules keep using `logging.getLogger(__name__)`.

Usage:
    from isolation.logging_config import setup_logging, SECURITY

    setup_logging(verbose=True, log_file="/var/log/isolation/engine.log")
    logger.log(SECURITY, "Sandbox sbx-1 isolated")
"""

import json
import logging
import sys
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Set


VERBOSE = 15    # poll results, rule loads
SECURITY = 55   # isolation and audit decisions, always logged

logging.addLevelName(VERBOSE, 'VERBOSE')
logging.addLevelName(SECURITY, 'SECURITY')


class FeatureArea(Enum):
    """Engine areas; the value names the `isolation.<value>` logger."""
    ENGINE = "engine"
    EVENTS = "events"
    SANDBOX = "sandbox"
    NETWORK = "network"
    SECURITY = "security"
    CONFIG = "config"
    CLI = "cli"
    UTILS = "utils"


_setup_lock = threading.Lock()


class IsolationFormatter(logging.Formatter):
    """`<time> <LEVEL> [area] message`, colored on a TTY, or one JSON object per line."""

    COLORS = {
        'DEBUG': '\033[36m',
        'VERBOSE': '\033[94m',
        'INFO': '\033[32m',
        'WARNING': '\033[33;1m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[31;1m',
        'SECURITY': '\033[35;1m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()
        self.json_format = json_format

    @staticmethod
    def area(logger_name: str) -> str:
        """isolation.network.packet_filter -> network"""
        parts = logger_name.split('.')
        if len(parts) >= 2 and parts[0] == 'isolation':
            return parts[1]
        return parts[0] or 'core'

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            data = {
                'timestamp': datetime.fromtimestamp(record.created).isoformat(),
                'level': record.levelname,
                'logger': record.name,
                'area': self.area(record.name),
                'message': record.getMessage(),
            }
            if record.exc_info:
                data['exception'] = self.formatException(record.exc_info)
            return json.dumps(data, default=str)

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level = f"{record.levelname:8}"
        if self.use_colors and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        line = f"{timestamp} {level} {'[' + self.area(record.name) + ']':12} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        verbose: Log at VERBOSE instead of INFO
        log_file: Also write to this file (parent directories are created)
        console: Write to stderr
        json_format: One JSON object per line
        features: Areas logged at the base level; the rest log warnings only.
            None means every area.
    """
    enabled = set(FeatureArea) if features is None else set(features)
    base_level = VERBOSE if verbose else logging.INFO

    with _setup_lock:
        root = logging.getLogger()
        root.setLevel(base_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(IsolationFormatter(json_format=json_format))
            root.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(IsolationFormatter(use_colors=False,
                                                         json_format=json_format))
            root.addHandler(file_handler)

        for feature in FeatureArea:
            level = base_level if feature in enabled else logging.WARNING
            logging.getLogger(f"isolation.{feature.value}").setLevel(level)


__all__ = [
    'VERBOSE',
    'SECURITY',
    'FeatureArea',
    'IsolationFormatter',
    'setup_logging',
]
