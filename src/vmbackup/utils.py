"""Utility functions and notification system for VMBackup."""

import sys
import shutil
import logging
import subprocess
from datetime import datetime
from pathlib import Path
from typing import List, Optional


LOGGER_NAME = 'vmbackup'


class NotificationManager:
    """Console and per-run file logging for a backup run."""

    def __init__(self, config, run_timestamp: Optional[str] = None):
        """Initialize notification manager.

        Args:
            config: Configuration object
            run_timestamp: Timestamp used to name this run's log file
        """
        self.config = config
        self.run_timestamp = run_timestamp or archive_timestamp()
        self.log_file: Optional[Path] = None
        self.use_unicode = self._check_unicode_support()
        self.logger = self._setup_logger()

    def _check_unicode_support(self) -> bool:
        """Check if the terminal supports Unicode characters."""
        try:
            "✅".encode(sys.stdout.encoding or 'utf-8')
            return True
        except (UnicodeEncodeError, LookupError):
            return False

    def _setup_logger(self) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger(LOGGER_NAME)

        # Clear existing handlers
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        level = getattr(logging, str(self.config.get('logging.level', 'INFO')).upper(), logging.INFO)
        logger.setLevel(level)

        if self.config.get('logging.console', True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_formatter = logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            )
            console_handler.setFormatter(console_formatter)
            logger.addHandler(console_handler)

        log_dir = self.config.get('logging.directory')
        if log_dir:
            log_path = Path(log_dir)
            log_path.mkdir(parents=True, exist_ok=True)
            self.log_file = log_path / log_file_name(self.run_timestamp)

            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)

        return logger

    def _format_message(self, message: str, prefix: str) -> str:
        """Format message with appropriate prefix based on Unicode support."""
        if self.use_unicode:
            return f"{prefix} {message}"
        ascii_prefixes = {
            "✅": "[SUCCESS]",
            "❌": "[FAILED]",
        }
        return f"{ascii_prefixes.get(prefix, prefix)} {message}"

    def debug(self, message: str) -> None:
        """Log debug message."""
        self.logger.debug(message)

    def info(self, message: str) -> None:
        """Log info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log error message."""
        self.logger.error(message)

    def success(self, message: str) -> None:
        """Log success message."""
        self.logger.info(self._format_message(message, "✅"))

    def failure(self, message: str) -> None:
        """Log failure message."""
        self.logger.error(self._format_message(message, "❌"))

    def close(self) -> None:
        """Flush and detach all handlers."""
        for handler in list(self.logger.handlers):
            handler.flush()
            self.logger.removeHandler(handler)
            handler.close()


# Artifact names must stay stable across releases: existing backups are
# rotated by glob patterns derived from these formats.

def snapshot_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp for snapshot file names, YYYYMMDDHHMMSS."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def archive_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp for backups, config archives and logs, YYYY-MM-DD_HHMMSS."""
    return (now or datetime.now()).strftime("%Y-%m-%d_%H%M%S")


def log_file_name(timestamp: str) -> str:
    return f"backup-{timestamp}.log"


def format_size(size_bytes: float) -> str:
    """Format file size in human readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def is_command_available(command: str) -> bool:
    """Check if a command is available in the system PATH."""
    return shutil.which(command) is not None


def run_command(command: List[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
    """Run a command capturing text output; never raises on non-zero exit."""
    logging.getLogger(LOGGER_NAME).debug("Running: %s", ' '.join(command))
    return subprocess.run(
        command,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False
    )
