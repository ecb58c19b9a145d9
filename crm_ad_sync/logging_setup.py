"""
Logging for CRM AD Sync runs.

Each run writes to ``{log_dir}/app.log``, rotated at midnight, and optionally
echoes warnings to the console for the scheduler's output. Credentials are
masked on every handler.
"""

import os
import re
import glob
import time
import logging
import logging.handlers
from typing import Dict, Any, List


LOG_FILE_NAME = 'app.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Masks secrets (passwords, tokens, Authorization values) in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'smtp_password', 'token', 'secret', 'client_secret',
        'access_token', 'refresh_token', 'api_key', 'credential', 'pwd'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for word in self.SENSITIVE_KEYWORDS:
            self._patterns += [
                # key=value
                (re.compile(rf'\b({word}\s*=\s*)[^\s,}}\]&]+', re.IGNORECASE), r'\1****'),
                # "key": "value"
                (re.compile(rf'("{word}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'),
                # 'key': 'value'
                (re.compile(rf"('{word}'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'),
            ]
        self._patterns.append((
            re.compile(r'(Authorization["\']?\s*[:=]\s*["\']?(?:Bearer|Basic)\s+)[^\s,"\'}\]]+', re.IGNORECASE),
            r'\1****'))

    def scrub(self, message: str) -> str:
        """Return the message with sensitive values masked."""
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        # Merge the arguments first so secrets passed as %s are caught too
        if record.args:
            try:
                record.msg, record.args = record.getMessage(), None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """
    Configures the root logger once per process.

    ``reset()`` allows a second configuration, e.g. between test cases.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Install the file handler (and console handler) on the root logger.

        Args:
            config: ``logging`` configuration section
        """
        if self.configured:
            return

        config = config or {}
        level = _level(config.get('level', 'INFO'), logging.INFO)
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = int(config.get('retention_days', 7))
        console = config.get('console_output', True)

        self._prepare_log_dir()

        root = logging.getLogger()
        root.setLevel(level)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        secrets = SensitiveDataFilter()
        handlers = [(self._file_handler(str(config.get('rotation', 'daily'))),
                     level, logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))]
        if console:
            handlers.append((logging.StreamHandler(),
                             _level(config.get('console_level', 'WARNING'), logging.WARNING),
                             logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S')))

        for handler, handler_level, formatter in handlers:
            handler.setLevel(handler_level)
            handler.setFormatter(formatter)
            handler.addFilter(secrets)
            root.addHandler(handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        for path in self._remove_expired_logs():
            logger.info(f"Removed expired log file {path}")
        logger.info(f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at "
                    f"{logging.getLevelName(level)}, keeping {self.retention_days} days, console={console}")

    def reset(self) -> None:
        """Allow setup_logging to run again (used between runs in one process)."""
        self.configured = False

    def _prepare_log_dir(self) -> None:
        if not self.log_dir or os.path.isdir(self.log_dir):
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            # Logging is not set up yet
            print(f"Warning: cannot create log directory {self.log_dir} ({e}), logging to current directory")
            self.log_dir = '.'

    def _file_handler(self, rotation: str) -> logging.Handler:
        """Midnight rotation for 'daily'/'midnight'; a plain file otherwise."""
        path = os.path.join(self.log_dir, LOG_FILE_NAME)
        if rotation.lower() not in ('daily', 'midnight'):
            return logging.FileHandler(path, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            filename=path,
            when='midnight',
            backupCount=self.retention_days,
            encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def _remove_expired_logs(self) -> List[str]:
        """Delete rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return []

        cutoff = time.time() - self.retention_days * 86400
        current = os.path.join(self.log_dir, LOG_FILE_NAME)
        removed = []
        for path in glob.glob(current + '.*'):
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed.append(path)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {path}: {e}")
        return removed

    def get_log_files(self) -> List[str]:
        """Current and rotated log files, sorted by name."""
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure logging for the process from the ``logging`` section."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    """Forget the current configuration so the next setup_logging call applies."""
    _logging_manager.reset()


def cleanup_logs() -> List[str]:
    """Remove expired rotated log files now; returns the removed paths."""
    return _logging_manager._remove_expired_logs()
