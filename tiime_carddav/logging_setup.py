"""
Logging setup and configuration for the Tiime CardDAV gateway.

This module provides centralized logging configuration with file rotation,
retention, console output for containers, and scrubbing of credentials that
pass through the gateway (Basic authorization headers, Tiime tokens).
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict

LOG_FILE_NAME = 'carddav.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'token', 'secret', 'authorization', 'access_token',
        'refresh_token', 'client_secret', 'api_key'
    ]

    _AUTH_HEADER = re.compile(r'((?i:Authorization:?\s*)?(?:Basic|Bearer)\s+)[A-Za-z0-9+/=._~-]+')

    def __init__(self):
        super().__init__()
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append((
                re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'
            ))
            # "key": "value"
            self._patterns.append((
                re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE), r'\1****\2'
            ))

    def scrub(self, message: str) -> str:
        message = self._AUTH_HEADER.sub(r'\1****', message)
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            if getattr(record, 'args', None):
                try:
                    record.msg = record.msg % record.args
                    record.args = ()
                except (TypeError, ValueError):
                    pass
            record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the gateway.

    Provides file-based logging with rotation and retention, and console
    output for container deployments.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any], force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` section of the gateway configuration
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'INFO')).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
            self._cleanup_old_logs()

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists, falling back to the working directory."""
        if not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')):
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_stats(self) -> Dict[str, Any]:
        """
        Get statistics about current logging setup.

        Returns:
            Dictionary with logging statistics
        """
        log_files = []
        if self.log_dir:
            log_files = sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))
        total_size = 0
        for log_file in log_files:
            try:
                total_size += os.path.getsize(log_file)
            except OSError:
                pass

        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'retention_days': self.retention_days,
            'log_files_count': len(log_files),
            'total_size_bytes': total_size,
        }


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], force: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class SecurityAuditLogger:
    """Special logger for authentication and session lifecycle events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} user={username}")

    def log_authentication_rejected(self, reason: str, client: str = ""):
        """Log a request rejected with an authentication challenge."""
        message = f"Authentication rejected: {reason}"
        if client:
            message += f" client={client}"
        self.logger.warning(message)

    def log_session_eviction(self, remaining: int):
        self.logger.info(f"Upstream session evicted, {remaining} sessions cached")


security_logger = SecurityAuditLogger()
