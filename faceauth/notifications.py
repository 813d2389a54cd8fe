"""
Notification sinks for progress, error and success events.
"""

import logging
from typing import List, Tuple

logger = logging.getLogger(__name__)

INFO = 'info'
SUCCESS = 'success'
ERROR = 'error'

SEVERITIES = (INFO, SUCCESS, ERROR)


class Notifier:
    """Receives user-facing events from the capture and verification flows."""

    def notify(self, severity: str, message: str):
        raise NotImplementedError

    def info(self, message: str):
        self.notify(INFO, message)

    def success(self, message: str):
        self.notify(SUCCESS, message)

    def error(self, message: str):
        self.notify(ERROR, message)


class LoggingNotifier(Notifier):
    """Forward events to a logger."""

    def __init__(self, name: str = 'faceauth.events'):
        self.logger = logging.getLogger(name)

    def notify(self, severity: str, message: str):
        if severity == ERROR:
            self.logger.error(message)
        else:
            self.logger.info(f"[{severity}] {message}")


class RecordingNotifier(Notifier):
    """Keep events in memory, in arrival order."""

    def __init__(self):
        self.events: List[Tuple[str, str]] = []

    def notify(self, severity: str, message: str):
        if severity not in SEVERITIES:
            logger.warning(f"Unknown notification severity: {severity}")
        self.events.append((severity, message))

    def messages(self, severity: str = None) -> List[str]:
        return [msg for sev, msg in self.events if severity is None or sev == severity]

    def clear(self):
        self.events.clear()
