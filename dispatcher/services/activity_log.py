import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

from dispatcher.domain.states import Severity

logger = logging.getLogger(__name__)

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}

@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    message: str
    severity: Severity

class ActivityLog:
    """
    Bounded activity trail. Oldest entries are evicted first once
    `capacity` is reached. Every entry is mirrored to the process log.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def add(self, message: str, severity: Severity = Severity.INFO) -> LogEntry:
        entry = LogEntry(timestamp=datetime.now(timezone.utc), message=message, severity=severity)
        self._entries.append(entry)
        logger.log(_LEVELS[severity], message)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(message, Severity.INFO)

    def success(self, message: str) -> LogEntry:
        return self.add(message, Severity.SUCCESS)

    def warning(self, message: str) -> LogEntry:
        return self.add(message, Severity.WARNING)

    def error(self, message: str) -> LogEntry:
        return self.add(message, Severity.ERROR)

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def __len__(self):
        return len(self._entries)
