from enum import IntEnum, StrEnum, auto

class JobPhase(StrEnum):
    IDLE = auto()         # Created, nothing sent yet
    RUNNING = auto()      # Engine is sending
    PAUSED = auto()       # Suspended at a safe point
    COMPLETED = auto()    # Every item succeeded or exhausted its attempts
    CANCELLED = auto()    # Aborted, partial progress kept

    @property
    def is_terminal(self) -> bool:
        return self in (JobPhase.COMPLETED, JobPhase.CANCELLED)

class SendOutcome(StrEnum):
    NONE = auto()
    SUCCESS = auto()
    RETRIABLE_FAILURE = auto()
    RATE_LIMITED = auto()
    PERMANENT_FAILURE = auto()

class DispatchStatusCode(IntEnum):
    # Only these two values are ever sent to the status endpoint
    IN_PROGRESS = 1
    COMPLETE = 2

class Severity(StrEnum):
    INFO = auto()
    SUCCESS = auto()
    WARNING = auto()
    ERROR = auto()
