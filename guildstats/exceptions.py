"""
Stats Engine Exceptions
Error taxonomy shared by intake, processors and jobs
"""
from typing import Optional


class StatsEngineError(Exception):
    """Base class for all engine errors"""


class EventValidationError(StatsEngineError):
    """Raised when an inbound event is malformed"""

    def __init__(self, reason: str, event_type: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.event_type = event_type


class PersistenceError(StatsEngineError):
    """Raised when the raw event store rejects a batch"""


class EnqueueError(StatsEngineError):
    """Raised when a job cannot be placed on a queue"""


class ProcessingError(StatsEngineError):
    """Raised by processors and job handlers; the job is retried"""


class SessionStoreError(StatsEngineError):
    """Raised when the voice session store is unavailable"""


class StalledJobError(StatsEngineError):
    """Recorded against a reserved job whose worker never reported back"""
