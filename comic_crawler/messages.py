"""
Messages exchanged between the supervisor and category workers.

Workers send one of the upward message types below; the supervisor sends
a Command down. Every message is a plain picklable dataclass.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Command(str, Enum):
    """Commands the supervisor sends to a worker."""
    START = "start"
    STOP = "stop"
    STATUS = "status"
    HEALTH_CHECK = "health_check"


@dataclass(frozen=True)
class LogMessage:
    category: str
    level: int
    logger_name: str
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StatusMessage:
    """Coarse status plus cumulative counters."""
    category: str
    status: str
    stats: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class HealthMessage:
    """Answer to a health check."""
    category: str
    healthy: bool
    phase: Optional[str] = None
    memory_mb: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ErrorMessage:
    """A failure that escaped the pipeline; the worker exits after sending it."""
    category: str
    error_type: str
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ShutdownAck:
    category: str
    timestamp: float = field(default_factory=time.time)


WorkerMessage = Union[LogMessage, StatusMessage, HealthMessage, ErrorMessage, ShutdownAck]
