"""Typed broker event payloads."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class BrokerEventType(str, Enum):
    """Events observable by broker subscribers."""

    READY = "ready"
    WAITING = "waiting"
    ACTIVE = "active"
    PROGRESS = "progress"
    COMPLETED = "completed"
    STALLED = "stalled"
    FAILED = "failed"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    CLOSE = "close"


@dataclass(frozen=True)
class BrokerEvent:
    """One broker notification.

    Job events carry ``job_id`` and ``claim_id``; ``failed`` events set
    ``will_retry`` and ``delay_ms`` when another attempt is scheduled.
    Connectivity events carry only ``error`` / ``attempt``.
    """

    type: BrokerEventType
    timestamp: int
    job_id: Optional[str] = None
    claim_id: Optional[int] = None
    worker_id: Optional[str] = None
    progress: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts_made: Optional[int] = None
    will_retry: bool = False
    delay_ms: Optional[int] = None
    attempt: Optional[int] = None
