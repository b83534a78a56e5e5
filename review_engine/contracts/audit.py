"""
Audit Contracts

Immutable records produced by the observability layer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .base import Timestamp


class AuditEventType(Enum):
    """Explicit audit event types."""
    MUTATION = "mutation"
    QUERY = "query"
    INTEGRITY = "integrity"
    NOTIFICATION = "notification"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def get(self, key: str) -> Optional[str]:
        for k, v in self.metadata:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
