"""
Observability & Audit Layer

RESPONSIBILITY: Audit logging and metrics for every engine operation
ALLOWED INPUTS: Audit entries and metric points from other layers
OUTPUTS: Per-layer audit logs and metric points

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Make decisions based on logged data
- Block or delay other layer operations

BOUNDARY ENFORCEMENT:
=====================
- Receives immutable entries, never references to live state
- Append-only; nothing collected is ever modified
- Provides read-only access to logs and metrics
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import hashlib

# ONLY import from contracts - never from other layers' implementations
from ..contracts.base import Timestamp
from ..contracts.audit import AuditLogEntry, AuditEventType, MetricPoint


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Append-only audit collector for one layer.
    """

    def __init__(self, layer_name: str):
        self._layer_name = layer_name
        self._entries: List[AuditLogEntry] = []

    def collect(self, entry: AuditLogEntry):
        self._entries.append(entry)

    def get_entries(
        self,
        event_type: Optional[AuditEventType] = None,
        action: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Get entries, optionally filtered."""
        entries = self._entries
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if action:
            entries = [e for e in entries if e.action == action]
        return list(entries)

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        return len(self._entries)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    """Types of metrics collected."""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMING = "timing"


@dataclass
class MetricDefinition:
    """Definition of a metric to collect."""
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


class MetricsCollector:
    """
    Append-only time series of metric points.
    """

    def __init__(self):
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._definitions: Dict[str, MetricDefinition] = {}
        self._register_default_metrics()

    def _register_default_metrics(self):
        defaults = [
            MetricDefinition(
                name="changes_appended_total",
                metric_type=MetricType.COUNTER,
                description="Change log entries appended",
                labels=("field",)
            ),
            MetricDefinition(
                name="versions_committed_total",
                metric_type=MetricType.COUNTER,
                description="Versions committed (baseline, snapshot, branch, merge)",
                labels=("kind",)
            ),
            MetricDefinition(
                name="consensus_conflicts_total",
                metric_type=MetricType.COUNTER,
                description="Questions that became conflicted"
            ),
            MetricDefinition(
                name="merge_conflicts_total",
                metric_type=MetricType.COUNTER,
                description="Conflict entries produced by merges"
            ),
            MetricDefinition(
                name="version_conflicts_total",
                metric_type=MetricType.COUNTER,
                description="Rejected mutations with a stale expected head"
            ),
            MetricDefinition(
                name="blockers_active",
                metric_type=MetricType.GAUGE,
                description="Blockers after the latest recomputation"
            ),
            MetricDefinition(
                name="notification_failures_total",
                metric_type=MetricType.COUNTER,
                description="Notification hook calls that raised",
                labels=("hook",)
            ),
            MetricDefinition(
                name="storage_write_failures_total",
                metric_type=MetricType.COUNTER,
                description="Persistence writes that failed"
            ),
        ]
        for definition in defaults:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        self._definitions[definition.name] = definition
        if definition.name not in self._metrics:
            self._metrics[definition.name] = []

    def record(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ):
        """
        Record a metric data point.

        Raises ValueError for an unregistered metric, for label keys other
        than the registered ones, and for a negative counter increment.
        """
        definition = self._definitions.get(metric_name)
        if definition is None:
            raise ValueError(f"Unregistered metric {metric_name}")
        given = tuple(sorted(labels)) if labels else ()
        if given != tuple(sorted(definition.labels)):
            raise ValueError(
                f"Metric {metric_name} takes labels {definition.labels}, got {given}"
            )
        if definition.metric_type is MetricType.COUNTER and value < 0:
            raise ValueError(f"Counter {metric_name} cannot decrease")

        label_tuple = tuple(sorted(labels.items())) if labels else ()
        point = MetricPoint(
            metric_name=metric_name,
            value=value,
            timestamp=Timestamp.now(),
            labels=label_tuple
        )
        self._metrics[metric_name].append(point)

    def definition(self, metric_name: str) -> Optional[MetricDefinition]:
        return self._definitions.get(metric_name)

    def get_metric(self, metric_name: str) -> List[MetricPoint]:
        return list(self._metrics.get(metric_name, []))

    def total(self, metric_name: str) -> float:
        """Sum of a counter's points."""
        return sum(p.value for p in self._metrics.get(metric_name, []))


# =============================================================================
# OBSERVABILITY ENGINE (Orchestrates all observability)
# =============================================================================

@dataclass
class ObservabilityConfig:
    """Configuration for observability engine."""
    enable_metrics: bool = True
    layers: Tuple[str, ...] = (
        'engine', 'consensus', 'versioning', 'workflow', 'storage', 'notifications'
    )


class ObservabilityEngine:
    """
    Central Observability Engine.

    BOUNDARY ENFORCEMENT:
    - ONLY observes, never modifies
    - Provides read-only access to collected data
    """

    def __init__(self, config: Optional[ObservabilityConfig] = None):
        self._config = config or ObservabilityConfig()
        self._collectors: Dict[str, LogCollector] = {
            name: LogCollector(name) for name in self._config.layers
        }
        self._metrics = MetricsCollector() if self._config.enable_metrics else None
        self._sequence = 0

    def collect_audit(self, entry: AuditLogEntry):
        collector = self._collectors.get(entry.layer)
        if collector is None:
            collector = self._collectors.setdefault(entry.layer, LogCollector(entry.layer))
        collector.collect(entry)

    def log_audit(
        self,
        action: str,
        entity_id: Optional[str] = None,
        outcome: str = "success",
        details: str = "",
        layer: str = "engine",
        event_type: AuditEventType = AuditEventType.MUTATION,
        entity_type: Optional[str] = None
    ) -> AuditLogEntry:
        """Helper to log audit entry directly."""
        self._sequence += 1
        timestamp = Timestamp.now()
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{self._sequence}|{timestamp.to_iso()}".encode()
        ).hexdigest()[:16]

        entry = AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=timestamp,
            layer=layer,
            action=action,
            entity_id=entity_id,
            entity_type=entity_type,
            metadata=(
                ("outcome", outcome),
                ("details", details)
            )
        )
        self.collect_audit(entry)
        return entry

    def collect_metric(
        self,
        metric_name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None
    ):
        if self._metrics:
            self._metrics.record(metric_name, value, labels)

    def get_unified_log(self, layers: Optional[List[str]] = None) -> List[AuditLogEntry]:
        """Get unified log from all or specified layers, oldest first."""
        target_layers = layers or list(self._collectors.keys())

        all_entries = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries())

        all_entries.sort(key=lambda e: e.timestamp.value)
        return all_entries

    def get_layer_log(self, layer_name: str) -> List[AuditLogEntry]:
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries()

    def get_metrics(self) -> Optional[MetricsCollector]:
        return self._metrics


__all__ = [
    'LogCollector',
    'MetricType',
    'MetricDefinition',
    'MetricsCollector',
    'ObservabilityConfig',
    'ObservabilityEngine',
]
