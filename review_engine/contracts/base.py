"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.
No behavior, no side effects, no dependencies.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- All "kind" fields are closed enums, never free strings
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from enum import Enum, auto
import hashlib


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    # Concurrency errors
    VERSION_CONFLICT = auto()
    STALE_OLD_VALUE = auto()

    # Change validation errors
    INVALID_VALUE = auto()
    OUT_OF_SCOPE = auto()
    NON_CONTIGUOUS_RANGE = auto()
    UNKNOWN_QUESTION = auto()

    # Workflow errors
    INVALID_STATE_TRANSITION = auto()

    # Integrity errors
    CHECKSUM_MISMATCH = auto()
    STRUCTURAL_INCONSISTENCY = auto()

    # Consensus states
    CONSENSUS_UNAVAILABLE = auto()

    # Lookup errors
    NOT_FOUND = auto()

    # Boundary errors
    NOTIFICATION_FAILED = auto()
    STORAGE_WRITE_FAILED = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @staticmethod
    def create(code: ErrorCode, message: str, **context: object) -> Error:
        return Error(
            code=code,
            message=message,
            timestamp=datetime.now(timezone.utc),
            context=tuple(sorted((k, str(v)) for k, v in context.items()))
        )


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))
        elif self.value.utcoffset() != timezone.utc.utcoffset(None):
            object.__setattr__(self, 'value', self.value.astimezone(timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()

    def __lt__(self, other: Timestamp) -> bool:
        return self.value < other.value

    def __le__(self, other: Timestamp) -> bool:
        return self.value <= other.value


# =============================================================================
# IDENTITY TYPES (Deterministic, hash-derived)
# =============================================================================

def _short_hash(seed: str, length: int = 16) -> str:
    return hashlib.sha256(seed.encode('utf-8')).hexdigest()[:length]


@dataclass(frozen=True)
class AssessmentId:
    """Immutable assessment identifier."""
    value: str

    @staticmethod
    def generate(framework_id: str, seed: str) -> AssessmentId:
        return AssessmentId(value=f"asm_{_short_hash(f'{framework_id}|{seed}')}")


@dataclass(frozen=True)
class VersionId:
    """Immutable version identifier for assessment snapshots."""
    value: str

    @staticmethod
    def generate(assessment_id: str, version_number: int, parent: Optional[str] = None) -> VersionId:
        """Generate deterministic version ID."""
        seed = f"{assessment_id}|{version_number}|{parent or 'root'}"
        return VersionId(value=f"v_{_short_hash(seed, 12)}")


@dataclass(frozen=True)
class ChangeId:
    """Immutable change identifier, derived from the log position."""
    value: str

    @staticmethod
    def generate(assessment_id: str, sequence: int) -> ChangeId:
        return ChangeId(value=f"chg_{_short_hash(f'{assessment_id}|{sequence}')}")


def derived_id(prefix: str, *parts: str) -> str:
    """Deterministic identifier for derived records (blockers, actions)."""
    return f"{prefix}_{_short_hash('|'.join(parts))}"


# =============================================================================
# TRUNK
# =============================================================================

# Branch key used for versions and changes whose branch_name is None
TRUNK = "main"


def branch_key(branch_name: Optional[str]) -> str:
    return branch_name or TRUNK


# =============================================================================
# CHANGE CLASSIFICATION (Closed world)
# =============================================================================

class ChangeKind(Enum):
    """What happened. Consumers must handle every member."""
    RESPONSE_ADDED = "response_added"
    RESPONSE_MODIFIED = "response_modified"
    RESPONSE_REMOVED = "response_removed"
    NOTE_ADDED = "note_added"
    NOTE_MODIFIED = "note_modified"
    NOTE_REMOVED = "note_removed"
    EVIDENCE_LINKED = "evidence_linked"
    EVIDENCE_UNLINKED = "evidence_unlinked"
    METADATA_UPDATED = "metadata_updated"
    STRUCTURE_CHANGED = "structure_changed"


class ChangeField(Enum):
    """
    What a change targets.

    Content fields live on a branch and fold into the version content.
    Structural fields are assessment-wide.
    """
    RESPONSE = "response"
    ROLE_RESPONSE = "role_response"
    NOTE = "note"
    EVIDENCE = "evidence"
    METADATA = "metadata"
    CONFLICT_RESOLUTION = "conflict_resolution"
    ASSIGNMENT = "assignment"
    WORKFLOW_STAGE = "workflow_stage"
    APPROVAL = "approval"
    REVIEW_COMMENT = "review_comment"

    @property
    def is_content(self) -> bool:
        return self in (
            ChangeField.RESPONSE,
            ChangeField.ROLE_RESPONSE,
            ChangeField.NOTE,
            ChangeField.EVIDENCE,
            ChangeField.METADATA,
            ChangeField.CONFLICT_RESOLUTION,
            ChangeField.REVIEW_COMMENT,
        )


class MetadataKey(Enum):
    """Closed set of metadata fields an assessment may carry."""
    TIME_SPENT = "time_spent"
    RISK_RATING = "risk_rating"
    BUSINESS_IMPACT = "business_impact"


class ImpactLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConfidenceLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# VERSION STATES
# =============================================================================

class ApprovalStatus(Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VersionType(Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    SNAPSHOT = "snapshot"


# =============================================================================
# CONSENSUS STATES
# =============================================================================

class ConsensusMethod(Enum):
    AVERAGE = "average"
    HIGHEST = "highest"
    LOWEST = "lowest"
    MANUAL = "manual"
    REVIEWER_DECISION = "reviewer-decision"

    @property
    def is_computed(self) -> bool:
        return self in (ConsensusMethod.AVERAGE, ConsensusMethod.HIGHEST, ConsensusMethod.LOWEST)


class ConsensusStatus(Enum):
    UNANSWERED = "unanswered"
    SINGLE = "single"
    AGREED = "agreed"
    CONFLICTED = "conflicted"
    RESOLVED = "resolved"


# =============================================================================
# WORKFLOW STATES (Explicit, no implicit transitions)
# =============================================================================

class StageKind(Enum):
    ASSESSMENT = "assessment"
    REVIEW = "review"
    APPROVAL = "approval"
    COMPLETED = "completed"
    CUSTOM = "custom"


class StageStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_closed(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.SKIPPED)


class ReviewerStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class AssignmentStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


# =============================================================================
# DERIVED ATTENTION STATES
# =============================================================================

class BlockerKind(Enum):
    MISSING_ASSIGNMENT = "missing-assignment"
    OVERDUE_RESPONSE = "overdue-response"
    UNRESOLVED_CONFLICT = "unresolved-conflict"
    APPROVAL_PENDING = "approval-pending"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class CommentSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class PendingActionKind(Enum):
    ASSIGNMENT = "assignment"
    RESPONSE = "response"
    REVIEW = "review"
    APPROVAL = "approval"
    CONFLICT_RESOLUTION = "conflict-resolution"
