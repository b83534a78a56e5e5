"""
Persistence Boundary

RESPONSIBILITY: Durable storage of assessments, versions and changes
ALLOWED INPUTS: Immutable records from the engine
OUTPUTS: StorageWriteResult, the same records read back

WHAT THIS LAYER MUST NOT DO:
============================
- Transform or interpret records
- Execute business logic (hash chains and checksums are verified by the
  engine on hydration, not here)
- Delete or modify stored lines (append-only)

BOUNDARY ENFORCEMENT:
=====================
- Every write is an append
- A later record for the same assessment or version id supersedes the
  earlier one (head pointer moves, approval updates)
- Write failures are returned as data, never raised
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional
import json
import os

# ONLY import from contracts - never from other layers' implementations
from ..contracts.base import Timestamp, Error, ErrorCode
from ..contracts.records import (
    Assessment, AssessmentChange, AssessmentVersion, ReviewWorkflow
)
from ..contracts.serialization import (
    canonical_json,
    assessment_to_record, assessment_from_record,
    version_to_record, version_from_record,
    change_to_record, change_from_record,
    structure_to_record, structure_from_record,
    workflow_to_record, workflow_from_record,
)
from ..contracts.structure import AssessmentStructure


@dataclass(frozen=True)
class StorageWriteResult:
    """Immutable result of a storage write operation."""
    success: bool
    record_id: Optional[str] = None
    error: Optional[Error] = None
    write_timestamp: Optional[Timestamp] = None


@dataclass(frozen=True)
class StoredAssessment:
    """Root record plus the definitions needed to rebuild it."""
    assessment: Assessment
    structure: AssessmentStructure
    workflow: ReviewWorkflow


def _failure(message: str) -> StorageWriteResult:
    return StorageWriteResult(
        success=False,
        error=Error.create(ErrorCode.STORAGE_WRITE_FAILED, message),
        write_timestamp=Timestamp.now(),
    )


def _assessment_line(stored: StoredAssessment) -> Dict:
    record = assessment_to_record(stored.assessment)
    record['structure'] = structure_to_record(stored.structure)
    record['workflow'] = workflow_to_record(stored.workflow)
    return record


def _stored_from_line(data: Dict) -> StoredAssessment:
    return StoredAssessment(
        assessment=assessment_from_record(data),
        structure=structure_from_record(data['structure']),
        workflow=workflow_from_record(data['workflow']),
    )


# =============================================================================
# STORAGE INTERFACES (Dependency Inversion)
# =============================================================================

class StorageBackend:
    """
    Abstract storage backend interface.

    The engine assumes strong consistency for a single assessment.
    """

    def save_assessment(self, stored: StoredAssessment) -> StorageWriteResult:
        raise NotImplementedError

    def load_assessment(self, assessment_id: str) -> Optional[StoredAssessment]:
        raise NotImplementedError

    def save_version(self, version: AssessmentVersion) -> StorageWriteResult:
        raise NotImplementedError

    def append_change_record(self, assessment_id: str, change: AssessmentChange) -> StorageWriteResult:
        raise NotImplementedError

    def load_versions(self, assessment_id: str) -> List[AssessmentVersion]:
        """Latest record per version id, ordered by version number."""
        raise NotImplementedError

    def load_changes(self, assessment_id: str) -> List[AssessmentChange]:
        """All change records in sequence order."""
        raise NotImplementedError

    def list_assessments(self) -> List[str]:
        raise NotImplementedError


# =============================================================================
# IN-MEMORY STORAGE BACKEND (Reference Implementation)
# =============================================================================

class InMemoryStorageBackend(StorageBackend):
    """
    In-memory backend holding the serialized record shape.

    Records are kept as dicts so the round trip through the persisted
    layout is exercised even without a filesystem.
    """

    def __init__(self):
        self._assessments: Dict[str, Dict] = {}
        self._versions: Dict[str, List[Dict]] = {}
        self._changes: Dict[str, List[Dict]] = {}

    def save_assessment(self, stored: StoredAssessment) -> StorageWriteResult:
        assessment_id = stored.assessment.assessment_id
        self._assessments[assessment_id] = _assessment_line(stored)
        self._versions.setdefault(assessment_id, [])
        self._changes.setdefault(assessment_id, [])
        return StorageWriteResult(success=True, record_id=assessment_id, write_timestamp=Timestamp.now())

    def load_assessment(self, assessment_id: str) -> Optional[StoredAssessment]:
        data = self._assessments.get(assessment_id)
        return _stored_from_line(data) if data else None

    def save_version(self, version: AssessmentVersion) -> StorageWriteResult:
        self._versions.setdefault(version.assessment_id, []).append(version_to_record(version))
        return StorageWriteResult(success=True, record_id=version.version_id, write_timestamp=Timestamp.now())

    def append_change_record(self, assessment_id: str, change: AssessmentChange) -> StorageWriteResult:
        self._changes.setdefault(assessment_id, []).append(change_to_record(change))
        return StorageWriteResult(success=True, record_id=change.change_id, write_timestamp=Timestamp.now())

    def load_versions(self, assessment_id: str) -> List[AssessmentVersion]:
        latest: Dict[str, Dict] = {}
        for record in self._versions.get(assessment_id, []):
            latest[record['id']] = record
        versions = [version_from_record(r) for r in latest.values()]
        return sorted(versions, key=lambda v: v.version_number)

    def load_changes(self, assessment_id: str) -> List[AssessmentChange]:
        changes = [change_from_record(r) for r in self._changes.get(assessment_id, [])]
        return sorted(changes, key=lambda c: c.sequence)

    def list_assessments(self) -> List[str]:
        return sorted(self._assessments)

    def raw_versions(self, assessment_id: str) -> List[Dict]:
        """Stored version records (tests use this to simulate corruption)."""
        return self._versions.get(assessment_id, [])


# =============================================================================
# FILE STORAGE BACKEND
# =============================================================================

class FileStorageBackend(StorageBackend):
    """
    File-based backend using append-only JSONL.

    Layout: <storage_dir>/<assessment_id>/{assessment,versions,changes}.jsonl
    """

    ASSESSMENT_FILE = "assessment.jsonl"
    VERSIONS_FILE = "versions.jsonl"
    CHANGES_FILE = "changes.jsonl"

    def __init__(self, storage_dir: str):
        self._storage_dir = storage_dir
        os.makedirs(storage_dir, exist_ok=True)

    @property
    def storage_dir(self) -> str:
        return self._storage_dir

    def path_for(self, assessment_id: str, filename: str) -> str:
        return os.path.join(self._storage_dir, assessment_id, filename)

    def _append(self, assessment_id: str, filename: str, record: Dict, record_id: str) -> StorageWriteResult:
        try:
            os.makedirs(os.path.join(self._storage_dir, assessment_id), exist_ok=True)
            with open(self.path_for(assessment_id, filename), 'a', encoding='utf-8') as f:
                f.write(canonical_json(record) + '\n')
        except OSError as e:
            return _failure(f"Failed to write {filename} for {assessment_id}: {e}")
        return StorageWriteResult(success=True, record_id=record_id, write_timestamp=Timestamp.now())

    def _read(self, assessment_id: str, filename: str) -> List[Dict]:
        path = self.path_for(assessment_id, filename)
        if not os.path.exists(path):
            return []
        records = []
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    def save_assessment(self, stored: StoredAssessment) -> StorageWriteResult:
        assessment_id = stored.assessment.assessment_id
        return self._append(assessment_id, self.ASSESSMENT_FILE, _assessment_line(stored), assessment_id)

    def load_assessment(self, assessment_id: str) -> Optional[StoredAssessment]:
        records = self._read(assessment_id, self.ASSESSMENT_FILE)
        return _stored_from_line(records[-1]) if records else None

    def save_version(self, version: AssessmentVersion) -> StorageWriteResult:
        return self._append(
            version.assessment_id, self.VERSIONS_FILE, version_to_record(version), version.version_id
        )

    def append_change_record(self, assessment_id: str, change: AssessmentChange) -> StorageWriteResult:
        return self._append(assessment_id, self.CHANGES_FILE, change_to_record(change), change.change_id)

    def load_versions(self, assessment_id: str) -> List[AssessmentVersion]:
        latest: Dict[str, Dict] = {}
        for record in self._read(assessment_id, self.VERSIONS_FILE):
            latest[record['id']] = record
        versions = [version_from_record(r) for r in latest.values()]
        return sorted(versions, key=lambda v: v.version_number)

    def load_changes(self, assessment_id: str) -> List[AssessmentChange]:
        changes = [change_from_record(r) for r in self._read(assessment_id, self.CHANGES_FILE)]
        return sorted(changes, key=lambda c: c.sequence)

    def list_assessments(self) -> List[str]:
        return sorted(
            name for name in os.listdir(self._storage_dir)
            if os.path.exists(self.path_for(name, self.ASSESSMENT_FILE))
        )


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class StorageConfig:
    """Configuration for the persistence boundary."""
    backend_type: str = "memory"  # "memory" or "file"
    storage_dir: Optional[str] = None

    def create_backend(self) -> StorageBackend:
        if self.backend_type == "file":
            if not self.storage_dir:
                raise ValueError("file storage requires storage_dir")
            return FileStorageBackend(self.storage_dir)
        if self.backend_type != "memory":
            raise ValueError(f"Unknown storage backend {self.backend_type!r}")
        return InMemoryStorageBackend()


__all__ = [
    'StorageWriteResult',
    'StoredAssessment',
    'StorageBackend',
    'InMemoryStorageBackend',
    'FileStorageBackend',
    'StorageConfig',
]
