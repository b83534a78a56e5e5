"""
Change Log
==========

Append-only, totally ordered record of every assessment mutation.

INVARIANTS:
- No updates or deletes - append only
- One monotonic sequence counter per assessment, shared by all writers
- Entries are ordered by (timestamp, sequence); timestamps never go backwards
- Hash chain for integrity verification
- An entry is accepted only if its old_value matches the recorded value

This is the SOURCE OF TRUTH for assessment content.
Version content is DERIVED from this log by folding, never edited in place.

BRANCHES:
=========
Content fields (responses, role answers, notes, evidence, metadata,
resolutions) are recorded per branch. A branch forks from another branch
at a sequence number; its lineage is the parent's lineage up to the fork
plus its own entries. Structural fields (assignments, stages, approvals)
are assessment-wide.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..contracts.base import (
    Timestamp, ChangeId, ChangeField, Error, ErrorCode, TRUNK, branch_key
)
from ..contracts.errors import InvalidChangeError, ChainIntegrityError
from ..contracts.records import (
    AssessmentChange, AssessmentContent, AssessmentVersion, ChangeDraft,
    ChangeTarget, ChangeValue, field_key
)
from ..contracts.serialization import compute_entry_hash
from .clock import LogicalClock


FieldKey = Tuple[str, ...]


@dataclass(frozen=True)
class LogState:
    """Immutable snapshot of log state."""
    head_sequence: int
    head_hash: str
    entry_count: int

    @staticmethod
    def empty() -> LogState:
        return LogState(head_sequence=0, head_hash="", entry_count=0)


@dataclass(frozen=True)
class BranchOrigin:
    """Where a branch forked from. The trunk has no origin."""
    parent_branch: str
    at_sequence: int


def content_values(content: AssessmentContent) -> Dict[FieldKey, ChangeValue]:
    """The recorded value of every content field slot in a snapshot."""
    values: Dict[FieldKey, ChangeValue] = {}
    for question_id, value in content.responses:
        values[("response", question_id)] = value
    for question_id, text in content.notes:
        values[("note", question_id)] = text
    for question_id, evidence_ids in content.evidence:
        for evidence_id in evidence_ids:
            values[("evidence", question_id, evidence_id)] = evidence_id
    for key, value in content.attributes:
        values[("metadata", key)] = value
    return values


def fold(content: AssessmentContent, changes: Iterable[AssessmentChange]) -> AssessmentContent:
    """
    Fold changes in order onto a snapshot.

    Pure and order-sensitive: same inputs in the same order always produce
    the same content. Role answers and resolutions do not touch the map;
    their consensus outcome is recorded as a separate response change.
    """
    responses = content.response_map()
    notes = content.note_map()
    evidence = {q: set(ids) for q, ids in content.evidence}
    attributes = content.attribute_map()

    for change in changes:
        target = change.target
        if change.field is ChangeField.RESPONSE:
            if change.new_value is None:
                responses.pop(target.question_id, None)
            else:
                responses[target.question_id] = change.new_value
        elif change.field is ChangeField.NOTE:
            if change.new_value is None:
                notes.pop(target.question_id, None)
            else:
                notes[target.question_id] = change.new_value
        elif change.field is ChangeField.EVIDENCE:
            linked = evidence.setdefault(target.question_id, set())
            if change.new_value is None:
                linked.discard(target.evidence_id)
            else:
                linked.add(target.evidence_id)
        elif change.field is ChangeField.METADATA:
            key = target.metadata_key.value
            if change.new_value is None:
                attributes.pop(key, None)
            else:
                attributes[key] = change.new_value

    return AssessmentContent.from_maps(
        responses=responses,
        notes=notes,
        evidence=evidence,
        attributes=attributes,
    )


def touched_questions(changes: Iterable[AssessmentChange]) -> Tuple[str, ...]:
    """Questions whose response, note or evidence a run of changes wrote."""
    touched = {
        c.target.question_id for c in changes
        if c.field in (ChangeField.RESPONSE, ChangeField.NOTE, ChangeField.EVIDENCE)
        and c.target.question_id is not None
    }
    return tuple(sorted(touched))


class ChangeLog:
    """
    Append-only change log for one assessment.

    GUARANTEES:
    ===========
    1. NO updates - entries are immutable once written
    2. NO deletes - log only grows
    3. Stale writes rejected - old_value must match the recorded value
    4. Verifiable - hash chain ensures integrity

    Not thread-safe on its own; the engine serializes writers per assessment.
    """

    def __init__(self, assessment_id: str, clock: Optional[LogicalClock] = None):
        self._assessment_id = assessment_id
        self._clock = clock or LogicalClock.live()

        self._entries: List[AssessmentChange] = []
        self._sequence_counter = 0
        self._head_hash = ""
        self._last_timestamp: Optional[Timestamp] = None

        # Branch bookkeeping; recorded values are derived, not authoritative
        self._baseline = AssessmentContent.from_maps()
        self._trunk_seed: Dict[FieldKey, ChangeValue] = {}
        self._origins: Dict[str, Optional[BranchOrigin]] = {TRUNK: None}
        self._branch_values: Dict[str, Dict[FieldKey, ChangeValue]] = {TRUNK: {}}
        self._structural_values: Dict[FieldKey, ChangeValue] = {}

    @property
    def assessment_id(self) -> str:
        return self._assessment_id

    @property
    def state(self) -> LogState:
        return LogState(
            head_sequence=self._sequence_counter,
            head_hash=self._head_hash,
            entry_count=len(self._entries),
        )

    @property
    def head_sequence(self) -> int:
        return self._sequence_counter

    # =========================================================================
    # BRANCHES
    # =========================================================================

    def seed_trunk(self, content: AssessmentContent) -> None:
        """Record the baseline content as the trunk's starting values."""
        if self._entries:
            raise InvalidChangeError(
                "Baseline must be seeded before the first change",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )
        self._baseline = content
        self._trunk_seed = content_values(content)
        self._branch_values[TRUNK] = dict(self._trunk_seed)

    def has_branch(self, name: Optional[str]) -> bool:
        return branch_key(name) in self._origins

    def branches(self) -> Tuple[str, ...]:
        return tuple(self._origins.keys())

    def origin(self, name: Optional[str]) -> Optional[BranchOrigin]:
        return self._origins.get(branch_key(name))

    def open_branch(self, name: str, from_branch: Optional[str], at_sequence: int) -> None:
        """
        Fork a branch. Its recorded values start as the parent branch's
        values at the fork sequence.
        """
        if name in self._origins:
            raise InvalidChangeError(
                f"Branch {name} already exists",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                branch=name,
            )
        parent = branch_key(from_branch)
        if parent not in self._origins:
            raise InvalidChangeError(
                f"Unknown branch {parent}", code=ErrorCode.NOT_FOUND, branch=parent
            )
        self._origins[name] = BranchOrigin(parent_branch=parent, at_sequence=at_sequence)
        self._branch_values[name] = self.values_at(name, self._sequence_counter)

    def lineage_changes(self, branch: Optional[str], until_seq: int) -> List[AssessmentChange]:
        """Content changes visible on a branch up to a sequence, oldest first."""
        name = branch_key(branch)
        origin = self._origins.get(name)
        inherited: List[AssessmentChange] = []
        if origin is not None:
            inherited = self.lineage_changes(
                origin.parent_branch, min(origin.at_sequence, until_seq)
            )
        own = [
            e for e in self._entries
            if e.sequence <= until_seq and e.field.is_content and e.branch_key == name
        ]
        return inherited + own

    def values_at(self, branch: Optional[str], sequence: int) -> Dict[FieldKey, ChangeValue]:
        values = dict(self._trunk_seed)
        for change in self.lineage_changes(branch, sequence):
            values[field_key(change.field, change.target)] = change.new_value
        return values

    def current_value(
        self,
        field_kind: ChangeField,
        target: ChangeTarget,
        branch: Optional[str] = None
    ) -> ChangeValue:
        key = field_key(field_kind, target)
        if not field_kind.is_content:
            return self._structural_values.get(key)
        values = self._branch_values.get(branch_key(branch))
        if values is None:
            raise InvalidChangeError(
                f"Unknown branch {branch_key(branch)}",
                code=ErrorCode.NOT_FOUND,
                branch=branch_key(branch),
            )
        return values.get(key)

    def evidence_ids(self, branch: Optional[str], question_id: str) -> Tuple[str, ...]:
        """Evidence currently linked to a question on a branch, sorted."""
        values = self._branch_values.get(branch_key(branch))
        if values is None:
            raise InvalidChangeError(
                f"Unknown branch {branch_key(branch)}",
                code=ErrorCode.NOT_FOUND,
                branch=branch_key(branch),
            )
        return tuple(sorted(
            key[2] for key, value in values.items()
            if key[0] == "evidence" and key[1] == question_id and value is not None
        ))

    # =========================================================================
    # WRITES
    # =========================================================================

    def append(self, draft: ChangeDraft) -> AssessmentChange:
        """
        Append a change. This is the ONLY write operation.

        Returns the sealed entry; its sequence is the assigned sequence number.
        Raises InvalidChangeError if old_value is not the recorded value.
        """
        current = self.current_value(draft.field, draft.target, draft.branch)
        if draft.old_value != current:
            raise InvalidChangeError(
                f"Stale change for {'/'.join(str(p) for p in field_key(draft.field, draft.target))}",
                field='/'.join(str(p) for p in field_key(draft.field, draft.target)),
                expected=current,
                actual=draft.old_value,
            )

        sequence = self._sequence_counter + 1
        timestamp = self._clock.now()
        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            timestamp = self._last_timestamp

        change = AssessmentChange(
            change_id=ChangeId.generate(self._assessment_id, sequence).value,
            sequence=sequence,
            timestamp=timestamp,
            kind=draft.kind,
            field=draft.field,
            target=draft.target,
            actor=draft.actor,
            old_value=draft.old_value,
            new_value=draft.new_value,
            branch=draft.branch if draft.field.is_content else None,
            impact=draft.impact,
            review_required=draft.review_required,
            review_status=draft.review_status,
            reason=draft.reason,
            related_changes=draft.related_changes,
            automated=draft.automated,
            rollbackable=draft.rollbackable,
            confidence_level=draft.confidence_level,
            payload=draft.payload,
            previous_hash=self._head_hash,
            entry_hash="",
        )
        change = replace(change, entry_hash=compute_entry_hash(change))
        self._record(change)
        return change

    def load_verified_entry(self, change: AssessmentChange) -> AssessmentChange:
        """
        Load a persisted entry during hydration.

        VERIFIES:
        1. Sequence is the next in line
        2. Previous hash matches the current head
        3. Entry hash is valid for its content
        4. Change id is the one derived from its position
        """
        expected_seq = self._sequence_counter + 1
        if change.sequence != expected_seq:
            raise ChainIntegrityError(
                change.sequence, f"expected sequence {expected_seq}"
            )
        if change.previous_hash != self._head_hash:
            raise ChainIntegrityError(change.sequence, "broken hash chain")
        if compute_entry_hash(change) != change.entry_hash:
            raise ChainIntegrityError(change.sequence, "entry hash mismatch")
        if change.change_id != ChangeId.generate(self._assessment_id, change.sequence).value:
            raise ChainIntegrityError(change.sequence, "change id does not match position")

        self._record(change)
        return change

    def _record(self, change: AssessmentChange) -> None:
        self._entries.append(change)
        self._sequence_counter = change.sequence
        self._head_hash = change.entry_hash
        self._last_timestamp = change.timestamp

        key = field_key(change.field, change.target)
        if change.field.is_content:
            values = self._branch_values.get(change.branch_key)
            # Branches not yet opened during hydration pick this up on open
            if values is not None:
                values[key] = change.new_value
        else:
            self._structural_values[key] = change.new_value

    # =========================================================================
    # READS
    # =========================================================================

    def entries(
        self,
        from_seq: Optional[int] = None,
        until_seq: Optional[int] = None
    ) -> Iterator[AssessmentChange]:
        """Entries in sequence order, both bounds inclusive."""
        start = from_seq if from_seq is not None else 1
        end = until_seq if until_seq is not None else self._sequence_counter
        for entry in self._entries:
            if entry.sequence < start:
                continue
            if entry.sequence > end:
                break
            yield entry

    def get(self, sequence: int) -> Optional[AssessmentChange]:
        if sequence < 1 or sequence > len(self._entries):
            return None
        return self._entries[sequence - 1]

    def branch_changes(
        self,
        branch: Optional[str],
        after_seq: int,
        until_seq: Optional[int] = None
    ) -> List[AssessmentChange]:
        """Content changes recorded on one branch with after < seq <= until."""
        name = branch_key(branch)
        end = until_seq if until_seq is not None else self._sequence_counter
        # Entry i holds sequence i + 1, so the range is a slice
        return [
            e for e in self._entries[max(after_seq, 0):max(end, 0)]
            if e.field.is_content and e.branch_key == name
        ]

    def replay(self, from_version: AssessmentVersion, to_sequence: int) -> AssessmentContent:
        """
        Fold the version branch's changes after its anchor, up to and
        including to_sequence, onto the version content.
        """
        changes = self.branch_changes(
            from_version.branch_name, from_version.anchor_sequence, to_sequence
        )
        return fold(from_version.content, changes)

    def replay_lineage(self, branch: Optional[str], to_sequence: int) -> AssessmentContent:
        """Full replay from the baseline seed along a branch's lineage."""
        return fold(self._baseline, self.lineage_changes(branch, to_sequence))

    def diff(
        self,
        version_a: AssessmentVersion,
        version_b: AssessmentVersion
    ) -> List[AssessmentChange]:
        """Changes between two versions' anchors on either version's branch."""
        low = min(version_a.anchor_sequence, version_b.anchor_sequence)
        high = max(version_a.anchor_sequence, version_b.anchor_sequence)
        branches = {version_a.branch_key, version_b.branch_key}
        return [
            e for e in self._entries
            if low < e.sequence <= high and e.field.is_content and e.branch_key in branches
        ]

    def verify_integrity(self) -> Tuple[bool, Optional[Error]]:
        """
        Verify hash chain integrity.

        Returns (is_valid, error); error carries details on failure.
        """
        expected_previous = ""
        for entry in self._entries:
            if entry.previous_hash != expected_previous:
                return (False, Error(
                    code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                    message=f"Hash chain broken at sequence {entry.sequence}",
                    timestamp=datetime.now(timezone.utc),
                    context=(
                        ("expected_hash", expected_previous),
                        ("actual_hash", entry.previous_hash),
                    )
                ))
            if compute_entry_hash(entry) != entry.entry_hash:
                return (False, Error(
                    code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                    message=f"Entry hash mismatch at sequence {entry.sequence}",
                    timestamp=datetime.now(timezone.utc),
                ))
            expected_previous = entry.entry_hash
        return (True, None)

    def __len__(self) -> int:
        return len(self._entries)

