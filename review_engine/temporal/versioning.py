"""
Version Store
=============

Immutable assessment snapshots arranged in a version DAG.

INVARIANTS:
- Exactly one baseline (root) per assessment
- Every non-merge version has exactly one parent
- A merge version has two or more sources
- The graph never contains a cycle
- checksum == hash(canonical content + metadata), recomputed on every read

Versions are never edited. Approval status is review metadata kept outside
the checksum; updating it re-records the version with the same content.

WHY NETWORKX:
- Parent/merge edges form a DAG; ancestry and nearest common ancestor
  queries are graph operations, not list scans
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple
import heapq
import networkx as nx
import numpy as np

from ..contracts.base import (
    Timestamp, VersionId, ApprovalStatus, VersionType, ErrorCode,
    MetadataKey, TRUNK, branch_key
)
from ..contracts.errors import (
    VersionConflictError, InvalidChangeError, ChecksumMismatchError, NotFoundError
)
from ..contracts.records import (
    AssessmentChange, AssessmentContent, AssessmentVersion, ConflictResolution,
    MergeConflict, VersionMetadata
)
from ..contracts.serialization import compute_checksum, content_size
from ..contracts.structure import AssessmentStructure
from .change_log import ChangeLog, fold, touched_questions
from .clock import LogicalClock


# Reachability marks for the merge-base walk
_FROM_VERSION = 1
_FROM_ANCESTOR = 2


def compute_metadata(content: AssessmentContent, structure: AssessmentStructure) -> VersionMetadata:
    """
    Integer summary of a snapshot.

    overall_score is the mean answered option value as a percentage of the
    scale maximum; completion_rate is answered / total as a percentage.
    """
    responses = content.response_map()
    answered = [v for q, v in responses.items() if structure.has_question(q)]
    total = structure.total_questions

    score = 0
    if answered:
        scale = structure.max_option_value or 1
        score = int(np.floor(np.mean(np.array(answered, dtype=float)) / scale * 100 + 0.5))

    completion = int(np.floor(len(answered) / total * 100 + 0.5)) if total else 0

    time_spent = content.attribute(MetadataKey.TIME_SPENT)
    return VersionMetadata(
        total_questions=total,
        answered_questions=len(answered),
        overall_score=score,
        completion_rate=completion,
        time_spent_seconds=int(time_spent or 0),
    )


@dataclass(frozen=True)
class MergePlan:
    """
    Outcome of comparing merge sources against their nearest common ancestor.

    copy_from maps each question to the source whose slot the target takes.
    Conflicted questions keep the target's value until resolved.
    """
    sources: Tuple[str, ...]
    target_id: str
    target_branch: Optional[str]
    ancestor_id: str
    touched: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    copy_from: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    conflicts: Tuple[MergeConflict, ...] = field(default_factory=tuple)


class VersionStore:
    """
    Version DAG for one assessment.

    GUARANTEES:
    ===========
    - create_version only extends the head of a branch (optimistic concurrency)
    - get() never serves a version whose checksum does not verify
    - history() is finite and restartable (fresh iterator per call)
    """

    def __init__(
        self,
        assessment_id: str,
        change_log: ChangeLog,
        structure: AssessmentStructure,
        clock: Optional[LogicalClock] = None
    ):
        self._assessment_id = assessment_id
        self._log = change_log
        self._structure = structure
        self._clock = clock or LogicalClock.live()

        self._versions: Dict[str, AssessmentVersion] = {}
        self._graph = nx.DiGraph()
        self._heads: Dict[str, str] = {}
        self._counter = 0

    # =========================================================================
    # GRAPH QUERIES
    # =========================================================================

    @property
    def graph(self) -> nx.DiGraph:
        return self._graph.copy()

    def roots(self) -> Tuple[str, ...]:
        return tuple(n for n in self._graph.nodes if self._graph.in_degree(n) == 0)

    def __contains__(self, version_id: str) -> bool:
        return version_id in self._versions

    def __len__(self) -> int:
        return len(self._versions)

    def head(self, branch: Optional[str] = None) -> AssessmentVersion:
        name = branch_key(branch)
        version_id = self._heads.get(name)
        if version_id is None:
            raise NotFoundError(f"No branch named {name}", branch=name)
        return self.get(version_id)

    def head_id(self, branch: Optional[str] = None) -> Optional[str]:
        return self._heads.get(branch_key(branch))

    def heads(self) -> Dict[str, str]:
        return dict(self._heads)

    def baseline(self) -> AssessmentVersion:
        roots = self.roots()
        if len(roots) != 1:
            raise NotFoundError("Assessment has no baseline version")
        return self.get(roots[0])

    # =========================================================================
    # INTEGRITY
    # =========================================================================

    def verify(self, version_id: str) -> bool:
        """Recompute the checksum and compare with the stored value."""
        version = self._versions.get(version_id)
        if version is None:
            raise NotFoundError(f"Unknown version {version_id}", version_id=version_id)
        return compute_checksum(version.content, version.metadata) == version.checksum

    def get(self, version_id: str) -> AssessmentVersion:
        """
        Return a verified version.

        Raises ChecksumMismatchError for a tampered version. The version is
        never repaired or served.
        """
        version = self._versions.get(version_id)
        if version is None:
            raise NotFoundError(f"Unknown version {version_id}", version_id=version_id)
        actual = compute_checksum(version.content, version.metadata)
        if actual != version.checksum:
            raise ChecksumMismatchError(version_id, version.checksum, actual)
        return version

    # =========================================================================
    # HISTORY
    # =========================================================================

    def history(self) -> Iterator[AssessmentVersion]:
        """Versions newest first (highest version number first)."""
        ordered = sorted(self._versions.values(), key=lambda v: v.version_number, reverse=True)
        return iter(ordered)

    def lineage(self, version_id: str) -> Tuple[AssessmentVersion, ...]:
        """First-parent chain from the baseline to the version."""
        chain: List[AssessmentVersion] = []
        current: Optional[str] = version_id
        while current is not None:
            version = self.get(current)
            chain.append(version)
            current = version.parent_id
        return tuple(reversed(chain))

    def nearest_common_ancestor(self, version_ids: Sequence[str]) -> str:
        ancestor = version_ids[0]
        for other in version_ids[1:]:
            found = nx.lowest_common_ancestor(self._graph, ancestor, other)
            if found is None:
                raise InvalidChangeError(
                    f"Versions {ancestor} and {other} share no ancestor",
                    code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                )
            ancestor = found
        return ancestor

    def touched_since(self, ancestor_id: str, version_id: str) -> Set[str]:
        """
        Questions touched by versions reachable from version_id but not from
        ancestor_id.

        Both histories are walked newest first, marking each version with the
        side it is reachable from. The walk stops once every queued version is
        reachable from the ancestor, so older history is never visited.
        """
        marks: Dict[str, int] = {}
        queue: List[Tuple[int, str]] = []

        def mark(node: str, side: int) -> None:
            merged = marks.get(node, 0) | side
            if merged != marks.get(node):
                marks[node] = merged
                heapq.heappush(queue, (-self._versions[node].version_number, node))

        mark(version_id, _FROM_VERSION)
        mark(ancestor_id, _FROM_ANCESTOR)
        while queue and not all(marks[n] & _FROM_ANCESTOR for _, n in queue):
            _, node = heapq.heappop(queue)
            for parent in self._graph.predecessors(node):
                mark(parent, marks[node])

        touched: Set[str] = set()
        for node, side in marks.items():
            if side == _FROM_VERSION:
                touched.update(self._versions[node].touched_questions)
        return touched

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_baseline(
        self,
        content: AssessmentContent,
        actor: str,
        description: str = "Baseline"
    ) -> AssessmentVersion:
        if self._versions:
            raise InvalidChangeError(
                "Assessment already has a baseline",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )
        return self._commit(
            parent=None,
            content=content,
            actor=actor,
            branch_name=None,
            anchor_sequence=self._log.head_sequence,
            change_range=None,
            touched=(),
            version_type=VersionType.MAJOR,
            description=description,
        )

    def create_version(
        self,
        parent_id: str,
        change_range: Optional[Tuple[int, int]] = None,
        actor: str = "",
        version_type: VersionType = VersionType.SNAPSHOT,
        description: str = "",
        tags: Tuple[str, ...] = ()
    ) -> AssessmentVersion:
        """
        Fold a contiguous range of the parent branch's changes onto the
        parent's content.

        Raises VersionConflictError if parent_id is no longer its branch head,
        InvalidChangeError if the range leaves a gap after the parent's anchor.
        """
        parent = self.get(parent_id)
        self._require_head(parent_id, parent.branch_name)

        start, end = self._validate_range(parent, change_range)
        changes = self._log.branch_changes(parent.branch_name, start - 1, end)
        content = fold(parent.content, changes)

        return self._commit(
            parent=parent,
            content=content,
            actor=actor,
            branch_name=parent.branch_name,
            anchor_sequence=max(end, parent.anchor_sequence),
            change_range=(start, end) if start <= end else None,
            touched=touched_questions(changes),
            version_type=version_type,
            description=description,
            tags=tags,
            conflicts=parent.unresolved_conflicts,
        )

    def branch(
        self,
        from_version_id: str,
        branch_name: str,
        actor: str = "",
        description: str = ""
    ) -> AssessmentVersion:
        """
        New head on a new branch with the same content. The source branch's
        head is untouched.
        """
        source = self.get(from_version_id)
        if not branch_name or branch_name == TRUNK or branch_name in self._heads:
            raise InvalidChangeError(
                f"Branch name {branch_name!r} is not available",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                branch=branch_name,
            )
        self._log.open_branch(branch_name, source.branch_name, source.anchor_sequence)
        return self._commit(
            parent=source,
            content=source.content,
            actor=actor,
            branch_name=branch_name,
            anchor_sequence=source.anchor_sequence,
            change_range=None,
            touched=(),
            version_type=VersionType.SNAPSHOT,
            description=description or f"Branch {branch_name} from v{source.version_number}",
        )

    def plan_merge(self, source_ids: Sequence[str]) -> MergePlan:
        """
        Three-way comparison of the sources against their nearest common
        ancestor. Bounded by the touched questions along each path.

        The first source is the merge target and must be its branch head.
        """
        sources = tuple(dict.fromkeys(source_ids))
        if len(sources) < 2:
            raise InvalidChangeError(
                "A merge needs at least two distinct source versions",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )
        versions = [self.get(s) for s in sources]
        target = versions[0]
        self._require_head(target.version_id, target.branch_name)

        ancestor_id = self.nearest_common_ancestor(sources)
        ancestor = self.get(ancestor_id)

        # Uncommitted target-branch changes count as target-side touches
        pending = self._log.branch_changes(target.branch_name, target.anchor_sequence)
        contents = {v.version_id: v.content for v in versions}
        contents[target.version_id] = fold(target.content, pending)

        touched: Dict[str, Tuple[str, ...]] = {}
        for version in versions:
            questions = self.touched_since(ancestor_id, version.version_id)
            if version is target:
                questions.update(touched_questions(pending))
            touched[version.version_id] = tuple(sorted(questions))

        all_touched = sorted({q for qs in touched.values() for q in qs})
        copy_from: List[Tuple[str, str]] = []
        conflicts: List[MergeConflict] = []

        for question_id in all_touched:
            touching = [s for s in sources if question_id in touched[s]]
            values = [contents[s].response_map().get(question_id) for s in touching]
            if len(set(values)) > 1:
                conflicts.append(MergeConflict(
                    question_id=question_id,
                    base_value=ancestor.content.response_map().get(question_id),
                    source_values=tuple(zip(touching, values)),
                ))
                continue
            chosen = touching[0]
            if chosen != target.version_id:
                copy_from.append((question_id, chosen))

        return MergePlan(
            sources=sources,
            target_id=target.version_id,
            target_branch=target.branch_name,
            ancestor_id=ancestor_id,
            touched=touched,
            copy_from=tuple(copy_from),
            conflicts=tuple(conflicts),
        )

    def commit_merge(
        self,
        plan: MergePlan,
        actor: str = "",
        description: str = ""
    ) -> Tuple[AssessmentVersion, Tuple[MergeConflict, ...]]:
        """
        Record the merge version after the merged changes were appended to
        the target branch. Zero conflicts means the merge is auto-approved.
        """
        target = self.get(plan.target_id)
        self._require_head(target.version_id, target.branch_name)

        changes = self._log.branch_changes(target.branch_name, target.anchor_sequence)
        content = fold(target.content, changes)
        approval = ApprovalStatus.PENDING if plan.conflicts else ApprovalStatus.APPROVED

        version = self._commit(
            parent=target,
            content=content,
            actor=actor,
            branch_name=target.branch_name,
            anchor_sequence=self._log.head_sequence,
            change_range=(changes[0].sequence, changes[-1].sequence) if changes else None,
            touched=touched_questions(changes),
            version_type=VersionType.MINOR,
            description=description or f"Merge of {len(plan.sources)} versions",
            merged_from=plan.sources,
            conflicts=plan.conflicts,
            approval_status=approval,
        )
        return version, plan.conflicts

    def commit_resolution(
        self,
        parent_id: str,
        question_id: str,
        resolution: ConflictResolution,
        actor: str = ""
    ) -> AssessmentVersion:
        """Snapshot recording that a merge conflict was settled."""
        parent = self.get(parent_id)
        self._require_head(parent_id, parent.branch_name)
        if question_id not in {c.question_id for c in parent.unresolved_conflicts}:
            raise InvalidChangeError(
                f"No unresolved merge conflict for {question_id}",
                code=ErrorCode.NOT_FOUND,
                question_id=question_id,
            )

        changes = self._log.branch_changes(parent.branch_name, parent.anchor_sequence)
        resolutions = dict(parent.conflict_resolutions)
        resolutions[question_id] = resolution
        remaining = [c for c in parent.conflicts if c.question_id not in resolutions]

        return self._commit(
            parent=parent,
            content=fold(parent.content, changes),
            actor=actor,
            branch_name=parent.branch_name,
            anchor_sequence=self._log.head_sequence,
            change_range=(changes[0].sequence, changes[-1].sequence) if changes else None,
            touched=touched_questions(changes),
            version_type=VersionType.PATCH,
            description=f"Resolved merge conflict on {question_id}",
            conflicts=parent.conflicts,
            conflict_resolutions=tuple(sorted(resolutions.items())),
            approval_status=ApprovalStatus.PENDING if remaining else ApprovalStatus.APPROVED,
        )

    def set_approval(
        self,
        version_id: str,
        status: ApprovalStatus,
        approver: Optional[str] = None,
        at: Optional[Timestamp] = None
    ) -> AssessmentVersion:
        """Update review metadata. Content and checksum are unchanged."""
        version = self.get(version_id)
        approved = status is ApprovalStatus.APPROVED
        updated = replace(
            version,
            approval_status=status,
            approved_by=approver if approved else None,
            approved_at=(at or self._clock.now()) if approved else None,
        )
        self._versions[version_id] = updated
        return updated

    def load_version(self, version: AssessmentVersion) -> AssessmentVersion:
        """
        Insert a persisted version during hydration.

        The checksum is verified before the version joins the graph.
        """
        actual = compute_checksum(version.content, version.metadata)
        if actual != version.checksum:
            raise ChecksumMismatchError(version.version_id, version.checksum, actual)
        if version.version_id in self._versions:
            # Later records of the same version only carry approval updates
            self._versions[version.version_id] = version
            return version
        if version.parent_id is None and self.roots():
            raise InvalidChangeError(
                "Second baseline in persisted history",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )
        self._insert(version)
        return version

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_head(self, version_id: str, branch: Optional[str]) -> None:
        actual = self._heads.get(branch_key(branch))
        if actual != version_id:
            raise VersionConflictError(version_id, actual, branch_key(branch))

    def _validate_range(
        self,
        parent: AssessmentVersion,
        change_range: Optional[Tuple[int, int]]
    ) -> Tuple[int, int]:
        if change_range is None:
            return parent.anchor_sequence + 1, self._log.head_sequence

        start, end = change_range
        if start <= parent.anchor_sequence or end > self._log.head_sequence or start > end + 1:
            raise InvalidChangeError(
                f"Change range {start}..{end} does not follow version {parent.version_id}",
                code=ErrorCode.NON_CONTIGUOUS_RANGE,
                anchor=parent.anchor_sequence,
            )
        skipped = self._log.branch_changes(parent.branch_name, parent.anchor_sequence, start - 1)
        if skipped:
            raise InvalidChangeError(
                f"Change range {start}..{end} skips change {skipped[0].sequence}",
                code=ErrorCode.NON_CONTIGUOUS_RANGE,
                anchor=parent.anchor_sequence,
            )
        return start, end

    def _commit(
        self,
        parent: Optional[AssessmentVersion],
        content: AssessmentContent,
        actor: str,
        branch_name: Optional[str],
        anchor_sequence: int,
        change_range: Optional[Tuple[int, int]],
        touched: Tuple[str, ...],
        version_type: VersionType,
        description: str,
        tags: Tuple[str, ...] = (),
        merged_from: Tuple[str, ...] = (),
        conflicts: Tuple[MergeConflict, ...] = (),
        conflict_resolutions: Tuple[Tuple[str, ConflictResolution], ...] = (),
        approval_status: Optional[ApprovalStatus] = None
    ) -> AssessmentVersion:
        version_number = self._counter + 1
        parent_id = parent.version_id if parent else None
        metadata = compute_metadata(content, self._structure)

        if approval_status is None:
            approval_status = ApprovalStatus.PENDING if conflicts else ApprovalStatus.DRAFT

        version = AssessmentVersion(
            version_id=VersionId.generate(self._assessment_id, version_number, parent_id).value,
            assessment_id=self._assessment_id,
            version_number=version_number,
            parent_id=parent_id,
            content=content,
            metadata=metadata,
            checksum=compute_checksum(content, metadata),
            approval_status=approval_status,
            branch_name=branch_name,
            merged_from=merged_from,
            version_type=version_type,
            description=description,
            tags=tags,
            created_at=self._clock.now(),
            created_by=actor,
            anchor_sequence=anchor_sequence,
            change_range=change_range,
            touched_questions=touched,
            conflicts=conflicts,
            conflict_resolutions=conflict_resolutions,
            size=content_size(content),
        )
        self._insert(version)
        return version

    def _insert(self, version: AssessmentVersion) -> None:
        self._graph.add_node(version.version_id)
        if version.parent_id is not None:
            self._graph.add_edge(version.parent_id, version.version_id)
        for source in version.merged_from:
            if source != version.parent_id:
                self._graph.add_edge(source, version.version_id)
        if not nx.is_directed_acyclic_graph(self._graph):
            self._graph.remove_node(version.version_id)
            raise InvalidChangeError(
                f"Version {version.version_id} would introduce a cycle",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )

        self._versions[version.version_id] = version
        self._heads[version.branch_key] = version.version_id
        self._counter = max(self._counter, version.version_number)
