"""
API Mapper
==========

Transforms engine records into response DTOs and engine errors into
HTTP status codes. Record layouts are the persisted shapes from
contracts.serialization; nothing is smoothed or recomputed here.
"""
from typing import Any, Dict, Iterable, List

from ..contracts.base import ErrorCode
from ..contracts.errors import ReviewEngineError
from ..contracts.records import (
    AssessmentChange, AssessmentVersion, MergeConflict, ReviewComment, ReviewWorkflow,
    WorkflowReviewer, WorkflowStatus
)
from ..contracts.serialization import (
    change_to_record, version_to_record, merge_conflict_to_record,
    blocker_to_record, pending_action_to_record, stage_to_record,
    review_comment_to_record, reviewer_to_record
)


# Status per error code. Unlisted codes surface as 422.
STATUS_BY_CODE = {
    ErrorCode.VERSION_CONFLICT: 409,
    ErrorCode.STALE_OLD_VALUE: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 422,
    ErrorCode.INVALID_VALUE: 422,
    ErrorCode.OUT_OF_SCOPE: 422,
    ErrorCode.UNKNOWN_QUESTION: 422,
    ErrorCode.NON_CONTIGUOUS_RANGE: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONSENSUS_UNAVAILABLE: 404,
    ErrorCode.CHECKSUM_MISMATCH: 500,
    ErrorCode.STRUCTURAL_INCONSISTENCY: 500,
}


def status_for(error: ReviewEngineError) -> int:
    return STATUS_BY_CODE.get(error.code, 422)


def map_error(error: ReviewEngineError) -> Dict[str, Any]:
    return {
        "error": error.code.name,
        "message": error.message,
        "recoverable": error.recoverable,
        "context": dict(error.error.context),
    }


def map_version_summary(version: AssessmentVersion) -> Dict[str, Any]:
    """Version without its content, for history listings."""
    record = version_to_record(version)
    record.pop('content')
    return record


def map_versions(versions: Iterable[AssessmentVersion]) -> List[Dict[str, Any]]:
    return [map_version_summary(v) for v in versions]


def map_changes(changes: Iterable[AssessmentChange]) -> List[Dict[str, Any]]:
    return [change_to_record(c) for c in changes]


def map_merge(version: AssessmentVersion, conflicts: Iterable[MergeConflict]) -> Dict[str, Any]:
    return {
        "version": version_to_record(version),
        "conflicts": [merge_conflict_to_record(c) for c in conflicts],
    }


def map_workflow(workflow: ReviewWorkflow) -> Dict[str, Any]:
    current = workflow.current_stage
    return {
        "currentStage": current.stage_id if current else None,
        "isCompleted": workflow.is_completed,
        "stages": [stage_to_record(s) for s in workflow.stages],
    }


def map_comments(comments: Iterable[ReviewComment]) -> List[Dict[str, Any]]:
    return [review_comment_to_record(c) for c in comments]


def map_reviewers(reviewers: Iterable[WorkflowReviewer]) -> List[Dict[str, Any]]:
    return [reviewer_to_record(r) for r in reviewers]


def map_workflow_status(status: WorkflowStatus) -> Dict[str, Any]:
    return {
        "currentStage": status.current_stage,
        "overallProgress": status.overall_progress,
        "roleProgress": dict(status.role_progress),
        "isCompleted": status.is_completed,
        "pendingActions": [pending_action_to_record(a) for a in status.pending_actions],
        "blockers": [blocker_to_record(b) for b in status.blockers],
    }
