"""
Canonical Serialization
=======================

One serialization for three jobs:
1. Checksums (canonical bytes of content + metadata)
2. Change-log hash chain
3. The persisted / transmitted record shape

RULES:
1. Dates are ISO 8601 strings (UTC).
2. Enums use their .value.
3. Tuples become lists; maps are emitted with sorted keys.
4. Field names follow the record layout verbatim (camelCase).
"""

from __future__ import annotations
from datetime import datetime, date
from enum import Enum
from typing import Any, Dict, Optional
import hashlib
import json

from .base import (
    Timestamp, ChangeKind, ChangeField, MetadataKey, ImpactLevel,
    ReviewStatus, ConfidenceLevel, ApprovalStatus, VersionType,
    ConsensusMethod, StageKind, StageStatus, CommentSeverity
)
from .records import (
    AssessmentContent, AssessmentChange, AssessmentVersion, VersionMetadata,
    ChangeTarget, ChangeValue, ChangePayload, RoleAnswerPayload,
    ResolutionPayload, AssignmentPayload, StagePayload, RoleResponse,
    ConflictResolution, MergeConflict, AssessmentBlocker, Assessment,
    WorkflowStage, AssignedRole, ReviewWorkflow, PendingAction,
    ReviewCommentPayload, ReviewComment, WorkflowReviewer
)
from .structure import AssessmentStructure, Section, Category, Question, QuestionOption


class StrictRecordEncoder(json.JSONEncoder):
    """
    JSON Encoder that prioritizes fidelity over flexibility.

    Only used for already-normalised records; anything unexpected fails loudly.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Timestamp):
            return obj.to_iso()
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(list(obj))
        return super().default(obj)


def canonical_json(data: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, no NaN."""
    return json.dumps(
        data,
        cls=StrictRecordEncoder,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


# =============================================================================
# PRIMITIVES
# =============================================================================

def _ts(value: Optional[Timestamp]) -> Optional[str]:
    return value.to_iso() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[Timestamp]:
    return Timestamp.from_iso(value) if value else None


def _enum(value: Optional[Enum]) -> Optional[str]:
    return value.value if value is not None else None


def _value_out(value: ChangeValue) -> Any:
    if isinstance(value, tuple):
        return list(value)
    return value


def _value_in(value: Any) -> ChangeValue:
    if isinstance(value, list):
        return tuple(value)
    return value


# =============================================================================
# CONTENT & CHECKSUM
# =============================================================================

def content_to_record(content: AssessmentContent) -> Dict[str, Any]:
    return {
        'responses': {q: v for q, v in content.responses},
        'notes': {q: n for q, n in content.notes},
        'evidence': {q: list(ids) for q, ids in content.evidence},
        'attributes': {k: _value_out(v) for k, v in content.attributes},
    }


def content_from_record(data: Dict[str, Any]) -> AssessmentContent:
    return AssessmentContent.from_maps(
        responses=data.get('responses', {}),
        notes=data.get('notes', {}),
        evidence=data.get('evidence', {}),
        attributes={k: _value_in(v) for k, v in data.get('attributes', {}).items()},
    )


def metadata_to_record(metadata: VersionMetadata) -> Dict[str, int]:
    return {
        'totalQuestions': metadata.total_questions,
        'answeredQuestions': metadata.answered_questions,
        'overallScore': metadata.overall_score,
        'completionRate': metadata.completion_rate,
        'timeSpent': metadata.time_spent_seconds,
    }


def metadata_from_record(data: Dict[str, Any]) -> VersionMetadata:
    return VersionMetadata(
        total_questions=int(data.get('totalQuestions', 0)),
        answered_questions=int(data.get('answeredQuestions', 0)),
        overall_score=int(data.get('overallScore', 0)),
        completion_rate=int(data.get('completionRate', 0)),
        time_spent_seconds=int(data.get('timeSpent', 0)),
    )


def compute_checksum(content: AssessmentContent, metadata: VersionMetadata) -> str:
    """
    Deterministic hash over the canonical content + metadata.

    Recomputing it must always reproduce the stored value.
    """
    return sha256_hex(canonical_json({
        'content': content_to_record(content),
        'metadata': metadata_to_record(metadata),
    }))


def content_size(content: AssessmentContent) -> int:
    return len(canonical_json(content_to_record(content)).encode('utf-8'))


# =============================================================================
# CHANGES
# =============================================================================

def target_to_record(target: ChangeTarget) -> Dict[str, Any]:
    return {
        'questionId': target.question_id,
        'categoryId': target.category_id,
        'sectionId': target.section_id,
        'roleId': target.role_id,
        'evidenceId': target.evidence_id,
        'stageId': target.stage_id,
        'metadataKey': _enum(target.metadata_key),
        'versionId': target.version_id,
        'commentId': target.comment_id,
    }


def target_from_record(data: Dict[str, Any]) -> ChangeTarget:
    key = data.get('metadataKey')
    return ChangeTarget(
        question_id=data.get('questionId'),
        category_id=data.get('categoryId'),
        section_id=data.get('sectionId'),
        role_id=data.get('roleId'),
        evidence_id=data.get('evidenceId'),
        stage_id=data.get('stageId'),
        metadata_key=MetadataKey(key) if key else None,
        version_id=data.get('versionId'),
        comment_id=data.get('commentId'),
    )


def payload_to_record(payload: Optional[ChangePayload]) -> Optional[Dict[str, Any]]:
    if payload is None:
        return None
    if isinstance(payload, RoleAnswerPayload):
        return {'type': 'role_answer', 'confidence': payload.confidence, 'comment': payload.comment}
    if isinstance(payload, ResolutionPayload):
        return {'type': 'resolution', 'method': payload.method.value, 'rationale': payload.rationale}
    if isinstance(payload, AssignmentPayload):
        return {
            'type': 'assignment',
            'sections': list(payload.sections),
            'categories': list(payload.categories),
            'userId': payload.user_id,
            'deadline': _ts(payload.deadline),
        }
    if isinstance(payload, StagePayload):
        return {
            'type': 'stage',
            'stage': stage_to_record(payload.stage) if payload.stage else None,
            'reset': payload.reset,
        }
    if isinstance(payload, ReviewCommentPayload):
        return {'type': 'review_comment', 'comment': payload.comment, 'severity': payload.severity.value}
    raise TypeError(f"Unknown change payload {type(payload).__name__}")


def payload_from_record(data: Optional[Dict[str, Any]]) -> Optional[ChangePayload]:
    if not data:
        return None
    kind = data['type']
    if kind == 'role_answer':
        return RoleAnswerPayload(confidence=float(data['confidence']), comment=data.get('comment'))
    if kind == 'resolution':
        return ResolutionPayload(method=ConsensusMethod(data['method']), rationale=data.get('rationale'))
    if kind == 'assignment':
        return AssignmentPayload(
            sections=tuple(data.get('sections', ())),
            categories=tuple(data.get('categories', ())),
            user_id=data.get('userId'),
            deadline=_parse_ts(data.get('deadline')),
        )
    if kind == 'stage':
        stage = data.get('stage')
        return StagePayload(
            stage=stage_from_record(stage) if stage else None,
            reset=bool(data.get('reset', False)),
        )
    if kind == 'review_comment':
        return ReviewCommentPayload(
            comment=data['comment'],
            severity=CommentSeverity(data.get('severity', 'info')),
        )
    raise ValueError(f"Unknown change payload type {kind!r}")


def change_to_record(change: AssessmentChange, include_chain: bool = True) -> Dict[str, Any]:
    record = {
        'id': change.change_id,
        'sequence': change.sequence,
        'timestamp': change.timestamp.to_iso(),
        'changeType': change.kind.value,
        'field': change.field.value,
        'target': target_to_record(change.target),
        'oldValue': _value_out(change.old_value),
        'newValue': _value_out(change.new_value),
        'changedBy': change.actor,
        'branch': change.branch,
        'impact': change.impact.value,
        'reviewRequired': change.review_required,
        'reviewStatus': _enum(change.review_status),
        'changeReason': change.reason,
        'relatedChanges': list(change.related_changes),
        'automatedChange': change.automated,
        'rollbackable': change.rollbackable,
        'confidenceLevel': _enum(change.confidence_level),
        'payload': payload_to_record(change.payload),
    }
    if include_chain:
        record['previousHash'] = change.previous_hash
        record['entryHash'] = change.entry_hash
    return record


def change_from_record(data: Dict[str, Any]) -> AssessmentChange:
    review_status = data.get('reviewStatus')
    confidence = data.get('confidenceLevel')
    return AssessmentChange(
        change_id=data['id'],
        sequence=int(data['sequence']),
        timestamp=Timestamp.from_iso(data['timestamp']),
        kind=ChangeKind(data['changeType']),
        field=ChangeField(data['field']),
        target=target_from_record(data.get('target', {})),
        actor=data['changedBy'],
        old_value=_value_in(data.get('oldValue')),
        new_value=_value_in(data.get('newValue')),
        branch=data.get('branch'),
        impact=ImpactLevel(data.get('impact', 'low')),
        review_required=bool(data.get('reviewRequired', False)),
        review_status=ReviewStatus(review_status) if review_status else None,
        reason=data.get('changeReason'),
        related_changes=tuple(data.get('relatedChanges', ())),
        automated=bool(data.get('automatedChange', False)),
        rollbackable=bool(data.get('rollbackable', True)),
        confidence_level=ConfidenceLevel(confidence) if confidence else None,
        payload=payload_from_record(data.get('payload')),
        previous_hash=data.get('previousHash', ''),
        entry_hash=data.get('entryHash', ''),
    )


def compute_entry_hash(change: AssessmentChange) -> str:
    """Hash of the entry body chained to the previous entry's hash."""
    body = canonical_json(change_to_record(change, include_chain=False))
    return sha256_hex(f"{change.sequence}|{body}|{change.previous_hash}")


# =============================================================================
# CONSENSUS
# =============================================================================

def resolution_to_record(resolution: Optional[ConflictResolution]) -> Optional[Dict[str, Any]]:
    if resolution is None:
        return None
    return {
        'method': resolution.method.value,
        'resolvedBy': resolution.resolved_by,
        'resolvedAt': _ts(resolution.resolved_at),
        'reasoning': resolution.rationale,
    }


def resolution_from_record(data: Optional[Dict[str, Any]]) -> Optional[ConflictResolution]:
    if not data:
        return None
    return ConflictResolution(
        method=ConsensusMethod(data['method']),
        resolved_by=data.get('resolvedBy'),
        resolved_at=_parse_ts(data.get('resolvedAt')),
        rationale=data.get('reasoning'),
    )


def role_response_to_record(response: RoleResponse) -> Dict[str, Any]:
    return {
        'questionId': response.question_id,
        'responses': dict(response.responses),
        'consensus': response.consensus,
        'conflictResolution': resolution_to_record(response.conflict_resolution),
        'comments': dict(response.comments),
        'confidence': dict(response.confidence),
        'status': response.status.value,
    }


# =============================================================================
# VERSIONS
# =============================================================================

def merge_conflict_to_record(conflict: MergeConflict) -> Dict[str, Any]:
    return {
        'questionId': conflict.question_id,
        'baseValue': conflict.base_value,
        'sourceValues': {src: value for src, value in conflict.source_values},
    }


def merge_conflict_from_record(data: Dict[str, Any]) -> MergeConflict:
    return MergeConflict(
        question_id=data['questionId'],
        base_value=data.get('baseValue'),
        source_values=tuple(sorted(data.get('sourceValues', {}).items())),
    )


def version_to_record(version: AssessmentVersion) -> Dict[str, Any]:
    return {
        'id': version.version_id,
        'assessmentId': version.assessment_id,
        'versionNumber': version.version_number,
        'parentId': version.parent_id,
        'branchName': version.branch_name,
        'mergedFrom': list(version.merged_from),
        'content': content_to_record(version.content),
        'metadata': metadata_to_record(version.metadata),
        'checksum': version.checksum,
        'approvalStatus': version.approval_status.value,
        'versionType': version.version_type.value,
        'description': version.description,
        'tags': list(version.tags),
        'createdAt': _ts(version.created_at),
        'createdBy': version.created_by,
        'anchorSequence': version.anchor_sequence,
        'changeRange': list(version.change_range) if version.change_range else None,
        'touchedQuestions': list(version.touched_questions),
        'conflicts': [merge_conflict_to_record(c) for c in version.conflicts],
        'conflictResolutions': {
            q: resolution_to_record(r) for q, r in version.conflict_resolutions
        },
        'approvedBy': version.approved_by,
        'approvedAt': _ts(version.approved_at),
        'isBaseline': version.is_baseline,
        'size': version.size,
    }


def version_from_record(data: Dict[str, Any]) -> AssessmentVersion:
    change_range = data.get('changeRange')
    return AssessmentVersion(
        version_id=data['id'],
        assessment_id=data['assessmentId'],
        version_number=int(data['versionNumber']),
        parent_id=data.get('parentId'),
        content=content_from_record(data.get('content', {})),
        metadata=metadata_from_record(data.get('metadata', {})),
        checksum=data['checksum'],
        approval_status=ApprovalStatus(data.get('approvalStatus', 'draft')),
        branch_name=data.get('branchName'),
        merged_from=tuple(data.get('mergedFrom', ())),
        version_type=VersionType(data.get('versionType', 'snapshot')),
        description=data.get('description', ''),
        tags=tuple(data.get('tags', ())),
        created_at=_parse_ts(data.get('createdAt')),
        created_by=data.get('createdBy', ''),
        anchor_sequence=int(data.get('anchorSequence', 0)),
        change_range=tuple(change_range) if change_range else None,
        touched_questions=tuple(data.get('touchedQuestions', ())),
        conflicts=tuple(merge_conflict_from_record(c) for c in data.get('conflicts', ())),
        conflict_resolutions=tuple(sorted(
            (q, resolution_from_record(r)) for q, r in data.get('conflictResolutions', {}).items()
        )),
        approved_by=data.get('approvedBy'),
        approved_at=_parse_ts(data.get('approvedAt')),
        size=int(data.get('size', 0)),
    )


# =============================================================================
# ASSESSMENT, ASSIGNMENTS, STAGES, BLOCKERS
# =============================================================================

def assessment_to_record(assessment: Assessment) -> Dict[str, Any]:
    return {
        'id': assessment.assessment_id,
        'frameworkId': assessment.framework_id,
        'headVersionId': assessment.head_version_id,
        'createdAt': _ts(assessment.created_at),
        'createdBy': assessment.created_by,
        'title': assessment.title,
    }


def assessment_from_record(data: Dict[str, Any]) -> Assessment:
    return Assessment(
        assessment_id=data['id'],
        framework_id=data['frameworkId'],
        head_version_id=data.get('headVersionId'),
        created_at=_parse_ts(data.get('createdAt')),
        created_by=data.get('createdBy', ''),
        title=data.get('title', ''),
    )


def assigned_role_to_record(role: AssignedRole) -> Dict[str, Any]:
    return {
        'roleId': role.role_id,
        'userId': role.user_id,
        'assignedSections': list(role.assigned_sections),
        'assignedCategories': list(role.assigned_categories),
        'status': role.status.value,
        'progress': role.progress,
        'assignedAt': _ts(role.assigned_at),
        'completedAt': _ts(role.completed_at),
        'deadline': _ts(role.deadline),
    }


def stage_to_record(stage: WorkflowStage) -> Dict[str, Any]:
    return {
        'id': stage.stage_id,
        'kind': stage.kind.value,
        'name': stage.name,
        'description': stage.description,
        'requiredRoles': list(stage.required_roles),
        'order': stage.order,
        'status': stage.status.value,
        'deadline': _ts(stage.deadline),
        'weight': stage.weight,
        'approvalRequired': stage.approval_required,
    }


def stage_from_record(data: Dict[str, Any]) -> WorkflowStage:
    return WorkflowStage(
        stage_id=data['id'],
        kind=StageKind(data['kind']),
        name=data.get('name', data['id']),
        description=data.get('description', ''),
        required_roles=tuple(data.get('requiredRoles', ())),
        order=int(data.get('order', 0)),
        status=StageStatus(data.get('status', 'pending')),
        deadline=_parse_ts(data.get('deadline')),
        weight=float(data.get('weight', 1.0)),
        approval_required=bool(data.get('approvalRequired', False)),
    )


def blocker_to_record(blocker: AssessmentBlocker) -> Dict[str, Any]:
    return {
        'id': blocker.blocker_id,
        'type': blocker.kind.value,
        'description': blocker.description,
        'affectedSections': list(blocker.affected_sections),
        'affectedQuestions': list(blocker.affected_questions),
        'severity': blocker.severity.value,
        'createdAt': _ts(blocker.created_at),
    }


def pending_action_to_record(action: PendingAction) -> Dict[str, Any]:
    return {
        'id': action.action_id,
        'type': action.kind.value,
        'assignedTo': action.assigned_to,
        'description': action.description,
        'priority': action.priority.value,
        'dueDate': _ts(action.due_date),
        'createdAt': _ts(action.created_at),
    }


def review_comment_to_record(comment: ReviewComment) -> Dict[str, Any]:
    return {
        'id': comment.comment_id,
        'questionId': comment.question_id,
        'comment': comment.comment,
        'severity': comment.severity.value,
        'createdAt': _ts(comment.created_at),
        'createdBy': comment.created_by,
        'resolved': comment.resolved,
        'resolvedAt': _ts(comment.resolved_at),
        'resolvedBy': comment.resolved_by,
    }


def reviewer_to_record(reviewer: WorkflowReviewer) -> Dict[str, Any]:
    return {
        'userId': reviewer.reviewer_id,
        'reviewSections': list(reviewer.review_sections),
        'status': reviewer.status.value,
        'comments': [review_comment_to_record(c) for c in reviewer.comments],
    }


# =============================================================================
# STRUCTURE & WORKFLOW DEFINITIONS
# =============================================================================

def structure_to_record(structure: AssessmentStructure) -> Dict[str, Any]:
    return {
        'frameworkId': structure.framework_id,
        'sections': [
            {
                'id': section.section_id,
                'weight': section.weight,
                'categories': [
                    {
                        'id': category.category_id,
                        'weight': category.weight,
                        'questions': [
                            {
                                'id': question.question_id,
                                'priority': question.priority,
                                'consensusMethod': _enum(question.consensus_method),
                                'options': [
                                    {'value': o.value, 'label': o.label} for o in question.options
                                ],
                            }
                            for question in category.questions
                        ],
                    }
                    for category in section.categories
                ],
            }
            for section in structure.sections
        ],
    }


def structure_from_record(data: Dict[str, Any]) -> AssessmentStructure:
    def question(q: Dict[str, Any]) -> Question:
        method = q.get('consensusMethod')
        return Question(
            question_id=q['id'],
            options=tuple(QuestionOption(value=int(o['value']), label=o.get('label', '')) for o in q.get('options', ())),
            consensus_method=ConsensusMethod(method) if method else None,
            priority=q.get('priority', 'medium'),
        )

    return AssessmentStructure(
        framework_id=data['frameworkId'],
        sections=tuple(
            Section(
                section_id=s['id'],
                weight=float(s.get('weight', 1.0)),
                categories=tuple(
                    Category(
                        category_id=c['id'],
                        weight=float(c.get('weight', 1.0)),
                        questions=tuple(question(q) for q in c.get('questions', ())),
                    )
                    for c in s.get('categories', ())
                ),
            )
            for s in data.get('sections', ())
        ),
    )


def workflow_to_record(workflow: ReviewWorkflow) -> Dict[str, Any]:
    return {
        'enabled': workflow.enabled,
        'approvalRequired': workflow.approval_required,
        'reviewers': list(workflow.reviewers),
        'escalationDays': workflow.escalation_days,
        'reviewSections': {r: list(s) for r, s in workflow.review_sections},
        'stages': [stage_to_record(s) for s in workflow.stages],
    }


def workflow_from_record(data: Dict[str, Any]) -> ReviewWorkflow:
    return ReviewWorkflow(
        stages=tuple(stage_from_record(s) for s in data.get('stages', ())),
        enabled=bool(data.get('enabled', True)),
        approval_required=bool(data.get('approvalRequired', False)),
        reviewers=tuple(data.get('reviewers', ())),
        escalation_days=int(data.get('escalationDays', 3)),
        review_sections=tuple(
            (r, tuple(s)) for r, s in (data.get('reviewSections') or {}).items()
        ),
    )
