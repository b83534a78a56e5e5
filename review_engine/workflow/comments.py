"""
Review Comments
===============

Folds REVIEW_COMMENT changes of one branch into ReviewComment records and
derives each configured reviewer's standing.

STATE RULES:
- A comment opens with a NOTE_ADDED change whose payload holds its text
- It closes with a NOTE_MODIFIED change from "open" to "resolved"
- A resolved comment never reopens
- Open critical comments escalate every blocker on their question
"""

from __future__ import annotations
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from ..contracts.base import ChangeField, CommentSeverity, ReviewerStatus, StageKind
from ..contracts.records import (
    AssessmentChange, ReviewComment, ReviewCommentPayload, ReviewWorkflow,
    WorkflowReviewer
)
from ..contracts.structure import AssessmentStructure


COMMENT_OPEN = "open"
COMMENT_RESOLVED = "resolved"


class ReviewCommentBoard:
    """Review comments visible on one branch, in the order they were opened."""

    def __init__(self):
        self._comments: Dict[str, ReviewComment] = {}

    @classmethod
    def from_changes(cls, changes: Iterable[AssessmentChange]) -> ReviewCommentBoard:
        board = cls()
        for change in changes:
            board.apply(change)
        return board

    def apply(self, change: AssessmentChange) -> Optional[ReviewComment]:
        if change.field is not ChangeField.REVIEW_COMMENT:
            return None
        comment_id = change.target.comment_id
        if change.new_value == COMMENT_OPEN:
            payload = change.payload
            if not isinstance(payload, ReviewCommentPayload):
                payload = ReviewCommentPayload(comment="")
            comment = ReviewComment(
                comment_id=comment_id,
                question_id=change.target.question_id,
                comment=payload.comment,
                severity=payload.severity,
                created_by=change.actor,
                created_at=change.timestamp,
            )
        else:
            comment = self._comments[comment_id].resolve(change.actor, change.timestamp)
        self._comments[comment_id] = comment
        return comment

    def get(self, comment_id: str) -> Optional[ReviewComment]:
        return self._comments.get(comment_id)

    def comments(self) -> Tuple[ReviewComment, ...]:
        return tuple(self._comments.values())

    def open_comments(self) -> Tuple[ReviewComment, ...]:
        return tuple(c for c in self._comments.values() if c.is_open)

    def blocking_questions(self) -> FrozenSet[str]:
        """Questions with at least one open critical comment."""
        return frozenset(c.question_id for c in self._comments.values() if c.blocks)

    def __len__(self) -> int:
        return len(self._comments)


def review_sections(
    workflow: ReviewWorkflow,
    reviewer_id: str,
    structure: AssessmentStructure
) -> Tuple[str, ...]:
    """Sections a reviewer covers. Reviewers without an explicit list cover all."""
    configured = workflow.review_section_map().get(reviewer_id)
    if configured:
        return configured
    return tuple(s.section_id for s in structure.sections)


def reviewer_standing(
    workflow: ReviewWorkflow,
    structure: AssessmentStructure,
    comments: Iterable[ReviewComment]
) -> Tuple[WorkflowReviewer, ...]:
    """
    One WorkflowReviewer per configured reviewer.

    COMPLETED once the workflow has review stages and all are closed,
    IN-PROGRESS once the reviewer has commented, PENDING otherwise.
    """
    comments = tuple(comments)
    review_stages = [s for s in workflow.stages if s.kind is StageKind.REVIEW]
    reviewed = bool(review_stages) and all(s.status.is_closed for s in review_stages)
    result = []
    for reviewer_id in workflow.reviewers:
        authored = tuple(c for c in comments if c.created_by == reviewer_id)
        if reviewed:
            status = ReviewerStatus.COMPLETED
        elif authored:
            status = ReviewerStatus.IN_PROGRESS
        else:
            status = ReviewerStatus.PENDING
        result.append(WorkflowReviewer(
            reviewer_id=reviewer_id,
            review_sections=review_sections(workflow, reviewer_id, structure),
            status=status,
            comments=authored,
        ))
    return tuple(result)


def needs_follow_up(comment: ReviewComment) -> bool:
    """Open comments above info severity ask for a response."""
    return comment.is_open and comment.severity is not CommentSeverity.INFO
