"""
Review Workflow Layer
=====================

Stage state machine and the derived blocker / pending-action tracker.

Modules:
- state_machine: stage transitions, automatic progression, weighted progress
- blockers: pure recomputation of blockers and pending actions
- comments: per-branch review comments and reviewer standing
"""

from .state_machine import WorkflowStateMachine, default_workflow, StageTransition
from .blockers import (
    BlockerConfig, BlockerTracker, AttentionInputs, deadline_severity
)
from .comments import ReviewCommentBoard, reviewer_standing, review_sections

__all__ = [
    'WorkflowStateMachine',
    'default_workflow',
    'StageTransition',
    'BlockerConfig',
    'BlockerTracker',
    'AttentionInputs',
    'deadline_severity',
    'ReviewCommentBoard',
    'reviewer_standing',
    'review_sections',
]
