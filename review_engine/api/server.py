"""
Assessment Review Engine: HTTP API
==================================

Thin FastAPI surface over AssessmentReviewEngine. Every request resolves
the X-Review-Token header to an Identity and runs inside a ReviewSession;
mutating requests carry the head version the caller last observed.

Endpoints:
- POST /api/v1/assessments                          -> create
- GET  /api/v1/assessments/{id}                     -> assessment + heads
- GET  /api/v1/assessments/{id}/versions            -> history, newest first
- GET  /api/v1/assessments/{id}/versions/{vid}      -> verified version
- GET  /api/v1/assessments/{id}/changes             -> change log slice
- GET  /api/v1/assessments/{id}/workflow            -> workflow status
- GET  /api/v1/assessments/{id}/blockers            -> blockers
- POST /api/v1/assessments/{id}/responses           -> submit a role answer
- POST /api/v1/assessments/{id}/resolutions         -> settle a consensus conflict
- POST /api/v1/assessments/{id}/assignments         -> assign a role
- POST /api/v1/assessments/{id}/versions            -> create a version
- POST /api/v1/assessments/{id}/branches            -> branch
- POST /api/v1/assessments/{id}/merges              -> merge
- POST /api/v1/assessments/{id}/merge-resolutions   -> settle a merge conflict
- POST /api/v1/assessments/{id}/approvals           -> approve the active stage
- POST /api/v1/assessments/{id}/versions/{vid}/approval -> version review status
- POST /api/v1/assessments/{id}/stages/{sid}        -> activate/complete/skip/reset
- GET  /api/v1/assessments/{id}/comments           -> review comments
- POST /api/v1/assessments/{id}/comments           -> open a review comment
- POST /api/v1/assessments/{id}/comments/{cid}/resolution -> resolve a review comment
- GET  /api/v1/assessments/{id}/reviewers          -> reviewer standing

Usage:
    uvicorn review_engine.api.server:app --reload
"""
import logging
import os
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..contracts.base import (
    ApprovalStatus, CommentSeverity, ConsensusMethod, Timestamp, VersionType
)
from ..contracts.errors import ReviewEngineError
from ..contracts.serialization import (
    assessment_to_record, assigned_role_to_record, blocker_to_record,
    role_response_to_record, version_to_record, change_to_record
)
from ..contracts.structure import AssessmentStructure
from ..engine import AssessmentReviewEngine, EngineConfig
from ..identity import Identity, IdentityProvider, ReviewSession, StaticIdentityProvider
from ..workflow import default_workflow
from .mapper import (
    map_error, map_merge, map_versions, map_changes, map_workflow,
    map_workflow_status, map_comments, map_reviewers, status_for
)

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST BODIES
# =============================================================================

class CreateAssessmentRequest(BaseModel):
    framework_id: str
    layout: Dict[str, Dict[str, List[str]]]
    baseline: Dict[str, int] = Field(default_factory=dict)
    title: str = ""
    assessors: List[str] = Field(default_factory=list)
    reviewers: List[str] = Field(default_factory=list)
    approvers: List[str] = Field(default_factory=list)
    approval_required: bool = True
    review_sections: Dict[str, List[str]] = Field(default_factory=dict)


class ResponseSubmission(BaseModel):
    question_id: str
    value: Optional[int] = None
    expected_head: Optional[str] = None
    branch: Optional[str] = None
    confidence: float = 1.0
    comment: Optional[str] = None


class ConflictResolutionRequest(BaseModel):
    question_id: str
    expected_head: Optional[str] = None
    method: ConsensusMethod = ConsensusMethod.REVIEWER_DECISION
    value: Optional[int] = None
    rationale: Optional[str] = None
    branch: Optional[str] = None


class AssignmentRequest(BaseModel):
    role_id: str
    expected_head: Optional[str] = None
    sections: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    user_id: Optional[str] = None
    deadline: Optional[str] = None


class VersionRequest(BaseModel):
    parent_id: str
    change_range: Optional[List[int]] = None
    version_type: VersionType = VersionType.SNAPSHOT
    description: str = ""
    tags: List[str] = Field(default_factory=list)


class BranchRequest(BaseModel):
    from_version_id: str
    branch_name: str
    description: str = ""


class MergeRequest(BaseModel):
    source_version_ids: List[str]
    description: str = ""


class MergeResolutionRequest(BaseModel):
    question_id: str
    value: int
    expected_head: Optional[str] = None
    rationale: Optional[str] = None
    branch: Optional[str] = None


class ApprovalRequest(BaseModel):
    stage_id: str
    expected_head: Optional[str] = None
    rationale: Optional[str] = None


class VersionApprovalRequest(BaseModel):
    status: ApprovalStatus


class StageTransitionRequest(BaseModel):
    action: str
    expected_head: Optional[str] = None
    reason: Optional[str] = None


class ReviewCommentRequest(BaseModel):
    question_id: str
    comment: str
    severity: CommentSeverity = CommentSeverity.INFO
    expected_head: Optional[str] = None
    branch: Optional[str] = None


class CommentResolutionRequest(BaseModel):
    expected_head: Optional[str] = None
    branch: Optional[str] = None


# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

def identity_provider_from_env(environ: Optional[Dict[str, str]] = None) -> StaticIdentityProvider:
    """
    Token table from REVIEW_ENGINE_TOKENS, formatted
    "token=user:role,token2=user2" (role optional).
    """
    env = os.environ if environ is None else environ
    provider = StaticIdentityProvider()
    for entry in env.get("REVIEW_ENGINE_TOKENS", "").split(","):
        if "=" not in entry:
            continue
        token, who = entry.split("=", 1)
        user_id, _, role_id = who.partition(":")
        provider.register(token.strip(), Identity(user_id=user_id.strip(), role_id=role_id.strip() or None))
    return provider


def create_app(
    engine: Optional[AssessmentReviewEngine] = None,
    identity_provider: Optional[IdentityProvider] = None
) -> FastAPI:
    engine = engine or AssessmentReviewEngine(EngineConfig.from_env())
    identity_provider = identity_provider or identity_provider_from_env()

    app = FastAPI(
        title="Assessment Review Engine API",
        version="0.1.0",
        description="Versioned collaborative assessment review",
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(ReviewEngineError)
    async def _engine_error_handler(request: Request, exc: ReviewEngineError):
        status = status_for(exc)
        if status >= 500:
            logger.error("Integrity failure on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=status, content=map_error(exc))

    def current_identity(x_review_token: Optional[str] = Header(None)) -> Identity:
        if not x_review_token:
            raise HTTPException(status_code=401, detail="missing_token")
        try:
            return identity_provider.resolve(x_review_token)
        except ReviewEngineError:
            raise HTTPException(status_code=401, detail="invalid_token")

    def session_for(identity: Identity, assessment_id: str) -> ReviewSession:
        return ReviewSession(identity, assessment_id, engine.clock.peek())

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        return {"status": "online", "assessments": len(engine.list_assessments())}

    @app.post("/api/v1/assessments", status_code=201)
    async def create_assessment(body: CreateAssessmentRequest, identity: Identity = Depends(current_identity)):
        structure = AssessmentStructure.uniform(body.framework_id, body.layout)
        workflow = default_workflow(
            assessors=body.assessors,
            reviewers=body.reviewers,
            approvers=body.approvers,
            approval_required=body.approval_required,
            review_sections=body.review_sections,
        )
        assessment = engine.create_assessment(
            structure, identity.actor, workflow=workflow, baseline=body.baseline, title=body.title
        )
        return assessment_to_record(assessment)

    @app.get("/api/v1/assessments/{assessment_id}")
    async def get_assessment(assessment_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            record = assessment_to_record(engine.assessment(session.assessment_id))
            record["heads"] = engine.heads(session.assessment_id)
            record["assignments"] = [
                assigned_role_to_record(r)
                for r in engine.assignments(session.assessment_id, session.reference_time)
            ]
            return record

    @app.get("/api/v1/assessments/{assessment_id}/versions")
    async def get_versions(assessment_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            return {"versions": map_versions(engine.history(session.assessment_id))}

    @app.get("/api/v1/assessments/{assessment_id}/versions/{version_id}")
    async def get_version(assessment_id: str, version_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            return version_to_record(engine.get_version(session.assessment_id, version_id))

    @app.get("/api/v1/assessments/{assessment_id}/changes")
    async def get_changes(
        assessment_id: str,
        from_seq: Optional[int] = None,
        until_seq: Optional[int] = None,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            return {"changes": map_changes(engine.changes(session.assessment_id, from_seq, until_seq))}

    @app.get("/api/v1/assessments/{assessment_id}/workflow")
    async def get_workflow(assessment_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            status = engine.workflow_status(session.assessment_id, session.reference_time)
            dto = map_workflow_status(status)
            dto["workflow"] = map_workflow(engine.workflow(session.assessment_id))
            dto["reviewers"] = map_reviewers(engine.reviewers(session.assessment_id))
            return dto

    @app.get("/api/v1/assessments/{assessment_id}/blockers")
    async def get_blockers(assessment_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            return {"blockers": [blocker_to_record(b) for b in engine.blockers(session.assessment_id)]}

    @app.post("/api/v1/assessments/{assessment_id}/responses")
    async def submit_response(
        assessment_id: str,
        body: ResponseSubmission,
        identity: Identity = Depends(current_identity)
    ):
        if identity.role_id is None:
            raise HTTPException(status_code=403, detail="identity_has_no_role")
        with session_for(identity, assessment_id) as session:
            record = engine.submit_response(
                session.assessment_id,
                session.role_id,
                body.question_id,
                body.value,
                session.actor,
                body.expected_head,
                branch=body.branch,
                confidence=body.confidence,
                comment=body.comment,
            )
            return {
                "roleResponse": role_response_to_record(record),
                "head": engine.head(session.assessment_id, body.branch).version_id,
            }

    @app.post("/api/v1/assessments/{assessment_id}/resolutions")
    async def resolve_conflict(
        assessment_id: str,
        body: ConflictResolutionRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            record = engine.resolve_conflict(
                session.assessment_id,
                body.question_id,
                session.actor,
                body.expected_head,
                method=body.method,
                value=body.value,
                rationale=body.rationale,
                branch=body.branch,
            )
            return {"roleResponse": role_response_to_record(record)}

    @app.post("/api/v1/assessments/{assessment_id}/assignments")
    async def assign_role(
        assessment_id: str,
        body: AssignmentRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            role = engine.assign_role(
                session.assessment_id,
                body.role_id,
                session.actor,
                body.expected_head,
                sections=body.sections,
                categories=body.categories,
                user_id=body.user_id,
                deadline=Timestamp.from_iso(body.deadline) if body.deadline else None,
            )
            return assigned_role_to_record(role)

    @app.post("/api/v1/assessments/{assessment_id}/versions", status_code=201)
    async def create_version(
        assessment_id: str,
        body: VersionRequest,
        identity: Identity = Depends(current_identity)
    ):
        if body.change_range is not None and len(body.change_range) != 2:
            raise HTTPException(status_code=422, detail="change_range needs [start, end]")
        with session_for(identity, assessment_id) as session:
            version = engine.create_version(
                session.assessment_id,
                body.parent_id,
                session.actor,
                change_range=tuple(body.change_range) if body.change_range else None,
                version_type=body.version_type,
                description=body.description,
                tags=body.tags,
            )
            return version_to_record(version)

    @app.post("/api/v1/assessments/{assessment_id}/branches", status_code=201)
    async def create_branch(
        assessment_id: str,
        body: BranchRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            version = engine.branch(
                session.assessment_id, body.from_version_id, body.branch_name,
                session.actor, body.description
            )
            return version_to_record(version)

    @app.post("/api/v1/assessments/{assessment_id}/merges", status_code=201)
    async def merge(
        assessment_id: str,
        body: MergeRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            version, conflicts = engine.merge(
                session.assessment_id, body.source_version_ids, session.actor, body.description
            )
            return map_merge(version, conflicts)

    @app.post("/api/v1/assessments/{assessment_id}/merge-resolutions")
    async def resolve_merge_conflict(
        assessment_id: str,
        body: MergeResolutionRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            version = engine.resolve_merge_conflict(
                session.assessment_id,
                body.question_id,
                body.value,
                session.actor,
                body.expected_head,
                rationale=body.rationale,
                branch=body.branch,
            )
            return version_to_record(version)

    @app.post("/api/v1/assessments/{assessment_id}/approvals")
    async def record_approval(
        assessment_id: str,
        body: ApprovalRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            workflow = engine.record_approval(
                session.assessment_id, body.stage_id, session.actor,
                body.expected_head, body.rationale
            )
            return map_workflow(workflow)

    @app.post("/api/v1/assessments/{assessment_id}/versions/{version_id}/approval")
    async def set_version_approval(
        assessment_id: str,
        version_id: str,
        body: VersionApprovalRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            version = engine.set_version_approval(
                session.assessment_id, version_id, body.status, session.actor
            )
            return version_to_record(version)

    @app.post("/api/v1/assessments/{assessment_id}/stages/{stage_id}")
    async def transition_stage(
        assessment_id: str,
        stage_id: str,
        body: StageTransitionRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            aid, actor, head = session.assessment_id, session.actor, body.expected_head
            if body.action == "activate":
                workflow = engine.activate_stage(aid, stage_id, actor, head)
            elif body.action == "complete":
                workflow = engine.complete_stage(aid, stage_id, actor, head)
            elif body.action == "skip":
                workflow = engine.skip_stage(aid, stage_id, actor, head, body.reason)
            elif body.action == "reset":
                if not body.reason:
                    raise HTTPException(status_code=422, detail="reset requires a reason")
                workflow = engine.reset_workflow(aid, stage_id, actor, head, body.reason)
            else:
                raise HTTPException(status_code=422, detail=f"unknown action {body.action}")
            return map_workflow(workflow)

    @app.get("/api/v1/assessments/{assessment_id}/comments")
    async def get_comments(
        assessment_id: str,
        branch: Optional[str] = None,
        open_only: bool = False,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            comments = engine.review_comments(session.assessment_id, branch, open_only)
            return {"comments": map_comments(comments)}

    @app.post("/api/v1/assessments/{assessment_id}/comments", status_code=201)
    async def add_comment(
        assessment_id: str,
        body: ReviewCommentRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            comment = engine.add_review_comment(
                session.assessment_id,
                body.question_id,
                body.comment,
                session.actor,
                body.expected_head,
                severity=body.severity,
                branch=body.branch,
            )
            return map_comments([comment])[0]

    @app.post("/api/v1/assessments/{assessment_id}/comments/{comment_id}/resolution")
    async def resolve_comment(
        assessment_id: str,
        comment_id: str,
        body: CommentResolutionRequest,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            comment = engine.resolve_review_comment(
                session.assessment_id, comment_id, session.actor,
                body.expected_head, branch=body.branch
            )
            return map_comments([comment])[0]

    @app.get("/api/v1/assessments/{assessment_id}/reviewers")
    async def get_reviewers(assessment_id: str, identity: Identity = Depends(current_identity)):
        with session_for(identity, assessment_id) as session:
            return {"reviewers": map_reviewers(engine.reviewers(session.assessment_id))}

    @app.get("/api/v1/assessments/{assessment_id}/replay/{version_id}")
    async def replay(
        assessment_id: str,
        version_id: str,
        to_sequence: Optional[int] = None,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            content = engine.replay(session.assessment_id, version_id, to_sequence)
            return {"responses": content.response_map(), "notes": content.note_map()}

    @app.get("/api/v1/assessments/{assessment_id}/diff")
    async def diff(
        assessment_id: str,
        version_a: str,
        version_b: str,
        identity: Identity = Depends(current_identity)
    ):
        with session_for(identity, assessment_id) as session:
            changes = engine.diff(session.assessment_id, version_a, version_b)
            return {"changes": [change_to_record(c) for c in changes]}

    return app


app = create_app()
