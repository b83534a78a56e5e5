"""
Assessment Review Engine

Versioned, collaborative review of structured assessments. Multiple roles
answer the same questions, their answers are reconciled into a consensus,
and every mutation is recorded so any historical state can be replayed and
verified.

LAYER STRUCTURE:
================

1. CONTRACTS (contracts/)
   - Responsibility: Immutable records, closed enums, typed errors
   - Outputs: AssessmentChange, AssessmentVersion, RoleResponse, ...
   - MUST NOT: Hold state or perform I/O

2. TEMPORAL LAYER (temporal/)
   - Responsibility: Append-only change log, version DAG, replay, diff
   - Allowed inputs: ChangeDraft from the engine
   - Outputs: hash-chained AssessmentChange, checksummed AssessmentVersion
   - MUST NOT: Modify or delete a recorded change or version

3. CONSENSUS LAYER (consensus/)
   - Responsibility: Per-role answers, tolerance checks, consensus values
   - Allowed inputs: Role-level changes folded from the log
   - MUST NOT: Write to the log directly

4. WORKFLOW LAYER (workflow/)
   - Responsibility: Stage state machine, blockers and pending actions
   - Outputs: Stage transitions (recorded by the engine), derived blockers
   - MUST NOT: Persist blockers; they are derived from current state

5. STORAGE BOUNDARY (storage/)
   - Responsibility: Persist assessments, versions and change records
   - MUST NOT: Interpret or repair what it stores

6. OBSERVABILITY & AUDIT LAYER (observability/)
   - Responsibility: Audit entries and metrics for every operation
   - MUST NOT: Modify system behavior

CONSTRAINTS ENFORCED:
=====================
- Event sourcing: every mutation is a change before it is state
- Optimistic concurrency: mutations carry the head they were based on
- Integrity: hash-chained log, checksummed versions, fatal on mismatch
- Deterministic: an injected clock makes logs and versions reproducible
- Fire-and-forget notifications: delivery never rolls back a mutation
"""

from .engine import AssessmentReviewEngine, EngineConfig
from .identity import Identity, ReviewSession, StaticIdentityProvider
from .notifications import NotificationDispatcher, NotificationHook

__version__ = "0.1.0"

__all__ = [
    'AssessmentReviewEngine',
    'EngineConfig',
    'Identity',
    'ReviewSession',
    'StaticIdentityProvider',
    'NotificationDispatcher',
    'NotificationHook',
]
