"""
Engine Exceptions
=================

Every exception carries an immutable Error record so the failure can be
stored, audited and returned over the API without losing context.

PROPAGATION:
- VersionConflictError, InvalidChangeError: recoverable, caller retries with fresh state
- InvalidTransitionError: surfaced to caller, not retried
- ChecksumMismatchError, ChainIntegrityError: fatal, never swallowed or repaired
- ConsensusUnavailableError: expected condition, caller branches on it
"""

from __future__ import annotations
from typing import Optional

from .base import Error, ErrorCode


class ReviewEngineError(Exception):
    """Base class for all engine failures."""

    code = ErrorCode.STRUCTURAL_INCONSISTENCY
    recoverable = False

    def __init__(self, message: str, **context: object):
        super().__init__(message)
        self.error = Error.create(self.code, message, **context)

    @property
    def message(self) -> str:
        return self.error.message


class VersionConflictError(ReviewEngineError):
    """The head moved since the caller last observed it."""

    code = ErrorCode.VERSION_CONFLICT
    recoverable = True

    def __init__(self, expected_head: Optional[str], actual_head: Optional[str], branch: str):
        super().__init__(
            f"Head of branch '{branch}' is {actual_head}, caller expected {expected_head}",
            expected_head=expected_head,
            actual_head=actual_head,
            branch=branch,
        )
        self.expected_head = expected_head
        self.actual_head = actual_head
        self.branch = branch


class InvalidChangeError(ReviewEngineError):
    """The change was built against state the log no longer holds, or is malformed."""

    code = ErrorCode.STALE_OLD_VALUE
    recoverable = True

    def __init__(self, message: str, code: Optional[ErrorCode] = None, **context: object):
        if code is not None:
            self.code = code
        super().__init__(message, **context)


class InvalidTransitionError(ReviewEngineError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class ChecksumMismatchError(ReviewEngineError):
    """A stored version no longer matches its checksum."""

    code = ErrorCode.CHECKSUM_MISMATCH

    def __init__(self, version_id: str, expected: str, actual: str):
        super().__init__(
            f"Version {version_id} failed integrity check",
            version_id=version_id,
            expected=expected,
            actual=actual,
        )
        self.version_id = version_id


class ChainIntegrityError(ReviewEngineError):
    """A persisted change log entry does not link into the hash chain."""

    code = ErrorCode.STRUCTURAL_INCONSISTENCY

    def __init__(self, sequence: int, reason: str):
        super().__init__(
            f"Change log entry {sequence} rejected: {reason}",
            sequence=sequence,
            reason=reason,
        )
        self.sequence = sequence


class ConsensusUnavailableError(ReviewEngineError):
    """No consensus exists for the question (unanswered or conflicted)."""

    code = ErrorCode.CONSENSUS_UNAVAILABLE
    recoverable = True

    def __init__(self, question_id: str, reason: str):
        super().__init__(
            f"Consensus unavailable for {question_id}: {reason}",
            question_id=question_id,
            reason=reason,
        )
        self.question_id = question_id
        self.reason = reason


class NotFoundError(ReviewEngineError):
    code = ErrorCode.NOT_FOUND
