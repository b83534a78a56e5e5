"""
Identity & Session Context
==========================

Caller identities are opaque strings resolved at the boundary. A
ReviewSession is the explicit per-request context passed into engine
calls; nothing about the caller is kept in module or process state.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .contracts.base import Timestamp
from .contracts.errors import NotFoundError, ReviewEngineError


@dataclass(frozen=True)
class Identity:
    user_id: str
    role_id: Optional[str] = None

    @property
    def actor(self) -> str:
        """The string recorded as a change's actor."""
        return self.user_id


class IdentityProvider:
    """Resolves a caller token to an identity."""

    def resolve(self, token: str) -> Identity:
        raise NotImplementedError


class StaticIdentityProvider(IdentityProvider):
    """Fixed token table."""

    def __init__(self, tokens: Optional[Mapping[str, Identity]] = None):
        self._tokens: Dict[str, Identity] = dict(tokens or {})

    def register(self, token: str, identity: Identity) -> None:
        self._tokens[token] = identity

    def resolve(self, token: str) -> Identity:
        identity = self._tokens.get(token)
        if identity is None:
            raise NotFoundError("Unknown identity token")
        return identity


class SessionClosedError(ReviewEngineError):
    """The session was used after close()."""


class ReviewSession:
    """
    Per-request context: who is acting, on which assessment, at what time.

    Usable as a context manager; closing is explicit and final.
    """

    def __init__(
        self,
        identity: Identity,
        assessment_id: str,
        reference_time: Optional[Timestamp] = None
    ):
        self._identity = identity
        self._assessment_id = assessment_id
        self._reference_time = reference_time
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(
                f"Session for {self._assessment_id} is closed",
                assessment_id=self._assessment_id,
            )

    @property
    def identity(self) -> Identity:
        self._check_open()
        return self._identity

    @property
    def actor(self) -> str:
        return self.identity.actor

    @property
    def role_id(self) -> Optional[str]:
        return self.identity.role_id

    @property
    def assessment_id(self) -> str:
        self._check_open()
        return self._assessment_id

    @property
    def reference_time(self) -> Optional[Timestamp]:
        self._check_open()
        return self._reference_time

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> ReviewSession:
        self._check_open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = [
    'Identity',
    'IdentityProvider',
    'StaticIdentityProvider',
    'ReviewSession',
    'SessionClosedError',
]
