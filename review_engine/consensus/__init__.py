"""
Consensus Layer
===============

Per-role responses reconciled into one consensus value per question.

Modules:
- calculator: pure consensus policy (tolerance, methods, rounding)
- engine: per-branch RoleResponse state and role assignments
"""

from .calculator import ConsensusConfig, ConsensusOutcome, compute_consensus, nearest_option
from .engine import ConsensusEngine

__all__ = [
    'ConsensusConfig',
    'ConsensusOutcome',
    'compute_consensus',
    'nearest_option',
    'ConsensusEngine',
]
