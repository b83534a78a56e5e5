"""
Consensus Calculator
====================

Pure reduction of per-role answers to one consensus value.

POLICY:
=======
- No answers: undefined (never defaulted to zero)
- One answer: that value
- Spread (max - min) above tolerance: conflicted, no value
- Otherwise by method:
    average  mean rounded to the nearest valid option value,
             equidistant ties go to the lower value
    highest  max
    lowest   min
    manual / reviewer-decision
             any disagreement is conflicted until a reviewer decides

Computed on sorted values, so submission order never matters.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence
import numpy as np

from ..contracts.base import ConsensusMethod, ConsensusStatus
from ..contracts.structure import DEFAULT_OPTION_VALUES


@dataclass(frozen=True)
class ConsensusConfig:
    """Consensus policy. tolerance is the largest spread still auto-resolved."""
    tolerance: int = 1
    default_method: ConsensusMethod = ConsensusMethod.AVERAGE

    def __post_init__(self):
        if self.tolerance < 0:
            raise ValueError("tolerance must be non-negative")


@dataclass(frozen=True)
class ConsensusOutcome:
    status: ConsensusStatus
    value: Optional[int] = None
    spread: int = 0


def nearest_option(mean: float, valid_values: Sequence[int]) -> int:
    """Round to the closest valid option; equidistant ties go to the lower value."""
    options = np.array(sorted(valid_values), dtype=float)
    distances = np.abs(options - mean)
    # argmin returns the first minimum, which is the lower option on a tie
    return int(options[int(np.argmin(distances))])


def compute_consensus(
    responses: Mapping[str, int],
    method: ConsensusMethod,
    tolerance: float,
    valid_values: Sequence[int] = DEFAULT_OPTION_VALUES
) -> ConsensusOutcome:
    if not responses:
        return ConsensusOutcome(status=ConsensusStatus.UNANSWERED)

    values = np.array(sorted(responses.values()), dtype=float)
    if len(values) == 1:
        return ConsensusOutcome(status=ConsensusStatus.SINGLE, value=int(values[0]))

    spread = int(values[-1] - values[0])
    if spread > tolerance:
        return ConsensusOutcome(status=ConsensusStatus.CONFLICTED, spread=spread)

    if spread == 0:
        return ConsensusOutcome(status=ConsensusStatus.AGREED, value=int(values[0]), spread=0)

    if method is ConsensusMethod.AVERAGE:
        value = nearest_option(float(np.mean(values)), valid_values)
    elif method is ConsensusMethod.HIGHEST:
        value = int(values[-1])
    elif method is ConsensusMethod.LOWEST:
        value = int(values[0])
    else:
        # manual and reviewer-decision never auto-resolve a disagreement
        return ConsensusOutcome(status=ConsensusStatus.CONFLICTED, spread=spread)

    return ConsensusOutcome(status=ConsensusStatus.AGREED, value=value, spread=spread)
