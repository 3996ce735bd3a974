"""Exceptions raised by equilibrium muscle models.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from musculotendon.equilibrium import SolverStatus


class MuscleError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(MuscleError):
    """Invalid mode combination, invalid bound, or a change after finalization."""


class DomainError(MuscleError, ValueError):
    """A collaborator received an input outside of its declared domain.

    This indicates a violated invariant (e.g. a caller skipped clamping),
    not a numerical near-miss.
    """


class EquilibriumConvergenceError(MuscleError):
    """A Newton solve failed to satisfy the equilibrium tolerance.

    Attributes:
        status: Solver status at the time of failure.
        iterations: Number of Newton iterations performed.
        residual: Normalized residual norm of the last iterate.
        fiber_length: Fiber length of the last iterate [m].
        fiber_velocity: Fiber velocity of the last iterate [m/s].
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional["SolverStatus"] = None,
        iterations: int = 0,
        residual: float = float("nan"),
        fiber_length: float = float("nan"),
        fiber_velocity: float = float("nan"),
    ):
        super().__init__(message)
        self.status = status
        self.iterations = iterations
        self.residual = residual
        self.fiber_length = fiber_length
        self.fiber_velocity = fiber_velocity
