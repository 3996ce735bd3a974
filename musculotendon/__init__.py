"""
:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0, see LICENSE for details.
"""

import importlib.metadata
import logging

from musculotendon._logging import enable_logging_handlers
from musculotendon.activation import FirstOrderActivationDynamics
from musculotendon.bounds import (
    Bounds,
    clamp_fiber_length,
    compute_bounds,
    is_fiber_state_clamped,
)
from musculotendon.curves import (
    AbstractCurve,
    ActiveForceLengthCurve,
    FiberForceLengthCurve,
    ForceVelocityCurve,
    TendonForceLengthCurve,
)
from musculotendon.derivatives import (
    calc_fiber_velocity_from_equilibrium,
    compute_state_derivatives,
)
from musculotendon.equilibrium import (
    EquilibriumSolution,
    SolverHint,
    SolverSettings,
    SolverStatus,
    compute_initial_fiber_equilibrium,
    estimate_elastic_tendon_fiber_state,
)
from musculotendon.errors import (
    ConfigurationError,
    DomainError,
    EquilibriumConvergenceError,
    MuscleError,
)
from musculotendon.model import MuscleCurves, MuscleModel, MuscleParams
from musculotendon.modes import (
    ActivationHandling,
    FiberDynamics,
    MuscleConfiguration,
    SimulationMode,
    classify,
)
from musculotendon.muscle import EquilibriumMuscle
from musculotendon.muscle_state import (
    FiberVelocityInfo,
    MuscleDynamicsInfo,
    MuscleKinematicState,
    MuscleLengthInfo,
    calc_fiber_velocity_info,
    calc_muscle_dynamics_info,
    calc_muscle_length_info,
)
from musculotendon.pennation import FixedWidthPennationModel


__version__ = importlib.metadata.version("musculotendon")


logger = logging.getLogger(__package__)
logger.addHandler(logging.NullHandler())
