"""Lower bounds on fiber length and activation, and the pennation ceiling.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import logging
import math

from equinox import Module
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.activation import FirstOrderActivationDynamics
from musculotendon.errors import ConfigurationError
from musculotendon.model import MuscleCurves, MuscleParams
from musculotendon.modes import FiberDynamics, SimulationMode
from musculotendon.pennation import FixedWidthPennationModel


logger = logging.getLogger(__name__)


# Fiber lengths within this relative distance of the floor count as clamped.
_CLAMP_RTOL = 1e-12


class Bounds(Module):
    """Floors and ceilings that keep the equilibrium equations non-singular.

    Attributes:
        min_fiber_length: Shortest admissible fiber length [m].
        min_fiber_length_along_tendon: Projection of `min_fiber_length` onto
            the tendon line [m].
        min_activation: Lower bound on activation.
        max_pennation_angle: Ceiling on the pennation angle [rad].
    """

    min_fiber_length: float
    min_fiber_length_along_tendon: float
    min_activation: float
    max_pennation_angle: float


def compute_bounds(
    curves: MuscleCurves,
    pennation: FixedWidthPennationModel,
    activation_dynamics: FirstOrderActivationDynamics,
    mode: SimulationMode,
    params: MuscleParams,
) -> Bounds:
    """Derive the bounds implied by the collaborators in a given mode.

    The fiber-length floor is the larger of the pennation floor and the
    shortest length at which the fiber can produce active force.

    Raises:
        ConfigurationError: In `FiberDynamics.ELASTIC_FULL`, if the minimum
            activation is not positive, the maximum pennation angle is not
            below pi/2, or the active force-length curve has no positive
            minimum length. Each of these makes the inverted force-velocity
            relation singular.
    """
    if mode.fiber is FiberDynamics.ELASTIC_FULL:
        if not activation_dynamics.minimum_activation > 0.0:
            raise ConfigurationError(
                f"Minimum activation must be positive with full fiber dynamics, "
                f"got {activation_dynamics.minimum_activation}"
            )
        if not pennation.maximum_pennation_angle < math.pi / 2:
            raise ConfigurationError(
                f"Maximum pennation angle must be below pi/2 with full fiber dynamics, "
                f"got {pennation.maximum_pennation_angle}"
            )
        if not curves.active_force_length.minimum_norm_length > 0.0:
            raise ConfigurationError(
                "Active force-length curve must have a positive minimum length "
                "with full fiber dynamics"
            )

    min_fiber_length = max(
        pennation.minimum_fiber_length,
        curves.active_force_length.minimum_norm_length * params.optimal_fiber_length,
    )
    bounds = Bounds(
        min_fiber_length=min_fiber_length,
        min_fiber_length_along_tendon=float(
            pennation.calc_length_along_tendon(min_fiber_length)
        ),
        min_activation=activation_dynamics.minimum_activation,
        max_pennation_angle=pennation.maximum_pennation_angle,
    )
    logger.debug(f"Computed bounds for mode {mode}: {bounds}")
    return bounds


def clamp_fiber_length(bounds: Bounds, fiber_length: ArrayLike) -> Array:
    """Raise `fiber_length` to the floor if it is below it."""
    return jnp.maximum(jnp.asarray(fiber_length), bounds.min_fiber_length)


def is_fiber_state_clamped(
    bounds: Bounds, fiber_length: ArrayLike, fiber_velocity: ArrayLike
) -> bool:
    """Whether the fiber sits at its floor and is not lengthening."""
    at_floor = float(fiber_length) <= bounds.min_fiber_length * (1.0 + _CLAMP_RTOL)
    return at_floor and float(fiber_velocity) <= 0.0
