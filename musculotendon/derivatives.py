"""Time derivatives of the integrated muscle states.

The state vector is ordered ``[activation?, fiber_length?]``; entries absent
in the current `SimulationMode` are omitted.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.bounds import Bounds
from musculotendon.model import MuscleModel
from musculotendon.modes import FiberDynamics, SimulationMode
from musculotendon.muscle_state import MuscleKinematicState


def calc_fiber_velocity_from_equilibrium(
    model: MuscleModel,
    bounds: Bounds,
    activation: float,
    fiber_length: float,
    path_length: float,
) -> float:
    """Fiber velocity implied by force equilibrium at a given fiber length.

    Inverts the force-velocity relation:

        f_V(v) = (f_SE / cos(phi) - f_PE) / (max(a, a_min) * f_L)

    Arguments:
        model: The muscle model.
        bounds: Bounds of the muscle; supplies the activation floor.
        activation: Muscle activation.
        fiber_length: Fiber length, at or above the floor [m].
        path_length: Length of the musculotendon path [m].

    Returns:
        Fiber velocity [m/s]. Negative velocities are zeroed when the fiber
        is at its floor.
    """
    params, curves, pennation = model.params, model.curves, model.pennation

    cos_phi = pennation.calc_cos_pennation(fiber_length)
    tendon_length = path_length - fiber_length * cos_phi
    lce_n = model.norm_fiber_length(fiber_length)

    fal = curves.active_force_length.value(lce_n)
    fpe = curves.fiber_force_length.value(lce_n)
    fse = curves.tendon_force_length.value(model.norm_tendon_length(tendon_length))

    fv = (fse / cos_phi - fpe) / (jnp.maximum(activation, bounds.min_activation) * fal)
    fiber_velocity = float(curves.force_velocity.inverse(fv)) * params.max_fiber_velocity

    if fiber_length <= bounds.min_fiber_length and fiber_velocity < 0.0:
        return 0.0
    return fiber_velocity


def compute_state_derivatives(
    model: MuscleModel,
    mode: SimulationMode,
    bounds: Bounds,
    state: MuscleKinematicState,
    excitation: ArrayLike,
) -> Array:
    """Right-hand side of the muscle's ODE.

    Returns:
        Time derivatives in state-vector order.
    """
    rates = []

    if mode.has_activation_state:
        rates.append(model.activation_dynamics.rate(excitation, state.activation))

    match mode.fiber:
        case FiberDynamics.ELASTIC_FULL:
            rates.append(
                jnp.asarray(
                    calc_fiber_velocity_from_equilibrium(
                        model, bounds, state.activation, state.fiber_length, state.path_length
                    )
                )
            )
        case FiberDynamics.RIGID_TENDON | FiberDynamics.ELASTIC_REDUCED:
            pass

    if not rates:
        return jnp.zeros((0,))
    return jnp.stack(rates)
