"""Kinematic state of an equilibrium muscle, and the quantities derived from it.

The evaluator takes a resolved `MuscleKinematicState` and produces three
immutable records: length, velocity and dynamics information. It trusts its
inputs to respect the pennation ceiling, and does not re-check it.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import math

from equinox import Module
import jax.numpy as jnp

from musculotendon.model import (
    MuscleModel,
    calc_active_fiber_force,
    calc_d_fiber_force_at_d_fiber_length,
    calc_d_fiber_force_at_d_fiber_length_at,
    calc_fiber_stiffness,
)
from musculotendon.modes import FiberDynamics, SimulationMode


class MuscleKinematicState(Module):
    """Resolved state of the muscle at one instant.

    Attributes:
        activation: Muscle activation.
        fiber_length: Fiber length [m].
        fiber_velocity: Fiber velocity [m/s].
        pennation_angle: Pennation angle [rad].
        pennation_angular_velocity: Rate of change of the pennation angle [rad/s].
        path_length: Length of the musculotendon path [m].
        path_velocity: Lengthening speed of the path [m/s].
        clamped: Whether the fiber is held at its minimum length.
    """

    activation: float
    fiber_length: float
    fiber_velocity: float
    pennation_angle: float
    pennation_angular_velocity: float
    path_length: float
    path_velocity: float
    clamped: bool = False


class MuscleLengthInfo(Module):
    fiber_length: float
    fiber_length_along_tendon: float
    norm_fiber_length: float
    tendon_length: float
    norm_tendon_length: float
    tendon_strain: float
    pennation_angle: float
    cos_pennation: float
    sin_pennation: float


class FiberVelocityInfo(Module):
    fiber_velocity: float
    fiber_velocity_along_tendon: float
    norm_fiber_velocity: float
    pennation_angular_velocity: float
    tendon_velocity: float
    norm_tendon_velocity: float


class MuscleDynamicsInfo(Module):
    """Forces, stiffnesses and powers of the muscle.

    Powers are positive when the element shortens under tension.
    """

    activation: float
    active_force_length_multiplier: float
    passive_force_multiplier: float
    force_velocity_multiplier: float
    tendon_force_multiplier: float
    fiber_force: float
    active_fiber_force: float
    passive_fiber_force: float
    fiber_force_along_tendon: float
    active_fiber_force_along_tendon: float
    passive_fiber_force_along_tendon: float
    tendon_force: float
    fiber_stiffness: float
    fiber_stiffness_along_tendon: float
    tendon_stiffness: float
    muscle_stiffness: float
    fiber_active_power: float
    fiber_passive_power: float
    tendon_power: float
    musculotendon_power: float


def calc_muscle_length_info(model: MuscleModel, state: MuscleKinematicState) -> MuscleLengthInfo:
    pennation = model.pennation
    fiber_length = state.fiber_length
    sin_phi = float(pennation.calc_sin_pennation(fiber_length))
    cos_phi = float(pennation.calc_cos_pennation(fiber_length))
    fiber_length_along_tendon = fiber_length * cos_phi
    tendon_length = state.path_length - fiber_length_along_tendon
    norm_tendon_length = float(model.norm_tendon_length(tendon_length))

    return MuscleLengthInfo(
        fiber_length=fiber_length,
        fiber_length_along_tendon=fiber_length_along_tendon,
        norm_fiber_length=float(model.norm_fiber_length(fiber_length)),
        tendon_length=tendon_length,
        norm_tendon_length=norm_tendon_length,
        tendon_strain=norm_tendon_length - 1.0,
        pennation_angle=math.asin(sin_phi),
        cos_pennation=cos_phi,
        sin_pennation=sin_phi,
    )


def calc_fiber_velocity_info(
    model: MuscleModel,
    state: MuscleKinematicState,
    length_info: MuscleLengthInfo,
) -> FiberVelocityInfo:
    pennation = model.pennation
    fiber_velocity = state.fiber_velocity
    # At the pennation ceiling cos(phi) is 0: a fiber at rest does not move
    # along the tendon, and any other velocity projects to +/-inf.
    fiber_velocity_along_tendon = float(
        jnp.where(
            fiber_velocity == 0.0,
            0.0,
            fiber_velocity / jnp.asarray(length_info.cos_pennation),
        )
    )
    tendon_velocity = state.path_velocity - fiber_velocity_along_tendon

    return FiberVelocityInfo(
        fiber_velocity=fiber_velocity,
        fiber_velocity_along_tendon=fiber_velocity_along_tendon,
        norm_fiber_velocity=float(model.norm_fiber_velocity(fiber_velocity)),
        pennation_angular_velocity=float(
            pennation.calc_pennation_angular_velocity(state.fiber_length, fiber_velocity)
        ),
        tendon_velocity=tendon_velocity,
        norm_tendon_velocity=tendon_velocity / model.params.tendon_slack_length,
    )


def calc_muscle_dynamics_info(
    model: MuscleModel,
    mode: SimulationMode,
    state: MuscleKinematicState,
    length_info: MuscleLengthInfo,
    velocity_info: FiberVelocityInfo,
) -> MuscleDynamicsInfo:
    """Forces, stiffnesses and powers at a resolved state.

    With a rigid tendon, the tendon transmits exactly the fiber force along
    the tendon and its stiffness is infinite.
    """
    params, curves = model.params, model.curves
    fiso = params.max_isometric_force
    activation = state.activation
    lce_n = length_info.norm_fiber_length
    cos_phi, sin_phi = length_info.cos_pennation, length_info.sin_pennation

    fal = float(curves.active_force_length.value(lce_n))
    fpe = float(curves.fiber_force_length.value(lce_n))
    fv = float(curves.force_velocity.value(velocity_info.norm_fiber_velocity))

    active_fiber_force = float(calc_active_fiber_force(fiso, activation, fal, fv))
    passive_fiber_force = fiso * fpe
    fiber_force = active_fiber_force + passive_fiber_force
    fiber_force_along_tendon = fiber_force * cos_phi

    fiber_stiffness = float(
        calc_fiber_stiffness(
            fiso,
            activation,
            curves.active_force_length.derivative(lce_n),
            fv,
            curves.fiber_force_length.derivative(lce_n),
            params.optimal_fiber_length,
        )
    )
    fiber_stiffness_along_tendon = float(
        calc_d_fiber_force_at_d_fiber_length_at(
            calc_d_fiber_force_at_d_fiber_length(
                fiber_stiffness, fiber_force, sin_phi, jnp.asarray(cos_phi), state.fiber_length
            ),
            cos_phi,
        )
    )

    match mode.fiber:
        case FiberDynamics.RIGID_TENDON:
            tendon_force = fiber_force_along_tendon
            tendon_stiffness = math.inf
            muscle_stiffness = fiber_stiffness_along_tendon
        case FiberDynamics.ELASTIC_FULL | FiberDynamics.ELASTIC_REDUCED:
            tendon_force = fiso * float(
                curves.tendon_force_length.value(length_info.norm_tendon_length)
            )
            tendon_stiffness = (
                fiso
                * float(curves.tendon_force_length.derivative(length_info.norm_tendon_length))
                / params.tendon_slack_length
            )
            series = fiber_stiffness_along_tendon + tendon_stiffness
            muscle_stiffness = (
                fiber_stiffness_along_tendon * tendon_stiffness / series if series != 0.0 else 0.0
            )

    return MuscleDynamicsInfo(
        activation=activation,
        active_force_length_multiplier=fal,
        passive_force_multiplier=fpe,
        force_velocity_multiplier=fv,
        tendon_force_multiplier=tendon_force / fiso,
        fiber_force=fiber_force,
        active_fiber_force=active_fiber_force,
        passive_fiber_force=passive_fiber_force,
        fiber_force_along_tendon=fiber_force_along_tendon,
        active_fiber_force_along_tendon=active_fiber_force * cos_phi,
        passive_fiber_force_along_tendon=passive_fiber_force * cos_phi,
        tendon_force=tendon_force,
        fiber_stiffness=fiber_stiffness,
        fiber_stiffness_along_tendon=fiber_stiffness_along_tendon,
        tendon_stiffness=tendon_stiffness,
        muscle_stiffness=muscle_stiffness,
        fiber_active_power=-active_fiber_force * velocity_info.fiber_velocity,
        fiber_passive_power=-passive_fiber_force * velocity_info.fiber_velocity,
        tendon_power=-tendon_force * velocity_info.tendon_velocity,
        musculotendon_power=-tendon_force * state.path_velocity,
    )
