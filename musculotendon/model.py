"""Parameters of an equilibrium muscle and the force relations shared by its solvers.

The equilibrium equation balances fiber force projected on the tendon
against tendon force:

    fiso * (a * f_L(l_ce) * f_V(v_ce) + f_PE(l_ce)) * cos(phi) - fiso * f_SE(l_t) = 0

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import math

import equinox as eqx
from equinox import Module, field
from jaxtyping import Array, ArrayLike

from musculotendon.activation import FirstOrderActivationDynamics
from musculotendon.curves import (
    ActiveForceLengthCurve,
    FiberForceLengthCurve,
    ForceVelocityCurve,
    TendonForceLengthCurve,
)
from musculotendon.errors import ConfigurationError
from musculotendon.pennation import FixedWidthPennationModel


# ============================================================================
# Muscle Parameters
# ============================================================================


class MuscleParams(Module):
    """Physical parameters for a Hill-type muscle.

    Attributes:
        max_isometric_force: Peak force at optimal length [N].
        optimal_fiber_length: Length at which peak force is produced [m].
        tendon_slack_length: Unstretched tendon length [m].
        pennation_angle_at_optimal: Fiber angle relative to tendon at optimal
            fiber length [rad].
        max_contraction_velocity: Maximum shortening velocity [optimal lengths/s].
    """

    max_isometric_force: float
    optimal_fiber_length: float
    tendon_slack_length: float
    pennation_angle_at_optimal: float = 0.0
    max_contraction_velocity: float = 10.0

    def __check_init__(self):
        for name in (
            "max_isometric_force",
            "optimal_fiber_length",
            "tendon_slack_length",
            "max_contraction_velocity",
        ):
            if not getattr(self, name) > 0.0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")

    @property
    def max_fiber_velocity(self) -> float:
        """Maximum contraction velocity [m/s]."""
        return self.max_contraction_velocity * self.optimal_fiber_length


class MuscleCurves(Module):
    """The four characteristic curves of the muscle."""

    active_force_length: ActiveForceLengthCurve = field(default_factory=ActiveForceLengthCurve)
    force_velocity: ForceVelocityCurve = field(default_factory=ForceVelocityCurve)
    fiber_force_length: FiberForceLengthCurve = field(default_factory=FiberForceLengthCurve)
    tendon_force_length: TendonForceLengthCurve = field(default_factory=TendonForceLengthCurve)


class MuscleModel(Module):
    """Parameters plus collaborators: everything the solvers need, immutable.

    Attributes:
        params: Physical muscle parameters.
        curves: Characteristic curves.
        pennation: Pennation geometry, built from the same optimal fiber
            length and pennation angle as `params`.
        activation_dynamics: Activation dynamics with its lower bound.
    """

    params: MuscleParams
    curves: MuscleCurves
    pennation: FixedWidthPennationModel
    activation_dynamics: FirstOrderActivationDynamics

    def __check_init__(self):
        if not (
            math.isclose(self.pennation.optimal_fiber_length, self.params.optimal_fiber_length)
            and math.isclose(
                self.pennation.pennation_angle_at_optimal,
                self.params.pennation_angle_at_optimal,
            )
        ):
            raise ConfigurationError(
                "Pennation geometry does not match the muscle's optimal fiber length "
                "and pennation angle"
            )

    @classmethod
    def build(
        cls,
        params: MuscleParams,
        curves: MuscleCurves | None = None,
        activation_dynamics: FirstOrderActivationDynamics | None = None,
        maximum_pennation_angle: float = math.acos(0.1),
    ) -> "MuscleModel":
        """Assemble a model, deriving the pennation geometry from `params`."""
        return cls(
            params=params,
            curves=curves if curves is not None else MuscleCurves(),
            pennation=FixedWidthPennationModel(
                optimal_fiber_length=params.optimal_fiber_length,
                pennation_angle_at_optimal=params.pennation_angle_at_optimal,
                maximum_pennation_angle=maximum_pennation_angle,
            ),
            activation_dynamics=(
                activation_dynamics
                if activation_dynamics is not None
                else FirstOrderActivationDynamics()
            ),
        )

    def with_maximum_pennation_angle(self, angle: float) -> "MuscleModel":
        pennation = FixedWidthPennationModel(
            optimal_fiber_length=self.params.optimal_fiber_length,
            pennation_angle_at_optimal=self.params.pennation_angle_at_optimal,
            maximum_pennation_angle=angle,
        )
        return eqx.tree_at(lambda m: m.pennation, self, pennation)

    def norm_fiber_length(self, fiber_length: ArrayLike) -> Array:
        return fiber_length / self.params.optimal_fiber_length

    def norm_fiber_velocity(self, fiber_velocity: ArrayLike) -> Array:
        return fiber_velocity / self.params.max_fiber_velocity

    def norm_tendon_length(self, tendon_length: ArrayLike) -> Array:
        return tendon_length / self.params.tendon_slack_length


# ============================================================================
# Force and stiffness relations
# ============================================================================


def calc_fiber_force(fiso, activation, fal, fv, fpe):
    """Force generated by the fiber, in the direction of the fiber [N]."""
    return fiso * (activation * fal * fv + fpe)


def calc_active_fiber_force(fiso, activation, fal, fv):
    """Force generated by the contractile element alone [N]."""
    return fiso * activation * fal * fv


def calc_fiber_stiffness(fiso, activation, dfal_dlce_n, fv, dfpe_dlce_n, optimal_fiber_length):
    """Partial derivative of fiber force with respect to fiber length [N/m].

    Velocity is held fixed; derivatives of the curves are taken with respect to
    normalized fiber length.
    """
    return fiso * (activation * dfal_dlce_n * fv + dfpe_dlce_n) / optimal_fiber_length


def calc_d_fiber_force_at_d_fiber_length(
    d_fiber_force_d_fiber_length, fiber_force, sin_phi, cos_phi, fiber_length
):
    """Partial derivative of ``Fm cos(phi)`` with respect to fiber length [N/m].

    Chain rule through the pennation angle, with ``dphi/dl = -tan(phi) / l``.
    """
    return (
        d_fiber_force_d_fiber_length * cos_phi
        + fiber_force * sin_phi**2 / (cos_phi * fiber_length)
    )


def calc_d_fiber_force_at_d_fiber_length_at(d_fiber_force_at_d_fiber_length, cos_phi):
    """Stiffness of the fiber in the direction of the tendon [N/m].

    Uses ``dl / d(l cos(phi)) = cos(phi)``.
    """
    return d_fiber_force_at_d_fiber_length * cos_phi


def calc_d_tendon_force_d_fiber_length(tendon_stiffness, cos_phi):
    """Partial derivative of tendon force with respect to fiber length [N/m].

    Tendon length is ``path_length - l cos(phi)``, whose derivative with
    respect to ``l`` is ``-1 / cos(phi)``.
    """
    return -tendon_stiffness / cos_phi
