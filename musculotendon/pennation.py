"""Fixed-width pennation geometry.

The muscle belly keeps a constant height as the fibers change length:

    h = optimal_fiber_length * sin(pennation_angle_at_optimal)
    sin(phi) = h / fiber_length
    fiber_length_along_tendon = fiber_length * cos(phi) = sqrt(fiber_length**2 - h**2)

The geometry refuses fiber lengths below the length at which the pennation
angle reaches `maximum_pennation_angle`, which keeps ``cos(phi)`` away from 0
for any ceiling below pi/2.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import logging
import math

from equinox import Module
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.errors import DomainError


logger = logging.getLogger(__name__)


# Smallest fiber length admitted for an unpennated muscle [m].
_MIN_FIBER_LENGTH = 1e-9
# Relative slack on the domain checks, absorbing round-off from projections.
_DOMAIN_RTOL = 1e-9


class FixedWidthPennationModel(Module):
    """Pennation geometry under the constant-thickness assumption.

    Methods named after physical quantities validate their inputs and raise
    `DomainError` outside the domain. They expect concrete (non-traced)
    values. The ``calc_*`` methods are unchecked and safe to trace.

    Attributes:
        optimal_fiber_length: Fiber length at which peak active force is produced [m].
        pennation_angle_at_optimal: Pennation angle at optimal fiber length [rad].
        maximum_pennation_angle: Ceiling on the pennation angle [rad].
    """

    optimal_fiber_length: float
    pennation_angle_at_optimal: float = 0.0
    maximum_pennation_angle: float = math.acos(0.1)

    def __check_init__(self):
        if not 0.0 <= self.pennation_angle_at_optimal < math.pi / 2:
            raise DomainError(
                f"Pennation angle at optimal length must lie in [0, pi/2), "
                f"got {self.pennation_angle_at_optimal}"
            )
        if not 0.0 < self.maximum_pennation_angle <= math.pi / 2:
            raise DomainError(
                f"Maximum pennation angle must lie in (0, pi/2], "
                f"got {self.maximum_pennation_angle}"
            )

    @property
    def height(self) -> float:
        """Constant height of the muscle belly [m]."""
        return self.optimal_fiber_length * math.sin(self.pennation_angle_at_optimal)

    @property
    def minimum_fiber_length(self) -> float:
        """Shortest fiber length admitted by the geometry [m]."""
        return max(self.height / math.sin(self.maximum_pennation_angle), _MIN_FIBER_LENGTH)

    @property
    def minimum_fiber_length_along_tendon(self) -> float:
        return self.calc_length_along_tendon(self.minimum_fiber_length).item()

    # -- unchecked, traceable ------------------------------------------------

    def calc_sin_pennation(self, fiber_length: ArrayLike) -> Array:
        return jnp.clip(self.height / jnp.asarray(fiber_length), 0.0, 1.0)

    def calc_cos_pennation(self, fiber_length: ArrayLike) -> Array:
        lce = jnp.asarray(fiber_length)
        return self.calc_length_along_tendon(lce) / lce

    def calc_length_along_tendon(self, fiber_length: ArrayLike) -> Array:
        lce = jnp.asarray(fiber_length)
        return jnp.sqrt(jnp.maximum(lce**2 - self.height**2, 0.0))

    def calc_fiber_length(self, length_along_tendon: ArrayLike) -> Array:
        lce_at = jnp.asarray(length_along_tendon)
        return jnp.sqrt(lce_at**2 + self.height**2)

    def calc_fiber_velocity_along_tendon(
        self, fiber_length: ArrayLike, fiber_velocity: ArrayLike
    ) -> Array:
        return jnp.asarray(fiber_velocity) / self.calc_cos_pennation(fiber_length)

    def calc_fiber_velocity(
        self, fiber_length: ArrayLike, velocity_along_tendon: ArrayLike
    ) -> Array:
        return jnp.asarray(velocity_along_tendon) * self.calc_cos_pennation(fiber_length)

    def calc_pennation_angular_velocity(
        self, fiber_length: ArrayLike, fiber_velocity: ArrayLike
    ) -> Array:
        dlce = jnp.asarray(fiber_velocity)
        # The sensitivity is infinite at a pennation angle of pi/2.
        return jnp.where(
            dlce == 0.0, 0.0, self.calc_d_pennation_d_fiber_length(fiber_length) * dlce
        )

    def calc_d_pennation_d_fiber_length(self, fiber_length: ArrayLike) -> Array:
        """Sensitivity of the pennation angle to fiber length, ``-tan(phi) / l``."""
        lce = jnp.asarray(fiber_length)
        sin_phi = self.calc_sin_pennation(lce)
        cos_phi = self.calc_cos_pennation(lce)
        return -sin_phi / (cos_phi * lce)

    def calc_d_length_along_tendon_d_fiber_length(self, fiber_length: ArrayLike) -> Array:
        """``d(l cos(phi)) / dl = 1 / cos(phi)``."""
        return 1.0 / self.calc_cos_pennation(fiber_length)

    # -- checked -------------------------------------------------------------

    def _check_fiber_length(self, fiber_length: ArrayLike, caller: str) -> Array:
        lce = jnp.asarray(fiber_length)
        floor = self.minimum_fiber_length * (1.0 - _DOMAIN_RTOL)
        if jnp.any(~jnp.isfinite(lce)) or jnp.any(lce < floor):
            raise DomainError(
                f"{caller}: fiber length {lce} is below the geometric minimum "
                f"{self.minimum_fiber_length} (maximum pennation angle "
                f"{self.maximum_pennation_angle} rad)"
            )
        return lce

    def pennation_angle(self, fiber_length: ArrayLike) -> Array:
        """Current pennation angle [rad]."""
        lce = self._check_fiber_length(fiber_length, "pennation_angle")
        return jnp.arcsin(self.calc_sin_pennation(lce))

    def length_along_tendon(self, fiber_length: ArrayLike) -> Array:
        """Projection of the fiber length onto the tendon line [m]."""
        lce = self._check_fiber_length(fiber_length, "length_along_tendon")
        return self.calc_length_along_tendon(lce)

    def fiber_length(self, length_along_tendon: ArrayLike) -> Array:
        """Inverse of `length_along_tendon` [m]."""
        lce_at = jnp.asarray(length_along_tendon)
        floor = self.minimum_fiber_length_along_tendon * (1.0 - _DOMAIN_RTOL)
        if jnp.any(~jnp.isfinite(lce_at)) or jnp.any(lce_at < floor):
            raise DomainError(
                f"fiber_length: length along tendon {lce_at} is below the geometric "
                f"minimum {self.minimum_fiber_length_along_tendon}"
            )
        return self.calc_fiber_length(lce_at)

    def fiber_velocity_along_tendon(
        self, fiber_length: ArrayLike, fiber_velocity: ArrayLike
    ) -> Array:
        """Projection of the fiber velocity onto the tendon line [m/s]."""
        lce = self._check_fiber_length(fiber_length, "fiber_velocity_along_tendon")
        return self.calc_fiber_velocity_along_tendon(lce, fiber_velocity)

    def fiber_velocity(
        self, fiber_length: ArrayLike, velocity_along_tendon: ArrayLike
    ) -> Array:
        """Inverse of `fiber_velocity_along_tendon` [m/s]."""
        lce = self._check_fiber_length(fiber_length, "fiber_velocity")
        return self.calc_fiber_velocity(lce, velocity_along_tendon)

    def velocity_projection(
        self, fiber_length: ArrayLike, fiber_velocity: ArrayLike
    ) -> tuple[Array, Array]:
        """Pennation angle [rad] and pennation angular velocity [rad/s]."""
        lce = self._check_fiber_length(fiber_length, "velocity_projection")
        return (
            jnp.arcsin(self.calc_sin_pennation(lce)),
            self.calc_pennation_angular_velocity(lce, fiber_velocity),
        )
