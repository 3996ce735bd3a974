"""Characteristic curves of a Hill-type musculotendon unit.

Each curve is a pure scalar function of a normalized quantity with an
analytic first derivative:

- Active force-length: sum of three Gaussians (De Groote et al. 2016)
- Force-velocity: inverse hyperbolic sine (De Groote et al. 2016), with a
  closed-form inverse
- Fiber (passive) force-length: exponential above optimal length
- Tendon force-length: exponential toe joined to a linear region (Thelen 2003)

All curves are written in `jax.numpy`, so values and derivatives can be
checked against `jax.grad` and used under `jax.jit` / `jax.jacfwd`.

Key references:
- Thelen (2003): Adjustment of muscle mechanics model parameters to simulate
  dynamic contractions in older adults
- De Groote et al. (2016): Evaluation of direct collocation optimal control
  problem formulations for solving the muscle redundancy problem
- Millard et al. (2013): Flexing computational muscle

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from abc import abstractmethod
import math

from equinox import Module
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike


# ============================================================================
# Curve interface
# ============================================================================


class AbstractCurve(Module):
    """A scalar curve with an analytic first derivative."""

    @abstractmethod
    def value(self, x: ArrayLike) -> Array:
        """Evaluate the curve."""
        ...

    @abstractmethod
    def derivative(self, x: ArrayLike) -> Array:
        """Evaluate the first derivative of the curve."""
        ...

    def __call__(self, x: ArrayLike) -> Array:
        return self.value(x)


# ============================================================================
# Force-Length-Velocity Curves
# ============================================================================


class ActiveForceLengthCurve(AbstractCurve):
    """Active force-length relationship for muscle fibers.

    Sum of three Gaussians whose widths grow linearly with length.

    Attributes:
        b1: Amplitudes of the three Gaussians.
        b2: Centers of the three Gaussians (normalized length).
        b3: Width offsets.
        b4: Width slopes.
        minimum_norm_length: Shortest normalized fiber length at which the
            fiber is considered able to produce active force. Fiber length is
            clamped to this value (times optimal length) by the muscle. May be
            zero for rigid tendon or reduced fiber dynamics.
    """

    b1: tuple[float, float, float] = (0.815, 0.433, 0.100)
    b2: tuple[float, float, float] = (1.055, 0.717, 1.000)
    b3: tuple[float, float, float] = (0.162, -0.030, 0.354)
    b4: tuple[float, float, float] = (0.063, 0.200, 0.000)
    minimum_norm_length: float = 0.4441

    def value(self, norm_length: ArrayLike) -> Array:
        """Compute active force-length multiplier.

        Args:
            norm_length: Fiber length / optimal fiber length.

        Returns:
            Force multiplier, close to 1 at optimal length.
        """
        lce = jnp.asarray(norm_length)
        total = jnp.zeros_like(lce, dtype=jnp.result_type(lce, float))
        for b1, b2, b3, b4 in zip(self.b1, self.b2, self.b3, self.b4):
            width = b3 + b4 * lce
            total = total + b1 * jnp.exp(-0.5 * (lce - b2) ** 2 / width**2)
        return total

    def derivative(self, norm_length: ArrayLike) -> Array:
        """Derivative of the multiplier with respect to normalized length."""
        lce = jnp.asarray(norm_length)
        total = jnp.zeros_like(lce, dtype=jnp.result_type(lce, float))
        for b1, b2, b3, b4 in zip(self.b1, self.b2, self.b3, self.b4):
            width = b3 + b4 * lce
            offset = lce - b2
            gaussian = b1 * jnp.exp(-0.5 * offset**2 / width**2)
            total = total + gaussian * (-offset / width**2 + b4 * offset**2 / width**3)
        return total


class ForceVelocityCurve(AbstractCurve):
    """Force-velocity relationship for muscle fibers.

    ``fv(v) = d1 * asinh(d2 * v + d3) + d4`` on ``-1 <= v <= 1``, continued
    linearly (with matching slope) beyond. The result is strictly increasing
    with finite, non-zero slope everywhere, so `inverse` is total.

    Negative velocity is shortening (concentric), positive is lengthening.

    Attributes:
        d1, d2, d3, d4: Shape coefficients.
    """

    d1: float = -0.318
    d2: float = -8.149
    d3: float = -0.374
    d4: float = 0.886

    def _core(self, v):
        return self.d1 * jnp.arcsinh(self.d2 * v + self.d3) + self.d4

    def _core_slope(self, v):
        return self.d1 * self.d2 / jnp.sqrt((self.d2 * v + self.d3) ** 2 + 1.0)

    @property
    def concentric_limit(self) -> float:
        """Multiplier at maximum shortening velocity (v = -1)."""
        return self.d1 * math.asinh(-self.d2 + self.d3) + self.d4

    @property
    def eccentric_limit(self) -> float:
        """Multiplier at v = +1."""
        return self.d1 * math.asinh(self.d2 + self.d3) + self.d4

    def value(self, norm_velocity: ArrayLike) -> Array:
        """Compute force-velocity multiplier.

        Args:
            norm_velocity: Fiber velocity / (max contraction velocity * optimal
                fiber length).

        Returns:
            Force multiplier, ~1 when isometric.
        """
        v = jnp.asarray(norm_velocity)
        v_core = jnp.clip(v, -1.0, 1.0)
        slope_lo = self._core_slope(-1.0)
        slope_hi = self._core_slope(1.0)
        return jnp.where(
            v < -1.0,
            self.concentric_limit + slope_lo * (v + 1.0),
            jnp.where(
                v > 1.0,
                self.eccentric_limit + slope_hi * (v - 1.0),
                self._core(v_core),
            ),
        )

    def derivative(self, norm_velocity: ArrayLike) -> Array:
        v = jnp.asarray(norm_velocity)
        return self._core_slope(jnp.clip(v, -1.0, 1.0))

    def inverse(self, fv: ArrayLike) -> Array:
        """Normalized fiber velocity producing the multiplier `fv`.

        Defined for every finite `fv`.
        """
        fv = jnp.asarray(fv)
        lo, hi = self.concentric_limit, self.eccentric_limit
        fv_core = jnp.clip(fv, lo, hi)
        v_core = (jnp.sinh((fv_core - self.d4) / self.d1) - self.d3) / self.d2
        return jnp.where(
            fv < lo,
            -1.0 + (fv - lo) / self._core_slope(-1.0),
            jnp.where(
                fv > hi,
                1.0 + (fv - hi) / self._core_slope(1.0),
                v_core,
            ),
        )


class FiberForceLengthCurve(AbstractCurve):
    """Passive force-length relationship for muscle fibers.

    Models the passive elastic force from stretched muscle fibers
    (e.g., titin, connective tissue). Zero below optimal length.

    Attributes:
        strain_at_one_norm_force: Strain at which passive force = max isometric.
        stiffness: Exponential stiffness parameter.
    """

    strain_at_one_norm_force: float = 0.6
    stiffness: float = 4.0

    def value(self, norm_length: ArrayLike) -> Array:
        strain = jnp.asarray(norm_length) - 1.0
        return jnp.where(
            strain > 0,
            (jnp.exp(self.stiffness * strain / self.strain_at_one_norm_force) - 1.0)
            / (math.exp(self.stiffness) - 1.0),
            0.0,
        )

    def derivative(self, norm_length: ArrayLike) -> Array:
        strain = jnp.asarray(norm_length) - 1.0
        k = self.stiffness / self.strain_at_one_norm_force
        return jnp.where(
            strain > 0,
            k * jnp.exp(k * strain) / (math.exp(self.stiffness) - 1.0),
            0.0,
        )


class TendonForceLengthCurve(AbstractCurve):
    """Tendon force-length relationship.

    Exponential toe region up to `toe_strain`, then linear, with the two
    pieces joined with continuous slope. Zero below slack length.

    Attributes:
        strain_at_one_norm_force: Tendon strain at max isometric force.
        toe_force: Normalized force at the end of the toe region.
        toe_curvature: Exponential shape factor of the toe region.
    """

    strain_at_one_norm_force: float = 0.049
    toe_force: float = 0.33
    toe_curvature: float = 3.0

    @property
    def toe_strain(self) -> float:
        e3 = math.exp(self.toe_curvature)
        return 0.99 * self.strain_at_one_norm_force * e3 / (1.66 * e3 - 0.67)

    @property
    def linear_stiffness(self) -> float:
        return (1.0 - self.toe_force) / (self.strain_at_one_norm_force - self.toe_strain)

    def value(self, norm_length: ArrayLike) -> Array:
        """Compute tendon force from normalized length.

        Args:
            norm_length: Tendon length / tendon slack length.

        Returns:
            Normalized tendon force.
        """
        strain = jnp.asarray(norm_length) - 1.0
        toe_strain = self.toe_strain
        toe_scale = self.toe_force / (math.exp(self.toe_curvature) - 1.0)
        toe = toe_scale * (
            jnp.exp(self.toe_curvature * jnp.minimum(strain, toe_strain) / toe_strain) - 1.0
        )
        linear = self.linear_stiffness * (strain - toe_strain) + self.toe_force
        return jnp.where(strain <= 0, 0.0, jnp.where(strain <= toe_strain, toe, linear))

    def derivative(self, norm_length: ArrayLike) -> Array:
        strain = jnp.asarray(norm_length) - 1.0
        toe_strain = self.toe_strain
        k = self.toe_curvature / toe_strain
        toe_scale = self.toe_force / (math.exp(self.toe_curvature) - 1.0)
        toe = toe_scale * k * jnp.exp(k * jnp.minimum(strain, toe_strain))
        return jnp.where(
            strain <= 0,
            0.0,
            jnp.where(strain <= toe_strain, toe, self.linear_stiffness),
        )
