"""Equilibrium solvers for fiber length and velocity.

Two solves are provided:

- `compute_initial_fiber_equilibrium`: Newton iteration over fiber length,
  used once at the start of a simulation. The path velocity is shared between
  fiber and tendon in proportion to their compliances.
- `estimate_elastic_tendon_fiber_state`: 2x2 Newton iteration over fiber
  length and velocity for reduced fiber dynamics, solving force equilibrium
  and its time derivative under zero fiber acceleration. Seeded from a
  `SolverHint`, so that consecutive solves converge in few iterations.

Residuals are normalized by the maximum isometric force. Residual
evaluations are compiled with `equinox.filter_jit`; the iteration itself runs
eagerly, so its control flow is plain Python.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from enum import Enum
import logging
import math
from typing import Optional

import equinox as eqx
from equinox import Module
import jax
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.bounds import Bounds, clamp_fiber_length
from musculotendon.config import load_config
from musculotendon.errors import ConfigurationError, EquilibriumConvergenceError
from musculotendon.model import (
    MuscleModel,
    calc_d_fiber_force_at_d_fiber_length,
    calc_d_fiber_force_at_d_fiber_length_at,
    calc_d_tendon_force_d_fiber_length,
    calc_fiber_force,
    calc_fiber_stiffness,
)
from musculotendon.modes import FiberDynamics, SimulationMode


logger = logging.getLogger(__name__)


# A 2x2 system counts as singular when its determinant is this small relative
# to the products it is formed from.
_SINGULAR_RTOL = 1e-13
# Halvings of a Newton step tried before it is accepted without decrease.
_MAX_BACKTRACKS = 8


class SolverStatus(Enum):
    CONVERGED = "converged"
    CLAMPED_AT_MINIMUM_LENGTH = "clamped_at_minimum_length"
    DIVERGED = "diverged"


class SolverSettings(Module):
    """Settings shared by the Newton solvers.

    Attributes:
        tolerance: Convergence threshold on the normalized residual norm.
        max_iterations: Upper bound on Newton iterations per solve.
        max_step_fraction: Largest fiber length step, as a fraction of the
            optimal fiber length.
        divergence_patience: Number of iterations the residual norm may fail
            to improve on its best value so far before the solve is declared
            diverged.
    """

    tolerance: float = 1e-8
    max_iterations: int = 100
    max_step_fraction: float = 0.1
    divergence_patience: int = 2

    def __check_init__(self):
        if not self.tolerance > 0.0:
            raise ConfigurationError(f"Solver tolerance must be positive, got {self.tolerance}")
        if self.max_iterations < 0:
            raise ConfigurationError(
                f"Maximum iterations must be non-negative, got {self.max_iterations}"
            )
        if not self.max_step_fraction > 0.0:
            raise ConfigurationError(
                f"Maximum step fraction must be positive, got {self.max_step_fraction}"
            )
        if self.divergence_patience < 1:
            raise ConfigurationError(
                f"Divergence patience must be at least 1, got {self.divergence_patience}"
            )

    @classmethod
    def from_config(cls, name: str = "default") -> "SolverSettings":
        """Build settings from the `solver` section of a configuration file."""
        config = load_config(name).get("solver", {})
        defaults = cls()
        return cls(
            tolerance=float(config.get("tolerance", defaults.tolerance)),
            max_iterations=int(config.get("max_iterations", defaults.max_iterations)),
            max_step_fraction=float(
                config.get("max_step_fraction", defaults.max_step_fraction)
            ),
            divergence_patience=int(
                config.get("divergence_patience", defaults.divergence_patience)
            ),
        )


class SolverHint(Module):
    """Last converged fiber state, used to seed the next solve."""

    fiber_length: float
    fiber_velocity: float = 0.0


class EquilibriumSolution(Module):
    """Result of an equilibrium solve.

    Attributes:
        status: How the solve terminated.
        fiber_length: Fiber length [m].
        fiber_velocity: Fiber velocity [m/s].
        tendon_force: Tendon force at the solution [N].
        residual: Normalized residual norm at the solution.
        iterations: Number of Newton iterations performed.
    """

    status: SolverStatus
    fiber_length: float
    fiber_velocity: float
    tendon_force: float
    residual: float
    iterations: int

    @property
    def clamped(self) -> bool:
        return self.status is SolverStatus.CLAMPED_AT_MINIMUM_LENGTH

    @property
    def hint(self) -> SolverHint:
        return SolverHint(fiber_length=self.fiber_length, fiber_velocity=self.fiber_velocity)


# ============================================================================
# Residual terms
# ============================================================================


class EquilibriumTerms(Module):
    """Forces and their partial derivatives entering the equilibrium residuals."""

    fiber_force_along_tendon: Array
    tendon_force: Array
    d_fiber_force_at_d_fiber_length: Array
    d_fiber_force_at_d_activation: Array
    fiber_stiffness_along_tendon: Array
    tendon_stiffness: Array
    d_tendon_force_d_fiber_length: Array


def calc_equilibrium_terms(
    model: MuscleModel,
    activation: ArrayLike,
    fiber_length: ArrayLike,
    fiber_velocity: ArrayLike,
    path_length: ArrayLike,
) -> EquilibriumTerms:
    """Evaluate forces and stiffnesses at a candidate fiber state.

    Partial derivatives with respect to fiber length hold fiber velocity and
    path length fixed.
    """
    params, curves, pennation = model.params, model.curves, model.pennation
    fiso = params.max_isometric_force

    lce = jnp.asarray(fiber_length)
    sin_phi = pennation.calc_sin_pennation(lce)
    cos_phi = pennation.calc_cos_pennation(lce)
    tendon_length = path_length - lce * cos_phi

    norm_length = model.norm_fiber_length(lce)
    norm_velocity = model.norm_fiber_velocity(fiber_velocity)
    norm_tendon_length = model.norm_tendon_length(tendon_length)

    fal = curves.active_force_length.value(norm_length)
    fpe = curves.fiber_force_length.value(norm_length)
    fv = curves.force_velocity.value(norm_velocity)
    fse = curves.tendon_force_length.value(norm_tendon_length)

    fiber_force = calc_fiber_force(fiso, activation, fal, fv, fpe)
    fiber_stiffness = calc_fiber_stiffness(
        fiso,
        activation,
        curves.active_force_length.derivative(norm_length),
        fv,
        curves.fiber_force_length.derivative(norm_length),
        params.optimal_fiber_length,
    )
    d_fiber_force_at = calc_d_fiber_force_at_d_fiber_length(
        fiber_stiffness, fiber_force, sin_phi, cos_phi, lce
    )
    tendon_stiffness = (
        fiso
        * curves.tendon_force_length.derivative(norm_tendon_length)
        / params.tendon_slack_length
    )

    return EquilibriumTerms(
        fiber_force_along_tendon=fiber_force * cos_phi,
        tendon_force=fiso * fse,
        d_fiber_force_at_d_fiber_length=d_fiber_force_at,
        d_fiber_force_at_d_activation=fiso * fal * fv * cos_phi,
        fiber_stiffness_along_tendon=calc_d_fiber_force_at_d_fiber_length_at(
            d_fiber_force_at, cos_phi
        ),
        tendon_stiffness=tendon_stiffness,
        d_tendon_force_d_fiber_length=calc_d_tendon_force_d_fiber_length(
            tendon_stiffness, cos_phi
        ),
    )


def calc_reduced_residual(
    model: MuscleModel,
    x: Array,
    activation: ArrayLike,
    activation_rate: ArrayLike,
    path_length: ArrayLike,
    path_velocity: ArrayLike,
) -> Array:
    """Residuals of the reduced fiber dynamics at ``x = (fiber_length, fiber_velocity)``.

    The first entry is force equilibrium. The second is its time derivative
    with zero fiber acceleration, normalized additionally by the maximum
    contraction velocity so that both entries are dimensionless.
    """
    fiber_length, fiber_velocity = x[0], x[1]
    fiso = model.params.max_isometric_force

    terms = calc_equilibrium_terms(model, activation, fiber_length, fiber_velocity, path_length)
    tendon_velocity = path_velocity - model.pennation.calc_fiber_velocity_along_tendon(
        fiber_length, fiber_velocity
    )
    force_rate_error = (
        terms.d_fiber_force_at_d_fiber_length * fiber_velocity
        + terms.d_fiber_force_at_d_activation * activation_rate
        - terms.tendon_stiffness * tendon_velocity
    )

    return jnp.stack([
        (terms.fiber_force_along_tendon - terms.tendon_force) / fiso,
        force_rate_error / (fiso * model.params.max_contraction_velocity),
    ])


@eqx.filter_jit
def _equilibrium_terms(model, activation, fiber_length, fiber_velocity, path_length):
    return calc_equilibrium_terms(model, activation, fiber_length, fiber_velocity, path_length)


@eqx.filter_jit
def _reduced_residual_and_jacobian(
    model, x, activation, activation_rate, path_length, path_velocity
):
    def residual(x):
        return calc_reduced_residual(
            model, x, activation, activation_rate, path_length, path_velocity
        )

    return residual(x), jax.jacfwd(residual)(x)


def _evaluate_terms(model, activation, fiber_length, fiber_velocity, path_length):
    # Wrapped as arrays so that they are traced rather than static.
    return _equilibrium_terms(
        model,
        jnp.asarray(activation),
        jnp.asarray(fiber_length),
        jnp.asarray(fiber_velocity),
        jnp.asarray(path_length),
    )


def _solve_2x2(jacobian: Array, rhs: tuple[float, float]) -> Optional[tuple[float, float]]:
    """Solve ``jacobian @ x = rhs`` by Cramer's rule; `None` if singular."""
    a, b, c, d = (float(v) for v in jnp.ravel(jacobian))
    det = a * d - b * c
    scale = max(abs(a * d), abs(b * c))
    if not math.isfinite(det) or scale == 0.0 or abs(det) <= _SINGULAR_RTOL * scale:
        return None
    r0, r1 = rhs
    return (d * r0 - b * r1) / det, (a * r1 - c * r0) / det


# ============================================================================
# Rigid tendon
# ============================================================================


def calc_rigid_tendon_fiber_state(
    model: MuscleModel,
    bounds: Bounds,
    path_length: float,
    path_velocity: float,
) -> tuple[float, float, bool]:
    """Fiber length and velocity when the tendon is inextensible.

    The tendon stays at its slack length, so the fiber takes up the rest of
    the path. Below the floor the fiber is clamped and may not shorten.

    Returns:
        Fiber length [m], fiber velocity [m/s], and whether the fiber is clamped.
    """
    pennation = model.pennation
    length_along_tendon = path_length - model.params.tendon_slack_length
    clamped = length_along_tendon <= bounds.min_fiber_length_along_tendon
    if clamped:
        fiber_length = bounds.min_fiber_length
    else:
        fiber_length = float(
            clamp_fiber_length(bounds, pennation.fiber_length(length_along_tendon))
        )
    fiber_velocity = float(pennation.fiber_velocity(fiber_length, path_velocity))
    if clamped and fiber_velocity < 0.0:
        fiber_velocity = 0.0
    return fiber_length, fiber_velocity, clamped


def _rigid_tendon_equilibrium(model, bounds, activation, path_length, path_velocity):
    fiber_length, fiber_velocity, clamped = calc_rigid_tendon_fiber_state(
        model, bounds, path_length, path_velocity
    )
    terms = _evaluate_terms(model, activation, fiber_length, fiber_velocity, path_length)
    return EquilibriumSolution(
        status=(
            SolverStatus.CLAMPED_AT_MINIMUM_LENGTH if clamped else SolverStatus.CONVERGED
        ),
        fiber_length=fiber_length,
        fiber_velocity=fiber_velocity,
        tendon_force=float(terms.fiber_force_along_tendon),
        residual=0.0,
        iterations=0,
    )


# ============================================================================
# Elastic tendon
# ============================================================================


def _is_tendon_slack_at_floor(model: MuscleModel, bounds: Bounds, path_length: float) -> bool:
    """Whether the path is too short to stretch the tendon at any admissible fiber length."""
    return (
        path_length - model.params.tendon_slack_length
        <= bounds.min_fiber_length_along_tendon
    )


def _clamped_solution(model, bounds, activation, path_length, fiber_velocity, iterations):
    terms = _evaluate_terms(
        model, activation, bounds.min_fiber_length, fiber_velocity, path_length
    )
    return EquilibriumSolution(
        status=SolverStatus.CLAMPED_AT_MINIMUM_LENGTH,
        fiber_length=bounds.min_fiber_length,
        fiber_velocity=fiber_velocity,
        tendon_force=float(terms.tendon_force),
        residual=abs(
            float(terms.fiber_force_along_tendon - terms.tendon_force)
            / model.params.max_isometric_force
        ),
        iterations=iterations,
    )


def _elastic_tendon_equilibrium(
    model, bounds, activation, path_length, path_velocity, settings, name
):
    params, pennation = model.params, model.pennation
    fiso = params.max_isometric_force
    max_step = settings.max_step_fraction * params.optimal_fiber_length

    if settings.max_iterations > 0 and _is_tendon_slack_at_floor(model, bounds, path_length):
        logger.warning(
            f"{name}: initial equilibrium clamped at minimum fiber length "
            f"{bounds.min_fiber_length} (path length {path_length} leaves the tendon slack)"
        )
        return _clamped_solution(model, bounds, activation, path_length, 0.0, 0)

    # Start with the tendon slightly stretched.
    length_along_tendon = max(
        path_length - 1.01 * params.tendon_slack_length,
        bounds.min_fiber_length_along_tendon,
    )
    fiber_length = float(
        clamp_fiber_length(bounds, pennation.calc_fiber_length(length_along_tendon))
    )
    fiber_velocity = float(pennation.calc_fiber_velocity(fiber_length, path_velocity))

    residual = float("nan")
    for iteration in range(settings.max_iterations):
        terms = _evaluate_terms(model, activation, fiber_length, fiber_velocity, path_length)
        force_error = float(terms.fiber_force_along_tendon - terms.tendon_force)
        residual = abs(force_error) / fiso
        if residual < settings.tolerance:
            return EquilibriumSolution(
                status=SolverStatus.CONVERGED,
                fiber_length=fiber_length,
                fiber_velocity=fiber_velocity,
                tendon_force=float(terms.tendon_force),
                residual=residual,
                iterations=iteration,
            )

        slope = float(terms.d_fiber_force_at_d_fiber_length - terms.d_tendon_force_d_fiber_length)
        if math.isfinite(slope) and slope > 0.0:
            step = -force_error / slope
        else:
            step = -math.copysign(max_step, force_error)
        step = min(max(step, -max_step), max_step)

        new_fiber_length = fiber_length + step
        if new_fiber_length <= bounds.min_fiber_length:
            if fiber_length <= bounds.min_fiber_length:
                logger.warning(
                    f"{name}: initial equilibrium clamped at minimum fiber length "
                    f"{bounds.min_fiber_length} (residual {residual:.3g})"
                )
                return _clamped_solution(
                    model, bounds, activation, path_length, 0.0, iteration + 1
                )
            new_fiber_length = bounds.min_fiber_length
        fiber_length = new_fiber_length

        # Springs in series: the stiffer element takes the smaller share of
        # the path velocity.
        fiber_stiffness = float(terms.fiber_stiffness_along_tendon)
        tendon_stiffness = float(terms.tendon_stiffness)
        if fiber_stiffness > 0.0 and tendon_stiffness > 0.0:
            velocity_along_tendon = (
                path_velocity * tendon_stiffness / (fiber_stiffness + tendon_stiffness)
            )
        else:
            velocity_along_tendon = path_velocity
        fiber_velocity = float(pennation.calc_fiber_velocity(fiber_length, velocity_along_tendon))

    raise EquilibriumConvergenceError(
        f"{name}: initial fiber equilibrium did not converge within "
        f"{settings.max_iterations} iterations (residual {residual:.3g}, "
        f"tolerance {settings.tolerance:.3g})",
        status=SolverStatus.DIVERGED,
        iterations=settings.max_iterations,
        residual=residual,
        fiber_length=fiber_length,
        fiber_velocity=fiber_velocity,
    )


def compute_initial_fiber_equilibrium(
    model: MuscleModel,
    bounds: Bounds,
    mode: SimulationMode,
    activation: float,
    path_length: float,
    path_velocity: float = 0.0,
    settings: Optional[SolverSettings] = None,
    name: str = "muscle",
) -> EquilibriumSolution:
    """Find the fiber state at which fiber and tendon forces balance.

    Arguments:
        model: The muscle model.
        bounds: Bounds computed for `model` in `mode`.
        mode: The simulation mode.
        activation: Muscle activation, already clamped to its bounds.
        path_length: Length of the musculotendon path [m].
        path_velocity: Lengthening speed of the path [m/s].
        settings: Solver settings; loaded from configuration if omitted.
        name: Name of the muscle, used in messages.

    Raises:
        EquilibriumConvergenceError: If the iteration does not converge within
            `settings.max_iterations`.
    """
    if settings is None:
        settings = SolverSettings.from_config()
    path_length, path_velocity = float(path_length), float(path_velocity)

    match mode.fiber:
        case FiberDynamics.RIGID_TENDON:
            return _rigid_tendon_equilibrium(
                model, bounds, activation, path_length, path_velocity
            )
        case FiberDynamics.ELASTIC_FULL | FiberDynamics.ELASTIC_REDUCED:
            return _elastic_tendon_equilibrium(
                model, bounds, activation, path_length, path_velocity, settings, name
            )


def estimate_elastic_tendon_fiber_state(
    model: MuscleModel,
    bounds: Bounds,
    activation: float,
    path_length: float,
    path_velocity: float,
    hint: SolverHint,
    settings: SolverSettings,
    activation_rate: float = 0.0,
    max_iterations: Optional[int] = None,
    name: str = "muscle",
) -> EquilibriumSolution:
    """Solve the reduced fiber dynamics for fiber length and velocity.

    Arguments:
        model: The muscle model.
        bounds: Bounds computed for `model`.
        activation: Muscle activation, already clamped to its bounds.
        path_length: Length of the musculotendon path [m].
        path_velocity: Lengthening speed of the path [m/s].
        hint: Fiber state from which to start iterating.
        settings: Solver settings.
        activation_rate: Time derivative of activation [1/s].
        max_iterations: Overrides `settings.max_iterations` if given.
        name: Name of the muscle, used in messages.

    Returns:
        A converged or clamped solution. The hint for the next solve is
        available as `EquilibriumSolution.hint`.

    Raises:
        EquilibriumConvergenceError: With status `SolverStatus.DIVERGED`, if
            the residual is not finite, the Jacobian is singular, the residual
            norm stops improving, or the iteration budget is exhausted.
    """
    if max_iterations is None:
        max_iterations = settings.max_iterations
    params = model.params
    path_length, path_velocity = float(path_length), float(path_velocity)

    fiber_length = float(clamp_fiber_length(bounds, hint.fiber_length))
    fiber_velocity = float(hint.fiber_velocity)

    def fail(reason: str, iterations: int, residual: float):
        return EquilibriumConvergenceError(
            f"{name}: reduced fiber dynamics diverged after {iterations} iterations: "
            f"{reason} (residual {residual:.3g}, tolerance {settings.tolerance:.3g})",
            status=SolverStatus.DIVERGED,
            iterations=iterations,
            residual=residual,
            fiber_length=fiber_length,
            fiber_velocity=fiber_velocity,
        )

    if max_iterations <= 0:
        raise fail("no iterations allowed", 0, float("nan"))

    if _is_tendon_slack_at_floor(model, bounds, path_length):
        return _clamped_solution(model, bounds, activation, path_length, 0.0, 0)

    args = tuple(
        jnp.asarray(float(v)) for v in (activation, activation_rate, path_length, path_velocity)
    )
    max_length_step = settings.max_step_fraction * params.optimal_fiber_length
    max_velocity_step = params.max_fiber_velocity

    def evaluate(length, velocity):
        residual, jacobian = _reduced_residual_and_jacobian(
            model, jnp.asarray([length, velocity]), *args
        )
        r0, r1 = (float(v) for v in residual)
        return (r0, r1), jacobian, math.hypot(r0, r1)

    best_norm = math.inf
    stalled = 0
    below_floor = 0
    (r0, r1), jacobian, residual_norm = evaluate(fiber_length, fiber_velocity)

    for iteration in range(max_iterations):
        if not math.isfinite(residual_norm):
            raise fail("residual is not finite", iteration, residual_norm)
        if residual_norm < settings.tolerance:
            return EquilibriumSolution(
                status=SolverStatus.CONVERGED,
                fiber_length=fiber_length,
                fiber_velocity=fiber_velocity,
                tendon_force=float(
                    _evaluate_terms(
                        model, activation, fiber_length, fiber_velocity, path_length
                    ).tendon_force
                ),
                residual=residual_norm,
                iterations=iteration,
            )

        # Iterates cycling without improving on the best norm also count.
        if residual_norm < best_norm:
            best_norm = residual_norm
            stalled = 0
        else:
            stalled += 1
            if stalled >= settings.divergence_patience:
                raise fail("residual norm stopped decreasing", iteration, residual_norm)

        step = _solve_2x2(jacobian, (-r0, -r1))
        if step is None:
            raise fail("Jacobian is singular", iteration, residual_norm)
        d_length, d_velocity = step

        j00, _, j10, j11 = (float(v) for v in jnp.ravel(jacobian))
        newton = math.isfinite(j00) and j00 > 0.0
        if not newton:
            # Force error falling with fiber length means a slack tendon; step
            # towards the taut-tendon root by the sign of the force error.
            d_length = -math.copysign(max_length_step, r0)
            d_velocity = 0.0
            if math.isfinite(j11) and j11 != 0.0:
                d_velocity = -(r1 + j10 * d_length) / j11

        scale = 1.0
        if abs(d_length) > max_length_step:
            scale = max_length_step / abs(d_length)
        if abs(d_velocity) * scale > max_velocity_step:
            scale = max_velocity_step / abs(d_velocity)
        d_length, d_velocity = scale * d_length, scale * d_velocity

        if fiber_length + d_length < bounds.min_fiber_length:
            below_floor += 1
            fiber_length = bounds.min_fiber_length
            fiber_velocity = max(fiber_velocity + d_velocity, 0.0)
            if below_floor >= 2:
                return _clamped_solution(
                    model, bounds, activation, path_length, fiber_velocity, iteration + 1
                )
            (r0, r1), jacobian, residual_norm = evaluate(fiber_length, fiber_velocity)
            continue
        below_floor = 0

        # Backtrack Newton steps until the residual norm decreases.
        alpha = 1.0
        trial = evaluate(fiber_length + d_length, fiber_velocity + d_velocity)
        for _ in range(_MAX_BACKTRACKS):
            if not newton or trial[2] < residual_norm:
                break
            alpha *= 0.5
            trial = evaluate(fiber_length + alpha * d_length, fiber_velocity + alpha * d_velocity)
        fiber_length += alpha * d_length
        fiber_velocity += alpha * d_velocity
        (r0, r1), jacobian, residual_norm = trial

    raise fail("iteration budget exhausted", max_iterations, residual_norm)
