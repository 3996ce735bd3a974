"""Tests for the state-derivative provider.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import math

import pytest
import jax
import jax.numpy as jnp

from musculotendon.bounds import compute_bounds
from musculotendon.derivatives import (
    calc_fiber_velocity_from_equilibrium,
    compute_state_derivatives,
)
from musculotendon.equilibrium import (
    SolverSettings,
    SolverStatus,
    calc_equilibrium_terms,
    compute_initial_fiber_equilibrium,
)
from musculotendon.model import MuscleModel, MuscleParams
from musculotendon.modes import classify
from musculotendon.muscle_state import MuscleKinematicState


jax.config.update("jax_enable_x64", True)


FISO = 1000.0
LOPT = 0.1
SLACK = 0.2


def _model(pennation_angle=0.1):
    return MuscleModel.build(
        MuscleParams(
            max_isometric_force=FISO,
            optimal_fiber_length=LOPT,
            tendon_slack_length=SLACK,
            pennation_angle_at_optimal=pennation_angle,
        )
    )


def _bounds(model, mode):
    return compute_bounds(
        model.curves, model.pennation, model.activation_dynamics, mode, model.params
    )


def _state(model, activation, fiber_length, path_length, fiber_velocity=0.0):
    return MuscleKinematicState(
        activation=activation,
        fiber_length=fiber_length,
        fiber_velocity=fiber_velocity,
        pennation_angle=float(model.pennation.pennation_angle(fiber_length)),
        pennation_angular_velocity=0.0,
        path_length=path_length,
        path_velocity=0.0,
    )


class TestStateDerivatives:

    @pytest.mark.parametrize(
        "compliant, act, reduced, size",
        [
            (True, True, False, 2),
            (True, False, False, 1),
            (True, True, True, 1),
            (True, False, True, 0),
            (False, True, False, 1),
            (False, False, False, 0),
        ],
    )
    def test_shape_follows_mode(self, compliant, act, reduced, size):
        model = _model()
        mode = classify(compliant, act, reduced)
        bounds = _bounds(model, mode)
        state = _state(model, 0.3, LOPT, LOPT + 1.02 * SLACK)
        derivatives = compute_state_derivatives(model, mode, bounds, state, 0.8)
        assert derivatives.shape == (size,)
        assert jnp.all(jnp.isfinite(derivatives))

    def test_activation_rate_first(self):
        model = _model()
        mode = classify(True, True, False)
        state = _state(model, 0.3, LOPT, LOPT + 1.02 * SLACK)
        derivatives = compute_state_derivatives(model, mode, _bounds(model, mode), state, 0.8)
        assert derivatives[0] == pytest.approx(
            float(model.activation_dynamics.rate(0.8, 0.3))
        )

    def test_fiber_velocity_zero_at_equilibrium(self):
        """At a static equilibrium the inverted force-velocity relation gives v = 0."""
        model = _model()
        mode = classify(True, True, False)
        bounds = _bounds(model, mode)
        path_length = LOPT * math.cos(0.1) + 1.03 * SLACK
        solution = compute_initial_fiber_equilibrium(
            model, bounds, mode, 0.5, path_length, settings=SolverSettings()
        )
        velocity = calc_fiber_velocity_from_equilibrium(
            model, bounds, 0.5, solution.fiber_length, path_length
        )
        assert velocity == pytest.approx(0.0, abs=1e-6)

    def test_fiber_velocity_satisfies_equilibrium(self):
        model = _model()
        bounds = _bounds(model, classify(True, True, False))
        path_length = LOPT * math.cos(0.1) + 1.03 * SLACK
        fiber_length = 0.097
        velocity = calc_fiber_velocity_from_equilibrium(model, bounds, 0.5, fiber_length, path_length)
        terms = calc_equilibrium_terms(model, 0.5, fiber_length, velocity, path_length)
        assert float(terms.fiber_force_along_tendon) == pytest.approx(
            float(terms.tendon_force), rel=1e-9
        )

    def test_negative_rate_zeroed_at_floor(self):
        model = _model()
        mode = classify(True, False, False)
        bounds = _bounds(model, mode)
        # Path so short the tendon is slack: the fiber would shorten.
        path_length = SLACK + 0.5 * bounds.min_fiber_length_along_tendon
        velocity = calc_fiber_velocity_from_equilibrium(
            model, bounds, 0.5, bounds.min_fiber_length, path_length
        )
        assert velocity == 0.0


class TestNearSingularities:
    """Minimum activation with the pennation angle near its ceiling."""

    @pytest.fixture
    def model(self):
        return _model(pennation_angle=0.5)

    @pytest.fixture
    def mode(self):
        return classify(True, True, False)

    @pytest.fixture
    def bounds(self, model, mode):
        return _bounds(model, mode)

    def test_floor_set_by_pennation_ceiling(self, model, bounds):
        assert bounds.min_fiber_length == pytest.approx(model.pennation.minimum_fiber_length)

    def test_initial_equilibrium_finite(self, model, mode, bounds):
        path_length = SLACK + 1.05 * bounds.min_fiber_length_along_tendon
        solution = compute_initial_fiber_equilibrium(
            model, bounds, mode, bounds.min_activation, path_length, settings=SolverSettings()
        )
        assert solution.status in (
            SolverStatus.CONVERGED,
            SolverStatus.CLAMPED_AT_MINIMUM_LENGTH,
        )
        assert math.isfinite(solution.fiber_length)
        assert math.isfinite(solution.tendon_force)

    @pytest.mark.parametrize("tendon_strain", [0.0, 0.01, 0.05])
    def test_fiber_rate_finite_at_floor(self, model, mode, bounds, tendon_strain):
        path_length = (1.0 + tendon_strain) * SLACK + bounds.min_fiber_length_along_tendon
        state = _state(model, bounds.min_activation, bounds.min_fiber_length, path_length)
        derivatives = compute_state_derivatives(model, mode, bounds, state, 0.0)
        assert jnp.all(jnp.isfinite(derivatives))
        if tendon_strain == 0.0:
            # Slack tendon: the fiber would shorten, but is held at the floor.
            assert derivatives[1] == 0.0

    def test_zero_activation_is_floored(self, model, bounds):
        path_length = 1.02 * SLACK + bounds.min_fiber_length_along_tendon
        velocity = calc_fiber_velocity_from_equilibrium(
            model, bounds, 0.0, 1.2 * bounds.min_fiber_length, path_length
        )
        assert math.isfinite(velocity)
