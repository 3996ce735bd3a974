"""Tests for the equilibrium muscle.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import logging
import math

import pytest
import jax
import jax.numpy as jnp

from musculotendon.curves import ActiveForceLengthCurve
from musculotendon.equilibrium import SolverSettings, SolverStatus
from musculotendon.errors import ConfigurationError, DomainError
from musculotendon.model import MuscleParams
from musculotendon.muscle import EquilibriumMuscle


jax.config.update("jax_enable_x64", True)


FISO = 1000.0
LOPT = 0.1
SLACK = 0.2
PENNATION = 0.1


@pytest.fixture
def params():
    return MuscleParams(
        max_isometric_force=FISO,
        optimal_fiber_length=LOPT,
        tendon_slack_length=SLACK,
        pennation_angle_at_optimal=PENNATION,
    )


def _muscle(params, **flags):
    return EquilibriumMuscle("test_muscle", params, solver_settings=SolverSettings(), **flags)


@pytest.fixture
def path_length():
    return LOPT * math.cos(PENNATION) + 1.03 * SLACK


class TestConfiguration:

    def test_flags_locked_after_finalize(self, params):
        muscle = _muscle(params).finalize()
        with pytest.raises(ConfigurationError):
            muscle.tendon_compliant = False
        with pytest.raises(ConfigurationError):
            muscle.reduced_fiber_dynamics = True
        with pytest.raises(ConfigurationError):
            muscle.activation_dynamics_enabled = False

    def test_flags_editable_before_finalize(self, params):
        muscle = _muscle(params)
        muscle.reduced_fiber_dynamics = True
        assert muscle.state_variable_names == ("activation",)

    def test_invalid_combination_rejected(self, params):
        with pytest.raises(ConfigurationError):
            _muscle(params, tendon_compliant=False, reduced_fiber_dynamics=True)
        muscle = _muscle(params, reduced_fiber_dynamics=True)
        with pytest.raises(ConfigurationError):
            muscle.tendon_compliant = False
        assert muscle.tendon_compliant

    def test_simulating_requires_finalize(self, params, path_length):
        muscle = _muscle(params)
        with pytest.raises(ConfigurationError):
            muscle.compute_initial_fiber_equilibrium(path_length)

    def test_error_names_muscle(self, params):
        muscle = _muscle(params).finalize()
        with pytest.raises(ConfigurationError, match="test_muscle"):
            muscle.tendon_compliant = False

    def test_minimum_activation_edit(self, params):
        muscle = _muscle(params)
        with pytest.raises(ConfigurationError):
            muscle.set_minimum_activation(0.0)
        assert muscle.bounds.min_activation > 0.0

        rigid = _muscle(params, tendon_compliant=False)
        rigid.set_minimum_activation(0.0)
        assert rigid.bounds.min_activation == 0.0

    def test_pennation_ceiling_edit_recomputes_bounds(self):
        muscle = _muscle(
            MuscleParams(
                max_isometric_force=FISO,
                optimal_fiber_length=LOPT,
                tendon_slack_length=SLACK,
                pennation_angle_at_optimal=0.6,
            )
        )
        before = muscle.bounds.min_fiber_length
        muscle.set_maximum_pennation_angle(1.2)
        assert muscle.bounds.max_pennation_angle == 1.2
        assert muscle.bounds.min_fiber_length > before

    def test_domain_error_names_muscle(self, params):
        muscle = _muscle(params)
        with pytest.raises(DomainError, match="test_muscle"):
            muscle.set_maximum_pennation_angle(2.0)
        assert muscle.model.pennation.maximum_pennation_angle < math.pi / 2
        with pytest.raises(DomainError, match="test_muscle"):
            _muscle(params, maximum_pennation_angle=2.0)

    def test_curve_edit_recomputes_bounds(self, params):
        muscle = _muscle(params)
        muscle.set_active_force_length_curve(ActiveForceLengthCurve(minimum_norm_length=0.6))
        assert muscle.bounds.min_fiber_length == pytest.approx(0.6 * LOPT)


class TestStateVector:

    @pytest.mark.parametrize(
        "flags, names",
        [
            (dict(), ("activation", "fiber_length")),
            (dict(activation_dynamics_enabled=False), ("fiber_length",)),
            (dict(reduced_fiber_dynamics=True), ("activation",)),
            (dict(tendon_compliant=False, activation_dynamics_enabled=False), ()),
        ],
    )
    def test_default_state_vector_shape(self, params, flags, names):
        muscle = _muscle(params, **flags).finalize()
        assert muscle.state_variable_names == names
        assert muscle.default_state_vector().shape == (len(names),)

    def test_default_values(self, params):
        muscle = _muscle(params, default_activation=0.2, default_fiber_length=0.09)
        assert jnp.allclose(muscle.default_state_vector(), jnp.array([0.2, 0.09]))

    def test_invalid_defaults(self, params):
        muscle = _muscle(params)
        with pytest.raises(DomainError):
            muscle.default_activation = 1.5
        with pytest.raises(DomainError):
            muscle.default_fiber_length = 0.0

    def test_wrong_shape_rejected(self, params, path_length):
        muscle = _muscle(params).finalize()
        with pytest.raises(ValueError):
            muscle.state_from_vector(jnp.array([0.5]), path_length, 0.0)

    def test_set_defaults_from_state(self, params, path_length):
        muscle = _muscle(params).finalize()
        state = muscle.compute_initial_fiber_equilibrium(path_length, activation=0.4)
        muscle.set_defaults_from_state(state)
        assert muscle.default_activation == state.activation
        assert muscle.default_fiber_length == state.fiber_length


class TestRigidTendon:

    @pytest.fixture
    def muscle(self, params):
        return _muscle(params, tendon_compliant=False).finalize()

    def test_optimal_length_scenario(self, muscle):
        """Full activation at optimal length produces maximum isometric force."""
        path_length = LOPT * math.cos(PENNATION) + SLACK
        state = muscle.compute_initial_fiber_equilibrium(path_length, 0.0, activation=1.0)
        assert state.fiber_length == pytest.approx(LOPT, rel=1e-12)
        assert state.pennation_angle == pytest.approx(PENNATION)

        _, _, dynamics = muscle.evaluate(state)
        assert dynamics.fiber_force == pytest.approx(FISO, rel=5e-3)
        assert dynamics.tendon_force == dynamics.fiber_force_along_tendon
        assert muscle.compute_actuation(state) == dynamics.tendon_force

    def test_clamped_fiber_does_not_shorten(self, muscle):
        path_length = SLACK + 0.5 * muscle.bounds.min_fiber_length_along_tendon
        state = muscle.resolve_state(
            path_length, -0.2, muscle.compute_initial_fiber_equilibrium(LOPT + SLACK)
        )
        assert state.clamped
        assert state.fiber_length == muscle.bounds.min_fiber_length
        assert state.fiber_velocity == 0.0
        assert muscle.last_solve_status is SolverStatus.CLAMPED_AT_MINIMUM_LENGTH

    def test_evaluate_clamped_at_right_angle_ceiling(self):
        """A ceiling of pi/2 is allowed without fiber dynamics; evaluation still succeeds."""
        muscle = _muscle(
            MuscleParams(
                max_isometric_force=FISO,
                optimal_fiber_length=LOPT,
                tendon_slack_length=SLACK,
                pennation_angle_at_optimal=0.5,
            ),
            tendon_compliant=False,
            maximum_pennation_angle=math.pi / 2,
        ).finalize()
        initial = muscle.compute_initial_fiber_equilibrium(LOPT + SLACK)
        state = muscle.resolve_state(SLACK, 0.0, initial)
        assert state.clamped
        assert state.pennation_angle == pytest.approx(math.pi / 2)
        assert state.pennation_angular_velocity == 0.0

        length_info, velocity_info, dynamics = muscle.evaluate(state)
        assert length_info.cos_pennation == pytest.approx(0.0, abs=1e-12)
        assert velocity_info.fiber_velocity_along_tendon == 0.0
        assert velocity_info.tendon_velocity == 0.0
        assert math.isfinite(dynamics.fiber_force)
        assert dynamics.tendon_force == dynamics.fiber_force_along_tendon
        assert muscle.compute_actuation(state) == dynamics.tendon_force

    def test_inextensible_tendon_active_force(self, muscle):
        path_length = LOPT * math.cos(PENNATION) + SLACK
        force = muscle.calc_inextensible_tendon_active_fiber_force(path_length, 0.0, 1.0)
        expected = muscle.calc_active_fiber_force_along_tendon(1.0, LOPT, 0.0)
        assert force == pytest.approx(expected)
        assert force == pytest.approx(FISO * math.cos(PENNATION), rel=5e-3)


class TestElasticTendon:

    @pytest.fixture
    def muscle(self, params):
        return _muscle(params).finalize()

    def test_initial_equilibrium_balances_forces(self, muscle, path_length):
        state = muscle.compute_initial_fiber_equilibrium(path_length, activation=0.5)
        assert muscle.last_solve_status is SolverStatus.CONVERGED
        _, _, dynamics = muscle.evaluate(state)
        assert abs(dynamics.fiber_force_along_tendon - dynamics.tendon_force) <= 1e-8 * FISO
        assert muscle.tendon_force_multiplier(state) == pytest.approx(dynamics.tendon_force / FISO)
        assert muscle.fiber_stiffness_along_tendon(state) == dynamics.fiber_stiffness_along_tendon

    def test_integration_stays_finite(self, muscle, path_length):
        """Forward Euler on the state vector, as an integrator would drive it."""
        initial = muscle.compute_initial_fiber_equilibrium(path_length, activation=0.5)
        y = jnp.array([initial.activation, initial.fiber_length])
        dt = 1e-4
        for i in range(50):
            length = path_length + 0.01 * i * dt
            state = muscle.state_from_vector(y, length, 0.01, excitation=0.8)
            y = y + dt * muscle.state_derivatives(state, 0.8)
        assert jnp.all(jnp.isfinite(y))
        assert y[0] > initial.activation

    def test_activation_equals_excitation(self, params, path_length):
        muscle = _muscle(params, activation_dynamics_enabled=False).finalize()
        state = muscle.state_from_vector(jnp.array([0.095]), path_length, 0.0, excitation=0.7)
        assert state.activation == pytest.approx(0.7)


class TestReducedFiberDynamics:

    @pytest.fixture
    def muscle(self, params):
        return _muscle(params, reduced_fiber_dynamics=True).finalize()

    def test_tracks_path(self, muscle, path_length):
        muscle.compute_initial_fiber_equilibrium(path_length, activation=0.5)
        y = jnp.array([0.5])
        state = muscle.state_from_vector(y, path_length + 1e-4, 0.01, excitation=0.5)
        assert muscle.last_solve_status is SolverStatus.CONVERGED
        assert muscle.hint.fiber_length == state.fiber_length
        _, _, dynamics = muscle.evaluate(state)
        assert abs(dynamics.fiber_force_along_tendon - dynamics.tendon_force) <= 1e-8 * FISO

    def test_divergence_reuses_hint(self, muscle, path_length, caplog):
        initial = muscle.compute_initial_fiber_equilibrium(path_length, activation=0.5)
        muscle.solver_settings = SolverSettings(max_iterations=1)
        with caplog.at_level(logging.WARNING, logger="musculotendon"):
            state = muscle.resolve_state(path_length + 0.005, 0.0, initial)
        assert muscle.last_solve_status is SolverStatus.DIVERGED
        assert state.fiber_length == pytest.approx(initial.fiber_length)
        assert any("test_muscle" in record.getMessage() for record in caplog.records)

    def test_reset_clears_hint(self, muscle, path_length):
        muscle.compute_initial_fiber_equilibrium(path_length, activation=0.5)
        assert muscle.hint is not None
        muscle.reset()
        assert muscle.hint is None
        assert muscle.last_solve_status is None
