"""Tests for the minimum-bound calculator.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import math

import pytest
import jax
import jax.numpy as jnp

from musculotendon.activation import FirstOrderActivationDynamics
from musculotendon.bounds import clamp_fiber_length, compute_bounds, is_fiber_state_clamped
from musculotendon.curves import ActiveForceLengthCurve
from musculotendon.errors import ConfigurationError
from musculotendon.model import MuscleCurves, MuscleParams
from musculotendon.modes import classify
from musculotendon.pennation import FixedWidthPennationModel


jax.config.update("jax_enable_x64", True)


ELASTIC_FULL = classify(True, True, False)
RIGID = classify(False, True, False)


@pytest.fixture
def params():
    return MuscleParams(
        max_isometric_force=1000.0,
        optimal_fiber_length=0.1,
        tendon_slack_length=0.2,
        pennation_angle_at_optimal=0.1,
    )


@pytest.fixture
def pennation(params):
    return FixedWidthPennationModel(
        optimal_fiber_length=params.optimal_fiber_length,
        pennation_angle_at_optimal=params.pennation_angle_at_optimal,
    )


@pytest.fixture
def bounds(params, pennation):
    return compute_bounds(
        MuscleCurves(), pennation, FirstOrderActivationDynamics(), ELASTIC_FULL, params
    )


class TestComputeBounds:

    def test_active_floor_dominates_for_small_pennation(self, bounds, params):
        active_floor = ActiveForceLengthCurve().minimum_norm_length * params.optimal_fiber_length
        assert bounds.min_fiber_length == pytest.approx(active_floor)

    def test_pennation_floor_dominates_for_large_pennation(self, params):
        pennation = FixedWidthPennationModel(
            optimal_fiber_length=params.optimal_fiber_length,
            pennation_angle_at_optimal=0.8,
        )
        bounds = compute_bounds(
            MuscleCurves(), pennation, FirstOrderActivationDynamics(), ELASTIC_FULL, params
        )
        assert bounds.min_fiber_length == pytest.approx(pennation.minimum_fiber_length)

    def test_projection_of_floor(self, bounds, pennation):
        assert bounds.min_fiber_length_along_tendon == pytest.approx(
            float(pennation.length_along_tendon(bounds.min_fiber_length))
        )

    def test_zero_active_floor_falls_back_to_pennation(self, params, pennation):
        curves = MuscleCurves(active_force_length=ActiveForceLengthCurve(minimum_norm_length=0.0))
        bounds = compute_bounds(curves, pennation, FirstOrderActivationDynamics(), RIGID, params)
        assert bounds.min_fiber_length == pennation.minimum_fiber_length

    def test_zero_minimum_activation(self, params, pennation):
        activation_dynamics = FirstOrderActivationDynamics(minimum_activation=0.0)
        bounds = compute_bounds(MuscleCurves(), pennation, activation_dynamics, RIGID, params)
        assert bounds.min_activation == 0.0
        with pytest.raises(ConfigurationError):
            compute_bounds(MuscleCurves(), pennation, activation_dynamics, ELASTIC_FULL, params)

    def test_right_angle_ceiling_rejected_with_full_dynamics(self, params):
        pennation = FixedWidthPennationModel(
            optimal_fiber_length=params.optimal_fiber_length,
            maximum_pennation_angle=math.pi / 2,
        )
        with pytest.raises(ConfigurationError):
            compute_bounds(
                MuscleCurves(), pennation, FirstOrderActivationDynamics(), ELASTIC_FULL, params
            )

    def test_zero_active_floor_rejected_with_full_dynamics(self, params, pennation):
        curves = MuscleCurves(active_force_length=ActiveForceLengthCurve(minimum_norm_length=0.0))
        with pytest.raises(ConfigurationError):
            compute_bounds(curves, pennation, FirstOrderActivationDynamics(), ELASTIC_FULL, params)


class TestClamp:

    def test_idempotent(self, bounds):
        for x in jnp.linspace(0.0, 0.2, 41):
            once = clamp_fiber_length(bounds, x)
            assert clamp_fiber_length(bounds, once) == once

    def test_below_floor(self, bounds):
        assert clamp_fiber_length(bounds, 0.5 * bounds.min_fiber_length) == bounds.min_fiber_length

    def test_above_floor_unchanged(self, bounds):
        x = 2.0 * bounds.min_fiber_length
        assert clamp_fiber_length(bounds, x) == x

    def test_clamped_state(self, bounds):
        floor = bounds.min_fiber_length
        assert is_fiber_state_clamped(bounds, floor, 0.0)
        assert is_fiber_state_clamped(bounds, floor, -0.1)
        assert not is_fiber_state_clamped(bounds, floor, 0.1)
        assert not is_fiber_state_clamped(bounds, 1.5 * floor, -0.1)
