"""Tests for simulation mode classification.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import itertools

import pytest

from musculotendon.errors import ConfigurationError
from musculotendon.modes import (
    ActivationHandling,
    FiberDynamics,
    MuscleConfiguration,
    SimulationMode,
    classify,
)


ALL_FLAGS = list(itertools.product([True, False], repeat=3))
VALID_FLAGS = [
    (compliant, act, reduced)
    for compliant, act, reduced in ALL_FLAGS
    if compliant or not reduced
]


class TestClassify:

    @pytest.mark.parametrize("compliant, act, reduced", VALID_FLAGS)
    def test_valid_combinations_accepted(self, compliant, act, reduced):
        mode = classify(compliant, act, reduced)
        assert isinstance(mode, SimulationMode)
        assert mode.has_activation_state == act

    @pytest.mark.parametrize("act", [True, False])
    def test_reduced_with_rigid_tendon_rejected(self, act):
        with pytest.raises(ConfigurationError):
            classify(tendon_compliant=False, activation_dynamics_enabled=act, reduced_fiber_dynamics=True)

    @pytest.mark.parametrize(
        "compliant, reduced, expected",
        [
            (False, False, FiberDynamics.RIGID_TENDON),
            (True, False, FiberDynamics.ELASTIC_FULL),
            (True, True, FiberDynamics.ELASTIC_REDUCED),
        ],
    )
    def test_fiber_dynamics(self, compliant, reduced, expected):
        assert classify(compliant, True, reduced).fiber is expected

    def test_activation_equals_excitation(self):
        mode = classify(True, False, False)
        assert mode.activation is ActivationHandling.EQUALS_EXCITATION


class TestStateVariableNames:

    @pytest.mark.parametrize(
        "compliant, act, reduced, expected",
        [
            (True, True, False, ("activation", "fiber_length")),
            (True, False, False, ("fiber_length",)),
            (True, True, True, ("activation",)),
            (True, False, True, ()),
            (False, True, False, ("activation",)),
            (False, False, False, ()),
        ],
    )
    def test_names_follow_mode(self, compliant, act, reduced, expected):
        assert classify(compliant, act, reduced).state_variable_names == expected


class TestMuscleConfiguration:

    def test_defaults(self):
        config = MuscleConfiguration()
        assert config.mode == SimulationMode(FiberDynamics.ELASTIC_FULL, ActivationHandling.STATE)

    def test_invalid_combination_raises_on_construction(self):
        with pytest.raises(ConfigurationError):
            MuscleConfiguration(tendon_compliant=False, reduced_fiber_dynamics=True)
