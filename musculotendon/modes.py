"""Simulation modes of an equilibrium muscle.

Three independent flags select how fiber and activation state are handled:

    tendon compliance      rigid tendon (fiber length from geometry), or elastic
    reduced fiber dynamics elastic tendon only; fiber state solved per evaluation
    activation dynamics    activation integrated, or taken equal to excitation

The flags are collapsed into a closed `SimulationMode`, which fixes the
shape of the state vector handed to the integrator.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from equinox import Module

from musculotendon.errors import ConfigurationError


STATE_ACTIVATION_NAME = "activation"
STATE_FIBER_LENGTH_NAME = "fiber_length"


class FiberDynamics(Enum):
    """How fiber length and velocity are obtained."""

    RIGID_TENDON = "rigid_tendon"
    ELASTIC_FULL = "elastic_full"
    ELASTIC_REDUCED = "elastic_reduced"


class ActivationHandling(Enum):
    """Whether activation is an integrated state."""

    STATE = "state"
    EQUALS_EXCITATION = "equals_excitation"


class SimulationMode(NamedTuple):
    fiber: FiberDynamics
    activation: ActivationHandling

    @property
    def has_activation_state(self) -> bool:
        return self.activation is ActivationHandling.STATE

    @property
    def has_fiber_length_state(self) -> bool:
        return self.fiber is FiberDynamics.ELASTIC_FULL

    @property
    def state_variable_names(self) -> tuple[str, ...]:
        """Names of the integrated states, in state-vector order."""
        names = []
        if self.has_activation_state:
            names.append(STATE_ACTIVATION_NAME)
        if self.has_fiber_length_state:
            names.append(STATE_FIBER_LENGTH_NAME)
        return tuple(names)

    def __str__(self) -> str:
        return f"{self.fiber.value}/{self.activation.value}"


def classify(
    tendon_compliant: bool,
    activation_dynamics_enabled: bool,
    reduced_fiber_dynamics: bool,
) -> SimulationMode:
    """Derive the simulation mode from the three configuration flags.

    Raises:
        ConfigurationError: If reduced fiber dynamics is requested with a
            rigid tendon.
    """
    if reduced_fiber_dynamics and not tendon_compliant:
        raise ConfigurationError(
            "Reduced fiber dynamics requires an elastic tendon "
            "(tendon compliance must not be ignored)"
        )

    if not tendon_compliant:
        fiber = FiberDynamics.RIGID_TENDON
    elif reduced_fiber_dynamics:
        fiber = FiberDynamics.ELASTIC_REDUCED
    else:
        fiber = FiberDynamics.ELASTIC_FULL

    if activation_dynamics_enabled:
        activation = ActivationHandling.STATE
    else:
        activation = ActivationHandling.EQUALS_EXCITATION

    return SimulationMode(fiber, activation)


class MuscleConfiguration(Module):
    """The three modelling flags of an equilibrium muscle.

    Constructing an invalid combination raises `ConfigurationError`.

    Attributes:
        tendon_compliant: Model the tendon as elastic.
        activation_dynamics_enabled: Integrate activation from excitation.
        reduced_fiber_dynamics: Solve fiber state quasi-statically each
            evaluation, assuming zero fiber acceleration.
    """

    tendon_compliant: bool = True
    activation_dynamics_enabled: bool = True
    reduced_fiber_dynamics: bool = False

    def __check_init__(self):
        classify(
            self.tendon_compliant,
            self.activation_dynamics_enabled,
            self.reduced_fiber_dynamics,
        )

    @property
    def mode(self) -> SimulationMode:
        return classify(
            self.tendon_compliant,
            self.activation_dynamics_enabled,
            self.reduced_fiber_dynamics,
        )
