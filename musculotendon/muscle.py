"""Equilibrium muscle: the object a simulation framework drives.

`EquilibriumMuscle` holds an immutable `MuscleModel` together with the
mutable pieces of a simulation run: the configuration flags (locked by
`finalize`), the cached `Bounds`, the warm-start `SolverHint`, and the
default state values.

Typical use:

    muscle = EquilibriumMuscle("soleus", MuscleParams(...))
    muscle.finalize()
    state = muscle.compute_initial_fiber_equilibrium(path_length)
    for each integrator evaluation:
        state = muscle.state_from_vector(y, path_length, path_velocity, excitation)
        dy = muscle.state_derivatives(state, excitation)
        force = muscle.compute_actuation(state)

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import math
from typing import Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.activation import FirstOrderActivationDynamics
from musculotendon.bounds import (
    Bounds,
    clamp_fiber_length,
    compute_bounds,
    is_fiber_state_clamped,
)
from musculotendon.config import load_config
from musculotendon.curves import (
    ActiveForceLengthCurve,
    FiberForceLengthCurve,
    ForceVelocityCurve,
    TendonForceLengthCurve,
)
from musculotendon.derivatives import (
    calc_fiber_velocity_from_equilibrium,
    compute_state_derivatives,
)
from musculotendon.equilibrium import (
    SolverHint,
    SolverSettings,
    SolverStatus,
    calc_rigid_tendon_fiber_state,
    compute_initial_fiber_equilibrium,
    estimate_elastic_tendon_fiber_state,
)
from musculotendon.errors import ConfigurationError, DomainError, EquilibriumConvergenceError
from musculotendon.model import MuscleCurves, MuscleModel, MuscleParams, calc_active_fiber_force
from musculotendon.modes import (
    STATE_ACTIVATION_NAME,
    STATE_FIBER_LENGTH_NAME,
    FiberDynamics,
    MuscleConfiguration,
    SimulationMode,
)
from musculotendon.muscle_state import (
    FiberVelocityInfo,
    MuscleDynamicsInfo,
    MuscleKinematicState,
    MuscleLengthInfo,
    calc_fiber_velocity_info,
    calc_muscle_dynamics_info,
    calc_muscle_length_info,
)


logger = logging.getLogger(__name__)


class EquilibriumMuscle:
    """A Hill-type muscle whose fiber and tendon forces are kept in equilibrium.

    Attributes:
        name: Name of the muscle, used in log and error messages.
    """

    def __init__(
        self,
        name: str,
        params: MuscleParams,
        curves: Optional[MuscleCurves] = None,
        activation_dynamics: Optional[FirstOrderActivationDynamics] = None,
        maximum_pennation_angle: Optional[float] = None,
        tendon_compliant: bool = True,
        activation_dynamics_enabled: bool = True,
        reduced_fiber_dynamics: bool = False,
        solver_settings: Optional[SolverSettings] = None,
        default_activation: Optional[float] = None,
        default_fiber_length: Optional[float] = None,
    ):
        defaults = load_config().get("muscle", {})

        if activation_dynamics is None:
            activation_dynamics = FirstOrderActivationDynamics(
                minimum_activation=float(defaults.get("minimum_activation", 0.01))
            )
        if maximum_pennation_angle is None:
            maximum_pennation_angle = float(
                defaults.get("maximum_pennation_angle", math.acos(0.1))
            )

        self.name = name
        self._configuration = MuscleConfiguration(
            tendon_compliant=tendon_compliant,
            activation_dynamics_enabled=activation_dynamics_enabled,
            reduced_fiber_dynamics=reduced_fiber_dynamics,
        )
        self._settings = (
            solver_settings if solver_settings is not None else SolverSettings.from_config()
        )
        self._finalized = False
        self._hint: Optional[SolverHint] = None
        self._last_solve_status: Optional[SolverStatus] = None
        self._bounds: Optional[Bounds] = None
        with self._named_domain_errors():
            self._model = MuscleModel.build(
                params,
                curves=curves,
                activation_dynamics=activation_dynamics,
                maximum_pennation_angle=maximum_pennation_angle,
            )
        self._update_bounds()

        self.default_activation = (
            default_activation
            if default_activation is not None
            else float(defaults.get("default_activation", 0.05))
        )
        self.default_fiber_length = (
            default_fiber_length
            if default_fiber_length is not None
            else params.optimal_fiber_length
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, mode={self.mode})"

    # -- configuration ------------------------------------------------------

    @property
    def model(self) -> MuscleModel:
        return self._model

    @property
    def params(self) -> MuscleParams:
        return self._model.params

    @property
    def configuration(self) -> MuscleConfiguration:
        return self._configuration

    @property
    def mode(self) -> SimulationMode:
        return self._configuration.mode

    @property
    def bounds(self) -> Bounds:
        return self._bounds

    @property
    def solver_settings(self) -> SolverSettings:
        return self._settings

    @solver_settings.setter
    def solver_settings(self, settings: SolverSettings):
        self._settings = settings

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def last_solve_status(self) -> Optional[SolverStatus]:
        """Status of the most recent equilibrium solve, if any."""
        return self._last_solve_status

    @property
    def hint(self) -> Optional[SolverHint]:
        return self._hint

    def _set_flag(self, flag: str, value: bool):
        if self._finalized:
            raise ConfigurationError(
                f"{self.name}: cannot change `{flag}` after the muscle is finalized"
            )
        flags = dict(
            tendon_compliant=self._configuration.tendon_compliant,
            activation_dynamics_enabled=self._configuration.activation_dynamics_enabled,
            reduced_fiber_dynamics=self._configuration.reduced_fiber_dynamics,
        )
        flags[flag] = bool(value)
        previous = self._configuration
        # Construction validates the combination.
        self._configuration = MuscleConfiguration(**flags)
        try:
            self._update_bounds()
        except ConfigurationError:
            self._configuration = previous
            raise

    @property
    def tendon_compliant(self) -> bool:
        return self._configuration.tendon_compliant

    @tendon_compliant.setter
    def tendon_compliant(self, value: bool):
        self._set_flag("tendon_compliant", value)

    @property
    def activation_dynamics_enabled(self) -> bool:
        return self._configuration.activation_dynamics_enabled

    @activation_dynamics_enabled.setter
    def activation_dynamics_enabled(self, value: bool):
        self._set_flag("activation_dynamics_enabled", value)

    @property
    def reduced_fiber_dynamics(self) -> bool:
        return self._configuration.reduced_fiber_dynamics

    @reduced_fiber_dynamics.setter
    def reduced_fiber_dynamics(self, value: bool):
        self._set_flag("reduced_fiber_dynamics", value)

    def finalize(self) -> "EquilibriumMuscle":
        """Lock the configuration flags, recompute bounds and clear the hint."""
        self._update_bounds()
        self._finalized = True
        self.reset()
        logger.debug(f"{self.name}: finalized in mode {self.mode}")
        return self

    def reset(self):
        """Forget the warm-start hint and the last solve status."""
        self._hint = None
        self._last_solve_status = None

    def _require_finalized(self):
        if not self._finalized:
            raise ConfigurationError(f"{self.name}: call `finalize()` before simulating")

    def _update_bounds(self):
        try:
            self._bounds = compute_bounds(
                self._model.curves,
                self._model.pennation,
                self._model.activation_dynamics,
                self.mode,
                self._model.params,
            )
        except ConfigurationError as e:
            raise ConfigurationError(f"{self.name}: {e}") from e

    @contextmanager
    def _named_domain_errors(self):
        try:
            yield
        except DomainError as e:
            raise DomainError(f"{self.name}: {e}") from e

    def _set_model(self, model: MuscleModel):
        previous = self._model
        self._model = model
        try:
            self._update_bounds()
        except ConfigurationError:
            self._model = previous
            raise

    # -- property editing ---------------------------------------------------

    def set_minimum_activation(self, minimum_activation: float):
        with self._named_domain_errors():
            activation_dynamics = FirstOrderActivationDynamics(
                tau_activation=self._model.activation_dynamics.tau_activation,
                tau_deactivation=self._model.activation_dynamics.tau_deactivation,
                minimum_activation=minimum_activation,
            )
        self._set_model(
            eqx.tree_at(lambda m: m.activation_dynamics, self._model, activation_dynamics)
        )

    def set_maximum_pennation_angle(self, angle: float):
        with self._named_domain_errors():
            model = self._model.with_maximum_pennation_angle(angle)
        self._set_model(model)

    def set_activation_dynamics(self, activation_dynamics: FirstOrderActivationDynamics):
        self._set_model(
            eqx.tree_at(lambda m: m.activation_dynamics, self._model, activation_dynamics)
        )

    def set_active_force_length_curve(self, curve: ActiveForceLengthCurve):
        self._set_model(
            eqx.tree_at(lambda m: m.curves.active_force_length, self._model, curve)
        )

    def set_force_velocity_curve(self, curve: ForceVelocityCurve):
        self._set_model(eqx.tree_at(lambda m: m.curves.force_velocity, self._model, curve))

    def set_fiber_force_length_curve(self, curve: FiberForceLengthCurve):
        self._set_model(eqx.tree_at(lambda m: m.curves.fiber_force_length, self._model, curve))

    def set_tendon_force_length_curve(self, curve: TendonForceLengthCurve):
        self._set_model(
            eqx.tree_at(lambda m: m.curves.tendon_force_length, self._model, curve)
        )

    # -- defaults -----------------------------------------------------------

    @property
    def default_activation(self) -> float:
        return self._default_activation

    @default_activation.setter
    def default_activation(self, value: float):
        if not 0.0 <= value <= 1.0:
            raise DomainError(f"{self.name}: default activation must lie in [0, 1], got {value}")
        self._default_activation = float(value)

    @property
    def default_fiber_length(self) -> float:
        return self._default_fiber_length

    @default_fiber_length.setter
    def default_fiber_length(self, value: float):
        if not value > 0.0:
            raise DomainError(f"{self.name}: default fiber length must be positive, got {value}")
        self._default_fiber_length = float(value)

    def set_defaults_from_state(self, state: MuscleKinematicState):
        self.default_activation = state.activation
        self.default_fiber_length = state.fiber_length

    # -- state vector -------------------------------------------------------

    @property
    def state_variable_names(self) -> tuple[str, ...]:
        return self.mode.state_variable_names

    def default_state_vector(self) -> Array:
        """Default values of the integrated states, in state-vector order."""
        defaults = {
            STATE_ACTIVATION_NAME: self.default_activation,
            STATE_FIBER_LENGTH_NAME: self.default_fiber_length,
        }
        return jnp.asarray([defaults[name] for name in self.state_variable_names])

    def state_from_vector(
        self,
        y: ArrayLike,
        path_length: float,
        path_velocity: float,
        excitation: Optional[float] = None,
    ) -> MuscleKinematicState:
        """Resolve a kinematic state from the integrator's state vector.

        Arguments:
            y: Integrated states, in the order of `state_variable_names`.
            path_length: Length of the musculotendon path [m].
            path_velocity: Lengthening speed of the path [m/s].
            excitation: Neural excitation. Used as activation when activation
                is not a state, and to compute the activation rate for
                reduced fiber dynamics. Defaults to `default_activation`.
        """
        y = jnp.atleast_1d(jnp.asarray(y))
        names = self.state_variable_names
        if y.shape != (len(names),):
            raise ValueError(
                f"{self.name}: expected a state vector of shape {(len(names),)} "
                f"for states {names}, got {y.shape}"
            )
        values = dict(zip(names, (float(v) for v in y)))
        if excitation is None:
            excitation = self.default_activation

        activation = values.get(STATE_ACTIVATION_NAME, excitation)
        if STATE_FIBER_LENGTH_NAME in values:
            fiber_length = values[STATE_FIBER_LENGTH_NAME]
        elif self._hint is not None:
            fiber_length = self._hint.fiber_length
        else:
            fiber_length = self.default_fiber_length

        activation_rate = 0.0
        if self.mode.has_activation_state:
            activation_rate = float(self._model.activation_dynamics.rate(excitation, activation))

        fiber_length = float(clamp_fiber_length(self._bounds, fiber_length))
        current = self._make_state(
            activation,
            fiber_length,
            self._hint.fiber_velocity if self._hint is not None else 0.0,
            path_length,
            path_velocity,
        )
        return self.resolve_state(path_length, path_velocity, current, activation_rate)

    # -- solving ------------------------------------------------------------

    def _clamp_activation(self, activation: float) -> float:
        return float(self._model.activation_dynamics.clamp(activation))

    def _make_state(
        self, activation, fiber_length, fiber_velocity, path_length, path_velocity, clamped=False
    ) -> MuscleKinematicState:
        with self._named_domain_errors():
            angle, angular_velocity = self._model.pennation.velocity_projection(
                fiber_length, fiber_velocity
            )
        return MuscleKinematicState(
            activation=float(activation),
            fiber_length=float(fiber_length),
            fiber_velocity=float(fiber_velocity),
            pennation_angle=float(angle),
            pennation_angular_velocity=float(angular_velocity),
            path_length=float(path_length),
            path_velocity=float(path_velocity),
            clamped=bool(clamped),
        )

    def compute_initial_fiber_equilibrium(
        self,
        path_length: float,
        path_velocity: float = 0.0,
        activation: Optional[float] = None,
    ) -> MuscleKinematicState:
        """Solve for the fiber state at which fiber and tendon forces balance.

        The solution seeds the warm-start hint for subsequent reduced solves.

        Raises:
            EquilibriumConvergenceError: If the solve does not converge.
        """
        self._require_finalized()
        if activation is None:
            activation = self.default_activation
        activation = self._clamp_activation(activation)

        solution = compute_initial_fiber_equilibrium(
            self._model,
            self._bounds,
            self.mode,
            activation,
            path_length,
            path_velocity,
            settings=self._settings,
            name=self.name,
        )
        self._hint = solution.hint
        self._last_solve_status = solution.status
        logger.debug(
            f"{self.name}: initial equilibrium {solution.status.value} after "
            f"{solution.iterations} iterations"
        )
        return self._make_state(
            activation,
            solution.fiber_length,
            solution.fiber_velocity,
            path_length,
            path_velocity,
            clamped=solution.clamped,
        )

    def resolve_state(
        self,
        path_length: float,
        path_velocity: float,
        state: MuscleKinematicState,
        activation_rate: float = 0.0,
    ) -> MuscleKinematicState:
        """Compute fiber length and velocity consistent with the path kinematics.

        Arguments:
            path_length: Length of the musculotendon path [m].
            path_velocity: Lengthening speed of the path [m/s].
            state: Current state; supplies activation, and the integrated fiber
                length with full fiber dynamics.
            activation_rate: Time derivative of activation, used by reduced
                fiber dynamics.
        """
        self._require_finalized()
        path_length, path_velocity = float(path_length), float(path_velocity)
        activation = self._clamp_activation(state.activation)
        bounds = self._bounds

        match self.mode.fiber:
            case FiberDynamics.RIGID_TENDON:
                fiber_length, fiber_velocity, clamped = calc_rigid_tendon_fiber_state(
                    self._model, bounds, path_length, path_velocity
                )
                self._last_solve_status = (
                    SolverStatus.CLAMPED_AT_MINIMUM_LENGTH if clamped else SolverStatus.CONVERGED
                )

            case FiberDynamics.ELASTIC_FULL:
                fiber_length = float(clamp_fiber_length(bounds, state.fiber_length))
                fiber_velocity = calc_fiber_velocity_from_equilibrium(
                    self._model, bounds, activation, fiber_length, path_length
                )
                clamped = is_fiber_state_clamped(bounds, fiber_length, fiber_velocity)

            case FiberDynamics.ELASTIC_REDUCED:
                fiber_length, fiber_velocity, clamped = self._solve_reduced(
                    state, activation, activation_rate, path_length, path_velocity
                )

        return self._make_state(
            activation, fiber_length, fiber_velocity, path_length, path_velocity, clamped
        )

    def _solve_reduced(self, state, activation, activation_rate, path_length, path_velocity):
        hint = self._hint
        if hint is None:
            hint = SolverHint(fiber_length=state.fiber_length, fiber_velocity=state.fiber_velocity)

        try:
            solution = estimate_elastic_tendon_fiber_state(
                self._model,
                self._bounds,
                activation,
                path_length,
                path_velocity,
                hint,
                self._settings,
                activation_rate=activation_rate,
                name=self.name,
            )
        except EquilibriumConvergenceError as e:
            logger.warning(f"{e}; reusing the last fiber state")
            self._last_solve_status = SolverStatus.DIVERGED
            fiber_length = float(clamp_fiber_length(self._bounds, hint.fiber_length))
            return (
                fiber_length,
                hint.fiber_velocity,
                is_fiber_state_clamped(self._bounds, fiber_length, hint.fiber_velocity),
            )

        self._hint = solution.hint
        self._last_solve_status = solution.status
        return solution.fiber_length, solution.fiber_velocity, solution.clamped

    # -- evaluation ---------------------------------------------------------

    def evaluate(
        self, state: MuscleKinematicState
    ) -> tuple[MuscleLengthInfo, FiberVelocityInfo, MuscleDynamicsInfo]:
        """Length, velocity and dynamics information at a resolved state."""
        length_info = calc_muscle_length_info(self._model, state)
        velocity_info = calc_fiber_velocity_info(self._model, state, length_info)
        dynamics_info = calc_muscle_dynamics_info(
            self._model, self.mode, state, length_info, velocity_info
        )
        return length_info, velocity_info, dynamics_info

    def state_derivatives(self, state: MuscleKinematicState, excitation: float) -> Array:
        """Time derivatives of the integrated states, in state-vector order."""
        return compute_state_derivatives(
            self._model, self.mode, self._bounds, state, excitation
        )

    def compute_actuation(self, state: MuscleKinematicState) -> float:
        """Tension transmitted to the skeleton [N]."""
        return self.evaluate(state)[2].tendon_force

    def tendon_force_multiplier(self, state: MuscleKinematicState) -> float:
        return self.evaluate(state)[2].tendon_force_multiplier

    def fiber_stiffness_along_tendon(self, state: MuscleKinematicState) -> float:
        return self.evaluate(state)[2].fiber_stiffness_along_tendon

    def calc_active_fiber_force_along_tendon(
        self, activation: float, fiber_length: float, fiber_velocity: float
    ) -> float:
        """Active fiber force projected onto the tendon [N].

        Fiber length is clamped to its floor before evaluation.
        """
        model = self._model
        curves, pennation = model.curves, model.pennation
        fiber_length = float(clamp_fiber_length(self._bounds, fiber_length))
        activation = self._clamp_activation(activation)

        fal = curves.active_force_length.value(model.norm_fiber_length(fiber_length))
        fv = curves.force_velocity.value(model.norm_fiber_velocity(fiber_velocity))
        active_force = calc_active_fiber_force(
            model.params.max_isometric_force, activation, fal, fv
        )
        return float(active_force * pennation.calc_cos_pennation(fiber_length))

    def calc_inextensible_tendon_active_fiber_force(
        self, path_length: float, path_velocity: float, activation: float
    ) -> float:
        """Active fiber force along the tendon if the tendon were rigid [N]."""
        fiber_length, fiber_velocity, _ = calc_rigid_tendon_fiber_state(
            self._model, self._bounds, float(path_length), float(path_velocity)
        )
        return self.calc_active_fiber_force_along_tendon(
            activation, fiber_length, fiber_velocity
        )
