"""First-order activation dynamics with a lower bound.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from equinox import Module
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike

from musculotendon.errors import DomainError


class FirstOrderActivationDynamics(Module):
    """First-order activation dynamics filter.

    Converts neural excitation to muscle activation with separate,
    activation-dependent time constants for activation and deactivation
    (Thelen 2003). Both excitation and activation are clamped to
    ``[minimum_activation, 1]`` before the rate is computed.

    Attributes:
        tau_activation: Activation time constant [s].
        tau_deactivation: Deactivation time constant [s].
        minimum_activation: Lower bound on activation.
    """

    tau_activation: float = 0.015
    tau_deactivation: float = 0.060
    minimum_activation: float = 0.01

    def __check_init__(self):
        if not 0.0 <= self.minimum_activation < 1.0:
            raise DomainError(
                f"Minimum activation must lie in [0, 1), got {self.minimum_activation}"
            )
        if self.tau_activation <= 0.0 or self.tau_deactivation <= 0.0:
            raise DomainError("Activation time constants must be positive")

    def clamp(self, activation: ArrayLike) -> Array:
        """Clamp activation (or excitation) to ``[minimum_activation, 1]``."""
        return jnp.clip(jnp.asarray(activation), self.minimum_activation, 1.0)

    def rate(self, excitation: ArrayLike, activation: ArrayLike) -> Array:
        """Compute activation derivative.

        Args:
            excitation: Neural excitation [0, 1].
            activation: Current activation [0, 1].

        Returns:
            Time derivative of activation.
        """
        u = self.clamp(excitation)
        a = self.clamp(activation)
        tau = jnp.where(
            u > a,
            self.tau_activation * (0.5 + 1.5 * a),
            self.tau_deactivation / (0.5 + 1.5 * a),
        )
        return (u - a) / tau

    def __call__(self, excitation: ArrayLike, activation: ArrayLike) -> Array:
        return self.rate(excitation, activation)
