# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Model capabilities consumed by the particle filter.

A model is any object exposing the functions of a Feynman-Kac
representation of a state-space model

.. math::

    \gamma_n(x_{1:n}) \propto M_1(x_1) G_1(x_1)
        \prod_{k=2}^{n} M_k(x_k \mid x_{k-1}) G_k(x_{k-1}, x_k),

together with, optionally, the "natural" simulation kernels
:math:`m_1, m_k` and the observation kernel :math:`g_k` used for
simulation and prediction.  Rather than subclassing a base class, a
model implements the facets its use case needs:

==========================  ==========================================
Use case                    Facets
==========================  ==========================================
filtering                   :class:`InitialModel`,
                            :class:`TransitionModel`,
                            :class:`WeightModel`
ancestor tracing            same as filtering
backward sampling           filtering + :class:`BackwardDensityModel`
state prediction            :class:`SimulationModel` (``mk`` only)
observation prediction      :class:`SimulationModel` +
                            :class:`ObservationModel`
simulation                  :class:`SimulationModel` (+
                            :class:`ObservationModel`)
==========================  ==========================================

Particles and observations may be any JAX PyTree.  All functions act on
a *single* particle; the engine ``vmap``-s them over the particle axis,
so they must be traceable by JAX.  Time indices ``k`` are 1-based:
``M1``/``logG1`` act at time 1 and ``Mk``/``logGk``/``logMk`` at
``k >= 2``.
"""

from typing import Protocol, runtime_checkable

import jax
import jax.random as jr

from fkjax.exceptions import MissingCapabilityError
from fkjax.types import PRNGKeyT, PyTree, Scalar

PROBE_SEED = 1


@runtime_checkable
class InitialModel(Protocol):
    """Simulates the first particle."""

    def M1(self, key: PRNGKeyT) -> PyTree:
        """Draw from :math:`M_1(\\cdot)`."""
        ...


@runtime_checkable
class TransitionModel(Protocol):
    """Propagates a particle one step forward."""

    def Mk(self, key: PRNGKeyT, prev: PyTree, k: int) -> PyTree:
        """Draw from :math:`M_k(\\cdot \\mid prev)` for ``k >= 2``."""
        ...


@runtime_checkable
class WeightModel(Protocol):
    """Evaluates the log potentials."""

    def logG1(self, x: PyTree) -> Scalar:
        """Return :math:`\\log G_1(x)`."""
        ...

    def logGk(self, prev: PyTree, cur: PyTree, k: int) -> Scalar:
        """Return :math:`\\log G_k(prev, cur)` for ``k >= 2``."""
        ...


@runtime_checkable
class BackwardDensityModel(Protocol):
    """Evaluates transition log-densities, needed by backward sampling."""

    def logMk(self, cur: PyTree, prev: PyTree, k: int) -> Scalar:
        """Return :math:`\\log M_k(cur \\mid prev)` for ``k >= 2``."""
        ...


@runtime_checkable
class InitialDensityModel(Protocol):
    """Evaluates the initial log-density :math:`\\log M_1(x)`."""

    def logM1(self, x: PyTree) -> Scalar: ...


@runtime_checkable
class SimulationModel(Protocol):
    """Simulates latent states from the natural dynamics."""

    def m1(self, key: PRNGKeyT) -> PyTree:
        """Draw from :math:`m_1(\\cdot)`."""
        ...

    def mk(self, key: PRNGKeyT, prev: PyTree, k: int) -> PyTree:
        """Draw from :math:`m_k(\\cdot \\mid prev)` for ``k >= 2``."""
        ...


@runtime_checkable
class ObservationModel(Protocol):
    """Simulates observations given a latent state."""

    def gk(self, key: PRNGKeyT, x: PyTree, k: int) -> PyTree:
        """Draw from :math:`g_k(\\cdot \\mid x)` for ``k >= 1``."""
        ...


def require(model: object, *names: str, use: str) -> None:
    """Check that *model* provides every function in *names*.

    Args:
        model: The model object.
        *names: Names of the required functions, e.g. ``'M1'``.
        use: Human readable name of the use case, for the error message.

    Raises:
        MissingCapabilityError: If any function is missing or is not
            callable.
    """
    missing = [
        name for name in names if not callable(getattr(model, name, None))
    ]
    if missing:
        raise MissingCapabilityError(
            f'{use} requires {", ".join(missing)} but '
            f'{type(model).__name__} does not define '
            f'{"it" if len(missing) == 1 else "them"}'
        )


def particle_spec(model: InitialModel) -> PyTree:
    """Return the shape/dtype structure of one particle of *model*.

    ``M1`` is traced once with a fixed key; nothing is computed.

    Returns:
        A PyTree of :class:`jax.ShapeDtypeStruct`.
    """
    require(model, 'M1', use='particle type inference')
    return jax.eval_shape(model.M1, jr.PRNGKey(PROBE_SEED))


def observation_spec(model: object) -> PyTree:
    """Return the shape/dtype structure of one observation of *model*.

    Traces ``gk(key, M1(key), 1)`` (or ``m1`` when ``M1`` is absent).
    """
    require(model, 'gk', use='observation type inference')
    initial = 'M1' if callable(getattr(model, 'M1', None)) else 'm1'
    require(model, initial, use='observation type inference')

    def _probe(key):
        k1, k2 = jr.split(key)
        x = getattr(model, initial)(k1)
        return model.gk(k2, x, 1)  # type: ignore[attr-defined]

    return jax.eval_shape(_probe, jr.PRNGKey(PROBE_SEED))
