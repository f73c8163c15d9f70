# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Forward simulation from the natural dynamics of a model.

Generates one trajectory of latent states and/or observations by drawing
sequentially from :math:`m_1`, :math:`m_k` and :math:`g_k`.  These are
the model's own simulation kernels, distinct from the Feynman-Kac
kernels :math:`M_k` used by the filter.  The same routine extends
filtered particles into the future in :mod:`fkjax.prediction`.

The implementation uses :func:`jax.lax.scan` so the full time-loop is
compiled into a single XLA program.
"""

import enum
from typing import Optional

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.tree_util as jtu
from jax import lax

from fkjax.exceptions import ConfigurationError
from fkjax.model import PROBE_SEED, require
from fkjax.types import PRNGKeyT, PyTree


class Level(enum.Enum):
    """Level at which simulation or prediction is carried out.

    * ``STATE``: trajectories of latent states.
    * ``OBSERVATION``: trajectories of observations.
    * ``STATE_AND_OBSERVATION``: ``(states, observations)`` pairs, the
      observation at each time drawn given the state at that time.
    """

    STATE = 'state'
    OBSERVATION = 'observation'
    STATE_AND_OBSERVATION = 'state_and_observation'

    @property
    def has_states(self) -> bool:
        return self is not Level.OBSERVATION

    @property
    def has_observations(self) -> bool:
        return self is not Level.STATE

    @classmethod
    def parse(cls, level) -> 'Level':
        """Return *level* as a :class:`Level`, rejecting unknown values."""
        try:
            return cls(level)
        except ValueError as err:
            raise ConfigurationError(
                f'unknown simulation level {level!r}'
            ) from err


def require_simulation(
    model, level: Level, use: str, transitions: bool = True
) -> None:
    """Check that *model* can simulate forward at *level*."""
    names = ['mk'] if transitions else []
    if level.has_observations:
        names.append('gk')
    require(model, *names, use=use)


def simulation_spec(model, level: Level) -> PyTree:
    """Return the shape/dtype structure of one simulated time point.

    Traces ``m1`` (or ``M1`` when ``m1`` is absent) and, at observation
    levels, ``gk`` once with a fixed key; nothing is computed.

    Returns:
        A PyTree of :class:`jax.ShapeDtypeStruct`; a
        ``(state, observation)`` pair at the paired level.
    """
    level = Level.parse(level)
    initial = 'm1' if callable(getattr(model, 'm1', None)) else 'M1'
    require(model, initial, use='simulation type inference')
    if level.has_observations:
        require(model, 'gk', use='simulation type inference')

    def _probe(key):
        k_x, k_y = jr.split(key)
        x = getattr(model, initial)(k_x)
        if level is Level.STATE:
            return x
        y = model.gk(k_y, x, 1)
        return y if level is Level.OBSERVATION else (x, y)

    return jax.eval_shape(_probe, jr.PRNGKey(PROBE_SEED))


def _like(new, old):
    return jnp.asarray(new).astype(old.dtype)


def _prepend(first, rest):
    return jnp.concatenate([jnp.expand_dims(first, 0), rest], axis=0)


def simulate_from(
    key: PRNGKeyT,
    model,
    level: Level,
    num_timesteps: int,
    first_time: int,
    x0: PyTree,
) -> PyTree:
    """Simulate forward from state *x0* at time *first_time*.

    Traceable core of :func:`simulate`; arguments are not validated.
    ``x0`` is the state at *first_time*; ``mk`` produces the states at
    ``first_time + 1, ..., first_time + num_timesteps - 1``.

    Returns:
        Leaves of shape ``(num_timesteps, ...)``, or a
        ``(states, observations)`` tuple at the paired level.
    """
    x0 = jtu.tree_map(jnp.asarray, x0)
    k_y0, k_rest = jr.split(key)
    y0 = model.gk(k_y0, x0, first_time) if level.has_observations else None

    def _step(x_prev, args):
        step_key, k = args
        k_x, k_y = jr.split(step_key)
        x = model.mk(k_x, x_prev, k)
        x = jtu.tree_map(_like, x, x_prev)
        y = model.gk(k_y, x, k) if level.has_observations else None
        return x, (x, y)

    if num_timesteps > 1:
        step_keys = jr.split(k_rest, num_timesteps - 1)
        times = jnp.arange(first_time + 1, first_time + num_timesteps)
        _, (xs, ys) = lax.scan(_step, x0, (step_keys, times))
        states = jtu.tree_map(_prepend, x0, xs)
        observations = jtu.tree_map(_prepend, y0, ys)
    else:
        states = jtu.tree_map(lambda leaf: jnp.expand_dims(leaf, 0), x0)
        observations = jtu.tree_map(
            lambda leaf: jnp.expand_dims(leaf, 0), y0
        )

    if level is Level.STATE:
        return states
    if level is Level.OBSERVATION:
        return observations
    return states, observations


def simulate(
    key: PRNGKeyT,
    model,
    level: Level = Level.STATE,
    num_timesteps: int = 1,
    initial: Optional[tuple[int, PyTree]] = None,
) -> PyTree:
    r"""Simulate a single trajectory from a model.

    Args:
        key: JAX PRNG key.
        model: Model implementing ``mk`` (and ``gk`` for observation
            levels, ``m1`` when *initial* is not given).
        level: :class:`Level` of the output.
        num_timesteps: Number of time points :math:`T` to simulate.
        initial: ``(k, x)``: the first entry is the state ``x`` at time
            ``k`` and the rest are simulated at times ``k + 1, ...,
            k + T - 1``.  Defaults to ``(1, m1(key))``.

    Returns:
        A PyTree with leaves of shape ``(T, ...)``; at
        ``Level.STATE_AND_OBSERVATION`` a tuple ``(states, observations)``.

    Raises:
        ConfigurationError: If ``T < 1``, ``k < 1`` or *level* is unknown.
        MissingCapabilityError: If *model* lacks a required function.
    """
    level = Level.parse(level)
    if num_timesteps < 1:
        raise ConfigurationError(
            f'number of time steps should be >= 1, got {num_timesteps}'
        )
    require_simulation(
        model, level, use='simulation', transitions=num_timesteps > 1
    )

    k_init, k_rest = jr.split(key)
    if initial is None:
        require(model, 'm1', use='simulation without an initial state')
        first_time, x0 = 1, model.m1(k_init)
    else:
        first_time, x0 = initial
        if first_time < 1:
            raise ConfigurationError(
                f'initial time index should be >= 1, got {first_time}'
            )
    return simulate_from(k_rest, model, level, num_timesteps, first_time, x0)
