# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Prediction: extrapolating filtered particles into the future.

Starting from the weighted particles of a filtered column ``n0``,
:func:`predict`

1. draws ``nsim`` ordered stratified uniforms and maps them through the
   inverse CDF of the weights, selecting one ancestor per simulation;
2. moves each ancestor to time ``n0 + 1`` with :math:`m_{n_0+1}` and
   simulates ``nahead`` steps with :math:`m_k` (and :math:`g_k`).

Simulations are independent given the snapshot and are ``vmap``-ped.

When predicting from ``n0`` earlier than the last filtered time, the
Feynman-Kac representation must also be valid when truncated at
``n0``.  This modelling assumption cannot be checked.
"""

import functools
import logging
from typing import Optional

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.tree_util as jtu
from jax import vmap
from jaxtyping import Array, Float, Int

from fkjax.exceptions import ConfigurationError
from fkjax.resampling import inverse_cdf_lookup, stratified_uniforms
from fkjax.simulate import Level, require_simulation, simulate_from
from fkjax.storage import ParticleStorage, take_particles
from fkjax.types import PRNGKeyT, PyTree
from fkjax.weights import normalize

logger = logging.getLogger(__name__)


def _simulate_paths(
    model,
    level: Level,
    nahead: int,
    anchor: int,
    particles: PyTree,
    indices: Int[Array, ' nsim'],
    keys: PRNGKeyT,
) -> PyTree:
    """Simulate one path per index; leaves ``(nahead, nsim, ...)``."""

    def _path(key, x):
        k_first, k_rest = jr.split(key)
        x = model.mk(k_first, x, anchor + 1)
        return simulate_from(k_rest, model, level, nahead, anchor + 1, x)

    starts = take_particles(particles, indices)
    paths = vmap(_path)(keys, starts)
    return jtu.tree_map(lambda leaf: jnp.swapaxes(leaf, 0, 1), paths)


class PredictionStorage:
    """Memory for ``nsim`` simulated trajectories ``nahead`` steps ahead.

    Args:
        initial_particles: Particles at time *anchor*, leaves ``(N, ...)``.
        initial_weights: Their normalized weights, shape ``(N,)``.
        model: Model used to determine the output structure (traces
            ``mk`` and, at observation levels, ``gk``).
        level: :class:`~fkjax.simulate.Level` of the predictions.
        nahead: Number of steps ahead, ``>= 1``.
        nsim: Number of simulated trajectories, ``>= 1``.
        anchor: Time index of the initial particles, ``>= 1``.

    Attributes:
        trajectories: Leaves of shape ``(nahead, nsim, ...)``; at the
            paired level a ``(states, observations)`` tuple.  Zero until
            :func:`predict` is run.
        uniforms: Stratified uniforms of the last prediction.
        indices: Index of the initial particle used by each simulation.

    Raises:
        ConfigurationError: On invalid sizes, mismatched particle and
            weight lengths or unknown *level*.
        MissingCapabilityError: If *model* cannot simulate at *level*.
    """

    def __init__(
        self,
        initial_particles: PyTree,
        initial_weights: Float[Array, ' num_particles'],
        model,
        level: Level,
        nahead: int,
        nsim: int,
        anchor: int,
    ):
        level = Level.parse(level)
        if nahead < 1:
            raise ConfigurationError(f'nahead should be >= 1, got {nahead}')
        if nsim < 1:
            raise ConfigurationError(f'nsim should be >= 1, got {nsim}')
        if anchor < 1:
            raise ConfigurationError(f'anchor should be >= 1, got {anchor}')
        initial_weights = jnp.asarray(initial_weights)
        num = initial_weights.shape[0] if initial_weights.ndim == 1 else 0
        if num < 1:
            raise ConfigurationError(
                'initial weights should be a non-empty vector'
            )
        for leaf in jtu.tree_leaves(initial_particles):
            if jnp.shape(leaf)[:1] != (num,):
                raise ConfigurationError(
                    'the numbers of initial particles and weights must match'
                )
        require_simulation(model, level, use='prediction')

        self.initial_particles = initial_particles
        self.initial_weights = initial_weights
        self.level = level
        self.anchor = anchor
        self.nahead = nahead
        self.nsim = nsim

        simulate_fn = functools.partial(
            _simulate_paths, model, level, nahead, anchor, initial_particles
        )
        shapes = jax.eval_shape(
            simulate_fn,
            jnp.zeros(nsim, jnp.int32),
            jr.split(jr.PRNGKey(0), nsim),
        )
        self.trajectories: PyTree = jtu.tree_map(
            lambda s: jnp.zeros(s.shape, s.dtype), shapes
        )
        self.uniforms = jnp.zeros(nsim, initial_weights.dtype)
        self.indices = jnp.zeros(nsim, jnp.int32)

    @classmethod
    def from_storage(
        cls,
        storage: ParticleStorage,
        model,
        level: Level = Level.STATE,
        *,
        nahead: int,
        nsim: int,
        anchor: Optional[int] = None,
    ) -> 'PredictionStorage':
        """Snapshot column *anchor* of a filled *storage*.

        Args:
            storage: Storage on which :func:`~fkjax.forward.pf_forward_pass`
                has been run.
            model: Model with the data needed at future time indices.
            level: Level of the predictions.
            nahead: Number of steps ahead.
            nsim: Number of simulations.
            anchor: Time index ``1 <= anchor <= n``; defaults to ``n``.

        Raises:
            ConfigurationError: If *anchor* is out of range or sizes are
                invalid.
            NumericalError: If the stored log weights cannot be
                normalized.
        """
        n = storage.num_timesteps
        anchor = n if anchor is None else anchor
        if not 1 <= anchor <= n:
            raise ConfigurationError(
                f'anchor should be between 1 and {n}, got {anchor}'
            )
        weights, _ = normalize(storage.log_weights[anchor - 1])
        return cls(
            storage.column(anchor - 1),
            weights,
            model,
            level,
            nahead,
            nsim,
            anchor,
        )

    @property
    def shape(self) -> tuple[int, int]:
        """``(nahead, nsim)``."""
        return self.nahead, self.nsim


def predict(
    storage: PredictionStorage,
    model,
    key: PRNGKeyT,
) -> None:
    """Fill ``storage.trajectories`` by stratified resampling and simulation.

    Args:
        storage: Prediction storage; its ``trajectories``, ``uniforms``
            and ``indices`` are overwritten.
        model: Model implementing ``mk`` (and ``gk`` at observation
            levels), able to evaluate them at times
            ``anchor + 1, ..., anchor + nahead``.
        key: JAX PRNG key.

    Raises:
        MissingCapabilityError: If *model* cannot simulate at the level of
            *storage*.
    """
    require_simulation(model, storage.level, use='prediction')
    nahead, nsim = storage.shape
    logger.debug(
        'predicting %d steps ahead from time %d with %d simulations',
        nahead,
        storage.anchor,
        nsim,
    )

    k_strat, k_paths = jr.split(key)
    uniforms = stratified_uniforms(
        k_strat, nsim, dtype=storage.initial_weights.dtype
    )
    indices = inverse_cdf_lookup(storage.initial_weights, uniforms)
    storage.uniforms = uniforms
    storage.indices = indices
    storage.trajectories = _simulate_paths(
        model,
        storage.level,
        nahead,
        storage.anchor,
        storage.initial_particles,
        indices,
        jr.split(k_paths, nsim),
    )


def predict_from(
    storage: ParticleStorage,
    model,
    key: PRNGKeyT,
    level: Level = Level.STATE,
    *,
    nahead: int,
    nsim: int,
    anchor: Optional[int] = None,
) -> PredictionStorage:
    """Allocate a :class:`PredictionStorage` and run :func:`predict` on it.

    See :meth:`PredictionStorage.from_storage` for the arguments.
    """
    pred = PredictionStorage.from_storage(
        storage, model, level, nahead=nahead, nsim=nsim, anchor=anchor
    )
    predict(pred, model, key)
    return pred
