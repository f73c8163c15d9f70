# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Diagnostic utilities for filled particle storage.

- :func:`ess_trace` - effective sample size of every column
- :func:`weighted_mean` - filtered mean at each time step
- :func:`particle_diversity` - fraction of unique ancestors per
  resampling step

Low diversity over many consecutive steps indicates path degeneracy,
in which case backward sampling usually gives a better traceback than
ancestor tracing.

All functions are pure and read the arrays of a
:class:`~fkjax.storage.ParticleStorage` after a forward pass.
"""

import jax.numpy as jnp
import jax.tree_util as jtu
from blackjax.smc.ess import ess
from jax import vmap
from jaxtyping import Array, Float, Int

from fkjax.storage import ParticleStorage
from fkjax.types import PyTree
from fkjax.weights import log_normalize


def ess_trace(storage: ParticleStorage) -> Float[Array, ' ntime']:
    """Compute the effective sample size of each column of *storage*.

    Args:
        storage: Storage filled by a forward pass.

    Returns:
        ESS at each time step, shape ``(ntime,)``.
    """
    return vmap(ess)(storage.log_weights)


def weighted_mean(storage: ParticleStorage) -> PyTree:
    r"""Compute the weighted mean of particles at each time step.

    Args:
        storage: Storage filled by a forward pass.  Particle leaves must
            be of a floating point type.

    Returns:
        A PyTree matching the particle structure, leaves of shape
        ``(ntime, *event_shape)``.
    """
    # weights: (ntime, num_particles)
    log_w, _ = vmap(log_normalize)(storage.log_weights)
    weights = jnp.exp(log_w)
    # leaves: (ntime, num_particles, ...)
    return jtu.tree_map(
        lambda leaf: jnp.einsum('tn,tn...->t...', weights, leaf),
        storage.particles,
    )


def particle_diversity(
    storage: ParticleStorage,
) -> Float[Array, ' ntime_minus_1']:
    r"""Compute the fraction of unique ancestors at each resampling step.

    Uses an indicator-based method (not ``jnp.unique``) for JIT
    compatibility: counts the ancestors that differ from their
    predecessor in the sorted order.

    Args:
        storage: Storage filled by a forward pass.

    Returns:
        Diversity fraction in ``(0, 1]`` for columns ``2, ..., n``,
        shape ``(ntime - 1,)``; empty when ``n == 1``.
    """
    num_particles = storage.num_particles

    def _diversity_one_step(
        anc: Int[Array, ' num_particles'],
    ) -> Float[Array, '']:
        sorted_anc = jnp.sort(anc)
        is_unique = jnp.concatenate(
            [jnp.array([True]), sorted_anc[1:] != sorted_anc[:-1]]
        )
        return jnp.sum(is_unique) / num_particles

    if storage.ancestors.shape[0] == 0:
        return jnp.zeros(0, storage.dtype)
    return vmap(_diversity_one_step)(storage.ancestors).astype(storage.dtype)
