# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Forward passes of the standard and conditional particle filters.

At every time step ``k = 2, ..., n`` the filter:

1. **Resamples** ancestor indices from the normalized weights of the
   previous column, using the injected resampler.
2. **Propagates** each particle through :math:`M_k(\cdot \mid x^{a_i})`.
3. **Weights** it by :math:`G_k(x^{a_i}, x^i)` and normalizes.

Resampling happens at every step; the per-step log mean weights sum to
the log normalizing-constant estimate.

The time loop is a :func:`jax.lax.scan`, so model functions are traced
once and must be JAX-traceable; the time index ``k`` they receive is a
traced integer.  Non-finite weights are detected from the per-step
maxima after the scan, before anything is written back to storage.
"""

import logging

import jax.numpy as jnp
import jax.random as jr
import jax.tree_util as jtu
from jax import lax, vmap
from jaxtyping import Array, Bool

from fkjax.model import require
from fkjax.resampling import Resampler
from fkjax.storage import ConditionalStorage, ParticleStorage, take_particles
from fkjax.traceback import ancestor_tracing
from fkjax.types import PRNGKeyT, PyTree, Scalar
from fkjax.weights import check_finite, log_mean_normalize

logger = logging.getLogger(__name__)


def _require_filtering(model, num_timesteps: int, use: str) -> None:
    names = ['M1', 'logG1']
    if num_timesteps > 1:
        names += ['Mk', 'logGk']
    require(model, *names, use=use)


def _cast(particles: PyTree, struct: PyTree) -> PyTree:
    return jtu.tree_map(
        lambda leaf, s: jnp.asarray(leaf).astype(s.dtype), particles, struct
    )


def _keep_reference(
    old: PyTree, new: PyTree, mask: Bool[Array, ' num_particles']
) -> PyTree:
    """Take *old* where *mask* is set and *new* elsewhere, leaf by leaf."""

    def _select(o, n):
        m = mask.reshape(mask.shape + (1,) * (n.ndim - 1))
        return jnp.where(m, o, n)

    return jtu.tree_map(_select, old, new)


def _prepend(first: Array, rest: Array) -> Array:
    return jnp.concatenate([jnp.expand_dims(first, 0), rest], axis=0)


def _sample_initial(model, key: PRNGKeyT, storage: ParticleStorage) -> PyTree:
    keys = jr.split(key, storage.num_particles)
    return _cast(vmap(model.M1)(keys), storage.particle_struct)


def _propagate(
    model,
    key: PRNGKeyT,
    storage: ParticleStorage,
    parents: PyTree,
    k,
) -> PyTree:
    keys = jr.split(key, storage.num_particles)
    new = vmap(model.Mk, in_axes=(0, 0, None))(keys, parents, k)
    return _cast(new, storage.particle_struct)


def _log_potentials(model, storage, parents: PyTree, x: PyTree, k) -> Array:
    lw = vmap(model.logGk, in_axes=(0, 0, None))(parents, x, k)
    return lw.astype(storage.dtype)


def _store(storage, x1, lw1, w1, log_mean1, max1, rest) -> None:
    """Validate a completed pass and write it to *storage*."""
    if rest is None:
        check_finite(jnp.expand_dims(max1, 0))
        storage.particles = jtu.tree_map(lambda leaf: leaf[None], x1)
        storage.log_weights = lw1[None]
        storage.weights = w1
        storage.log_evidence_increments = jnp.expand_dims(log_mean1, 0)
        return

    w_last, (x_rest, lw_rest, ancestors, log_means, maxima) = rest
    check_finite(_prepend(max1, maxima))
    storage.particles = jtu.tree_map(_prepend, x1, x_rest)
    storage.log_weights = _prepend(lw1, lw_rest)
    storage.ancestors = ancestors
    storage.weights = w_last
    storage.log_evidence_increments = _prepend(log_mean1, log_means)


def pf_forward_pass(
    storage: ParticleStorage,
    model,
    resampler: Resampler,
    key: PRNGKeyT,
) -> Scalar:
    r"""Run the standard particle filter, filling *storage*.

    Also accepts a :class:`~fkjax.storage.ConditionalStorage`, whose
    ``reference`` is left untouched.

    Args:
        storage: Storage sized ``(N, n)``; overwritten.
        model: Model implementing ``M1``, ``logG1`` and, when ``n > 1``,
            ``Mk`` and ``logGk``.
        resampler: Object with a ``resample`` method, see
            :class:`~fkjax.resampling.Resampler`.
        key: JAX PRNG key.

    Returns:
        The log normalizing-constant estimate
        :math:`\log \hat{Z} = \sum_k \log \frac{1}{N}\sum_i G_k^i`.

    Raises:
        MissingCapabilityError: If *model* or *resampler* lacks a
            required function.
        NumericalError: If all particles get zero weight at some step.
    """
    N, n = storage.shape
    _require_filtering(model, n, use='particle filtering')
    if n > 1:
        require(resampler, 'resample', use='particle filtering')
    logger.debug('particle filter forward pass with N=%d, n=%d', N, n)

    k_init, k_rest = jr.split(key)
    x1 = _sample_initial(model, k_init, storage)
    lw1 = vmap(model.logG1)(x1).astype(storage.dtype)
    w1, log_mean1, max1 = log_mean_normalize(lw1)

    rest = None
    if n > 1:

        def _step(carry, args):
            x_prev, w_prev = carry
            step_key, k = args
            k_res, k_prop = jr.split(step_key)

            ancestors = resampler.resample(k_res, w_prev)
            parents = take_particles(x_prev, ancestors)
            x = _propagate(model, k_prop, storage, parents, k)
            lw = _log_potentials(model, storage, parents, x, k)

            w, log_mean, m = log_mean_normalize(lw)
            return (x, w), (x, lw, ancestors, log_mean, m)

        step_keys = jr.split(k_rest, n - 1)
        times = jnp.arange(2, n + 1)
        (_, w_last), outputs = lax.scan(_step, (x1, w1), (step_keys, times))
        rest = (w_last, outputs)

    _store(storage, x1, lw1, w1, log_mean1, max1, rest)
    log_evidence = jnp.sum(storage.log_evidence_increments)
    logger.debug('log normalizing-constant estimate: %s', log_evidence)
    return log_evidence


def cpf_forward_pass(
    storage: ConditionalStorage,
    model,
    resampler: Resampler,
    key: PRNGKeyT,
) -> None:
    """Run the conditional particle filter, filling *storage*.

    The particle at row ``storage.reference[c]`` of every column ``c`` is
    kept bit-identical; the other ``N - 1`` particles are resampled,
    propagated and weighted as in :func:`pf_forward_pass`.  Resampling at
    column ``c`` pins the parent of the reference row to
    ``reference[c - 1]`` through ``resampler.conditional_resample``.

    The reference must hold a valid trajectory beforehand (see
    :func:`initialize_reference`); this is not checked and results are
    wrong otherwise.

    Raises:
        MissingCapabilityError: If *model* or *resampler* lacks a
            required function.
        NumericalError: If all particles get zero weight at some step.
    """
    N, n = storage.shape
    _require_filtering(model, n, use='conditional particle filtering')
    if n > 1:
        require(
            resampler,
            'conditional_resample',
            use='conditional particle filtering',
        )
    logger.debug('conditional forward pass with N=%d, n=%d', N, n)

    ref = storage.reference
    rows = jnp.arange(N)

    k_init, k_rest = jr.split(key)
    x1 = _keep_reference(
        storage.column(0),
        _sample_initial(model, k_init, storage),
        rows == ref[0],
    )
    lw1 = vmap(model.logG1)(x1).astype(storage.dtype)
    w1, log_mean1, max1 = log_mean_normalize(lw1)

    rest = None
    if n > 1:

        def _step(carry, args):
            x_prev, w_prev = carry
            step_key, k, x_ref_col, ref_cur, ref_prev = args
            k_res, k_prop = jr.split(step_key)

            ancestors = resampler.conditional_resample(
                k_res, w_prev, ref_cur, ref_prev
            )
            parents = take_particles(x_prev, ancestors)
            x = _keep_reference(
                x_ref_col,
                _propagate(model, k_prop, storage, parents, k),
                rows == ref_cur,
            )
            lw = _log_potentials(model, storage, parents, x, k)

            w, log_mean, m = log_mean_normalize(lw)
            return (x, w), (x, lw, ancestors, log_mean, m)

        old_columns = jtu.tree_map(lambda leaf: leaf[1:], storage.particles)
        xs = (
            jr.split(k_rest, n - 1),
            jnp.arange(2, n + 1),
            old_columns,
            ref[1:],
            ref[:-1],
        )
        (_, w_last), outputs = lax.scan(_step, (x1, w1), xs)
        rest = (w_last, outputs)

    _store(storage, x1, lw1, w1, log_mean1, max1, rest)


def initialize_reference(
    storage: ConditionalStorage,
    model,
    resampler: Resampler,
    key: PRNGKeyT,
) -> Scalar:
    """Initialize ``storage.reference`` before the first conditional pass.

    Runs :func:`pf_forward_pass` and then ancestor tracing.

    Returns:
        The log normalizing-constant estimate of the standard pass.
    """
    k_pf, k_trace = jr.split(key)
    log_evidence = pf_forward_pass(storage, model, resampler, k_pf)
    ancestor_tracing(storage, k_trace)
    return log_evidence
