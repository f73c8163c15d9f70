# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Tracebacks: sampling one trajectory from a completed forward pass.

Two variants fill ``storage.reference``:

* **Ancestor tracing** (Andrieu, Doucet & Holenstein, 2010) draws the
  terminal index from the final normalized weights and follows the
  stored ancestor links backwards.  :math:`O(n)`, but lineages collapse
  over long horizons (path degeneracy).
* **Backward sampling** (Whiteley, 2010) draws the terminal index the
  same way, then at each earlier column re-weights every candidate

  .. math::

      \tilde{w}_k^i \propto w_k^i \,
          G_{k+1}(x_k^i, x_{k+1}^\star)\,
          M_{k+1}(x_{k+1}^\star \mid x_k^i),

  and draws from it.  :math:`O(nN)` and needs ``logMk``.

Both require that the storage has not changed since the forward pass;
this is not checked.
"""

import enum
import logging
from typing import Optional

import jax.numpy as jnp
import jax.random as jr
import jax.tree_util as jtu
import numpy as np
from jax import lax, vmap

from fkjax.exceptions import ConfigurationError, MissingCapabilityError
from fkjax.model import require
from fkjax.storage import ConditionalStorage, take_particles
from fkjax.types import PRNGKeyT, PyTree
from fkjax.weights import check_finite, log_mean_normalize, sample_one

logger = logging.getLogger(__name__)


class Traceback(enum.Enum):
    """Traceback method used to produce the reference trajectory."""

    ANCESTOR_TRACING = 'ancestor_tracing'
    BACKWARD_SAMPLING = 'backward_sampling'


def _sample_terminal(storage: ConditionalStorage, key: PRNGKeyT):
    u = jr.uniform(key, dtype=storage.dtype)
    return sample_one(storage.weights, u)


def ancestor_tracing(storage: ConditionalStorage, key: PRNGKeyT) -> None:
    """Fill ``storage.reference`` by following ancestor links.

    Args:
        storage: Storage filled by a standard or conditional forward pass.
        key: JAX PRNG key.
    """
    last = _sample_terminal(storage, key)

    def _step(a, ancestors_col):
        a = ancestors_col[a]
        return a, a

    _, earlier = lax.scan(_step, last, storage.ancestors, reverse=True)
    storage.reference = jnp.append(earlier, last).astype(jnp.int32)


def backward_sampling(
    storage: ConditionalStorage,
    model,
    key: PRNGKeyT,
) -> None:
    """Fill ``storage.reference`` by backward sampling.

    Args:
        storage: Storage filled by a standard or conditional forward pass.
        model: Model implementing ``logGk`` and ``logMk``.
        key: JAX PRNG key.

    Raises:
        MissingCapabilityError: If *model* lacks ``logGk`` or ``logMk``.
        NumericalError: If a re-weighted vector cannot be normalized.
    """
    n = storage.num_timesteps
    if n > 1:
        require(model, 'logGk', 'logMk', use='backward sampling')

    k_last, k_rest = jr.split(key)
    last = _sample_terminal(storage, k_last)
    if n == 1:
        storage.reference = jnp.expand_dims(last, 0).astype(jnp.int32)
        return

    def _reweight(x_col, lw_col, x_next, k_next):
        log_g = vmap(model.logGk, in_axes=(0, None, None))(
            x_col, x_next, k_next
        )
        log_m = vmap(model.logMk, in_axes=(None, 0, None))(
            x_next, x_col, k_next
        )
        return lw_col + (log_g + log_m).astype(lw_col.dtype)

    def _step(x_next, args):
        step_key, x_col, lw_col, k_next = args
        w, _, m = log_mean_normalize(_reweight(x_col, lw_col, x_next, k_next))
        u = jr.uniform(step_key, dtype=w.dtype)
        a = sample_one(w, u)
        return take_particles(x_col, a), (a, m)

    earlier_cols = jtu.tree_map(lambda leaf: leaf[:-1], storage.particles)
    x_last = take_particles(storage.column(n - 1), last)
    xs = (
        jr.split(k_rest, n - 1),
        earlier_cols,
        storage.log_weights[:-1],
        jnp.arange(2, n + 1),
    )
    _, (earlier, maxima) = lax.scan(_step, x_last, xs, reverse=True)
    check_finite(maxima)
    storage.reference = jnp.append(earlier, last).astype(jnp.int32)


def traceback(
    storage: ConditionalStorage,
    key: PRNGKeyT,
    method: Traceback = Traceback.ANCESTOR_TRACING,
    model=None,
) -> None:
    """Populate ``storage.reference`` with the chosen traceback method.

    Args:
        storage: Storage filled by a forward pass.
        key: JAX PRNG key.
        method: :class:`Traceback` variant.
        model: Required for backward sampling.

    Raises:
        ConfigurationError: If *method* is not a :class:`Traceback`.
        MissingCapabilityError: If backward sampling is requested without
            a suitable model.
    """
    try:
        method = Traceback(method)
    except ValueError as err:
        raise ConfigurationError(
            f'unknown traceback method {method!r}'
        ) from err
    logger.debug('traceback with %s', method.value)
    if method is Traceback.ANCESTOR_TRACING:
        ancestor_tracing(storage, key)
    elif model is None:
        raise MissingCapabilityError('backward sampling requires a model')
    else:
        backward_sampling(storage, model, key)


def get_reference(
    storage: ConditionalStorage,
    dest: Optional[PyTree] = None,
) -> PyTree:
    """Read the reference trajectory out of *storage*.

    Args:
        storage: Storage on which a traceback has been run.
        dest: Optional PyTree of writable NumPy arrays, matching the
            particle structure, with leading length ``n``.  Filled in
            place when given.

    Returns:
        The trajectory, leaves of shape ``(n, *event_shape)``; *dest*
        itself when it was given.

    Raises:
        ConfigurationError: If *dest* does not have the structure of a
            particle, or a leaf of it does not have the shape of the
            corresponding trajectory leaf (leading length ``n``).
    """
    n = storage.num_timesteps
    columns = jnp.arange(n)
    trajectory = jtu.tree_map(
        lambda leaf: leaf[columns, storage.reference], storage.particles
    )
    if dest is None:
        return trajectory

    expected = jtu.tree_structure(trajectory)
    if jtu.tree_structure(dest) != expected:
        raise ConfigurationError(
            f'structure of destination {jtu.tree_structure(dest)} does not '
            f'match the particle structure {expected}'
        )
    pairs = list(zip(jtu.tree_leaves(dest), jtu.tree_leaves(trajectory)))
    for out, values in pairs:
        length = np.shape(out)[0] if np.ndim(out) else 0
        if length != n:
            raise ConfigurationError(
                f'length of destination ({length}) does not match the '
                f'length of storage ({n})'
            )
        if np.shape(out) != values.shape:
            raise ConfigurationError(
                f'destination leaf of shape {np.shape(out)} cannot hold '
                f'trajectory leaf of shape {values.shape}'
            )

    for out, values in pairs:
        out[...] = np.asarray(values)
    return dest
