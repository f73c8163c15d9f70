# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Log-weight normalization and single categorical draws.

The filter accumulates, at every time step, the log of the mean
unnormalized weight

.. math::

    \log \hat{Z}_k = m + \log\Bigl(\frac{1}{N}\sum_i e^{\ell_i - m}\Bigr),
    \qquad m = \max_i \ell_i,

whose sum over time steps is the (unbiased on the natural scale)
log normalizing-constant estimate.
"""

import jax.numpy as jnp
from jaxtyping import Array, Float, Int

from fkjax.exceptions import NumericalError
from fkjax.types import Scalar


def log_mean_normalize(
    log_weights: Float[Array, ' num_particles'],
) -> tuple[Float[Array, ' num_particles'], Scalar, Scalar]:
    """Normalize log weights without validating them.

    Traceable counterpart of :func:`normalize` for use inside
    ``lax.scan`` bodies.  The caller is responsible for checking that
    the returned maximum is finite.

    Args:
        log_weights: Unnormalized log importance weights.

    Returns:
        A tuple ``(weights, log_mean_weight, max_log_weight)``.
    """
    m = jnp.max(log_weights)
    w = jnp.exp(log_weights - m)
    log_mean_weight = m + jnp.log(jnp.mean(w))
    return w / jnp.sum(w), log_mean_weight, m


def normalize(
    log_weights: Float[Array, ' num_particles'],
) -> tuple[Float[Array, ' num_particles'], Scalar]:
    """Exponentiate and normalize log weights.

    Args:
        log_weights: Unnormalized log importance weights.

    Returns:
        A tuple ``(weights, log_mean_weight)`` where *weights* sum to one
        and *log_mean_weight* is the log of the mean unnormalized weight.

    Raises:
        NumericalError: If the maximum log weight is ``+inf``, ``-inf``
            or NaN.
    """
    weights, log_mean_weight, m = log_mean_normalize(log_weights)
    if not bool(jnp.isfinite(m)):
        raise NumericalError(
            f'maximum of input log-weights is {float(m)}, '
            'impossible to normalize'
        )
    return weights, log_mean_weight


def log_normalize(
    log_weights: Float[Array, ' num_particles'],
) -> tuple[Float[Array, ' num_particles'], Scalar]:
    """Normalize log weights in log space.

    Args:
        log_weights: Unnormalized log importance weights.

    Returns:
        A tuple ``(log_normalized, log_normalizer)`` where
        *log_normalized* has ``logsumexp == 0`` and
        *log_normalizer* is ``logsumexp(log_weights)``.
    """
    log_normalizer = jnp.logaddexp.reduce(log_weights)  # type: ignore[union-attr]
    return log_weights - log_normalizer, log_normalizer


def sample_one(
    weights: Float[Array, ' num_particles'],
    u: Scalar,
) -> Int[Array, '']:
    """Draw one index proportionally to normalized *weights*.

    Returns the first index with positive weight whose cumulative weight
    reaches *u*, so a draw of exactly ``u = 0`` never selects a
    zero-weight particle.  If rounding leaves the total slightly below
    *u*, the last index is returned.  *weights* must be non-empty and
    sum to one; neither is checked.

    Args:
        weights: Normalized weights.
        u: A uniform draw in ``[0, 1)``.

    Returns:
        The sampled index (int32 scalar).
    """
    n = weights.shape[0]
    hit = (jnp.cumsum(weights) >= u) & (weights > 0)
    idx = jnp.where(jnp.any(hit), jnp.argmax(hit), n - 1)
    return idx.astype(jnp.int32)


def check_finite(
    max_log_weights: Float[Array, ' ntime'],
    first_time: int = 1,
) -> None:
    """Raise :class:`NumericalError` at the first non-finite maximum.

    Used after a compiled loop over time steps, on the maxima returned by
    :func:`log_mean_normalize`.

    Args:
        max_log_weights: Maximum log weight of each normalized vector.
        first_time: Time index of ``max_log_weights[0]``.
    """
    bad = jnp.logical_not(jnp.isfinite(max_log_weights))
    if bool(jnp.any(bad)):
        c = int(jnp.argmax(bad))
        time_index = c + first_time
        raise NumericalError(
            f'maximum of log-weights at time {time_index} is '
            f'{float(max_log_weights[c])}, impossible to normalize',
            time_index=time_index,
        )
