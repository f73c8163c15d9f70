# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Injectable resampling capabilities.

The forward pass never chooses a resampling algorithm itself: callers
pass an object implementing :class:`Resampler`.  :class:`SchemeResampler`
adapts any scheme with the Blackjax signature
``(rng_key, weights, num_samples) -> indices`` (the functions in
``blackjax.smc.resampling``); *weights* are always **normalized**.

Prediction does not use an injected resampler; it always performs
stratified resampling through :func:`stratified_uniforms` and
:func:`inverse_cdf_lookup`.
"""

from collections.abc import Callable
from typing import Protocol, runtime_checkable

import jax.numpy as jnp
import jax.random as jr
from blackjax.smc.resampling import (
    multinomial,
    residual,
    stratified,
    systematic,
)
from jaxtyping import Array, Float, Int

from fkjax.types import IntScalar, PRNGKeyT


@runtime_checkable
class Resampler(Protocol):
    """Resampling capability consumed by the forward passes.

    Both operations return ``N`` ancestor indices in ``[0, N)`` for a
    normalized weight vector of length ``N``, which may contain zeros.
    """

    def resample(
        self,
        key: PRNGKeyT,
        weights: Float[Array, ' num_particles'],
    ) -> Int[Array, ' num_particles']:
        """Draw ancestor indices."""
        ...

    def conditional_resample(
        self,
        key: PRNGKeyT,
        weights: Float[Array, ' num_particles'],
        fixed_slot: IntScalar,
        fixed_ancestor: IntScalar,
    ) -> Int[Array, ' num_particles']:
        """Draw ancestor indices with ``indices[fixed_slot] == fixed_ancestor``.

        Requires ``weights[fixed_ancestor] > 0`` (not checked).  The
        result is undefined if that weight is zero.
        """
        ...


class SchemeResampler:
    """Resampler built from a Blackjax-style resampling scheme.

    Only :meth:`resample` uses *scheme*.  :meth:`conditional_resample`
    is always multinomial, whatever *scheme* is: it draws the ``N - 1``
    free slots independently from the categorical distribution given by
    *weights* and pins the fixed slot, which leaves the conditional
    particle filter invariant.  The factories below therefore differ only
    in their unconditional resampling.

    Args:
        scheme: Function ``(key, weights, num_samples) -> indices``.
            Defaults to :func:`blackjax.smc.resampling.systematic`.
    """

    def __init__(self, scheme: Callable = systematic):
        self.scheme = scheme

    def __repr__(self) -> str:
        name = getattr(self.scheme, '__name__', repr(self.scheme))
        return f'{type(self).__name__}({name})'

    def resample(
        self,
        key: PRNGKeyT,
        weights: Float[Array, ' num_particles'],
    ) -> Int[Array, ' num_particles']:
        """Draw ``N`` ancestor indices with the wrapped scheme."""
        n = weights.shape[0]
        return self.scheme(key, weights, n).astype(jnp.int32)

    def conditional_resample(
        self,
        key: PRNGKeyT,
        weights: Float[Array, ' num_particles'],
        fixed_slot: IntScalar,
        fixed_ancestor: IntScalar,
    ) -> Int[Array, ' num_particles']:
        """Draw free slots multinomially and pin *fixed_slot*.

        *scheme* is not used; see the class docstring.
        """
        n = weights.shape[0]
        indices = jr.choice(key, n, shape=(n,), replace=True, p=weights)
        return indices.astype(jnp.int32).at[fixed_slot].set(fixed_ancestor)


def multinomial_resampler() -> SchemeResampler:
    """Multinomial ``resample``, multinomial ``conditional_resample``."""
    return SchemeResampler(multinomial)


def systematic_resampler() -> SchemeResampler:
    """Systematic ``resample``, multinomial ``conditional_resample``."""
    return SchemeResampler(systematic)


def stratified_resampler() -> SchemeResampler:
    """Stratified ``resample``, multinomial ``conditional_resample``."""
    return SchemeResampler(stratified)


def residual_resampler() -> SchemeResampler:
    """Residual ``resample``, multinomial ``conditional_resample``."""
    return SchemeResampler(residual)


# --- Stratified resampling used by prediction ------------------------------


def stratified_uniforms(
    key: PRNGKeyT,
    num_samples: int,
    dtype=jnp.float32,
) -> Float[Array, ' num_samples']:
    """Generate ordered stratified uniforms.

    One uniform is drawn in each stratum ``[j / num, (j + 1) / num)``, so
    the output is sorted in ascending order.

    Args:
        key: JAX PRNG key.
        num_samples: Number of strata.
        dtype: Floating point type of the output.

    Returns:
        Ascending uniforms in ``[0, 1)``.
    """
    u = jr.uniform(key, (num_samples,), dtype=dtype)
    return (jnp.arange(num_samples, dtype=dtype) + u) / num_samples


def inverse_cdf_lookup(
    weights: Float[Array, ' num_particles'],
    uniforms: Float[Array, ' num_samples'],
) -> Int[Array, ' num_samples']:
    """Map ascending *uniforms* to indices through the CDF of *weights*.

    Args:
        weights: Normalized weights.
        uniforms: Uniform draws in ``[0, 1)``, sorted ascending.

    Returns:
        For each uniform, the first index whose cumulative weight reaches
        it (clipped to the last index against rounding).
    """
    n = weights.shape[0]
    idx = jnp.searchsorted(jnp.cumsum(weights), uniforms, side='left')
    return jnp.clip(idx, 0, n - 1).astype(jnp.int32)
