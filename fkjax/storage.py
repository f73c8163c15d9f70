# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Storage objects owning every array used by a filtering run.

Arrays are *time-major*, matching :class:`jax.lax.scan` stacking:

* ``particles``: PyTree whose leaves have shape
  ``(num_timesteps, num_particles, *event_shape)``;
  ``particles[c, i]`` is particle ``i`` at column ``c`` (time ``c + 1``).
* ``log_weights``: unnormalized log weights, ``(num_timesteps, num_particles)``.
* ``ancestors``: ``(num_timesteps - 1, num_particles)``;
  ``ancestors[c, i]`` is the index, in column ``c``, of the parent of
  ``particles[c + 1, i]``.
* ``weights``: normalized weights of the last filled column.
* ``log_evidence_increments``: per-step log mean weights of the last
  standard forward pass.

A storage object is allocated once per ``(N, n, particle type)`` and
reused across passes; each pass rebinds the arrays it fills and the
shapes never change.  A storage object is owned by a single caller:
never run two passes on the same storage concurrently.
"""

from typing import Optional

import jax
import jax.numpy as jnp
import jax.tree_util as jtu
from jaxtyping import Array, Float, Int

from fkjax.exceptions import ConfigurationError
from fkjax.model import particle_spec
from fkjax.types import PyTree


def check_storage_inputs(num_particles: int, num_timesteps: int) -> None:
    """Reject ``N < 2`` and ``n < 1``."""
    if num_particles < 2:
        raise ConfigurationError(
            f'number of particles should be >= 2, got {num_particles}'
        )
    if num_timesteps < 1:
        raise ConfigurationError(
            f'number of time steps should be >= 1, got {num_timesteps}'
        )


def float_dtype(dtype=None) -> jnp.dtype:
    """Resolve the floating point type used for weights.

    ``None`` selects ``float64``, which JAX canonicalizes to ``float32``
    unless ``jax_enable_x64`` is set.
    """
    resolved = jax.dtypes.canonicalize_dtype(
        jnp.float64 if dtype is None else dtype
    )
    if not jnp.issubdtype(resolved, jnp.floating):
        raise ConfigurationError(
            f'weight dtype must be a floating point type, got {resolved}'
        )
    return resolved


def _leaf_struct(leaf) -> jax.ShapeDtypeStruct:
    if isinstance(leaf, jax.ShapeDtypeStruct):
        return leaf
    arr = jnp.asarray(leaf)
    return jax.ShapeDtypeStruct(arr.shape, arr.dtype)


def particle_struct(particle) -> PyTree:
    """Describe one particle as a PyTree of ``ShapeDtypeStruct``.

    Args:
        particle: A model (probed through ``M1``), a scalar type such as
            ``float`` or ``jnp.float32``, or an example particle / PyTree
            of ``ShapeDtypeStruct``.
    """
    if callable(getattr(particle, 'M1', None)):
        return particle_spec(particle)
    if isinstance(particle, (type, jnp.dtype)):
        return jax.ShapeDtypeStruct(
            (), jax.dtypes.canonicalize_dtype(particle)
        )
    return jtu.tree_map(_leaf_struct, particle)


def take_particles(particles: PyTree, indices) -> PyTree:
    """Index the leading axis of every leaf of *particles*."""
    return jtu.tree_map(lambda leaf: leaf[indices], particles)


class ParticleStorage:
    """Storage for the standard particle filter.

    Args:
        particle: Particle description, see :func:`particle_struct`.
            Passing the model infers the particle type by tracing ``M1``
            once with a fixed key.
        num_particles: Number of particles ``N >= 2``.
        num_timesteps: Time series length ``n >= 1``.
        dtype: Floating point type of the weights.

    Raises:
        ConfigurationError: If ``N < 2``, ``n < 1`` or *dtype* is not a
            floating point type.
    """

    def __init__(
        self,
        particle,
        num_particles: int,
        num_timesteps: int,
        dtype=None,
    ):
        check_storage_inputs(num_particles, num_timesteps)
        self.dtype = float_dtype(dtype)
        self.particle_struct = particle_struct(particle)

        n, N = num_timesteps, num_particles
        self.particles: PyTree = jtu.tree_map(
            lambda s: jnp.zeros((n, N, *s.shape), s.dtype),
            self.particle_struct,
        )
        self.log_weights: Float[Array, 'ntime num_particles'] = jnp.zeros(
            (n, N), self.dtype
        )
        self.ancestors: Int[Array, 'ntime_minus_1 num_particles'] = (
            jnp.zeros((n - 1, N), jnp.int32)
        )
        self.weights: Float[Array, ' num_particles'] = jnp.zeros(
            N, self.dtype
        )
        self.log_evidence_increments: Float[Array, ' ntime'] = jnp.zeros(
            n, self.dtype
        )

    @property
    def num_particles(self) -> int:
        """Number of particles ``N``."""
        return self.log_weights.shape[1]

    @property
    def num_timesteps(self) -> int:
        """Time series length ``n``."""
        return self.log_weights.shape[0]

    @property
    def shape(self) -> tuple[int, int]:
        """``(num_particles, num_timesteps)``."""
        return self.num_particles, self.num_timesteps

    def __len__(self) -> int:
        return self.num_timesteps

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(num_particles={self.num_particles}, '
            f'num_timesteps={self.num_timesteps}, dtype={self.dtype})'
        )

    def column(self, c: int) -> PyTree:
        """Particles of column *c* (time ``c + 1``), leaves ``(N, ...)``."""
        return jtu.tree_map(lambda leaf: leaf[c], self.particles)


class ConditionalStorage(ParticleStorage):
    """Storage for the conditional particle filter.

    Adds ``reference``, an int array of length ``n`` recording which row
    of each column currently holds the reference trajectory.  It is all
    zeros until :func:`~fkjax.forward.initialize_reference` or a
    traceback fills it.
    """

    def __init__(
        self,
        particle,
        num_particles: int,
        num_timesteps: int,
        dtype=None,
    ):
        super().__init__(particle, num_particles, num_timesteps, dtype)
        self.reference: Int[Array, ' ntime'] = jnp.zeros(
            num_timesteps, jnp.int32
        )

    @classmethod
    def from_storage(
        cls,
        storage: ParticleStorage,
        reference: Optional[Int[Array, ' ntime']] = None,
    ) -> 'ConditionalStorage':
        """Build conditional storage sharing the arrays of *storage*.

        Args:
            storage: A (possibly filled) standard storage.
            reference: Optional initial reference indices, length ``n``.

        Raises:
            ConfigurationError: If *reference* does not have length ``n``.
        """
        new = cls.__new__(cls)
        new.__dict__.update(
            {k: v for k, v in vars(storage).items() if k != 'reference'}
        )
        n = storage.num_timesteps
        if reference is None:
            new.reference = jnp.zeros(n, jnp.int32)
        else:
            reference = jnp.asarray(reference, jnp.int32)
            if reference.shape != (n,):
                raise ConfigurationError(
                    f'reference should have shape ({n},), '
                    f'got {reference.shape}'
                )
            new.reference = reference
        return new
