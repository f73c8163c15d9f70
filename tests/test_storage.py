# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for fkjax.storage."""

import jax
import jax.numpy as jnp
import pytest

from fkjax.exceptions import ConfigurationError
from fkjax.storage import ConditionalStorage, ParticleStorage


class TestParticleStorageConstruction:
    """Sizes, shapes and types of allocated storage."""

    def test_shapes(self):
        """Arrays are allocated time-major."""
        st = ParticleStorage(float, 7, 4)
        assert st.shape == (7, 4)
        assert len(st) == 4
        assert st.particles.shape == (4, 7)
        assert st.log_weights.shape == (4, 7)
        assert st.ancestors.shape == (3, 7)
        assert st.ancestors.dtype == jnp.int32
        assert st.weights.shape == (7,)
        assert st.log_evidence_increments.shape == (4,)

    def test_single_time_step(self):
        """n = 1 has no ancestor columns."""
        st = ParticleStorage(float, 2, 1)
        assert st.ancestors.shape == (0, 2)

    @pytest.mark.parametrize('num_particles', [0, 1])
    def test_too_few_particles(self, num_particles):
        """N < 2 is rejected."""
        with pytest.raises(ConfigurationError, match='particles'):
            ParticleStorage(float, num_particles, 3)

    def test_too_few_time_steps(self):
        """n < 1 is rejected."""
        with pytest.raises(ConfigurationError, match='time steps'):
            ParticleStorage(float, 10, 0)

    def test_conditional_storage_validates_too(self):
        """Conditional storage applies the same checks."""
        with pytest.raises(ConfigurationError):
            ConditionalStorage(float, 1, 3)

    def test_particle_type_inferred_from_model(self, model):
        """Passing the model probes M1 for the particle structure."""
        st = ParticleStorage(model, 5, 3)
        assert st.particles.shape == (3, 5)
        assert st.particles.dtype == jnp.float64

    def test_pytree_particles(self):
        """Every leaf of a PyTree particle gets its own array."""
        example = {
            'position': jnp.zeros(2),
            'count': jnp.zeros((), jnp.int32),
        }
        st = ParticleStorage(example, 4, 6)
        assert st.particles['position'].shape == (6, 4, 2)
        assert st.particles['count'].dtype == jnp.int32

    def test_shape_dtype_struct_particles(self):
        """A ShapeDtypeStruct describes the particle directly."""
        st = ParticleStorage(jax.ShapeDtypeStruct((3,), jnp.float32), 4, 2)
        assert st.particles.shape == (2, 4, 3)
        assert st.particles.dtype == jnp.float32

    def test_dtype_selection(self):
        """The weight precision can be chosen."""
        st = ParticleStorage(float, 4, 2, dtype=jnp.float32)
        assert st.dtype == jnp.float32
        assert st.log_weights.dtype == jnp.float32

    def test_default_dtype_is_double_with_x64(self):
        """float64 is the default when x64 is enabled."""
        assert ParticleStorage(float, 4, 2).dtype == jnp.float64

    def test_integer_dtype_rejected(self):
        """Weights must be floating point."""
        with pytest.raises(ConfigurationError, match='floating point'):
            ParticleStorage(float, 4, 2, dtype=jnp.int32)

    def test_repr(self):
        """The repr shows the sizes."""
        assert repr(ParticleStorage(float, 3, 2)).startswith(
            'ParticleStorage(num_particles=3, num_timesteps=2'
        )


class TestConditionalStorage:
    """Conditional storage and its reference."""

    def test_reference_allocated(self):
        """The reference is an int32 vector of length n."""
        st = ConditionalStorage(float, 5, 3)
        assert st.reference.shape == (3,)
        assert st.reference.dtype == jnp.int32

    def test_from_storage_shares_arrays(self):
        """Wrapping shares the arrays of the standard storage."""
        st = ParticleStorage(float, 5, 3)
        cst = ConditionalStorage.from_storage(st, jnp.array([0, 4, 2]))
        assert cst.particles is st.particles
        assert cst.shape == st.shape
        assert jnp.array_equal(cst.reference, jnp.array([0, 4, 2]))

    def test_from_storage_rejects_wrong_reference_length(self):
        """A reference must have length n."""
        st = ParticleStorage(float, 5, 3)
        with pytest.raises(ConfigurationError, match='reference'):
            ConditionalStorage.from_storage(st, jnp.zeros(2, jnp.int32))
