# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for fkjax.diagnostics."""

import blackjax.smc.ess as bj_ess
import jax.numpy as jnp
import pytest

import fkjax
from fkjax.diagnostics import ess_trace, particle_diversity, weighted_mean
from fkjax.forward import pf_forward_pass
from fkjax.resampling import systematic_resampler
from fkjax.storage import ParticleStorage


class CollapsingResampler:
    """Every particle descends from particle 0."""

    def resample(self, key, weights):
        return jnp.zeros(weights.shape[0], jnp.int32)


class TestESSTrace:
    """ESS of every column."""

    def test_shape_and_bounds(self, model, key):
        """ESS lies between 1 and N at every step."""
        st = ParticleStorage(model, 100, 5)
        pf_forward_pass(st, model, systematic_resampler(), key)
        trace = ess_trace(st)
        assert trace.shape == (5,)
        assert jnp.all(trace >= 1.0 - 1e-9)
        assert jnp.all(trace <= 100.0 + 1e-9)

    def test_equal_weights(self):
        """Equal log weights give ESS = N."""
        st = ParticleStorage(float, 10, 3)
        assert jnp.allclose(ess_trace(st), 10.0)

    def test_matches_blackjax_per_column(self, model, key):
        """Each entry equals blackjax ESS of that column."""
        st = ParticleStorage(model, 50, 4)
        pf_forward_pass(st, model, systematic_resampler(), key)
        trace = ess_trace(st)
        for c in range(4):
            expected = bj_ess.ess(st.log_weights[c])
            assert float(trace[c]) == pytest.approx(float(expected))

    def test_public_ess_is_blackjax(self):
        """The package re-exports blackjax ESS functions."""
        assert fkjax.ess is bj_ess.ess
        assert fkjax.log_ess is bj_ess.log_ess


class TestWeightedMean:
    """Filtered means of array-valued particles."""

    def test_equal_weights_give_plain_mean(self):
        """Equal weights reduce to the arithmetic mean."""
        st = ParticleStorage(jnp.zeros(2), 4, 3)
        st.particles = jnp.arange(24.0).reshape(3, 4, 2)
        means = weighted_mean(st)
        assert means.shape == (3, 2)
        assert jnp.allclose(means, jnp.mean(st.particles, axis=1))

    def test_point_mass(self):
        """A single nonzero weight selects its particle."""
        st = ParticleStorage(float, 3, 1)
        st.particles = jnp.array([[1.0, 2.0, 3.0]])
        st.log_weights = jnp.array([[-jnp.inf, 0.0, -jnp.inf]])
        assert jnp.allclose(weighted_mean(st), jnp.array([2.0]))


class TestParticleDiversity:
    """Fraction of unique ancestors per resampling step."""

    def test_shape_and_bounds(self, model, key):
        """One value in (0, 1] per resampling step."""
        st = ParticleStorage(model, 100, 5)
        pf_forward_pass(st, model, systematic_resampler(), key)
        div = particle_diversity(st)
        assert div.shape == (4,)
        assert jnp.all((div > 0.0) & (div <= 1.0))

    def test_collapsed_lineage(self, model, key):
        """A single surviving ancestor gives 1/N."""
        st = ParticleStorage(model, 20, 3)
        pf_forward_pass(st, model, CollapsingResampler(), key)
        assert jnp.allclose(particle_diversity(st), 1.0 / 20)

    def test_single_time_step(self):
        """No resampling step, empty result."""
        st = ParticleStorage(float, 4, 1)
        assert particle_diversity(st).shape == (0,)

    def test_identity_ancestors(self):
        """Distinct ancestors give full diversity."""
        st = ParticleStorage(float, 6, 2)
        st.ancestors = jnp.arange(6, dtype=jnp.int32)[None]
        assert jnp.allclose(particle_diversity(st), 1.0)
