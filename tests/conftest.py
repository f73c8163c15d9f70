# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Shared test fixtures for fkjax."""

import jax
import jax.numpy as jnp
import jax.random as jr
import pytest
from tensorflow_probability.substrates.jax import distributions as tfd

import fkjax


class LinearGaussianModel:
    """Bootstrap Feynman-Kac model of a 1-D linear Gaussian SSM.

    Model:
        x_1  ~ N(0, 1)
        x_k  = 1.5 * x_{k-1} + eps,  eps ~ N(0, 0.5^2)
        y_k  = x_k + eta,             eta ~ N(0, 0.5)

    All observations are zero, so
    ``log G_k(x) = -0.5 * log(pi) - x ** 2``.
    The natural kernels ``m1``/``mk`` coincide with ``M1``/``Mk``.
    """

    transition = 1.5
    transition_std = 0.5
    observation_var = 0.5

    def M1(self, key):
        return jr.normal(key)

    def Mk(self, key, prev, k):
        return self.transition * prev + self.transition_std * jr.normal(key)

    def logG1(self, x):
        return self._log_obs(x)

    def logGk(self, prev, cur, k):
        return self._log_obs(cur)

    def logMk(self, cur, prev, k):
        mean = self.transition * prev
        return tfd.Normal(mean, self.transition_std).log_prob(cur)

    def m1(self, key):
        return self.M1(key)

    def mk(self, key, prev, k):
        return self.Mk(key, prev, k)

    def gk(self, key, x, k):
        return x + jnp.sqrt(self.observation_var) * jr.normal(key)

    def _log_obs(self, x):
        return tfd.Normal(x, jnp.sqrt(self.observation_var)).log_prob(0.0)


class FilterOnlyModel:
    """Model implementing only the filtering facets."""

    def M1(self, key):
        return jr.normal(key)

    def Mk(self, key, prev, k):
        return prev + jr.normal(key)

    def logG1(self, x):
        return -0.5 * x**2

    def logGk(self, prev, cur, k):
        return -0.5 * cur**2


@pytest.fixture
def package():
    """Return the top-level package module for introspection."""
    return fkjax


@pytest.fixture
def key():
    """Fixed JAX PRNG key for reproducibility."""
    return jr.PRNGKey(42)


@pytest.fixture
def model():
    """1-D linear Gaussian model implementing every facet."""
    return LinearGaussianModel()


@pytest.fixture
def filter_only_model():
    """Model without backward densities or simulation kernels."""
    return FilterOnlyModel()


@pytest.fixture
def lgssm_params():
    """Dynamax parameters of :class:`LinearGaussianModel`.

    Returns a dict with keys matching Dynamax ``make_lgssm_params``.
    """
    return dict(
        initial_mean=jnp.array([0.0]),
        initial_cov=jnp.array([[1.0]]),
        dynamics_weights=jnp.array([[1.5]]),
        dynamics_cov=jnp.array([[0.25]]),  # 0.5^2
        emissions_weights=jnp.array([[1.0]]),
        emissions_cov=jnp.array([[0.5]]),
    )


@pytest.fixture
def kalman_filter(lgssm_params):
    """Exact Kalman filter of the zero observations, ``n`` time steps."""
    from dynamax.linear_gaussian_ssm.inference import (
        lgssm_filter,
        make_lgssm_params,
    )

    params = make_lgssm_params(**lgssm_params)

    def _run(num_timesteps):
        return lgssm_filter(params, jnp.zeros((num_timesteps, 1)))

    return _run


# Configure JAX to use 64-bit floats for higher precision in tests.
jax.config.update('jax_enable_x64', True)
