# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Generic particle filters for Feynman-Kac models in JAX."""

from importlib.metadata import PackageNotFoundError as _PackageNotFoundError
from importlib.metadata import version as _version

from blackjax.smc.ess import ess, log_ess

from fkjax.diagnostics import ess_trace, particle_diversity, weighted_mean
from fkjax.exceptions import (
    ConfigurationError,
    FKError,
    MissingCapabilityError,
    NumericalError,
)
from fkjax.forward import (
    cpf_forward_pass,
    initialize_reference,
    pf_forward_pass,
)
from fkjax.prediction import PredictionStorage, predict, predict_from
from fkjax.resampling import (
    Resampler,
    SchemeResampler,
    multinomial_resampler,
    residual_resampler,
    stratified_resampler,
    systematic_resampler,
)
from fkjax.simulate import Level, simulate
from fkjax.storage import ConditionalStorage, ParticleStorage
from fkjax.traceback import Traceback, get_reference, traceback
from fkjax.weights import log_normalize, normalize, sample_one

try:
    __version__ = _version('fkjax')
except _PackageNotFoundError:
    __version__ = '0.0.0'

__all__ = [
    'ConditionalStorage',
    'ConfigurationError',
    'FKError',
    'Level',
    'MissingCapabilityError',
    'NumericalError',
    'ParticleStorage',
    'PredictionStorage',
    'Resampler',
    'SchemeResampler',
    'Traceback',
    '__version__',
    'cpf_forward_pass',
    'ess',
    'ess_trace',
    'get_reference',
    'initialize_reference',
    'log_ess',
    'log_normalize',
    'multinomial_resampler',
    'normalize',
    'particle_diversity',
    'pf_forward_pass',
    'predict',
    'predict_from',
    'residual_resampler',
    'sample_one',
    'simulate',
    'stratified_resampler',
    'systematic_resampler',
    'traceback',
    'weighted_mean',
]
