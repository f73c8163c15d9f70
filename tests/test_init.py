# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for the package-level API."""

from importlib.metadata import PackageNotFoundError
from unittest.mock import patch

from fkjax import __version__


def test_version_is_accessible():
    """Test that __version__ is a non-empty string."""
    assert isinstance(__version__, str)
    assert __version__ != ''


def test_public_api_exports_all_expected_names(package):
    """Test that __all__ contains exactly the expected public API."""
    expected = [
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
    assert sorted(package.__all__) == sorted(expected)
    for name in expected:
        assert hasattr(package, name)


def test_version_fallback_when_package_not_found():
    """Test that __version__ falls back to '0.0.0' when not installed."""
    import importlib

    import fkjax

    with patch(
        'importlib.metadata.version',
        side_effect=PackageNotFoundError,
    ):
        importlib.reload(fkjax)
        assert fkjax.__version__ == '0.0.0'

    # Restore the real version
    importlib.reload(fkjax)
