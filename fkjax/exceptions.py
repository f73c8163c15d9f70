# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by fkjax.

Every failure is terminal: nothing in the library retries.  Invalid
arguments are rejected eagerly at construction or at the call boundary;
documented preconditions inside the filter loops (weights summing to
one, an initialised reference trajectory, ...) are not checked.
"""

from typing import Optional


class FKError(Exception):
    """Base class for all fkjax errors."""


class ConfigurationError(FKError, ValueError):
    """Invalid construction parameters or mismatched buffer lengths."""


class NumericalError(FKError, ArithmeticError):
    """Log-weights whose maximum is infinite or NaN cannot be normalized.

    Usually the model assigns zero likelihood to every particle at some
    time step.
    """

    def __init__(self, message: str, time_index: Optional[int] = None):
        super().__init__(message)
        self.time_index = time_index


class MissingCapabilityError(FKError, TypeError):
    """A model or resampler lacks a function the requested use case needs."""
