"""
Validation utilities for cluster-randomized trial power simulation.

This module provides validation functions for run configuration, design
parameters, and early-stopping thresholds. Every check returns a
``_ValidationResult``; callers decide when to raise.
"""

import multiprocessing as mp
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

__all__ = ["ConfigurationError"]

_MAX_SEED = 3000000000


class ConfigurationError(ValueError):
    """Raised when a configuration is rejected before any simulation starts.

    Attributes:
        errors: Individual validation messages, in the order they were found.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors))


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``ConfigurationError`` if the validation failed."""
        if not self.is_valid:
            raise ConfigurationError(self.errors)

    def merge(self, other: "_ValidationResult") -> "_ValidationResult":
        """Combine two results; the merged result is valid only if both are."""
        return _ValidationResult(
            self.is_valid and other.is_valid,
            self.errors + other.errors,
            self.warnings + other.warnings,
        )


def _combine(results: Sequence[_ValidationResult]) -> _ValidationResult:
    combined = _ValidationResult(True, [], [])
    for result in results:
        combined = combined.merge(result)
    return combined


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type (booleans never count as numbers)."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
        exclusive: bool = False,
    ) -> Optional[str]:
        """Check if value is within range."""
        if exclusive:
            if min_val is not None and value <= min_val:
                return f"{name} must be > {min_val}, got {value}"
            if max_val is not None and value >= max_val:
                return f"{name} must be < {max_val}, got {value}"
            return None
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _is_whole_number(value: Any, tol: float = np.finfo(float).eps ** 0.5) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool) and abs(value - round(value)) < tol


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    exclusive: bool = False,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, [])

    if not np.isfinite(value):
        errors.append(f"{name} must be finite, got {value}")
        return _ValidationResult(False, errors, [])

    range_error = _validator._check_range(value, min_val, max_val, name, exclusive=exclusive)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate significance level, strictly inside (0, 1)."""
    return _validate_numeric_parameter(alpha, "alpha", min_val=0, max_val=1, exclusive=True)


def _validate_simulations(nsim: Any) -> Tuple[int, _ValidationResult]:
    """Validate and process number of simulations.

    Zero is accepted and produces an empty "no data" report.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not _is_whole_number(nsim):
        errors.append(f"nsim must be a whole number, got {nsim!r}")
        return 0, _ValidationResult(False, errors, warnings)

    rounded = int(round(nsim))
    if rounded < 0:
        errors.append(f"nsim must be >= 0, got {rounded}")
        return 0, _ValidationResult(False, errors, warnings)

    if 0 < rounded < 100:
        warnings.append(f"Low simulation count ({rounded}). Consider using at least 100 for a usable power estimate.")
    return rounded, _ValidationResult(True, errors, warnings)


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate an optional seed: non-negative integer up to 3,000,000,000."""
    errors: List[str] = []
    if seed is not None:
        if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)):
            errors.append(f"seed must be an integer or None, got {type(seed).__name__}")
        elif seed < 0:
            errors.append("seed must be non-negative")
        elif seed > _MAX_SEED:
            errors.append("seed must be lower than 3,000,000,000")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_parallel_settings(n_jobs: Any) -> Tuple[int, _ValidationResult]:
    """Validate the requested worker count.

    Args:
        n_jobs: ``None`` (sequential), a positive integer, or ``-1`` for
            all available cores.

    Returns:
        (resolved worker count, ValidationResult)
    """
    errors: List[str] = []
    max_cores = mp.cpu_count() or 1

    if n_jobs is None:
        return 1, _ValidationResult(True, errors, [])
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, int):
        errors.append(f"n_jobs must be None, a positive integer, or -1, got {n_jobs!r}")
        return 1, _ValidationResult(False, errors, [])
    if n_jobs == -1:
        return max_cores, _ValidationResult(True, errors, [])
    if n_jobs <= 0:
        errors.append(f"n_jobs must be None, a positive integer, or -1, got {n_jobs}")
        return 1, _ValidationResult(False, errors, [])

    return min(n_jobs, max_cores), _ValidationResult(True, errors, [])


def _validate_method(method: Any, valid: Sequence[str]) -> _ValidationResult:
    """Validate the analysis method selector."""
    if method not in valid:
        return _ValidationResult(False, [f"method must be one of {list(valid)}, got {method!r}"], [])
    return _ValidationResult(True, [], [])


def _validate_flag(value: Any, name: str) -> _ValidationResult:
    if not isinstance(value, bool):
        return _ValidationResult(False, [f"{name} must be True or False, got {value!r}"], [])
    return _ValidationResult(True, [], [])


def _validate_count(value: Any, name: str) -> _ValidationResult:
    """Validate an integer count >= 1 (cluster counts, cluster sizes, arms)."""
    if not _is_whole_number(value) or value < 1:
        return _ValidationResult(False, [f"{name} must be an integer greater than or equal to 1, got {value!r}"], [])
    return _ValidationResult(True, [], [])


def _validate_probability(value: Any, name: str) -> _ValidationResult:
    """Validate an outcome probability strictly inside (0, 1)."""
    return _validate_numeric_parameter(value, name, expected_types=(int, float, np.floating), min_val=0, max_val=1, exclusive=True)


def _validate_arm_vector(values: Any, name: str, narms: int, allow_zero: bool = True) -> _ValidationResult:
    """Validate a per-arm numeric vector (already broadcast to *narms*)."""
    errors: List[str] = []
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1 or len(arr) != narms:
        errors.append(f"{name} must be a scalar or a vector of length {narms}, got {values!r}")
        return _ValidationResult(False, errors, [])
    if not np.all(np.isfinite(arr)):
        errors.append(f"All values supplied to {name} must be finite")
    elif allow_zero and np.any(arr < 0):
        errors.append(f"All values supplied to {name} must be numeric values >= 0")
    elif not allow_zero and np.any(arr <= 0):
        errors.append(f"All values supplied to {name} must be numeric values > 0")
    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_stop_rules(rules: Any) -> _ValidationResult:
    """Validate early-stopping thresholds."""
    return _combine(
        [
            _validate_count(rules.min_iterations, "min_iterations"),
            _validate_numeric_parameter(rules.max_nonconvergence, "max_nonconvergence", min_val=0, max_val=1),
            _validate_count(rules.power_check_every, "power_check_every"),
            _validate_numeric_parameter(rules.min_power, "min_power", min_val=0, max_val=1),
            _validate_count(rules.time_check_iteration, "time_check_iteration"),
            _validate_numeric_parameter(rules.time_limit_seconds, "time_limit_seconds", min_val=0, exclusive=True),
        ]
    )
