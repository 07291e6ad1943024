"""
Base classes for radio source estimators.

This module defines the state machine shared by all estimators together with
the error taxonomy and the listener protocol:

- An estimator is *ready* when its configuration allows estimate() to run.
- While estimate() runs the estimator is *locked*: every configuration
  setting rejects assignment with LockedError, including assignments made
  from listener callbacks.
- The lock is released on every exit path of estimate().
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional


class RadioLocationError(Exception):
    """Base class for all errors raised by this package."""


class LockedError(RadioLocationError):
    """Raised when configuration is modified while an estimation runs."""

    def __init__(self, message: str = "Estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RadioLocationError):
    """Raised when estimate() is called on an estimator that is not ready."""

    def __init__(self, message: str = "Estimator is not ready"):
        super().__init__(message)


class EstimationError(RadioLocationError):
    """Base class for numerical estimation failures."""


class ModelUnsolvable(EstimationError):
    """Raised when a minimal subset of readings is degenerate."""


class RefinementFailed(EstimationError):
    """Raised when weighted refinement cannot produce a valid solution."""


class RobustEstimationFailed(EstimationError):
    """Raised when no sample-consensus trial produced a valid model."""


class Setting:
    """
    Guarded configuration attribute.

    Assignment raises LockedError while the owning estimator is locked and is
    otherwise passed through an optional validator, which may normalize the
    value or raise ValueError. The stored value is left untouched when either
    check fails.

    Example:
        >>> class Solver(LockableEstimator):
        ...     max_iterations = Setting(100, validator=check_positive_int)
    """

    def __init__(
        self,
        default: Any = None,
        validator: Optional[Callable[[Any, Any], Any]] = None,
    ):
        """
        Initialize setting.

        Args:
            default: Value returned before the first assignment.
            validator: Callable (instance, value) -> value. May raise ValueError.
        """
        self.default = default
        self.validator = validator
        self.name = None

    def __set_name__(self, owner, name):
        self.name = name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return instance.__dict__.get(self.name, self.default)

    def __set__(self, instance, value):
        if instance.is_locked:
            raise LockedError(f"Cannot set '{self.name}' while estimating")
        if self.validator is not None:
            value = self.validator(instance, value)
        instance.__dict__[self.name] = value


class EstimatorListener:
    """
    Listener notified of estimation progress.

    Subclass and override the hooks of interest; the default implementations
    do nothing. Hooks run synchronously on the caller's thread while the
    estimator is locked.
    """

    def on_estimate_start(self, estimator) -> None:
        """Called once before estimation starts."""

    def on_estimate_end(self, estimator) -> None:
        """Called once after the final result has been computed."""

    def on_estimate_next_iteration(self, estimator, iteration: int) -> None:
        """Called after each robust trial with its 0-based index."""

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        """Called when the estimated completion fraction advances."""


class LockableEstimator(ABC):
    """Abstract base class for estimators guarded by a lock."""

    def __init__(self):
        self._locked = False

    @property
    def is_locked(self) -> bool:
        """True while estimate() is running."""
        return self._locked

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True when estimate() can be called."""

    @abstractmethod
    def estimate(self) -> None:
        """Run the estimation. Results are retrieved through properties."""

    def _check_can_estimate(self) -> None:
        if self._locked:
            raise LockedError()
        if not self.is_ready:
            raise NotReadyError()

    @contextmanager
    def _locked_scope(self) -> Iterator[None]:
        """Hold the lock for the duration of the block."""
        self._locked = True
        try:
            yield
        finally:
            self._locked = False


def check_flag(instance, value) -> bool:
    return bool(value)


def check_positive_int(instance, value) -> int:
    if int(value) != value or value < 1:
        raise ValueError(f"Value must be a positive integer, got {value}")
    return int(value)


def check_unit_interval(instance, value) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Value must be in [0, 1], got {value}")
    return value


def check_open_unit_interval(instance, value) -> float:
    value = float(value)
    if not 0.0 < value < 1.0:
        raise ValueError(f"Value must be in (0, 1), got {value}")
    return value


def check_positive(instance, value) -> float:
    value = float(value)
    if not value > 0.0:
        raise ValueError(f"Value must be positive, got {value}")
    return value


LISTENER_HOOKS = (
    "on_estimate_start",
    "on_estimate_end",
    "on_estimate_next_iteration",
    "on_estimate_progress_change",
)


def check_listener(instance, value):
    if value is None:
        return None
    missing = [hook for hook in LISTENER_HOOKS if not callable(getattr(value, hook, None))]
    if missing:
        raise ValueError(
            f"listener {type(value).__name__} does not implement {', '.join(missing)}"
        )
    return value
