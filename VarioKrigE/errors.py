"""
Exceptions raised by the variogram estimation, fitting and kriging routines.
"""


class KrigingError(Exception):
    """Base class for every error raised by VarioKrigE."""


class DuplicateLocationError(KrigingError, ValueError):
    """Two observations share a location (within the dataset tolerance)."""

    def __init__(self, first, second, location):
        self.first = first
        self.second = second
        self.location = location
        super().__init__(
            f"observations {first} and {second} share the location "
            f"({location[0]:.6g}, {location[1]:.6g})"
        )


class InsufficientDataError(KrigingError, ValueError):
    """Too few observations or usable variogram bins to fit or to krige."""


class InvalidModelParameterError(KrigingError, ValueError):
    """Variogram parameters that do not define a valid variogram."""


class ConvergenceError(KrigingError, RuntimeError):
    """No candidate variogram family converged within the iteration budget.

    ``failures`` maps each family name to the optimizer message it ended with.
    """

    def __init__(self, message, failures=None):
        self.failures = dict(failures or {})
        super().__init__(message)


class SingularMatrixError(KrigingError, RuntimeError):
    """The ordinary-kriging system cannot be solved reliably."""

    def __init__(self, message, condition=None):
        self.condition = condition
        super().__init__(message)
