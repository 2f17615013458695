"""Exception and warning types raised by erplatency."""


class ErpLatencyError(Exception):
    """Base class for erplatency errors."""


class ConfigError(ErpLatencyError, ValueError):
    """Malformed configuration, start values or input shapes."""


class NumericalError(ErpLatencyError, ArithmeticError):
    """Covariance not decomposable or invalid kernel hyperparameters."""


class ConvergenceWarning(UserWarning):
    """M-step optimizer did not converge; previous estimate was kept."""
