__all__ = [
    'SamplingError',
    'InvalidScheduleKind',
    'DegenerateStepCount',
    'DivisionByZeroSigma',
    'LatentShapeError',
    'SamplingAborted',
]


class SamplingError(Exception):
    """Base class for errors that abort a sampling run."""


class InvalidScheduleKind(SamplingError, ValueError):
    pass


class DegenerateStepCount(SamplingError, ValueError):
    pass


class DivisionByZeroSigma(SamplingError, ArithmeticError):
    pass


class LatentShapeError(SamplingError, ValueError):
    pass


class SamplingAborted(SamplingError, RuntimeError):
    pass
