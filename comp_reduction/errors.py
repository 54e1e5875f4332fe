"""Exceptions raised by the CoMP reduction steps."""


class CompReductionError(Exception):
    """Base class for pipeline errors."""


class GeometryFitOutOfRange(CompReductionError):
    """
    Fitted radius more than 10% away from its guess.

    Never raised: the fit is clamped to the guess and a warning is logged.
    """


class GeometryFitDegenerate(CompReductionError):
    """The circle search produced no usable (x, y, radius) solution."""


class MissingMetadata(CompReductionError, KeyError):
    """A required header keyword is absent or cannot be parsed."""

    def __str__(self):
        return Exception.__str__(self)
