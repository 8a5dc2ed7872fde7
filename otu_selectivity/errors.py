"""
errors.py
---------
Failure conditions of the selectivity-ratio pipeline.

None of them is retried: every condition is deterministic given the input,
so the caller has to change the data or the configuration.
"""


class SelectivityError(ValueError):
    """Base class for all pipeline errors."""


class InvalidDateRange(SelectivityError):
    """Malformed or inconsistent window bounds."""


class DateFormatError(InvalidDateRange):
    """A timestamp does not match the fixed dd.mm.yyyy HH:MM format."""


class EmptyFilterResult(SelectivityError):
    """No observation survived windowing and season filtering."""


class UnknownIdentifier(SelectivityError):
    pass


class AmbiguousIdentifier(SelectivityError):
    pass


class ShapeMismatch(SelectivityError):
    """Abundance values and frequency rows do not line up."""


class NoInformativeFeatures(SelectivityError):
    """Every feature column is constant."""


class InsufficientSamples(SelectivityError):
    """Too few rows for the requested number of PLS components."""


class UnknownEnvironmentalVariable(SelectivityError):
    pass


class RegionTagError(SelectivityError):
    """A position column cannot be assigned to exactly one region."""
