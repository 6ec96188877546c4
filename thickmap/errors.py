"""Exception types raised by the thickness map pipeline.

I/O problems are reported with Python's own ``OSError``; the classes below
cover the failures specific to this package.
"""


class ThicknessMapError(Exception):
    """Base class for all thickmap errors."""


class InvalidArgumentError(ThicknessMapError, ValueError):
    """A precondition on the input (region, dimensions, values) is violated."""


class CapacityExceededError(ThicknessMapError):
    """The data does not fit the packed on-disk formats or the memory budget."""


class Interrupted(ThicknessMapError):
    """A long-running parallel phase was cancelled by the caller."""
