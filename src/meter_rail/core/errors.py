"""
Metering Errors

Only infrastructure faults are errors. A missing rule or an unusable item
value is folded into a zero-unit result and never raised.
"""


class MeteringError(Exception):
    """Base class for metering infrastructure failures."""
    pass


class DedupeStoreUnavailableError(MeteringError):
    """
    The dedupe store could not be reached or timed out.

    Nothing was stamped, so the whole record call is safe to retry.
    """
    pass


class SinkWriteError(MeteringError):
    """
    The usage sink rejected or failed a write.

    Raised after the meter has released the stamps it took for the failed
    batch, so a retry of the record call is not treated as a duplicate.
    `released` tells whether every release succeeded.
    """

    def __init__(self, message: str, released: bool = True):
        super().__init__(message)
        self.released = released


class RuleConfigError(MeteringError):
    """A rule definition or rules file is invalid."""
    pass
