"""Exception classes for the synthetic control analysis."""


class ScmError(Exception):
    """Base class for all analysis errors."""
    pass


class ConfigurationError(ScmError):
    """Invalid parameter combination, detected before any data processing."""
    pass


class InsufficientDataError(ScmError):
    """
    Not enough usable data to run a credible analysis.

    Carries the failing stage, the current and required counts (or coverage)
    and the per-stage filter log so a caller can decide which threshold to
    relax.
    """

    def __init__(self, message, stage=None, current=None, required=None, stages=None):
        super().__init__(message)
        self.stage = stage
        self.current = current
        self.required = required
        self.stages = list(stages or [])


class FitFailure(ScmError):
    """A single weight-fitting attempt failed numerically."""
    pass


class SilentExclusionWarning(UserWarning):
    """The donors used in a fit differ from the donors requested."""
    pass
