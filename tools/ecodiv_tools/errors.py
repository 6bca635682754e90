"""
Exception types raised by the diversity toolkit.
"""


class DiversityError(Exception):
    """Base class for all diversity toolkit errors."""


class InvalidInputError(DiversityError, ValueError):
    """
    Raised when abundance, metadata or taxonomy tables are malformed or
    inconsistent with each other.

    Parameters:
    -----------
    message : str
        Human readable description
    samples : list, optional
        Offending sample identifiers
    taxa : list, optional
        Offending taxon identifiers
    """

    def __init__(self, message, samples=None, taxa=None):
        self.samples = list(samples) if samples is not None else []
        self.taxa = list(taxa) if taxa is not None else []
        if self.samples:
            message = f"{message} (samples: {_preview(self.samples)})"
        if self.taxa:
            message = f"{message} (taxa: {_preview(self.taxa)})"
        super().__init__(message)


class DegenerateGroupError(DiversityError, ValueError):
    """
    Raised when a grouping factor has a level with too few samples for a
    variance-based test.
    """

    def __init__(self, factor, level, count, min_size=2):
        self.factor = factor
        self.level = level
        self.count = count
        self.min_size = min_size
        if level is None:
            message = f"Factor '{factor}' has {count} level(s); at least 2 are required"
        else:
            message = (
                f"Group '{level}' of factor '{factor}' has {count} sample(s); "
                f"at least {min_size} are required"
            )
        super().__init__(message)


class UndefinedStatisticError(DiversityError, ArithmeticError):
    """
    Raised when a diversity statistic is mathematically undefined for a
    sample (e.g. evenness with fewer than two observed taxa).

    Calculators record these inline instead of aborting the batch.
    """

    def __init__(self, statistic, reason, sample=None):
        self.statistic = statistic
        self.reason = reason
        self.sample = sample
        where = f" for sample '{sample}'" if sample is not None else ""
        super().__init__(f"{statistic} is undefined{where}: {reason}")


def _preview(items, limit=10):
    shown = ", ".join(str(i) for i in items[:limit])
    if len(items) > limit:
        shown += f", ... ({len(items) - limit} more)"
    return shown
