"""Exception types raised by the diagnosis pipeline.

Pure analysis stages never raise for "nothing found"; empty results are
valid values. These exceptions cover configuration mistakes, upstream data
that could not be fetched, and persistence or lifecycle faults.
"""


class DiagnosisError(Exception):
    """Base class for all traffic_doctor errors."""


class ConfigError(DiagnosisError, ValueError):
    """Configuration document is incomplete or inconsistent."""


class DataUnavailableError(DiagnosisError):
    """A metric family could not be fetched or returned no rows."""

    def __init__(self, family: str, reason: str):
        self.family = family
        self.reason = reason
        super().__init__(f"{family} data unavailable: {reason}")


class RunStateError(DiagnosisError):
    """Illegal run lifecycle transition, or unknown run id."""


class PersistenceError(DiagnosisError):
    """Writing a run artifact failed."""
