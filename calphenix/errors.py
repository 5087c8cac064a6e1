# errors.py
"""
calphenix errors

Description: Typed errors raised by the calibration programs. Everything
  derives from CalibrationError so the CLI can report any of them with a
  single handler.
"""


class CalibrationError(Exception):
    """Base class for all calibration errors."""


class ConfigurationError(CalibrationError):
    """
    Missing or malformed configuration, missing input file or nothing
    configured to calibrate. Raised before any fitting starts.
    """


class HistogramNotFoundError(CalibrationError):
    """A histogram requested by exact name is not present in the input."""

    def __init__(self, key, source=None):
        self.key = key
        self.source = source
        where = f" in '{source}'" if source else ""
        super().__init__(f"Histogram '{key}' was not found{where}")

    def __reduce__(self):
        return type(self), (self.key, self.source)


class CalibrationFailedError(CalibrationError):
    """
    Every scan position of a bin combination was rejected, so there are no
    calibration points to aggregate.
    """

    def __init__(self, context, reason="no calibration points were accepted"):
        self.context = dict(context)
        self.reason = reason
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        super().__init__(f"Calibration failed for {details}: {reason}")

    def __reduce__(self):
        return type(self), (self.context, self.reason)
