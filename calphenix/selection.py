# selection.py
"""
calphenix selection

Description: The outlier gate applied to every fitted peak before it
  becomes a calibration point. Limits are given per parameter role and
  come from the run configuration.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Threshold:
    """
    Accepts a parameter when min_abs < |value - center| < max_abs, the
    lower limit only applying when it is set. Both limits are strict, so a
    value exactly on a limit is rejected.
    """
    role: str
    max_abs: float
    min_abs: float = None
    center: float = 0.0

    def accepts(self, value):
        distance = abs(value - self.center)
        if not np.isfinite(distance) or distance >= self.max_abs:
            return False
        return self.min_abs is None or distance > self.min_abs


class OutlierGate:
    """Rejects fit results whose shape parameters are out of their limits."""

    def __init__(self, thresholds):
        self.thresholds = tuple(thresholds)

    def failures(self, result, model):
        """Roles of the thresholds the result violates, in threshold order."""
        failed = []
        for threshold in self.thresholds:
            index = model.index(threshold.role)
            if index is None:
                raise ValueError(f"Model {model.name} has no '{threshold.role}' parameter to gate on")
            if not threshold.accepts(result.values[index]):
                failed.append(threshold.role)
        return failed

    def accept(self, result, model):
        return not self.failures(result, model)
