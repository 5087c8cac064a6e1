# uncertainty.py
"""
calphenix uncertainty

Description: Point uncertainties from alternate fit ranges. Around the main
  fit's peak (mean, sigma) three families of ranges are built for
  n = 1..4:

    symmetric      [mean - 2n*sigma, mean + 2n*sigma]
    right-biased   [mean - sigma,    mean + 2n*sigma]
    left-biased    [mean - 2n*sigma, mean + sigma]

  Each range gets one constrained refit seeded from the main result. The
  uncertainty is the spread of the main value together with the 12
  alternates.
"""

import logging

import numpy as np

from calphenix.fitting import fit_curve
from calphenix.models import (
    AMPLITUDE, BG_AMPLITUDE, BG_MEAN, COEFFICIENT, MEAN, SIGMA,
)

logger = logging.getLogger(__name__)

SYMMETRIC = "symmetric"
RIGHT_BIASED = "right"
LEFT_BIASED = "left"
FAMILIES = (SYMMETRIC, RIGHT_BIASED, LEFT_BIASED)
RANGE_STEPS = (1, 2, 3, 4)

# Alternate fits may move amplitude-like parameters by a factor 1.2 and
# shape-like parameters by a factor 1.5 away from the main fit values.
AMPLITUDE_TOLERANCE = 1.2
SHAPE_TOLERANCE = 1.5
AMPLITUDE_ROLES = (AMPLITUDE, BG_AMPLITUDE, COEFFICIENT)
SHAPE_ROLES = (SIGMA, BG_MEAN)


def family_range(family, mean, sigma, n):
    sigma = abs(sigma)
    if family == SYMMETRIC:
        return mean - 2 * n * sigma, mean + 2 * n * sigma
    if family == RIGHT_BIASED:
        return mean - sigma, mean + 2 * n * sigma
    if family == LEFT_BIASED:
        return mean - 2 * n * sigma, mean + sigma
    raise ValueError(f"Unknown alternate fit family '{family}'")


def spread(main_value, alternate_values, fallback=0.0):
    """
    Sample standard deviation (ddof=1) of the main value and the finite
    alternates. Symmetric in its inputs; returns fallback when the values
    show no spread.
    """
    values = np.asarray([main_value, *alternate_values], dtype=float)
    values = values[np.isfinite(values)]
    if values.size < 2:
        return fallback
    deviation = float(np.std(values, ddof=1))
    if not np.isfinite(deviation) or deviation == 0.0:
        return fallback
    return deviation


class UncertaintyEstimator:
    """
    Refits a model over the alternate ranges of the three families and
    reduces the spread of one parameter to an uncertainty.
    """

    def __init__(self, model, likelihood=False, fitter=fit_curve):
        self.model = model
        self.likelihood = likelihood
        self.fitter = fitter

    def alternate_bounds(self, values, main_bounds=None):
        """
        Tightened bounds around the main values. Roles that are neither
        amplitude-like nor shape-like keep main_bounds (the bounds of the
        last main attempt).
        """
        lower = np.full(self.model.n_params, -np.inf)
        upper = np.full(self.model.n_params, np.inf)
        for i, (role, value) in enumerate(zip(self.model.roles, values)):
            if role in AMPLITUDE_ROLES:
                low, high = value / AMPLITUDE_TOLERANCE, value * AMPLITUDE_TOLERANCE
            elif role in SHAPE_ROLES:
                low, high = value / SHAPE_TOLERANCE, value * SHAPE_TOLERANCE
            elif main_bounds is not None:
                low, high = main_bounds[0][i], main_bounds[1][i]
            else:
                continue
            lower[i], upper[i] = min(low, high), max(low, high)
        return lower, upper

    def alternate_fits(self, main_result, data, main_bounds=None):
        """{family: [FitResult for n = 1..4]} around the main peak."""
        values = np.asarray(main_result.values, dtype=float)
        mean = values[self.model.index(MEAN)]
        sigma = values[self.model.index(SIGMA)]
        if main_bounds is None and main_result.bounds_history:
            main_bounds = main_result.bounds_history[-1]
        bounds = self.alternate_bounds(values, main_bounds)

        fits = {}
        for family in FAMILIES:
            fits[family] = [
                self.fitter(self.model, data, values, bounds,
                            family_range(family, mean, sigma, n), self.likelihood)
                for n in RANGE_STEPS
            ]
        n_failed = sum(not result.success for results in fits.values() for result in results)
        if n_failed:
            logger.debug(f"{n_failed} of {len(FAMILIES) * len(RANGE_STEPS)} alternate fits failed")
        return fits

    def combine(self, main_value, alternates, main_error=np.nan):
        """
        Uncertainty from the main value and {family: [values]}. Falls back to
        the main fit error (or 0) when nothing spreads.
        """
        fallback = float(main_error) if np.isfinite(main_error) else 0.0
        pooled = [value for family in alternates for value in alternates[family]]
        return spread(main_value, pooled, fallback)

    def estimate(self, main_result, data, parameter_index, main_bounds=None, fits=None):
        if fits is None:
            fits = self.alternate_fits(main_result, data, main_bounds)
        alternates = {
            family: [float(result.values[parameter_index]) for result in results]
            for family, results in fits.items()
        }
        return self.combine(
            float(main_result.values[parameter_index]),
            alternates,
            float(main_result.errors[parameter_index]),
        )
