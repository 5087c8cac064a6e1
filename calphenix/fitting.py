# fitting.py
"""
calphenix fitting

Description: The curve fit primitive (scipy.optimize) and the iterative
  refinement that calls it repeatedly, shrinking each parameter's search
  bounds around the previous result. The shrink rules are looked up by
  parameter role (see models.py), so the same refiner serves the residual
  peak fits, the trend fits and the EMCal timing fits.
"""

import logging
import warnings
from dataclasses import dataclass, field, replace

import numpy as np
from scipy import optimize

from calphenix.errors import ConfigurationError
from calphenix.models import (
    AMPLITUDE, BG_AMPLITUDE, BG_MEAN, BG_SIGMA, MEAN, ROLES, SIGMA,
)

logger = logging.getLogger(__name__)

# Smallest expected count used in the Poisson likelihood.
MIN_EXPECTED = 1e-300

SCALE = "scale"
ASYMMETRIC = "asymmetric"
WIDTH = "width"
RULE_KINDS = (SCALE, ASYMMETRIC, WIDTH)


@dataclass(frozen=True)
class FitData:
    """
    A 1-D sample to fit. Histogram data keeps its bin edges so fit ranges
    can be snapped to them and empty bins can be told apart.
    """
    x: np.ndarray
    y: np.ndarray
    yerr: np.ndarray
    edges: np.ndarray = None

    @classmethod
    def from_histogram(cls, histogram):
        return cls(
            x=np.asarray(histogram.centers(), dtype=float),
            y=np.asarray(histogram.values, dtype=float),
            yerr=np.asarray(histogram.errors, dtype=float),
            edges=np.asarray(histogram.edges[0], dtype=float),
        )

    @classmethod
    def from_points(cls, x, y, yerr=None):
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        yerr = np.ones_like(y) if yerr is None else np.asarray(yerr, dtype=float)
        return cls(x=x, y=y, yerr=yerr)

    @property
    def is_histogram(self):
        return self.edges is not None

    def in_range(self, fit_range=None):
        if fit_range is None:
            return np.ones(self.x.shape, dtype=bool)
        low, high = fit_range
        return (self.x >= low) & (self.x <= high)

    def informative(self):
        """Non-empty bins for histograms, finite points otherwise."""
        if self.is_histogram:
            return np.isfinite(self.y) & (self.y != 0)
        return np.isfinite(self.x) & np.isfinite(self.y)

    def n_informative(self):
        return len(np.unique(self.x[self.informative()]))

    def snap(self, low, high):
        """Widens [low, high] to the edges of the bins that contain them."""
        if not self.is_histogram:
            return low, high
        edges = self.edges
        first = int(np.clip(np.searchsorted(edges, low, side="right") - 1, 0, len(edges) - 2))
        last = int(np.clip(np.searchsorted(edges, high, side="right") - 1, 0, len(edges) - 2))
        return float(edges[first]), float(edges[last + 1])


@dataclass
class FitResult:
    """Outcome of one fit or of a whole refinement chain."""
    values: np.ndarray
    errors: np.ndarray
    success: bool
    objective: float = np.nan
    n_points: int = 0
    fit_range: tuple = None
    bounds_history: list = field(default_factory=list)
    n_calls: int = 0

    def value(self, index):
        return float(self.values[index])

    def error(self, index):
        return float(self.errors[index])


def _free_mask(lower, upper):
    return upper > lower


def fit_curve(model, data, seeds, bounds, fit_range=None, likelihood=False):
    """
    One bounded fit of model to data over fit_range.

    Least squares (scipy.optimize.curve_fit) weighted by the data errors, or
    a binned Poisson likelihood (scipy.optimize.minimize, L-BFGS-B) when
    likelihood is set and the data is a histogram. Parameters whose lower
    and upper bound coincide are held fixed. A numerical failure does not
    raise: the clipped seeds come back with success=False.
    """
    lower = np.asarray(bounds[0], dtype=float)
    upper = np.asarray(bounds[1], dtype=float)
    start = np.clip(np.asarray(seeds, dtype=float), lower, upper)
    free = _free_mask(lower, upper)
    n_free = int(np.sum(free))

    mask = data.in_range(fit_range)
    use_likelihood = likelihood and data.is_histogram
    if use_likelihood:
        mask &= np.isfinite(data.y)
    elif data.is_histogram:
        mask &= data.informative() & (data.yerr > 0)
    else:
        mask &= data.informative()
    n_points = int(np.sum(mask))

    failed = FitResult(
        values=start, errors=np.full(start.shape, np.nan), success=False,
        n_points=n_points, fit_range=fit_range, bounds_history=[(lower, upper)], n_calls=1,
    )
    if n_free == 0:
        return replace(failed, errors=np.zeros(start.shape), success=True)
    if n_points < n_free:
        logger.debug(f"{model.name}: {n_points} points for {n_free} free parameters, not fitting")
        return failed

    x, y, yerr = data.x[mask], data.y[mask], data.yerr[mask]

    def evaluate(xs, free_values):
        params = start.copy()
        params[free] = free_values
        return model.func(xs, *params)

    try:
        if use_likelihood:
            free_values, free_errors, objective, success = _poisson_fit(
                evaluate, x, y, start[free], lower[free], upper[free])
        else:
            free_values, free_errors, objective, success = _least_squares_fit(
                evaluate, x, y, yerr, start[free], lower[free], upper[free])
    except (RuntimeError, ValueError, TypeError, np.linalg.LinAlgError) as err:
        logger.debug(f"{model.name}: fit failed ({err})")
        return failed

    values = start.copy()
    values[free] = free_values
    errors = np.zeros(start.shape)
    errors[free] = free_errors
    return FitResult(
        values=values, errors=errors, success=success, objective=objective,
        n_points=n_points, fit_range=fit_range, bounds_history=[(lower, upper)], n_calls=1,
    )


def _least_squares_fit(evaluate, x, y, yerr, start, lower, upper):
    weighted = bool(np.all(np.isfinite(yerr)) and np.all(yerr > 0))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", optimize.OptimizeWarning)
        popt, pcov = optimize.curve_fit(
            lambda xs, *p: evaluate(xs, np.asarray(p)),
            x, y, p0=start,
            sigma=yerr if weighted else None,
            absolute_sigma=weighted,
            bounds=(lower, upper),
        )
    residuals = (y - evaluate(x, popt)) / (yerr if weighted else 1.0)
    with np.errstate(invalid="ignore"):
        errors = np.sqrt(np.diag(pcov))
    return popt, errors, float(np.sum(residuals ** 2)), True


def _poisson_fit(evaluate, x, n, start, lower, upper):
    def negative_log_likelihood(p):
        expected = np.clip(evaluate(x, p), MIN_EXPECTED, None)
        return float(np.sum(expected - n * np.log(expected)))

    scipy_bounds = [
        (None if np.isinf(low) else low, None if np.isinf(high) else high)
        for low, high in zip(lower, upper)
    ]
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        result = optimize.minimize(
            negative_log_likelihood, start, method="L-BFGS-B", bounds=scipy_bounds)
    if not np.all(np.isfinite(result.x)):
        raise ValueError("likelihood fit returned non-finite parameters")

    errors = np.full(len(start), np.nan)
    hess_inv = getattr(result, "hess_inv", None)
    if hess_inv is not None:
        covariance = hess_inv.todense() if hasattr(hess_inv, "todense") else np.asarray(hess_inv)
        with np.errstate(invalid="ignore"):
            errors = np.sqrt(np.diag(np.asarray(covariance)))
    return result.x, errors, float(result.fun), bool(result.success)


# --- Shrink schedule ---

@dataclass(frozen=True)
class ShrinkRule:
    """
    How one parameter's bounds narrow after attempt i (1-indexed):

      scale       [v / s, v * s]                 with s = 1 + k / i**n
      asymmetric  [v * (1 - k/i**n), v * (1 + b/i**n)]
      width       v -/+ |sigma| * k / i**n       (sigma of the same model)
    """
    kind: str = SCALE
    k: float = 2.0
    b: float = None
    n: float = 2.0

    def term(self, attempt, constant=None):
        constant = self.k if constant is None else constant
        return constant / float(attempt) ** self.n

    def propose(self, value, attempt, sigma=None):
        if self.kind == SCALE:
            s = 1.0 + self.term(attempt)
            low, high = value / s, value * s
        elif self.kind == ASYMMETRIC:
            upper_constant = self.k if self.b is None else self.b
            low = value * (1.0 - self.term(attempt))
            high = value * (1.0 + self.term(attempt, upper_constant))
        else:
            reference = value if sigma is None else sigma
            delta = abs(reference) * self.term(attempt)
            low, high = value - delta, value + delta
        return min(low, high), max(low, high)

    @classmethod
    def from_dict(cls, raw):
        kind = raw.get("kind", SCALE)
        if kind not in RULE_KINDS:
            raise ConfigurationError(f"Unknown shrink rule kind '{kind}', expected one of {RULE_KINDS}")
        try:
            k = float(raw.get("k", raw.get("a", 2.0)))
            b = raw.get("b")
            return cls(kind=kind, k=k, b=None if b is None else float(b), n=float(raw.get("n", 2.0)))
        except (TypeError, ValueError) as err:
            raise ConfigurationError(f"Malformed shrink rule {raw!r}") from err


class ShrinkSchedule:
    """Shrink rules keyed by parameter role, with a fallback rule."""

    def __init__(self, rules=None, default=ShrinkRule()):
        self.rules = dict(rules or {})
        self.default = default

    def rule(self, role):
        return self.rules.get(role, self.default)

    def with_overrides(self, overrides):
        """A copy with rules replaced from a {role: {kind, k, b, n}} mapping."""
        rules = dict(self.rules)
        default = self.default
        for role, raw in (overrides or {}).items():
            if role == "default":
                default = ShrinkRule.from_dict(raw)
            elif role in ROLES:
                rules[role] = ShrinkRule.from_dict(raw)
            else:
                raise ConfigurationError(f"Unknown parameter role '{role}' in shrink_schedule")
        return ShrinkSchedule(rules, default)

    def next_bounds(self, model, values, bounds, attempt):
        """
        Bounds for the attempt after `attempt`. Each proposed interval is
        intersected with the current one, so widths never grow.
        """
        lower, upper = (np.asarray(b, dtype=float) for b in bounds)
        sigma_index = model.index(SIGMA)
        sigma = None if sigma_index is None else values[sigma_index]

        new_lower, new_upper = lower.copy(), upper.copy()
        for i, (role, value) in enumerate(zip(model.roles, values)):
            low, high = self.rule(role).propose(value, attempt, sigma)
            low, high = max(low, lower[i]), min(high, upper[i])
            if low > high:
                low = high = float(np.clip(value, lower[i], upper[i]))
            new_lower[i], new_upper[i] = low, high
        return new_lower, new_upper


# Residual peak fits: gentle on the signal amplitude, tighter on the peak shape.
RESIDUAL_SCHEDULE = ShrinkSchedule({
    AMPLITUDE: ShrinkRule(SCALE, k=2, n=3),
    MEAN: ShrinkRule(ASYMMETRIC, k=6, b=4, n=3),
    SIGMA: ShrinkRule(SCALE, k=5, n=3),
    BG_AMPLITUDE: ShrinkRule(SCALE, k=5, n=2),
    BG_MEAN: ShrinkRule(ASYMMETRIC, k=6, b=4, n=2),
    BG_SIGMA: ShrinkRule(SCALE, k=5, n=2),
})

# Trend fits of the fitted means and sigmas against the scan variable.
TREND_SCHEDULE = ShrinkSchedule(default=ShrinkRule(ASYMMETRIC, k=6, b=4, n=3))

# Tower time walk fits.
TOWER_SCHEDULE = ShrinkSchedule(default=ShrinkRule(SCALE, k=2, n=2))

# Run-by-run t peak fits. The mean sits near zero, so it moves by sigma.
RUN_OFFSET_SCHEDULE = ShrinkSchedule(
    {MEAN: ShrinkRule(WIDTH, k=1, n=2)},
    default=ShrinkRule(SCALE, k=1, n=2),
)

UNBOUNDED = None


class IterativeRefiner:
    """
    Runs n_tries bounded fits in a chain. Every attempt starts from the
    previous values and the bounds the schedule narrowed around them; the
    values after the last attempt are the result.

    range_update, when given, is called as range_update(values, attempt)
    before every attempt and returns the fit range to use.
    """

    def __init__(self, schedule, n_tries=5, likelihood=False, fitter=fit_curve):
        self.schedule = schedule
        self.n_tries = int(n_tries)
        self.likelihood = likelihood
        self.fitter = fitter

    def refine(self, model, data, seeds, bounds=UNBOUNDED, fit_range=None, range_update=None):
        seeds = np.asarray(seeds, dtype=float)
        if len(seeds) != model.n_params:
            raise ValueError(f"{model.name} takes {model.n_params} parameters, got {len(seeds)} seeds")

        if data.n_informative() < 2:
            values = np.zeros(model.n_params)
            values[0] = seeds[0]
            return FitResult(values=values, errors=np.zeros(model.n_params), success=False,
                             n_points=data.n_informative(), fit_range=fit_range)

        if bounds is UNBOUNDED:
            lower = np.full(model.n_params, -np.inf)
            upper = np.full(model.n_params, np.inf)
        else:
            lower, upper = (np.array(b, dtype=float) for b in bounds)

        values = np.clip(seeds, lower, upper)
        history = []
        result = None
        current_range = fit_range
        for attempt in range(1, self.n_tries + 1):
            if range_update is not None:
                current_range = range_update(values, attempt)
            history.append((lower.copy(), upper.copy()))
            result = self.fitter(model, data, values, (lower, upper), current_range, self.likelihood)
            values = np.asarray(result.values, dtype=float)
            lower, upper = self.schedule.next_bounds(model, values, (lower, upper), attempt)

        return replace(result, bounds_history=history, n_calls=self.n_tries, fit_range=current_range)
