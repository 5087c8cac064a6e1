# models.py
"""
calphenix models

Description: The closed set of parametric functions the calibration fits
  use. A model is named by joining atoms with '+', e.g. "gaus+gaus",
  "gaus+pol1" or "exp_pol2". Available atoms:

    gaus        amplitude * exp(-0.5 * ((x - mean) / sigma)**2)
    pol<N>      p0 + p1*x + ... + pN*x**N
    inv_pol<N>  p0 + p1/x + ... + pN/x**N
    exp_pol<N>  exp(p0 + p1*x + ... + pN*x**N)
    expo        exp(p0 + p1*x)
    walk        p0 + p1 * x**p2

  Every parameter carries a role. The refinement schedule, the outlier gate
  and the uncertainty estimate look parameters up by role, never by index.
"""

import re
from functools import lru_cache

import numpy as np


AMPLITUDE = "amplitude"
MEAN = "mean"
SIGMA = "sigma"
BG_AMPLITUDE = "bg_amplitude"
BG_MEAN = "bg_mean"
BG_SIGMA = "bg_sigma"
COEFFICIENT = "coefficient"

ROLES = (AMPLITUDE, MEAN, SIGMA, BG_AMPLITUDE, BG_MEAN, BG_SIGMA, COEFFICIENT)

_ATOM_PATTERN = re.compile(r"^(gaus|expo|walk|pol(\d+)|inv_pol(\d+)|exp_pol(\d+))$")


def gaus(x, amplitude, mean, sigma):
    return amplitude * np.exp(-0.5 * ((x - mean) / sigma) ** 2)


def _polynomial(x, coefficients):
    result = np.zeros_like(np.asarray(x, dtype=float))
    for power, coefficient in enumerate(coefficients):
        result = result + coefficient * np.power(x, power)
    return result


def _inverse_polynomial(x, coefficients):
    x = np.asarray(x, dtype=float)
    return _polynomial(1.0 / x, coefficients)


def _walk(x, offset, scale, power):
    return offset + scale * np.power(np.asarray(x, dtype=float), power)


class Component:
    """One atom of a model, bound to its slice of the parameter vector."""

    def __init__(self, atom, n_params, func, first):
        self.atom = atom
        self.n_params = n_params
        self.func = func
        self.indices = slice(first, first + n_params)

    def __call__(self, x, params):
        return self.func(x, *np.asarray(params)[self.indices])


class FitModel:
    """
    A parametric function with one role per parameter.

    The model is stateless. Seeds and bounds travel next to it, so one
    instance is shared by every fit that uses the same name.
    """

    def __init__(self, name, components, roles):
        self.name = name
        self.components = tuple(components)
        self.roles = tuple(roles)
        self.param_names = tuple(f"p{i}" for i in range(len(self.roles)))

    @property
    def n_params(self):
        return len(self.roles)

    def func(self, x, *params):
        """Signature expected by scipy.optimize.curve_fit."""
        x = np.asarray(x, dtype=float)
        total = np.zeros_like(x)
        for component in self.components:
            total = total + component(x, params)
        return total

    def __call__(self, x, params):
        return self.func(x, *params)

    def index(self, role):
        """Index of the first parameter with the given role, or None."""
        for i, param_role in enumerate(self.roles):
            if param_role == role:
                return i
        return None

    def signal(self, x, params):
        """Value of the first component alone (the signal peak for gaus+...)."""
        return self.components[0](np.asarray(x, dtype=float), params)

    def background(self, x, params):
        """Sum of every component but the first."""
        x = np.asarray(x, dtype=float)
        total = np.zeros_like(x)
        for component in self.components[1:]:
            total = total + component(x, params)
        return total

    def __reduce__(self):
        return (get_model, (self.name,))

    def __repr__(self):
        return f"FitModel({self.name!r})"


def _atom(atom, gaussians_seen):
    """Returns (n_params, func, roles) for one atom name."""
    match = _ATOM_PATTERN.match(atom)
    if match is None:
        raise ValueError(f"Unknown fit model component '{atom}'")

    if atom == "gaus":
        if gaussians_seen == 0:
            return 3, gaus, (AMPLITUDE, MEAN, SIGMA)
        return 3, gaus, (BG_AMPLITUDE, BG_MEAN, BG_SIGMA)
    if atom == "walk":
        return 3, _walk, (COEFFICIENT,) * 3
    if atom == "expo":
        return 2, lambda x, p0, p1: np.exp(p0 + p1 * x), (COEFFICIENT,) * 2

    pol_order, inv_order, exp_order = match.group(2), match.group(3), match.group(4)
    if pol_order is not None:
        n = int(pol_order) + 1
        return n, lambda x, *p: _polynomial(x, p), (COEFFICIENT,) * n
    if inv_order is not None:
        n = int(inv_order) + 1
        return n, lambda x, *p: _inverse_polynomial(x, p), (COEFFICIENT,) * n
    n = int(exp_order) + 1
    return n, lambda x, *p: np.exp(_polynomial(x, p)), (COEFFICIENT,) * n


@lru_cache(maxsize=None)
def get_model(name):
    """
    Resolves a model name to a FitModel. Raises ValueError on anything
    outside the closed set.
    """
    atoms = [atom.strip() for atom in str(name).split("+")]
    if not atoms or any(not atom for atom in atoms):
        raise ValueError(f"Malformed fit model name '{name}'")

    components, roles = [], []
    gaussians_seen = 0
    for atom in atoms:
        n_params, func, atom_roles = _atom(atom, gaussians_seen)
        components.append(Component(atom, n_params, func, len(roles)))
        roles.extend(atom_roles)
        if atom == "gaus":
            gaussians_seen += 1

    return FitModel("+".join(atoms), components, roles)
