# results.py
"""
calphenix results

Description: The records passed between the analyzers, the worker pool and
  the table writers: the bin combination that identifies a unit of work,
  the calibration points accepted while scanning it and the result (or
  failure) that comes back from a worker.
"""

from dataclasses import dataclass, field

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class BinCombination:
    """
    One independent unit of calibration work. fields holds the identifying
    (name, value) pairs in display order; table_key names the output table
    the unit contributes to and row_index orders rows inside it.
    """
    program: str
    fields: tuple
    table_key: str
    row_index: tuple

    def __getitem__(self, name):
        for key, value in self.fields:
            if key == name:
                return value
        raise KeyError(name)

    def as_dict(self):
        return dict(self.fields)

    def matches(self, selector):
        """True when every selector entry equals the field of the same name."""
        values = {key: str(value) for key, value in self.fields}
        return all(values.get(key) == str(wanted) for key, wanted in selector.items())

    @property
    def label(self):
        return "_".join(f"{key}{value}" for key, value in self.fields)

    def __str__(self):
        return ", ".join(f"{key}={value}" for key, value in self.fields)


@dataclass(frozen=True)
class CalibrationPoint:
    """A fitted peak accepted by the outlier gate at one scan position."""
    x: float
    mean: float
    sigma: float
    mean_error: float = 0.0
    sigma_error: float = 0.0
    x_low: float = np.nan
    x_high: float = np.nan
    signal_yield: float = np.nan


def points_frame(points):
    """Calibration points as a DataFrame, one row per point in scan order."""
    columns = ["x", "mean", "sigma", "mean_error", "sigma_error", "x_low", "x_high", "signal_yield"]
    return pd.DataFrame([[getattr(point, name) for name in columns] for point in points],
                        columns=columns)


@dataclass
class CombinationResult:
    """
    What a worker returns for one combination. On success row holds the
    values for the parameter table; on failure error holds the message and
    error_type the exception class name.
    """
    combination: BinCombination
    row: list = None
    points: list = field(default_factory=list)
    plot_data: dict = field(default_factory=dict)
    error: str = None
    error_type: str = None

    @property
    def ok(self):
        return self.error is None
