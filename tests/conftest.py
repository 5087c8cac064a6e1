"""
Pytest fixtures for the calphenix test suite.

Histograms are synthetic: Gaussian peaks with rounded (integer) bin
contents, so every test sees the same data.
"""

import numpy as np
import pytest

from calphenix.config import config_from_dict
from calphenix.histograms import Histogram

RESIDUAL_EDGES = np.linspace(-5.0, 5.0, 101)
PEAK_MEAN = 0.2
PEAK_SIGMA = 0.8
PEAK_AMPLITUDE = 1000.0


def gaussian_counts(edges, amplitude=PEAK_AMPLITUDE, mean=PEAK_MEAN, sigma=PEAK_SIGMA):
    centers = 0.5 * (edges[:-1] + edges[1:])
    return np.round(amplitude * np.exp(-0.5 * ((centers - mean) / sigma) ** 2))


def residual_histogram(n_pt=2, amplitude=PEAK_AMPLITUDE, name="residuals"):
    """x = residual, y = pT (bins 0.5-1, 1-2, ...), z = centrality (one bin 0-100)."""
    pt_edges = [0.5, 1.0, 2.0, 4.0, 8.0][:n_pt + 1]
    counts = gaussian_counts(RESIDUAL_EDGES, amplitude=amplitude)
    values = np.repeat(counts[:, None, None], n_pt, axis=1)
    return Histogram(values, [RESIDUAL_EDGES, pt_edges, [0.0, 100.0]], name=name)


@pytest.fixture
def peak_histogram():
    """1-D clean Gaussian: mean 0.2, sigma 0.8, amplitude 1000."""
    return Histogram(gaussian_counts(RESIDUAL_EDGES), [RESIDUAL_EDGES], name="peak")


@pytest.fixture
def residual_raw(tmp_path):
    return {
        "status": "sigmalized_residuals",
        "run_name": "Run14AuAu200",
        "input_file": str(tmp_path / "sum.root"),
        "output_dir": str(tmp_path / "output"),
        "min_integral": 100,
        "make_plots": False,
        "show_progress": False,
        "variables": ["dphi"],
        "charges": [1],
        "pt_bins": [{"min": 0.5, "max": 1.0}, {"min": 1.0, "max": 2.0}],
        "zdc_bins": [{"min": -10, "max": 10}],
        "centrality_bins": [{"min": 0, "max": 100}],
        "detectors_to_calibrate": [{
            "name": "PC2",
            "abs_max_fit_dphi": 1.0,
            "signal_model": "gaus",
            "means_fit_func_dphi_pos": "pol0",
            "sigmas_fit_func_dphi_pos": "pol0",
        }],
    }


@pytest.fixture
def residual_config(residual_raw):
    return config_from_dict(residual_raw, "sigmalized_residuals")


RESIDUAL_KEY = "dphi vs pT vs centrality: PC2, charge>0, -10<zDC<10"


@pytest.fixture
def timing_raw(tmp_path):
    run_dir = tmp_path / "runs"
    run_dir.mkdir()
    return {
        "status": "emc_timing",
        "run_name": "Run14AuAu200",
        "input_file": str(tmp_path / "sum.root"),
        "input_dir": str(run_dir),
        "output_dir": str(tmp_path / "output"),
        "make_plots": False,
        "show_progress": False,
        "sectors_to_calibrate": [
            {"name": "W0", "number_of_y_towers": 1, "number_of_z_towers": 2},
        ],
    }


@pytest.fixture
def timing_config(timing_raw):
    return config_from_dict(timing_raw, "emc_timing")


@pytest.fixture
def residual_key():
    return RESIDUAL_KEY


@pytest.fixture
def make_residual_histogram():
    """Factory for residual vs pT vs centrality histograms."""
    return residual_histogram


@pytest.fixture
def make_counts():
    """Factory for rounded Gaussian bin contents."""
    return gaussian_counts
