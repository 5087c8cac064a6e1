"""
Tests for the closed set of fit models.
"""

import pickle

import numpy as np
import pytest

from calphenix.models import (
    AMPLITUDE, BG_AMPLITUDE, BG_MEAN, BG_SIGMA, COEFFICIENT, MEAN, SIGMA, get_model,
)


class TestModelNames:
    """Test name parsing and parameter roles."""

    def test_double_gaussian_roles(self):
        model = get_model("gaus+gaus")
        assert model.roles == (AMPLITUDE, MEAN, SIGMA, BG_AMPLITUDE, BG_MEAN, BG_SIGMA)
        assert model.param_names == ("p0", "p1", "p2", "p3", "p4", "p5")

    def test_gaussian_plus_line(self):
        model = get_model("gaus+pol1")
        assert model.n_params == 5
        assert model.roles[3:] == (COEFFICIENT, COEFFICIENT)
        assert model.index(SIGMA) == 2
        assert model.index(BG_MEAN) is None

    @pytest.mark.parametrize("name, n_params", [
        ("pol0", 1), ("pol3", 4), ("inv_pol2", 3), ("exp_pol1", 2), ("expo", 2), ("walk", 3),
    ])
    def test_parameter_counts(self, name, n_params):
        assert get_model(name).n_params == n_params

    @pytest.mark.parametrize("name", ["gauss", "pol", "gaus+", "landau", ""])
    def test_unknown_names_raise(self, name):
        with pytest.raises(ValueError):
            get_model(name)

    def test_models_are_shared(self):
        assert get_model("gaus+pol1") is get_model("gaus+pol1")

    def test_pickle_resolves_to_shared_model(self):
        model = get_model("gaus+gaus")
        assert pickle.loads(pickle.dumps(model)) is model


class TestModelValues:
    """Test model evaluation."""

    def test_gaussian_peak(self):
        model = get_model("gaus")
        assert model(np.array([0.5]), [10.0, 0.5, 2.0])[0] == pytest.approx(10.0)
        assert model(np.array([2.5]), [10.0, 0.5, 2.0])[0] == pytest.approx(10.0 * np.exp(-0.5))

    def test_polynomial(self):
        model = get_model("pol2")
        assert model(np.array([2.0]), [1.0, 2.0, 3.0])[0] == pytest.approx(17.0)

    def test_inverse_polynomial(self):
        model = get_model("inv_pol1")
        assert model(np.array([4.0]), [1.0, 2.0])[0] == pytest.approx(1.5)

    def test_walk(self):
        model = get_model("walk")
        assert model(np.array([100.0]), [2.0, 50.0, -1.0])[0] == pytest.approx(2.5)

    def test_signal_and_background(self):
        model = get_model("gaus+pol1")
        params = [10.0, 0.0, 1.0, 3.0, 0.5]
        x = np.array([0.0, 2.0])
        assert np.allclose(model.background(x, params), [3.0, 4.0])
        assert np.allclose(model.signal(x, params) + model.background(x, params), model(x, params))
