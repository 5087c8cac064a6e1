"""
Tests for config loading and validation.
"""

import json

import pytest
import yaml

from calphenix.config import (
    ABS_MAX_T_MEAN, CHECK_ABS_MAX_FIT_MEAN, CHECK_MIN_ABS_T_SIGMA, NUMBER_OF_FIT_TRIES,
    STATUS_EMC_TIMING, STATUS_RESIDUALS, BinRange, check_input_path, config_from_dict, load_config,
)
from calphenix.errors import ConfigurationError


class TestResidualsConfig:
    """Test the residuals config schema."""

    def test_defaults(self, residual_config):
        assert residual_config.number_of_fit_tries == NUMBER_OF_FIT_TRIES
        assert residual_config.pt_bins == (BinRange(0.5, 1.0), BinRange(1.0, 2.0))
        detector = residual_config.detectors[0]
        assert detector.means_fit_func("dphi", 1) == "pol0"
        assert detector.means_fit_func("dphi", -1) == "pol2"
        assert detector.abs_max_fit == {"dphi": 1.0}
        assert detector.check_abs_max_fit_mean == CHECK_ABS_MAX_FIT_MEAN

    def test_wrong_status(self, residual_raw):
        with pytest.raises(ConfigurationError):
            config_from_dict(residual_raw, STATUS_EMC_TIMING)

    def test_no_detectors(self, residual_raw):
        residual_raw["detectors_to_calibrate"] = []
        with pytest.raises(ConfigurationError):
            config_from_dict(residual_raw, STATUS_RESIDUALS)

    def test_missing_abs_max_fit(self, residual_raw):
        del residual_raw["detectors_to_calibrate"][0]["abs_max_fit_dphi"]
        with pytest.raises(ConfigurationError, match="abs_max_fit_dphi"):
            config_from_dict(residual_raw, STATUS_RESIDUALS)

    def test_inverted_bin(self, residual_raw):
        residual_raw["pt_bins"] = [{"min": 2.0, "max": 1.0}]
        with pytest.raises(ConfigurationError):
            config_from_dict(residual_raw, STATUS_RESIDUALS)

    def test_pair_bins(self, residual_raw):
        residual_raw["zdc_bins"] = [[-30, -10], [-10, 10]]
        config = config_from_dict(residual_raw, STATUS_RESIDUALS)
        assert config.zdc_bins[0].label == "-30--10"

    def test_unknown_model(self, residual_raw):
        residual_raw["detectors_to_calibrate"][0]["signal_model"] = "landau"
        with pytest.raises(ConfigurationError):
            config_from_dict(residual_raw, STATUS_RESIDUALS)

    def test_default_paths(self, residual_raw):
        del residual_raw["input_file"]
        del residual_raw["output_dir"]
        config = config_from_dict(residual_raw, STATUS_RESIDUALS)
        assert config.input_file.endswith("SigmalizedResiduals/sum.root")
        assert config.plots_dir.endswith("Run14AuAu200/plots")


class TestTimingConfig:
    """Test the EMCal timing config schema."""

    def test_defaults(self, timing_config):
        assert timing_config.traw_vs_adc_fit_func == "walk"
        assert timing_config.tcorr_fit_func == "gaus+pol1"
        assert timing_config.t_range == (-10.0, 10.0)
        assert timing_config.sectors[0].adc_ranges == ()
        assert timing_config.abs_max_t_mean == ABS_MAX_T_MEAN
        assert timing_config.check_min_abs_t_sigma == CHECK_MIN_ABS_T_SIGMA

    def test_gate_overrides(self, timing_raw):
        timing_raw.update(abs_max_t_sigma=2, check_abs_max_t_mean=1.5)
        config = config_from_dict(timing_raw, STATUS_EMC_TIMING)
        assert config.abs_max_t_sigma == 2.0
        assert config.check_abs_max_t_mean == 1.5

    def test_bad_t_range(self, timing_raw):
        timing_raw["t_range"] = [5, -5]
        with pytest.raises(ConfigurationError):
            config_from_dict(timing_raw, STATUS_EMC_TIMING)

    def test_no_sectors(self, timing_raw):
        timing_raw["sectors_to_calibrate"] = None
        with pytest.raises(ConfigurationError):
            config_from_dict(timing_raw, STATUS_EMC_TIMING)


class TestLoadConfig:
    """Test reading config files."""

    def test_yaml_file(self, tmp_path, residual_raw):
        path = tmp_path / "residuals.yaml"
        path.write_text(yaml.safe_dump(residual_raw))
        assert load_config(path, STATUS_RESIDUALS).run_name == "Run14AuAu200"

    def test_json_file(self, tmp_path, timing_raw):
        path = tmp_path / "timing.json"
        path.write_text(json.dumps(timing_raw))
        assert load_config(path, STATUS_EMC_TIMING).sectors[0].name == "W0"

    def test_directory(self, tmp_path, timing_raw):
        (tmp_path / "emc_timing.yaml").write_text(yaml.safe_dump(timing_raw))
        assert load_config(tmp_path, STATUS_EMC_TIMING).status == STATUS_EMC_TIMING

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.yaml", STATUS_RESIDUALS)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("status: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path, STATUS_RESIDUALS)

    def test_missing_input(self, tmp_path):
        with pytest.raises(ConfigurationError):
            check_input_path(tmp_path / "sum.root")
        check_input_path(tmp_path, is_dir=True)
