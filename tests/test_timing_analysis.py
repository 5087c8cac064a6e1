"""
Tests for the EMCal tower offset and run-by-run offset calibrations.
"""

import os

import numpy as np
import pytest

from calphenix.config import config_from_dict
from calphenix.driver import CalibrationDriver
from calphenix.errors import CalibrationFailedError, ConfigurationError
from calphenix.histograms import Histogram, MemoryHistogramSource
from calphenix.models import get_model
from calphenix.plotting import CalibrationPlotter
from calphenix.timing_analysis import (
    RunByRunOffsetCalibration, TimingCheck, TowerOffsetCalibration, find_runs,
)

TOWER_KEY = "t vs ADC vs iz: W0, iy0"
RUN_KEY = "t vs ADC: W0"
CHECK_KEY = "tcorr vs ADC: W0"


def walk_time(adc):
    return 2.0 + 400.0 / adc


def tower_histogram():
    """t vs ADC vs iz with a time walk in iz=0 and nothing in iz=1."""
    adc_edges = np.linspace(0.0, 1000.0, 21)
    t_edges = np.linspace(-20.0, 20.0, 81)
    adc_centers = 0.5 * (adc_edges[:-1] + adc_edges[1:])
    t_centers = 0.5 * (t_edges[:-1] + t_edges[1:])
    values = np.zeros((20, 80, 2))
    for i, adc in enumerate(adc_centers):
        values[i, :, 0] = np.round(100.0 * np.exp(-0.5 * (t_centers - walk_time(adc)) ** 2))
    return Histogram(values, [adc_edges, t_edges, [0.0, 1.0, 2.0]], name=TOWER_KEY)


def run_histogram(amplitude=500.0, background=2.0, mean=0.5, sigma=1.0):
    """t vs ADC with the same t peak in every ADC bin."""
    adc_edges = np.linspace(0.0, 1000.0, 11)
    t_edges = np.linspace(-10.0, 10.0, 81)
    t_centers = 0.5 * (t_edges[:-1] + t_edges[1:])
    peak = np.round(amplitude * np.exp(-0.5 * ((t_centers - mean) / sigma) ** 2)) + background
    return Histogram(np.tile(peak, (10, 1)), [adc_edges, t_edges], name=RUN_KEY)


def make_runs(input_dir, run_numbers=(100, 101)):
    """Empty run files; the histograms themselves come from memory sources."""
    paths = {}
    for run in run_numbers:
        path = f"{input_dir}/se-{run}.root"
        open(path, "w").close()
        paths[run] = path
    return paths


def memory_factory(histograms):
    return lambda path: MemoryHistogramSource(histograms, path)


class TestTowerOffset:
    """Test the per-tower time walk fits."""

    def test_combinations(self, timing_config):
        program = TowerOffsetCalibration(timing_config)
        combinations = program.combinations()
        assert [c.row_index for c in combinations] == [(0, 0), (0, 1)]
        assert {c.table_key for c in combinations} == {"W0"}

    def test_walk_fit(self, timing_config):
        program = TowerOffsetCalibration(timing_config)
        source = MemoryHistogramSource({TOWER_KEY: tower_histogram()})
        result = program.analyze(program.combinations()[0], source)
        assert result.row[0] == 1
        assert len(result.row) == 4
        # Only ADC bins reaching fit_adc_min (200) are used
        assert min(point.x for point in result.points) == 175.0
        assert len(result.points) == 17

        params = result.row[1:]
        x = np.array([point.x for point in result.points])
        means = np.array([point.mean for point in result.points])
        assert np.max(np.abs(get_model("walk")(x, params) - means)) < 0.05
        assert params[0] == pytest.approx(2.0, abs=0.2)

    def test_empty_tower_writes_zero(self, timing_config):
        program = TowerOffsetCalibration(timing_config)
        source = MemoryHistogramSource({TOWER_KEY: tower_histogram()})
        result = program.analyze(program.combinations()[1], source)
        assert result.ok
        assert result.row == [0]

    def test_tower_below_fit_adc_min_writes_zero(self, timing_config):
        program = TowerOffsetCalibration(timing_config)
        histogram = tower_histogram()
        values = np.zeros(histogram.shape)
        values[0, 40, 0] = 100.0
        low_adc = Histogram(values, histogram.edges, name=TOWER_KEY)
        result = program.analyze(program.combinations()[0], MemoryHistogramSource({TOWER_KEY: low_adc}))
        assert result.row == [0]

    def test_tower_count_mismatch(self, timing_raw):
        timing_raw["sectors_to_calibrate"][0]["number_of_z_towers"] = 3
        program = TowerOffsetCalibration(config_from_dict(timing_raw, "emc_timing"))
        source = MemoryHistogramSource({TOWER_KEY: tower_histogram()})
        with pytest.raises(ConfigurationError):
            program.analyze(program.combinations()[0], source)

    def test_table_layout(self, timing_config):
        program = TowerOffsetCalibration(timing_config)
        source = MemoryHistogramSource({TOWER_KEY: tower_histogram()})
        results = [program.analyze(c, source) for c in program.combinations()]
        table, = program.tables({"W0": results})
        lines = list(table.lines())
        assert table.filename == "tower_offset_W0.txt"
        assert lines[0] == "1 2"
        assert lines[1].startswith("1 ")
        assert lines[2] == "0"


class TestRunByRunOffset:
    """Test the per-run t peak calibration."""

    @pytest.fixture
    def runs(self, timing_config):
        return make_runs(timing_config.input_dir)

    def test_find_runs(self, timing_config, runs):
        assert find_runs(timing_config.input_dir, "se-*.root") == sorted(runs.items())

    def test_bad_run(self, timing_config, runs):
        program = RunByRunOffsetCalibration(timing_config)
        bad = Histogram(np.ones((10, 80)) * 0.01, run_histogram().edges)
        result = program.analyze(program.combinations()[0], MemoryHistogramSource({RUN_KEY: bad}))
        assert result.row == [100, 0]

    def test_good_run(self, timing_config, runs):
        program = RunByRunOffsetCalibration(timing_config)
        combination = program.combinations()[1]
        assert program.source_path(combination) == runs[101]
        result = program.analyze(combination, MemoryHistogramSource({RUN_KEY: run_histogram()}))
        assert result.row[:2] == [101, 1]
        assert len(result.row) == 2 + get_model("pol2").n_params
        assert len(result.points) == 10
        for point in result.points:
            assert point.mean == pytest.approx(0.5, abs=0.05)
            assert point.sigma == pytest.approx(1.0, abs=0.1)

    def test_no_runs(self, timing_config):
        program = RunByRunOffsetCalibration(timing_config)
        with pytest.raises(ConfigurationError):
            program.combinations()

    def test_table_layout(self, timing_config, runs):
        program = RunByRunOffsetCalibration(timing_config)
        bad = Histogram(np.zeros((10, 80)), run_histogram().edges)
        results = [program.analyze(c, MemoryHistogramSource({RUN_KEY: bad}))
                   for c in program.combinations()]
        table, = program.tables({"W0": results})
        assert list(table.lines()) == ["2", "100 0", "101 0"]

    def test_gate_limits_from_config(self, timing_raw):
        timing_raw["abs_max_t_mean"] = 0.3
        config = config_from_dict(timing_raw, "emc_timing")
        make_runs(config.input_dir)
        program = RunByRunOffsetCalibration(config)
        with pytest.raises(CalibrationFailedError):
            program.analyze(program.combinations()[0], MemoryHistogramSource({RUN_KEY: run_histogram()}))


class TestTimingCheck:
    """Test the check of the calibrated run-by-run t peaks."""

    @pytest.fixture
    def runs(self, timing_config):
        return make_runs(timing_config.input_dir)

    def test_calibrated_run(self, timing_config, runs):
        program = TimingCheck(timing_config)
        assert program.histogram_name("W0") == CHECK_KEY
        result = program.analyze(program.combinations()[0], MemoryHistogramSource({CHECK_KEY: run_histogram()}))
        assert result.row[:2] == [100, 1]
        assert all(point.mean == pytest.approx(0.5, abs=0.05) for point in result.points)

    def test_wide_peaks_fail_the_check(self, timing_config, runs):
        # Accepted by the run-by-run calibration, wider than the check limit of 3 ns
        wide = run_histogram(sigma=4.0)
        calibration = RunByRunOffsetCalibration(timing_config)
        result = calibration.analyze(calibration.combinations()[0], MemoryHistogramSource({RUN_KEY: wide}))
        assert result.row[:2] == [100, 1]

        program = TimingCheck(timing_config)
        result = program.analyze(program.combinations()[0], MemoryHistogramSource({CHECK_KEY: wide}))
        assert result.ok
        assert result.row == [100, 0]

    def test_table_name(self, timing_config, runs):
        program = TimingCheck(timing_config)
        results = [program.analyze(c, MemoryHistogramSource({CHECK_KEY: run_histogram()}))
                   for c in program.combinations()]
        table, = program.tables({"W0": results})
        assert table.filename == "check_run_by_run_offset_W0.txt"
        assert list(table.lines())[0] == "2"


class TestTimingPlots:
    """Test the diagnostic plots of the timing programs."""

    def test_tower_plots(self, timing_raw):
        timing_raw["make_plots"] = True
        timing_raw["draw_tower_plots"] = True
        config = config_from_dict(timing_raw, "emc_timing")
        driver = CalibrationDriver(
            TowerOffsetCalibration(config), threads=1,
            source_factory=memory_factory({TOWER_KEY: tower_histogram()}),
            plotter=CalibrationPlotter(config),
        )
        assert driver.run().ok
        plots = os.listdir(config.plots_dir)
        # The empty tower has nothing to draw
        assert len([name for name in plots if name.startswith("tower_")]) == 1

    def test_run_plots(self, timing_raw):
        timing_raw["make_plots"] = True
        config = config_from_dict(timing_raw, "emc_timing")
        make_runs(config.input_dir)
        driver = CalibrationDriver(
            RunByRunOffsetCalibration(config), threads=1,
            source_factory=memory_factory({RUN_KEY: run_histogram()}),
            plotter=CalibrationPlotter(config),
        )
        assert driver.run().ok
        plots = os.listdir(config.plots_dir)
        assert len([name for name in plots if name.startswith("run_")]) == 2
        assert "runs_W0.png" in plots
        assert os.path.exists(os.path.join(config.output_dir, "run_by_run_offset_W0.txt"))

    def test_check_plots_do_not_overwrite(self, timing_raw):
        timing_raw["make_plots"] = True
        config = config_from_dict(timing_raw, "emc_timing")
        make_runs(config.input_dir)
        driver = CalibrationDriver(
            TimingCheck(config), threads=1,
            source_factory=memory_factory({CHECK_KEY: run_histogram()}),
            plotter=CalibrationPlotter(config),
        )
        assert driver.run().ok
        plots = os.listdir(config.plots_dir)
        assert "check_runs_W0.png" in plots
        assert not any(name.startswith("run_") for name in plots)
