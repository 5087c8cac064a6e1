# timing_analysis.py
"""
calphenix timing_analysis

Description: Contains the EMCal timing calibrations.
  - TowerOffsetCalibration fits the time walk t(ADC) of every tower of a
    sector from the "t vs ADC vs iz" histograms.
  - RunByRunOffsetCalibration fits the t peak in ADC windows of every run
    and parameterizes the peak position versus ADC.
"""

import glob
import logging
import os
import re

import numpy as np

from calphenix.errors import CalibrationFailedError, ConfigurationError
from calphenix.fitting import (
    RUN_OFFSET_SCHEDULE, TOWER_SCHEDULE, TREND_SCHEDULE, FitData, IterativeRefiner,
)
from calphenix.histograms import BinProjector, describe, populated_range
from calphenix.models import AMPLITUDE, MEAN, SIGMA, get_model
from calphenix.results import BinCombination, CalibrationPoint, CombinationResult
from calphenix.selection import OutlierGate, Threshold
from calphenix.tables import ParameterTable

logger = logging.getLogger(__name__)

PROGRAM_TOWER_OFFSET = "tower-offset"
PROGRAM_RUN_OFFSET = "run-offset"
PROGRAM_CHECK_TIMING = "check-timing"

# Axes of the timing histograms: x = ADC, y = t (z = iz for towers).
ADC_AXIS, T_AXIS, IZ_AXIS = 0, 1, 2

# Contents below this are treated as an empty histogram or bin.
EMPTY_INTEGRAL = 1e-15

# Seeds of the time walk model: offset at the earliest time, walk scale and
# walk power.
WALK_SCALE_SEED = 50.0
WALK_POWER_SEED = -1.0

# Run-by-run t peak seeds (sigma and the linear background) and the fit
# range, mean -/+ PEAK_RANGE_NSIGMA * sigma widened by the shrink factor.
T_SIGMA_SEED = 0.5
T_BACKGROUND_SEED = 1.0
PEAK_RANGE_NSIGMA = 3.0

RUN_NUMBER_PATTERN = re.compile(r"(\d+)")


class TowerOffsetCalibration:
    """
    Time walk calibration of every (sector, iy, iz) tower.

    For every ADC bin above fit_adc_min the mean time of the tower is taken
    from the t projection; the means are fitted against ADC with the
    configured walk model. A tower without entries from fit_adc_min up is
    written as "0".
    """
    program = PROGRAM_TOWER_OFFSET

    def __init__(self, config):
        self.config = config
        self.schedule = TOWER_SCHEDULE.with_overrides(config.shrink_schedule.get("tower"))
        self.sectors = {sector.name: sector for sector in config.sectors}

    def source_path(self, combination):
        return self.config.input_file

    def input_paths(self):
        return [(self.config.input_file, False)]

    def combinations(self):
        combinations = []
        for sector in self.config.sectors:
            for iy in range(sector.number_of_y_towers):
                for iz in range(sector.number_of_z_towers):
                    combinations.append(BinCombination(
                        program=self.program,
                        fields=(("sector", sector.name), ("iy", iy), ("iz", iz)),
                        table_key=sector.name,
                        row_index=(iy, iz),
                    ))
        return combinations

    def histogram_name(self, sector, iy):
        return self.config.tower_histogram_format.format(sector=sector, iy=iy)

    def analyze(self, combination, source):
        sector = self.sectors[combination["sector"]]
        iy, iz = combination["iy"], combination["iz"]
        histogram = source.get(self.histogram_name(sector.name, iy))
        if histogram.ndim != 3:
            raise ConfigurationError(f"Histogram '{histogram.name}' has {histogram.ndim} axes, expected 3")
        if histogram.nbins(IZ_AXIS) != sector.number_of_z_towers:
            raise ConfigurationError(
                f"Mismatching number of z towers for sector {sector.name}: config has "
                f"{sector.number_of_z_towers}, histogram '{histogram.name}' has {histogram.nbins(IZ_AXIS)}"
            )

        tower = histogram.project((ADC_AXIS, T_AXIS), {IZ_AXIS: (iz, iz)})
        bins = self.fit_bins(tower)
        if not bins or tower.integral({ADC_AXIS: (bins[0], bins[-1])}) < EMPTY_INTEGRAL:
            logger.info(
                f"Tower sector={sector.name}, iy={iy}, iz={iz} is empty above ADC {self.config.fit_adc_min:g}"
            )
            return CombinationResult(combination, row=[0], plot_data={"empty": True})

        points = self.time_points(tower)
        min_t, _ = self.time_range(tower)
        model = get_model(self.config.traw_vs_adc_fit_func)
        seeds = np.zeros(model.n_params)
        seeds[0] = min_t
        if model.name == "walk":
            seeds[1:] = WALK_SCALE_SEED, WALK_POWER_SEED

        data = FitData.from_points(
            [point.x for point in points],
            [point.mean for point in points],
            [point.mean_error for point in points],
        )
        refiner = IterativeRefiner(self.schedule, self.config.number_of_fit_tries)
        result = refiner.refine(model, data, seeds)

        plot_data = {"model": model.name, "params": np.array(result.values)}
        if self.config.draw_tower_plots:
            plot_data["tower"] = tower
        return CombinationResult(combination, row=[1, *result.values], points=points,
                                 plot_data=plot_data)

    def fit_bins(self, tower):
        """ADC bins used in the walk fit: those reaching fit_adc_min."""
        return [i for i in range(tower.nbins(ADC_AXIS))
                if tower.up_edge(ADC_AXIS, i) >= self.config.fit_adc_min]

    def time_range(self, tower):
        """Populated t range of the ADC bins used in the fit, (0, -1) if none."""
        bins = self.fit_bins(tower)
        if not bins:
            return 0.0, -1.0
        projection = tower.project(T_AXIS, {ADC_AXIS: (bins[0], bins[-1])})
        return populated_range(projection, EMPTY_INTEGRAL)

    def time_points(self, tower):
        """
        Mean time and its error for every populated ADC bin at or above
        fit_adc_min. A bin with a single populated t bin gets the error of a
        uniform distribution over that bin.
        """
        points = []
        centers = tower.centers(ADC_AXIS)
        for i in self.fit_bins(tower):
            projection = tower.project(T_AXIS, {ADC_AXIS: (i, i)})
            if projection.integral() < EMPTY_INTEGRAL:
                continue
            mean_error = projection.mean_error()
            if mean_error <= 0:
                mean_error = float(np.min(projection.widths())) / np.sqrt(12.0)
            points.append(CalibrationPoint(
                x=float(centers[i]),
                mean=projection.mean(),
                sigma=projection.std(),
                mean_error=mean_error,
                x_low=tower.low_edge(ADC_AXIS, i),
                x_high=tower.up_edge(ADC_AXIS, i),
            ))
        return points

    def tables(self, results_by_table):
        """One table per sector: 'nY nZ', then '1 p...' or '0' per tower."""
        tables = []
        for sector_name, results in results_by_table.items():
            sector = self.sectors[sector_name]
            tables.append(ParameterTable(
                f"tower_offset_{sector_name}.txt",
                [sector.number_of_y_towers, sector.number_of_z_towers],
                [result.row for result in results],
            ))
        return tables


def find_runs(input_dir, pattern):
    """(run number, path) of every run file in input_dir, sorted by run."""
    runs = []
    for path in glob.glob(os.path.join(input_dir, pattern)):
        match = RUN_NUMBER_PATTERN.search(os.path.basename(path))
        if match:
            runs.append((int(match.group(1)), path))
        else:
            logger.warning(f"Skipping '{path}': no run number in the file name")
    return sorted(runs)


class RunByRunOffsetCalibration:
    """
    Per-run timing offsets of every sector.

    Inside each configured ADC range, adjacent ADC bins are merged until the
    t projection has enough entries. Each merged window's t peak is fitted
    (gaus+pol1 by default) with iterative refinement; accepted peak
    positions are then fitted against ADC. Runs with too few entries are
    written as bad ("<run> 0").
    """
    program = PROGRAM_RUN_OFFSET
    table_prefix = "run_by_run_offset"

    def __init__(self, config):
        self.config = config
        self.projector = BinProjector(config.min_integral)
        self.peak_schedule = RUN_OFFSET_SCHEDULE.with_overrides(config.shrink_schedule.get("run"))
        self.trend_schedule = TREND_SCHEDULE.with_overrides(config.shrink_schedule.get("trend"))
        self.sectors = {sector.name: sector for sector in config.sectors}
        self._runs = None

        model = get_model(config.tcorr_fit_func)
        if model.index(MEAN) is None or model.index(SIGMA) is None:
            raise ConfigurationError(f"tcorr_fit_func '{model.name}' has no gaus peak")

    @property
    def runs(self):
        if self._runs is None:
            self._runs = find_runs(self.config.input_dir, self.config.run_file_pattern)
        return self._runs

    def source_path(self, combination):
        return dict(self.runs)[combination["run"]]

    def input_paths(self):
        return [(self.config.input_dir, True)]

    def combinations(self):
        if not self.runs:
            raise ConfigurationError(
                f"No run files matching '{self.config.run_file_pattern}' in '{self.config.input_dir}'")
        combinations = []
        for sector in self.config.sectors:
            for position, (run, _) in enumerate(self.runs):
                combinations.append(BinCombination(
                    program=self.program,
                    fields=(("sector", sector.name), ("run", run)),
                    table_key=sector.name,
                    row_index=(position,),
                ))
        return combinations

    def histogram_name(self, sector):
        return self.config.run_histogram_format.format(sector=sector)

    def outlier_gate(self):
        return OutlierGate([
            Threshold(MEAN, self.config.abs_max_t_mean),
            Threshold(SIGMA, self.config.abs_max_t_sigma),
        ])

    def without_points(self, combination, context):
        """A run whose windows were all rejected cannot be calibrated."""
        raise CalibrationFailedError(context)

    def analyze(self, combination, source):
        sector = self.sectors[combination["sector"]]
        run = combination["run"]
        context = {"sector": sector.name, "run": run}
        histogram = source.get(self.histogram_name(sector.name))
        if histogram.ndim != 2:
            raise ConfigurationError(f"Histogram '{histogram.name}' has {histogram.ndim} axes, expected 2")

        if histogram.integral() < self.config.min_run_integral:
            logger.info(f"Bad run {run} for sector {sector.name}: "
                        f"integral {histogram.integral():g} < {self.config.min_run_integral:g}")
            return CombinationResult(combination, row=[run, 0], plot_data={"bad_run": True})

        points = self.scan(histogram, sector, context)
        if not points:
            return self.without_points(combination, context)

        model = get_model(self.config.tcorr_mean_vs_adc_fit_func)
        x = np.array([point.x for point in points])
        means = np.array([point.mean for point in points])
        seeds = np.zeros(model.n_params)
        seeds[0] = float(np.mean(means))
        data = FitData.from_points(x, means, [point.mean_error or 1.0 for point in points])
        refiner = IterativeRefiner(self.trend_schedule, self.config.number_of_fit_tries)
        result = refiner.refine(model, data, seeds)

        plot_data = {"model": model.name, "params": np.array(result.values), "context": context}
        return CombinationResult(combination, row=[run, 1, *result.values], points=points,
                                 plot_data=plot_data)

    def scan(self, histogram, sector, context):
        """Fits the t peak of every merged ADC window of the sector's ADC ranges."""
        model = get_model(self.config.tcorr_fit_func)
        mean_index, sigma_index = model.index(MEAN), model.index(SIGMA)
        gate = self.outlier_gate()
        refiner = IterativeRefiner(self.peak_schedule, self.config.number_of_fit_tries)
        t_range = self.config.t_range

        adc_ranges = sector.adc_ranges or (None,)
        points = []
        for adc_range in adc_ranges:
            scan_range = None if adc_range is None else (adc_range.min, adc_range.max)
            windows = self.projector.merge_windows(
                histogram, ADC_AXIS, T_AXIS, scan_range, {T_AXIS: t_range}, context)

            for window in windows:
                data = FitData.from_histogram(window.projection)
                seeds = np.zeros(model.n_params)
                seeds[model.index(AMPLITUDE)] = window.projection.max_value()
                seeds[sigma_index] = T_SIGMA_SEED
                seeds[sigma_index + 1:] = T_BACKGROUND_SEED

                def peak_range(values, attempt):
                    if attempt == 1:
                        return t_range
                    s = 1.0 + 1.0 / float(attempt - 1) ** 2
                    half_width = PEAK_RANGE_NSIGMA * abs(values[sigma_index]) * s
                    return data.snap(values[mean_index] - half_width,
                                     values[mean_index] + half_width)

                result = refiner.refine(model, data, seeds, range_update=peak_range)
                window_context = dict(context, ADC=f"[{histogram.low_edge(ADC_AXIS, window.first_bin):g}, "
                                                   f"{histogram.up_edge(ADC_AXIS, window.last_bin):g}]")
                if not gate.accept(result, model):
                    logger.info(f"Skipping outlier for {describe(window_context)}: "
                                f"mean {result.value(mean_index):g}, sigma {result.value(sigma_index):g}")
                    continue

                points.append(CalibrationPoint(
                    x=window.x,
                    mean=result.value(mean_index),
                    sigma=abs(result.value(sigma_index)),
                    mean_error=result.error(mean_index) if np.isfinite(result.error(mean_index)) else 0.0,
                    sigma_error=result.error(sigma_index) if np.isfinite(result.error(sigma_index)) else 0.0,
                    x_low=histogram.low_edge(ADC_AXIS, window.first_bin),
                    x_high=histogram.up_edge(ADC_AXIS, window.last_bin),
                ))
        return points

    def tables(self, results_by_table):
        """One table per sector: the number of runs, then '<run> 1 p...' or '<run> 0'."""
        tables = []
        for sector_name, results in results_by_table.items():
            tables.append(ParameterTable(
                f"{self.table_prefix}_{sector_name}.txt",
                [len(results)],
                [result.row for result in results],
            ))
        return tables


class TimingCheck(RunByRunOffsetCalibration):
    """
    Check of the applied EMCal timing calibration.

    Refits the calibrated t peaks ("tcorr vs ADC") of every run the same way
    as RunByRunOffsetCalibration, with tighter limits around t = 0. The
    remaining peak positions should follow a flat trend at 0. A run with no
    accepted window is written as "<run> 0" instead of failing.
    """
    program = PROGRAM_CHECK_TIMING
    table_prefix = "check_run_by_run_offset"

    def histogram_name(self, sector):
        return self.config.check_run_histogram_format.format(sector=sector)

    def outlier_gate(self):
        return OutlierGate([
            Threshold(MEAN, self.config.check_abs_max_t_mean),
            Threshold(SIGMA, self.config.check_abs_max_t_sigma,
                      min_abs=self.config.check_min_abs_t_sigma),
        ])

    def without_points(self, combination, context):
        logger.info(f"No calibrated t peak passed the check for {describe(context)}")
        return CombinationResult(combination, row=[combination["run"], 0], plot_data={"bad_run": True})
