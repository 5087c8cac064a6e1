# residual_analysis.py
"""
calphenix residual_analysis

Description: Contains the ResidualCalibration class that calibrates the
  track-to-detector matching residuals (dphi, dz) of one detector, charge,
  centrality and zDC bin by scanning pT, and the ResidualCheck class that
  fits the already sigmalized residuals and derives the residual
  recalibration (mean shift, sigma scale).
"""

import logging

import numpy as np
from scipy.special import erf

from calphenix.config import charge_label, charge_name
from calphenix.errors import CalibrationFailedError, ConfigurationError
from calphenix.fitting import (
    RESIDUAL_SCHEDULE, TREND_SCHEDULE, FitData, IterativeRefiner, fit_curve,
)
from calphenix.histograms import (
    MALFORMED_PROJECTION, BinProjector, Rejected, describe, populated_range,
)
from calphenix.models import (
    AMPLITUDE, BG_AMPLITUDE, BG_MEAN, BG_SIGMA, MEAN, SIGMA, get_model,
)
from calphenix.results import BinCombination, CalibrationPoint, CombinationResult
from calphenix.selection import OutlierGate, Threshold
from calphenix.tables import ParameterTable
from calphenix.uncertainty import UncertaintyEstimator

logger = logging.getLogger(__name__)

PROGRAM_RESIDUALS = "residuals"
PROGRAM_CHECK_RESIDUALS = "check-residuals"

# Axes of the residual histograms: x = residual, y = pT, z = centrality.
RESIDUAL_AXIS, PT_AXIS, CENTRALITY_AXIS = 0, 1, 2

# The refinement fits the peak within mean -/+ FIT_RANGE_NSIGMA * sigma.
FIT_RANGE_NSIGMA = 5.0

# The trend fits extend this factor beyond the first and last pT bin.
TREND_RANGE_MARGIN = 1.05


def signal_yield(projection, model, values):
    """
    Signal counts in the bins within mean -/+ sigma with the fitted
    background subtracted, corrected for the Gaussian tails outside the
    window.
    """
    mean = values[model.index(MEAN)]
    sigma = abs(values[model.index(SIGMA)])
    if sigma == 0:
        return np.nan
    first = max(projection.find_bin(0, mean - sigma), 0)
    last = min(projection.find_bin(0, mean + sigma), projection.nbins() - 1)
    if first > last:
        return np.nan

    centers = projection.centers()[first:last + 1]
    counts = projection.values[first:last + 1] - model.background(centers, values)
    low, high = projection.low_edge(0, first), projection.up_edge(0, last)
    fraction = 0.5 * (erf((high - mean) / (sigma * np.sqrt(2.0)))
                      - erf((low - mean) / (sigma * np.sqrt(2.0))))
    if fraction <= 0:
        return np.nan
    return float(np.sum(counts) / fraction)


class ResidualCalibration:
    """
    Calibrates residual means and sigmas versus pT for every bin
    combination of (detector, variable, charge, centrality, zDC).

    For every pT bin the residual distribution is projected, fitted with the
    detector's signal model (gaus, or gaus+background) and refined with the
    iterative bound shrinking. Accepted peaks become calibration points whose
    uncertainties come from the alternate range fits. The means and sigmas
    are then fitted against pT with the detector's trend models.
    """
    program = PROGRAM_RESIDUALS
    variable_prefix = ""
    table_prefix = "cal"

    def __init__(self, config):
        self.config = config
        self.projector = BinProjector(config.min_integral)
        self.peak_schedule = RESIDUAL_SCHEDULE.with_overrides(config.shrink_schedule.get("peak"))
        self.trend_schedule = TREND_SCHEDULE.with_overrides(config.shrink_schedule.get("trend"))
        self.detectors = {detector.name: detector for detector in config.detectors}
        for detector in config.detectors:
            model = get_model(detector.signal_model)
            if model.components[0].atom != "gaus":
                raise ConfigurationError(
                    f"Detector '{detector.name}': signal model '{model.name}' must start with gaus")

    # --- Work units ---

    def source_path(self, combination):
        return self.config.input_file

    def input_paths(self):
        return [(self.config.input_file, False)]

    def table_key(self, detector, variable, charge):
        return f"{detector}_s{variable}_{charge_label(charge)}"

    def combinations(self):
        """Every (detector, variable, charge, centrality, zDC) in table row order."""
        combinations = []
        for detector in self.config.detectors:
            for variable in self.config.variables:
                for charge in self.config.charges:
                    for ci, centrality in enumerate(self.config.centrality_bins):
                        for zi, zdc in enumerate(self.config.zdc_bins):
                            combinations.append(BinCombination(
                                program=self.program,
                                fields=(
                                    ("detector", detector.name),
                                    ("variable", variable),
                                    ("charge", charge),
                                    ("centrality", centrality.label),
                                    ("zdc", zdc.label),
                                ),
                                table_key=self.table_key(detector.name, variable, charge),
                                row_index=(ci, zi),
                            ))
        return combinations

    def histogram_name(self, detector, variable, charge, zdc):
        return self.config.histogram_name_format.format(
            variable=self.variable_prefix + variable,
            detector=detector,
            charge_name=charge_name(charge),
            zdc_min=zdc.min,
            zdc_max=zdc.max,
        )

    def context(self, detector, variable, charge, centrality, zdc):
        return {
            "detector": detector,
            "variable": self.variable_prefix + variable,
            "charge": charge_name(charge),
            "zDC": str(zdc),
            "centrality": str(centrality),
        }

    # --- Per-combination analysis ---

    def analyze(self, combination, source):
        detector = self.detectors[combination["detector"]]
        variable = combination["variable"]
        charge = combination["charge"]
        ci, zi = combination.row_index
        centrality = self.config.centrality_bins[ci]
        zdc = self.config.zdc_bins[zi]
        context = self.context(detector.name, variable, charge, centrality, zdc)

        histogram = source.get(self.histogram_name(detector.name, variable, charge, zdc))
        if histogram.ndim != 3:
            raise ConfigurationError(
                f"Histogram '{histogram.name}' has {histogram.ndim} axes, expected 3")

        points, projections = self.scan(histogram, detector, variable, centrality, context)
        if not points:
            raise CalibrationFailedError(context)

        row, plot_data = self.summarize(points, detector, variable, charge)
        plot_data["context"] = context
        if self.config.draw_distributions:
            plot_data["projections"] = projections
        return CombinationResult(combination, row=row, points=points, plot_data=plot_data)

    def scan(self, histogram, detector, variable, centrality, context):
        """Fits every pT bin; returns the accepted points and the fitted projections."""
        model = get_model(detector.signal_model)
        gate = self.outlier_gate(detector, variable)
        points, projections = [], []

        for pt in self.config.pt_bins:
            pt_context = dict(context, pT=str(pt))
            projection = self.projector.project(
                histogram, RESIDUAL_AXIS,
                {PT_AXIS: (pt.min, pt.max), CENTRALITY_AXIS: (centrality.min, centrality.max)},
                pt_context,
            )
            if isinstance(projection, Rejected):
                logger.info(projection.message)
                continue

            outcome = self.fit_peak(projection, model, pt, pt_context)
            if isinstance(outcome, Rejected):
                logger.warning(outcome.message)
                continue
            result, point = outcome

            accepted = gate.accept(result, model)
            projections.append({
                "pt": pt,
                "histogram": projection,
                "model": model.name,
                "values": np.array(result.values),
                "accepted": accepted,
            })
            if not accepted:
                logger.info(
                    f"Fit rejected for {describe(pt_context)}: "
                    f"{', '.join(gate.failures(result, model))} out of limits"
                )
                continue
            points.append(point)

        return points, projections

    def outlier_gate(self, detector, variable):
        limit = detector.abs_max_fit[variable]
        return OutlierGate([
            Threshold(MEAN, limit),
            Threshold(SIGMA, limit, min_abs=detector.min_abs_fit_sigma),
        ])

    def initial_parameters(self, model, projection, min_x, max_x):
        """Seeds and bounds of the peak fit from the populated range [min_x, max_x]."""
        max_value = projection.max_value()
        bin_width = float(np.min(projection.widths()))
        sigma_high = (2.0 * max_x + min_x) / 3.0
        if sigma_high <= bin_width:
            sigma_high = max_x - min_x
        half_width = max(abs(min_x), abs(max_x))

        seeds = np.zeros(model.n_params)
        lower = np.full(model.n_params, -np.inf)
        upper = np.full(model.n_params, np.inf)
        limits = {
            AMPLITUDE: (max_value, max_value / 2.0, max_value),
            MEAN: (0.0, min_x / 10.0, max_x / 10.0),
            SIGMA: (2.0 * bin_width, bin_width, sigma_high),
            BG_AMPLITUDE: (max_value / 20.0, 0.0, max_value),
            BG_MEAN: (0.0, 2.0 * min_x, 2.0 * max_x),
            BG_SIGMA: (half_width / 2.0, half_width / 3.0, 3.0 * half_width),
        }
        for i, role in enumerate(model.roles):
            if role in limits:
                seeds[i], low, high = limits[role]
                lower[i], upper[i] = min(low, high), max(low, high)
        return seeds, (lower, upper)

    def fit_peak(self, projection, model, pt, context):
        """
        Fits the residual distribution of the pT bin pt. Returns
        (FitResult, CalibrationPoint) or Rejected when the projection has no
        usable populated range.
        """
        min_x, max_x = populated_range(projection)
        if min_x > max_x:
            return Rejected(
                MALFORMED_PROJECTION,
                f"Malformed projection for {describe(context)}: "
                f"populated range min {min_x:g} > max {max_x:g}",
                projection.integral(),
            )

        data = FitData.from_histogram(projection)
        seeds, bounds = self.initial_parameters(model, projection, min_x, max_x)
        mean_index, sigma_index = model.index(MEAN), model.index(SIGMA)

        # Signal alone first, then every component over the populated range
        signal = get_model("gaus")
        prefit = fit_curve(signal, data, seeds[:3],
                           (bounds[0][:3], bounds[1][:3]), (min_x, max_x))
        seeds[:3] = prefit.values
        prefit = fit_curve(model, data, seeds, bounds, (min_x, max_x))

        def peak_range(values, attempt):
            mean, sigma = values[mean_index], abs(values[sigma_index])
            return data.snap(mean - FIT_RANGE_NSIGMA * sigma, mean + FIT_RANGE_NSIGMA * sigma)

        refiner = IterativeRefiner(self.peak_schedule, self.config.number_of_fit_tries,
                                   likelihood=True)
        result = refiner.refine(model, data, prefit.values, bounds, range_update=peak_range)

        estimator = UncertaintyEstimator(model, likelihood=True)
        fits = estimator.alternate_fits(result, data)
        point = CalibrationPoint(
            x=float(pt.center),
            mean=result.value(mean_index),
            sigma=abs(result.value(sigma_index)),
            mean_error=estimator.estimate(result, data, mean_index, fits=fits),
            sigma_error=estimator.estimate(result, data, sigma_index, fits=fits),
            x_low=pt.min,
            x_high=pt.max,
            signal_yield=signal_yield(projection, model, result.values),
        )
        return result, point

    # --- Trend fits ---

    def fit_trend(self, model_name, x, y, yerr):
        model = get_model(model_name)
        data = FitData.from_points(x, y, yerr)
        seeds = np.zeros(model.n_params)
        seeds[0] = float(np.mean(y))
        fit_range = (np.min(x) / TREND_RANGE_MARGIN, np.max(x) * TREND_RANGE_MARGIN)
        refiner = IterativeRefiner(self.trend_schedule, self.config.number_of_fit_tries)
        return model, refiner.refine(model, data, seeds, fit_range=fit_range)

    def summarize(self, points, detector, variable, charge):
        """Trend fits of the means and sigmas versus pT; the table row is both parameter sets."""
        x = np.array([point.x for point in points])
        means = np.array([point.mean for point in points])
        sigmas = np.array([point.sigma for point in points])

        # Errors relative to the peak width keep single points from dominating
        means_err = 1.0 + np.array([point.mean_error for point in points]) / sigmas
        sigmas_err = 1.0 + np.array([point.sigma_error for point in points]) / sigmas

        means_model, means_fit = self.fit_trend(
            detector.means_fit_func(variable, charge), x, means, means_err)
        sigmas_model, sigmas_fit = self.fit_trend(
            detector.sigmas_fit_func(variable, charge), x, sigmas, sigmas_err)

        row = list(means_fit.values) + list(sigmas_fit.values)
        plot_data = {
            "means_model": means_model.name,
            "means_params": np.array(means_fit.values),
            "sigmas_model": sigmas_model.name,
            "sigmas_params": np.array(sigmas_fit.values),
        }
        return row, plot_data

    # --- Output ---

    def table_header(self, results):
        plot_data = results[0].plot_data
        return [get_model(plot_data["means_model"]).n_params,
                get_model(plot_data["sigmas_model"]).n_params]

    def tables(self, results_by_table):
        """One parameter table per (detector, variable, charge)."""
        tables = []
        for table_key, results in results_by_table.items():
            tables.append(ParameterTable(
                f"{self.table_prefix}_{table_key}.txt",
                self.table_header(results),
                [result.row for result in results],
            ))
        return tables


class ResidualCheck(ResidualCalibration):
    """
    Fits the sigmalized residuals (residuals already divided by their
    calibrated resolution) and derives the recalibration that brings them
    to mean 0 and sigma 1: a mean shift and a sigma scale per centrality
    and zDC bin.
    """
    program = PROGRAM_CHECK_RESIDUALS
    variable_prefix = "s"
    table_prefix = "recal"

    def outlier_gate(self, detector, variable):
        return OutlierGate([
            Threshold(MEAN, detector.check_abs_max_fit_mean),
            Threshold(SIGMA, detector.check_max_sigma_deviation, center=1.0),
        ])

    def initial_parameters(self, model, projection, min_x, max_x):
        seeds, (lower, upper) = super().initial_parameters(model, projection, min_x, max_x)
        limits = {
            MEAN: (0.0, -0.5, 0.5),
            SIGMA: (1.0, 0.5, 2.0),
            BG_MEAN: (0.0, -10.0, 10.0),
            BG_SIGMA: (5.0, 2.0, 50.0),
        }
        for i, role in enumerate(model.roles):
            if role in limits:
                seeds[i], lower[i], upper[i] = limits[role]
        return seeds, (lower, upper)

    def summarize(self, points, detector, variable, charge):
        """Weighted mean shift and sigma scale over the accepted pT points."""
        means = np.array([point.mean for point in points])
        sigmas = np.array([point.sigma for point in points])
        mean_errors = np.array([point.mean_error for point in points])

        # Both averages use the mean uncertainty relative to the width,
        # which keeps a few very precise points from setting the result
        weights = 1.0 / (1.0 + mean_errors / sigmas) ** 2
        mean_shift = -float(np.sum(weights * means) / np.sum(weights))
        sigma_scale = 1.0 / float(np.sum(weights * sigmas) / np.sum(weights))
        return [mean_shift, sigma_scale], {}

    def table_header(self, results):
        return [1, 1]
