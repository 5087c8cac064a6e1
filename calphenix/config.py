# config.py
"""
calphenix config

Description: Default settings for the calibration programs and the loader
  that turns a YAML (or JSON) run configuration into an immutable config
  object. The config object is built once and handed to every analyzer,
  nothing here is mutated afterwards.
"""

import json
import os
from dataclasses import dataclass, field

import yaml

from calphenix.errors import ConfigurationError
from calphenix.models import get_model


# The value of the top-level "status" field that selects the config schema.
STATUS_RESIDUALS = "sigmalized_residuals"
STATUS_EMC_TIMING = "emc_timing"

# Directory names used when input/output paths are derived from the run name.
PROGRAM_DIRS = {
    STATUS_RESIDUALS: "SigmalizedResiduals",
    STATUS_EMC_TIMING: "EMCTiming",
}

# Number of refinement attempts for every iterative fit.
NUMBER_OF_FIT_TRIES = 5

# Minimum integral of a projection before it is fitted.
#  - residuals: counts in the residual distribution of one pT bin
#  - timing: counts in one (merged) ADC window
RESIDUALS_MIN_INTEGRAL = 3e2
TIMING_MIN_INTEGRAL = 1e3

# Residual variables and track charges scanned by default.
VARIABLES = ("dphi", "dz")
CHARGES = (1, -1)

# Models used when a detector does not name its own.
SIGNAL_MODEL = "gaus+gaus"
MEANS_FIT_FUNC = "pol2"
SIGMAS_FIT_FUNC = "pol2"

# Histogram names. Axes are x = residual, y = pT, z = centrality.
RESIDUAL_HISTOGRAM_FORMAT = (
    "{variable} vs pT vs centrality: {detector}, {charge_name}, "
    "{zdc_min:g}<zDC<{zdc_max:g}"
)

# EMCal timing histograms. Tower: x = ADC, y = t, z = iz. Run: x = ADC, y = t.
TOWER_HISTOGRAM_FORMAT = "t vs ADC vs iz: {sector}, iy{iy}"
RUN_HISTOGRAM_FORMAT = "t vs ADC: {sector}"
RUN_FILE_PATTERN = "se-*.root"

# Time walk model for tower offsets, peak model of the run-by-run t
# distributions and trend model for the run-by-run means.
TRAW_VS_ADC_FIT_FUNC = "walk"
TCORR_FIT_FUNC = "gaus+pol1"
TCORR_MEAN_VS_ADC_FIT_FUNC = "pol2"

# ADC value below which tower t vs ADC bins are not used in the walk fit.
FIT_ADC_MIN = 200.0

# A run whose t vs ADC histogram holds fewer entries is written out as bad.
MIN_RUN_INTEGRAL = 1e3

# Time window (ns) used for the run-by-run t projections.
T_RANGE = (-10.0, 10.0)

# Sigmalized residuals should have mean 0 and sigma 1. Check fits outside
# these limits are not used.
CHECK_ABS_MAX_FIT_MEAN = 1.0
CHECK_MAX_SIGMA_DEVIATION = 1.0

# Run-by-run t peaks (ns) outside these limits are not used.
ABS_MAX_T_MEAN = 10.0
ABS_MAX_T_SIGMA = 5.0

# The timing check refits the calibrated t peaks, which should sit near 0.
CHECK_RUN_HISTOGRAM_FORMAT = "tcorr vs ADC: {sector}"
CHECK_ABS_MAX_T_MEAN = 5.0
CHECK_ABS_MAX_T_SIGMA = 3.0
CHECK_MIN_ABS_T_SIGMA = 0.1


@dataclass(frozen=True)
class BinRange:
    """A closed [min, max] range of a binning variable."""
    min: float
    max: float

    @property
    def center(self):
        return 0.5 * (self.min + self.max)

    @property
    def label(self):
        return f"{self.min:g}-{self.max:g}"

    def __str__(self):
        return f"[{self.min:g}, {self.max:g}]"


@dataclass(frozen=True)
class DetectorConfig:
    """Per-detector settings of the residuals programs."""
    name: str
    abs_max_fit: dict
    min_abs_fit_sigma: float = 0.0
    check_abs_max_fit_mean: float = CHECK_ABS_MAX_FIT_MEAN
    check_max_sigma_deviation: float = CHECK_MAX_SIGMA_DEVIATION
    signal_model: str = SIGNAL_MODEL
    means_fit_funcs: dict = field(default_factory=dict)
    sigmas_fit_funcs: dict = field(default_factory=dict)

    def means_fit_func(self, variable, charge):
        return self.means_fit_funcs.get((variable, charge_label(charge)), MEANS_FIT_FUNC)

    def sigmas_fit_func(self, variable, charge):
        return self.sigmas_fit_funcs.get((variable, charge_label(charge)), SIGMAS_FIT_FUNC)


@dataclass(frozen=True)
class SectorConfig:
    """Per-sector settings of the EMCal timing programs."""
    name: str
    number_of_y_towers: int
    number_of_z_towers: int
    adc_ranges: tuple = ()


@dataclass(frozen=True)
class CalibrationConfig:
    """Settings shared by every program."""
    status: str
    run_name: str
    output_dir: str
    number_of_fit_tries: int = NUMBER_OF_FIT_TRIES
    min_integral: float = RESIDUALS_MIN_INTEGRAL
    make_plots: bool = True
    draw_distributions: bool = False
    show_progress: bool = True
    stop_on_failure: bool = False
    shrink_schedule: dict = field(default_factory=dict)

    @property
    def plots_dir(self):
        return os.path.join(self.output_dir, "plots")


@dataclass(frozen=True)
class ResidualsConfig(CalibrationConfig):
    input_file: str = ""
    detectors: tuple = ()
    variables: tuple = VARIABLES
    charges: tuple = CHARGES
    pt_bins: tuple = ()
    zdc_bins: tuple = ()
    centrality_bins: tuple = ()
    histogram_name_format: str = RESIDUAL_HISTOGRAM_FORMAT


@dataclass(frozen=True)
class TimingConfig(CalibrationConfig):
    input_file: str = ""
    input_dir: str = ""
    sectors: tuple = ()
    traw_vs_adc_fit_func: str = TRAW_VS_ADC_FIT_FUNC
    tcorr_fit_func: str = TCORR_FIT_FUNC
    tcorr_mean_vs_adc_fit_func: str = TCORR_MEAN_VS_ADC_FIT_FUNC
    fit_adc_min: float = FIT_ADC_MIN
    min_run_integral: float = MIN_RUN_INTEGRAL
    t_range: tuple = T_RANGE
    run_file_pattern: str = RUN_FILE_PATTERN
    tower_histogram_format: str = TOWER_HISTOGRAM_FORMAT
    run_histogram_format: str = RUN_HISTOGRAM_FORMAT
    draw_tower_plots: bool = False
    abs_max_t_mean: float = ABS_MAX_T_MEAN
    abs_max_t_sigma: float = ABS_MAX_T_SIGMA
    check_run_histogram_format: str = CHECK_RUN_HISTOGRAM_FORMAT
    check_abs_max_t_mean: float = CHECK_ABS_MAX_T_MEAN
    check_abs_max_t_sigma: float = CHECK_ABS_MAX_T_SIGMA
    check_min_abs_t_sigma: float = CHECK_MIN_ABS_T_SIGMA


def charge_label(charge):
    """Short label used in table names: 'pos' or 'neg'."""
    return "pos" if charge > 0 else "neg"


def charge_name(charge):
    """Charge selection as it appears in histogram names."""
    return "charge>0" if charge > 0 else "charge<0"


def load_config(path, expected_status):
    """
    Reads a run configuration file and returns the config object for
    expected_status. A directory is accepted in place of a file, in which
    case '<status>.yaml' inside it is used.
    """
    path = os.fspath(path)
    if os.path.isdir(path):
        path = os.path.join(path, f"{expected_status}.yaml")
    if not os.path.isfile(path):
        raise ConfigurationError(f"Config file '{path}' does not exist")

    with open(path) as config_file:
        try:
            if path.endswith(".json"):
                raw = json.load(config_file)
            else:
                raw = yaml.safe_load(config_file)
        except (yaml.YAMLError, json.JSONDecodeError) as err:
            raise ConfigurationError(f"Could not parse config file '{path}': {err}") from err

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file '{path}' does not contain a mapping")

    return config_from_dict(raw, expected_status)


def config_from_dict(raw, expected_status):
    """Builds and validates a config object from an already parsed mapping."""
    status = raw.get("status")
    if status != expected_status:
        raise ConfigurationError(
            f"Config status is '{status}' but this program expects '{expected_status}'"
        )

    if status == STATUS_RESIDUALS:
        return _residuals_config(raw)
    if status == STATUS_EMC_TIMING:
        return _timing_config(raw)
    raise ConfigurationError(f"Unknown config status '{status}'")


def check_input_path(path, is_dir=False):
    """Fails early when the input data a program reads is missing."""
    if is_dir and not os.path.isdir(path):
        raise ConfigurationError(f"Input directory '{path}' does not exist")
    if not is_dir and not os.path.isfile(path):
        raise ConfigurationError(f"Input file '{path}' does not exist")


# --- Helpers ---

def _require(raw, key, where="config"):
    if key not in raw or raw[key] is None:
        raise ConfigurationError(f"Missing required field '{key}' in {where}")
    return raw[key]


def _parse_bins(raw, key, required=True):
    entries = raw.get(key)
    if entries is None:
        if required:
            raise ConfigurationError(f"Missing required field '{key}' in config")
        return ()
    bins = []
    for i, entry in enumerate(entries):
        try:
            if isinstance(entry, dict):
                low, high = float(entry["min"]), float(entry["max"])
            else:
                low, high = (float(v) for v in entry)
        except (KeyError, TypeError, ValueError) as err:
            raise ConfigurationError(f"Malformed entry {i} of '{key}': {entry!r}") from err
        if low > high:
            raise ConfigurationError(f"Entry {i} of '{key}' has min {low:g} > max {high:g}")
        bins.append(BinRange(low, high))
    if required and not bins:
        raise ConfigurationError(f"'{key}' must contain at least one bin")
    return tuple(bins)


def _check_model(name, where):
    try:
        get_model(name)
    except ValueError as err:
        raise ConfigurationError(f"{where}: {err}") from err
    return name


def _common_fields(raw, status, min_integral):
    run_name = str(_require(raw, "run_name"))
    output_dir = raw.get("output_dir") or os.path.join("output", PROGRAM_DIRS[status], run_name)
    tries = int(raw.get("number_of_fit_tries", NUMBER_OF_FIT_TRIES))
    if tries < 1:
        raise ConfigurationError("'number_of_fit_tries' must be at least 1")
    schedule = raw.get("shrink_schedule") or {}
    if not isinstance(schedule, dict):
        raise ConfigurationError("'shrink_schedule' must be a mapping of role to rule")
    return dict(
        status=status,
        run_name=run_name,
        output_dir=output_dir,
        number_of_fit_tries=tries,
        min_integral=float(raw.get("min_integral", min_integral)),
        make_plots=bool(raw.get("make_plots", True)),
        draw_distributions=bool(raw.get("draw_distributions", raw.get("draw_dval_distr", False))),
        show_progress=bool(raw.get("show_progress", True)),
        stop_on_failure=bool(raw.get("stop_on_failure", False)),
        shrink_schedule=schedule,
    )


def _default_input(status, run_name):
    return os.path.join("data", run_name, PROGRAM_DIRS[status], "sum.root")


def _residuals_config(raw):
    common = _common_fields(raw, STATUS_RESIDUALS, RESIDUALS_MIN_INTEGRAL)
    variables = tuple(raw.get("variables", VARIABLES))
    charges = tuple(int(c) for c in raw.get("charges", CHARGES))

    detectors = []
    for entry in raw.get("detectors_to_calibrate") or []:
        name = str(_require(entry, "name", "detectors_to_calibrate"))
        where = f"detector '{name}'"
        abs_max_fit = {
            variable: float(_require(entry, f"abs_max_fit_{variable}", where))
            for variable in variables
        }
        means_funcs, sigmas_funcs = {}, {}
        for variable in variables:
            for charge in charges:
                suffix = f"{variable}_{charge_label(charge)}"
                if f"means_fit_func_{suffix}" in entry:
                    means_funcs[(variable, charge_label(charge))] = _check_model(
                        entry[f"means_fit_func_{suffix}"], where)
                if f"sigmas_fit_func_{suffix}" in entry:
                    sigmas_funcs[(variable, charge_label(charge))] = _check_model(
                        entry[f"sigmas_fit_func_{suffix}"], where)
        detectors.append(DetectorConfig(
            name=name,
            abs_max_fit=abs_max_fit,
            min_abs_fit_sigma=float(entry.get("min_abs_fit_sigma", 0.0)),
            check_abs_max_fit_mean=float(entry.get("check_abs_max_fit_mean", CHECK_ABS_MAX_FIT_MEAN)),
            check_max_sigma_deviation=float(
                entry.get("check_max_sigma_deviation", CHECK_MAX_SIGMA_DEVIATION)),
            signal_model=_check_model(entry.get("signal_model", SIGNAL_MODEL), where),
            means_fit_funcs=means_funcs,
            sigmas_fit_funcs=sigmas_funcs,
        ))

    if not detectors:
        raise ConfigurationError("No detectors to calibrate: 'detectors_to_calibrate' is empty")

    return ResidualsConfig(
        **common,
        input_file=raw.get("input_file") or _default_input(STATUS_RESIDUALS, common["run_name"]),
        detectors=tuple(detectors),
        variables=variables,
        charges=charges,
        pt_bins=_parse_bins(raw, "pt_bins"),
        zdc_bins=_parse_bins(raw, "zdc_bins"),
        centrality_bins=_parse_bins(raw, "centrality_bins"),
        histogram_name_format=raw.get("histogram_name_format", RESIDUAL_HISTOGRAM_FORMAT),
    )


def _timing_config(raw):
    common = _common_fields(raw, STATUS_EMC_TIMING, TIMING_MIN_INTEGRAL)

    sectors = []
    for entry in raw.get("sectors_to_calibrate") or []:
        name = str(_require(entry, "name", "sectors_to_calibrate"))
        where = f"sector '{name}'"
        sectors.append(SectorConfig(
            name=name,
            number_of_y_towers=int(_require(entry, "number_of_y_towers", where)),
            number_of_z_towers=int(_require(entry, "number_of_z_towers", where)),
            adc_ranges=_parse_bins(entry, "adc_ranges", required=False),
        ))

    if not sectors:
        raise ConfigurationError("No sectors to calibrate: 'sectors_to_calibrate' is empty")

    t_range = tuple(float(v) for v in raw.get("t_range", T_RANGE))
    if len(t_range) != 2 or t_range[0] >= t_range[1]:
        raise ConfigurationError(f"'t_range' must be [min, max] with min < max, got {t_range}")

    return TimingConfig(
        **common,
        input_file=raw.get("input_file") or _default_input(STATUS_EMC_TIMING, common["run_name"]),
        input_dir=raw.get("input_dir") or os.path.join(
            "data", common["run_name"], PROGRAM_DIRS[STATUS_EMC_TIMING]),
        sectors=tuple(sectors),
        traw_vs_adc_fit_func=_check_model(
            raw.get("traw_vs_adc_fit_func", TRAW_VS_ADC_FIT_FUNC), "traw_vs_adc_fit_func"),
        tcorr_fit_func=_check_model(
            raw.get("tcorr_fit_func", TCORR_FIT_FUNC), "tcorr_fit_func"),
        tcorr_mean_vs_adc_fit_func=_check_model(
            raw.get("tcorr_mean_vs_adc_fit_func", TCORR_MEAN_VS_ADC_FIT_FUNC),
            "tcorr_mean_vs_adc_fit_func"),
        fit_adc_min=float(raw.get("fit_adc_min", FIT_ADC_MIN)),
        min_run_integral=float(raw.get("min_run_integral", MIN_RUN_INTEGRAL)),
        t_range=t_range,
        run_file_pattern=raw.get("run_file_pattern", RUN_FILE_PATTERN),
        tower_histogram_format=raw.get("tower_histogram_format", TOWER_HISTOGRAM_FORMAT),
        run_histogram_format=raw.get("run_histogram_format", RUN_HISTOGRAM_FORMAT),
        draw_tower_plots=bool(raw.get("draw_tower_plots", False)),
        abs_max_t_mean=float(raw.get("abs_max_t_mean", ABS_MAX_T_MEAN)),
        abs_max_t_sigma=float(raw.get("abs_max_t_sigma", ABS_MAX_T_SIGMA)),
        check_run_histogram_format=raw.get("check_run_histogram_format", CHECK_RUN_HISTOGRAM_FORMAT),
        check_abs_max_t_mean=float(raw.get("check_abs_max_t_mean", CHECK_ABS_MAX_T_MEAN)),
        check_abs_max_t_sigma=float(raw.get("check_abs_max_t_sigma", CHECK_ABS_MAX_T_SIGMA)),
        check_min_abs_t_sigma=float(raw.get("check_min_abs_t_sigma", CHECK_MIN_ABS_T_SIGMA)),
    )
