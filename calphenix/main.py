# main.py
"""
calphenix main script

Description: Command line entry point. Loads the run configuration of the
  chosen program, runs the calibration over all (or the selected) bin
  combinations and writes the parameter tables and plots.

  calphenix <program> <config> [threads] [--select key=value ...] [-v]
"""

import argparse
import logging
import sys

import matplotlib.pyplot as plt

from calphenix.config import STATUS_EMC_TIMING, STATUS_RESIDUALS, check_input_path, load_config
from calphenix.driver import LOG_FORMAT, CalibrationDriver, parse_selector
from calphenix.errors import ConfigurationError, HistogramNotFoundError
from calphenix.plotting import CalibrationPlotter
from calphenix.residual_analysis import (
    PROGRAM_CHECK_RESIDUALS, PROGRAM_RESIDUALS, ResidualCalibration, ResidualCheck,
)
from calphenix.timing_analysis import (
    PROGRAM_CHECK_TIMING, PROGRAM_RUN_OFFSET, PROGRAM_TOWER_OFFSET, RunByRunOffsetCalibration,
    TimingCheck, TowerOffsetCalibration,
)

logger = logging.getLogger("calphenix")

# --- Set global font sizes for all plots ---
plt.rcParams['axes.labelsize']   = 14 # x and y labels
plt.rcParams['axes.titlesize']   = 16 # main title of a subplot
plt.rcParams['figure.titlesize'] = 18 # main title of a figure
plt.rcParams['xtick.labelsize']  = 12 # x-axis tick labels
plt.rcParams['ytick.labelsize']  = 12 # y-axis tick labels
plt.rcParams['legend.fontsize']  = 12 # legend

# Program name -> (analyzer class, config status it reads)
PROGRAMS = {
    PROGRAM_RESIDUALS: (ResidualCalibration, STATUS_RESIDUALS),
    PROGRAM_CHECK_RESIDUALS: (ResidualCheck, STATUS_RESIDUALS),
    PROGRAM_TOWER_OFFSET: (TowerOffsetCalibration, STATUS_EMC_TIMING),
    PROGRAM_RUN_OFFSET: (RunByRunOffsetCalibration, STATUS_EMC_TIMING),
    PROGRAM_CHECK_TIMING: (TimingCheck, STATUS_EMC_TIMING),
}

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="calphenix",
        description="Calibration of the sigmalized residuals and the EMCal timing",
    )
    parser.add_argument("program", choices=sorted(PROGRAMS), help="calibration to run")
    parser.add_argument("config", help="config file (.yaml/.json) or a directory holding <status>.yaml")
    parser.add_argument("threads", nargs="?", type=int, default=None,
                        help="number of worker processes (default: number of CPUs, 1 runs in-process)")
    parser.add_argument("--select", nargs="+", default=[], metavar="KEY=VALUE",
                        help="only calibrate the combinations whose fields match, e.g. detector=PC2 charge=1")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def run_program(name, config, threads=None, selector=None, plotter=None):
    """Runs one program on an already loaded config and returns the RunSummary."""
    program_class, _ = PROGRAMS[name]
    program = program_class(config)
    for path, is_dir in program.input_paths():
        check_input_path(path, is_dir)
    driver = CalibrationDriver(program, threads=threads, selector=selector, plotter=plotter)
    return driver.run()


def main(argv=None):
    """
    Main function to load the config, run the calibration and report the outcome
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    if args.threads is not None and args.threads < 1:
        logger.error(f"Number of threads must be at least 1, got {args.threads}")
        return EXIT_CONFIG_ERROR

    _, status = PROGRAMS[args.program]
    try:
        config = load_config(args.config, status)
        selector = parse_selector(args.select)
        summary = run_program(args.program, config, args.threads, selector, CalibrationPlotter(config))
    except ConfigurationError as err:
        logger.error(str(err))
        return EXIT_CONFIG_ERROR
    except HistogramNotFoundError as err:
        logger.error(str(err))
        return EXIT_FAILED

    if not summary.ok:
        logger.error(f"{summary.n_failed} of {summary.n_units} combinations failed")
        return EXIT_FAILED
    logger.info(f"Done: {len(summary.tables_written)} parameter tables were written")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
