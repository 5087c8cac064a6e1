# driver.py
"""
calphenix driver

Description: Contains the CalibrationDriver that runs one calibration
  program over its bin combinations. Combinations are independent, so they
  are fanned out over a process pool; every worker process keeps its own
  histogram sources. Results come back to the driver process, which groups
  them by output table, writes each table once and renders the plots.
"""

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

from tqdm import tqdm

from calphenix.errors import CalibrationFailedError, ConfigurationError
from calphenix.histograms import RootHistogramSource
from calphenix.results import CombinationResult
from calphenix.tables import write_points_csv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Refresh interval (s) of the progress bar.
PROGRESS_INTERVAL = 0.2


class Worker:
    """
    Runs single combinations of a program. Histogram sources are opened on
    first use and kept for the lifetime of the worker, one per input path.
    """

    def __init__(self, program, source_factory=RootHistogramSource):
        self.program = program
        self.source_factory = source_factory
        self.sources = {}

    def source(self, path):
        if path not in self.sources:
            self.sources[path] = self.source_factory(path)
        return self.sources[path]

    def run(self, combination):
        """
        Analyzes one combination. A CalibrationFailedError becomes a failed
        result; configuration and missing histogram errors propagate.
        """
        source = self.source(self.program.source_path(combination))
        try:
            return self.program.analyze(combination, source)
        except CalibrationFailedError as err:
            return CombinationResult(combination, error=str(err), error_type=type(err).__name__)


# State of a pool worker process, set by _init_worker.
_worker = None


def _init_worker(program, source_factory, log_level):
    global _worker
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    _worker = Worker(program, source_factory)


def _run_in_worker(combination):
    return _worker.run(combination)


def parse_selector(items):
    """['key=value', ...] from the command line to {key: value}."""
    selector = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Malformed selection '{item}', expected key=value")
        selector[key.strip()] = value.strip()
    return selector


@dataclass
class RunSummary:
    """What the driver did: unit counts, failures and the files written."""
    n_units: int = 0
    failures: list = field(default_factory=list)
    tables_written: list = field(default_factory=list)
    tables_withheld: list = field(default_factory=list)

    @property
    def n_failed(self):
        return len(self.failures)

    @property
    def ok(self):
        return not self.failures


class CalibrationDriver:
    """
    Runs a program over all of its bin combinations (or those matching a
    selector) and writes the program's parameter tables.

    threads=1 runs every combination in-process; anything else uses a
    ProcessPoolExecutor with that many workers (os.cpu_count() when None).
    A table is only written when every one of its rows succeeded.
    """

    def __init__(self, program, threads=None, selector=None,
                 source_factory=RootHistogramSource, plotter=None):
        self.program = program
        self.config = program.config
        self.threads = threads or os.cpu_count() or 1
        self.selector = dict(selector or {})
        self.source_factory = source_factory
        self.plotter = plotter

    def selected_combinations(self, combinations):
        if not self.selector:
            return list(combinations)
        selected = [c for c in combinations if c.matches(self.selector)]
        if not selected:
            raise ConfigurationError(
                f"No {self.program.program} combination matches the selection {self.selector}")
        return selected

    def run(self):
        all_combinations = self.program.combinations()
        combinations = self.selected_combinations(all_combinations)
        logger.info(f"Running {self.program.program} on {len(combinations)} "
                    f"combinations with {min(self.threads, len(combinations))} process(es)")

        if self.threads == 1:
            results = self._run_in_process(combinations)
        else:
            results = self._run_in_pool(combinations)

        summary = RunSummary(n_units=len(results))
        for result in results:
            if not result.ok:
                logger.error(f"Calibration failed for {result.combination}: {result.error}")
                summary.failures.append(result)

        grouped = self.group(results)
        expected = {}
        for combination in all_combinations:
            expected[combination.table_key] = expected.get(combination.table_key, 0) + 1
        self.write_outputs(grouped, expected, summary)

        if self.plotter is not None and self.config.make_plots:
            ok_results = {key: [r for r in results if r.ok] for key, results in grouped.items()}
            self.plotter.render(self.program, ok_results)

        logger.info(f"{self.program.program}: {summary.n_units - summary.n_failed} of "
                    f"{summary.n_units} combinations succeeded")
        return summary

    def _progress(self, total):
        return tqdm(total=total, desc=self.program.program, mininterval=PROGRESS_INTERVAL,
                    disable=not self.config.show_progress)

    def _run_in_process(self, combinations):
        worker = Worker(self.program, self.source_factory)
        results = []
        with self._progress(len(combinations)) as progress:
            for combination in combinations:
                result = worker.run(combination)
                results.append(result)
                progress.update(1)
                if not result.ok and self.config.stop_on_failure:
                    logger.warning(f"Stopping after the failure of {combination}")
                    break
        return results

    def _run_in_pool(self, combinations):
        results = []
        executor = ProcessPoolExecutor(
            max_workers=self.threads,
            initializer=_init_worker,
            initargs=(self.program, self.source_factory, logging.getLogger().getEffectiveLevel()),
        )
        try:
            futures = [executor.submit(_run_in_worker, combination) for combination in combinations]
            with self._progress(len(futures)) as progress:
                for future in as_completed(futures):
                    result = future.result()
                    results.append(result)
                    progress.update(1)
                    if not result.ok and self.config.stop_on_failure:
                        logger.warning(f"Stopping after the failure of {result.combination}")
                        break
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return results

    @staticmethod
    def group(results):
        """{table_key: [results in row order]}, tables in order of first appearance."""
        grouped = {}
        for result in results:
            grouped.setdefault(result.combination.table_key, []).append(result)
        return {
            key: sorted(members, key=lambda result: result.combination.row_index)
            for key, members in grouped.items()
        }

    def write_outputs(self, grouped, expected, summary):
        complete = {}
        for table_key, results in grouped.items():
            failed = [result for result in results if not result.ok]
            if failed:
                logger.error(f"Table '{table_key}' is not written: "
                             f"{len(failed)} of its combinations failed")
                summary.tables_withheld.append(table_key)
            elif len(results) < expected.get(table_key, 0):
                logger.info(f"Table '{table_key}' is not written: only {len(results)} of "
                            f"{expected[table_key]} rows were calibrated")
                summary.tables_withheld.append(table_key)
            else:
                complete[table_key] = results

            points_path = write_points_csv(self.config.output_dir, table_key,
                                           [result for result in results if result.ok])
            if points_path:
                logger.debug(f"Calibration points were written in {points_path}")

        for table in self.program.tables(complete):
            summary.tables_written.append(table.write(self.config.output_dir))
