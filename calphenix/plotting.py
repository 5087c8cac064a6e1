# plotting.py
"""
calphenix plotting

Description: Contains the CalibrationPlotter class that renders the
  diagnostic plots of a calibration run from the plot payloads the analyzers
  return. All plots are saved under <output_dir>/plots.
"""

import logging
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
from matplotlib.colors import LogNorm

from calphenix.histograms import describe
from calphenix.models import get_model
from calphenix.residual_analysis import PROGRAM_CHECK_RESIDUALS, PROGRAM_RESIDUALS
from calphenix.timing_analysis import PROGRAM_CHECK_TIMING, PROGRAM_RUN_OFFSET, PROGRAM_TOWER_OFFSET

logger = logging.getLogger(__name__)

# Number of projection panels per row of a fit grid.
GRID_COLUMNS = 4

# Points used to draw fitted curves.
CURVE_POINTS = 400


class CalibrationPlotter:
    """
    Handles plotting for all calibration programs.
    """
    def __init__(self, config):
        self.config = config
        self.plots_dir = config.plots_dir
        self.colors = sns.color_palette("deep", n_colors=8)

    def _filename(self, *parts):
        os.makedirs(self.plots_dir, exist_ok=True)
        name = "_".join(str(part) for part in parts if part != "")
        for char in " /<>:,=[]":
            name = name.replace(char, "_")
        return os.path.join(self.plots_dir, f"{name}.png")

    def _add_context_text(self, fig, context):
        """Adds a box naming the bin combination to a figure."""
        text = "\n".join(f"{key}: {value}" for key, value in context.items())
        fig.text(0.99, 0.99, text, transform=fig.transFigure,
                 horizontalalignment='right', verticalalignment='top',
                 fontsize=9, bbox=dict(boxstyle='round,pad=0.5', fc='white', alpha=0.8))

    def _save(self, fig, filename, dpi=150):
        fig.savefig(filename, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        return filename

    def render(self, program, results_by_table):
        """Draws every plot family of the program; returns the files written."""
        written = []
        if program.program in (PROGRAM_RESIDUALS, PROGRAM_CHECK_RESIDUALS):
            for table_key, results in results_by_table.items():
                for result in results:
                    if self.config.draw_distributions and result.plot_data.get("projections"):
                        written.append(self.plot_projections(result))
                    if result.points:
                        written.append(self.plot_trends(result))
                written.extend(self.plot_parameter_maps(table_key, results))
        elif program.program == PROGRAM_TOWER_OFFSET:
            for results in results_by_table.values():
                for result in results:
                    if result.points:
                        written.append(self.plot_tower(result))
        elif program.program in (PROGRAM_RUN_OFFSET, PROGRAM_CHECK_TIMING):
            for table_key, results in results_by_table.items():
                prefix = "check" if program.program == PROGRAM_CHECK_TIMING else ""
                written.extend(self.plot_run(result, prefix) for result in results if result.points)
                written.append(self.plot_run_summary(table_key, results, prefix))
        written = [path for path in written if path]
        logger.info(f"{len(written)} plots were saved in {self.plots_dir}")
        return written

    # --- Residuals ---

    def plot_projections(self, result):
        """Grid of the fitted residual distributions, one panel per pT bin."""
        projections = result.plot_data["projections"]
        n_rows = int(np.ceil(len(projections) / GRID_COLUMNS))
        fig, axes = plt.subplots(n_rows, GRID_COLUMNS, figsize=(4 * GRID_COLUMNS, 3.2 * n_rows),
                                 squeeze=False)
        for ax in axes.flat[len(projections):]:
            ax.set_visible(False)

        for ax, entry in zip(axes.flat, projections):
            histogram = entry["histogram"]
            model = get_model(entry["model"])
            ax.stairs(histogram.values, histogram.edges[0], color='black', label='data')
            x = np.linspace(histogram.edges[0][0], histogram.edges[0][-1], CURVE_POINTS)
            color = self.colors[0] if entry["accepted"] else self.colors[3]
            ax.plot(x, model(x, entry["values"]), color=color, label=model.name)
            if len(model.components) > 1:
                ax.plot(x, model.background(x, entry["values"]), color=self.colors[2],
                        linestyle='--', label='background')
            ax.set_title(f"pT {entry['pt']}", fontsize=11)
            ax.set_yscale('log')
            ax.set_ylim(bottom=0.5)
        axes.flat[0].legend(fontsize=8)

        context = result.plot_data["context"]
        fig.suptitle(f"{context['variable']} residuals")
        self._add_context_text(fig, context)
        return self._save(fig, self._filename("fits", result.combination.label))

    def plot_trends(self, result):
        """Means and sigmas versus pT with the trend curves (when fitted)."""
        points = result.points
        x = np.array([point.x for point in points])
        x_err = np.array([x - np.array([point.x_low for point in points]),
                          np.array([point.x_high for point in points]) - x])
        if not np.all(np.isfinite(x_err)):
            x_err = None
        data = result.plot_data

        fig, axes = plt.subplots(1, 2, figsize=(14, 5.5))
        for ax, name in zip(axes, ("means", "sigmas")):
            y = np.array([getattr(point, name[:-1]) for point in points])
            yerr = np.array([getattr(point, f"{name[:-1]}_error") for point in points])
            ax.errorbar(x, y, xerr=x_err, yerr=yerr, fmt='o', color=self.colors[0], markersize=4)
            if f"{name}_model" in data:
                model = get_model(data[f"{name}_model"])
                curve_x = np.linspace(x.min(), x.max(), CURVE_POINTS)
                ax.plot(curve_x, model(curve_x, data[f"{name}_params"]), color=self.colors[1],
                        label=model.name)
                ax.legend()
            ax.set_xlabel("pT (GeV/c)")
            ax.set_ylabel(name[:-1])
            ax.grid(True, linestyle='--', alpha=0.5)

        self._add_context_text(fig, data["context"])
        return self._save(fig, self._filename("trends", result.combination.label))

    def plot_parameter_maps(self, table_key, results):
        """Fitted mean and sigma over (zDC x pT), one pair of maps per centrality bin."""
        zdc_labels = [zdc.label for zdc in self.config.zdc_bins]
        pt_bins = list(self.config.pt_bins)
        written = []
        for centrality in self.config.centrality_bins:
            members = [r for r in results if r.combination["centrality"] == centrality.label]
            if not members:
                continue
            means = np.full((len(zdc_labels), len(pt_bins)), np.nan)
            sigmas = np.full_like(means, np.nan)
            for result in members:
                zi = zdc_labels.index(result.combination["zdc"])
                for point in result.points:
                    pi = [pt.center for pt in pt_bins].index(point.x)
                    means[zi, pi], sigmas[zi, pi] = point.mean, point.sigma
            if np.all(np.isnan(means)):
                continue

            fig, axes = plt.subplots(1, 2, figsize=(15, 6))
            limit = np.nanmax(np.abs(means)) or 1.0
            panels = [
                (axes[0], means, dict(cmap='coolwarm', vmin=-limit, vmax=limit), "mean"),
                (axes[1], sigmas, dict(cmap='viridis', norm=LogNorm()), "sigma"),
            ]
            for ax, values, style, label in panels:
                if label == "sigma" and not np.nanmin(values) > 0:
                    style = dict(cmap='viridis')
                im = ax.imshow(values, aspect='auto', origin='lower', interpolation='nearest', **style)
                fig.colorbar(im, ax=ax, label=label)
                ax.set_xticks(range(len(pt_bins)))
                ax.set_xticklabels([pt.label for pt in pt_bins], rotation=60, fontsize=8)
                ax.set_yticks(range(len(zdc_labels)))
                ax.set_yticklabels(zdc_labels, fontsize=8)
                ax.set_xlabel("pT (GeV/c)")
                ax.set_ylabel("zDC (cm)")
            fig.suptitle(f"{table_key}, centrality {centrality.label}")
            written.append(self._save(fig, self._filename("map", table_key, f"c{centrality.label}")))
        return written

    # --- EMCal timing ---

    def plot_tower(self, result):
        """Mean t versus ADC of one tower with the time walk fit."""
        data = result.plot_data
        model = get_model(data["model"])
        x = np.array([point.x for point in result.points])
        y = np.array([point.mean for point in result.points])
        yerr = np.array([point.mean_error for point in result.points])

        fig, ax = plt.subplots(figsize=(10, 6))
        if "tower" in data:
            tower = data["tower"]
            values = np.where(tower.values > 0, tower.values, np.nan)
            if np.any(np.isfinite(values)):
                mesh = ax.pcolormesh(tower.edges[0], tower.edges[1], values.T, cmap='viridis',
                                     norm=LogNorm(vmin=np.nanmin(values), vmax=np.nanmax(values)))
                fig.colorbar(mesh, ax=ax, label="Entries (Log Scale)")
        ax.errorbar(x, y, yerr=yerr, fmt='o', color=self.colors[3], markersize=3, label='mean t')
        curve_x = np.linspace(x.min(), x.max(), CURVE_POINTS)
        ax.plot(curve_x, model(curve_x, data["params"]), color=self.colors[1], label=model.name)
        ax.axvline(self.config.fit_adc_min, color='grey', linestyle='--')
        ax.set_xlabel("ADC")
        ax.set_ylabel("t (ns)")
        ax.legend()
        self._add_context_text(fig, result.combination.as_dict())
        return self._save(fig, self._filename("tower", result.combination.label))

    def plot_run(self, result, prefix=""):
        """Fitted t peak position versus ADC of one run with its trend fit."""
        data = result.plot_data
        model = get_model(data["model"])
        x = np.array([point.x for point in result.points])
        y = np.array([point.mean for point in result.points])
        yerr = np.array([point.mean_error for point in result.points])

        fig, ax = plt.subplots(figsize=(10, 6))
        ax.errorbar(x, y, yerr=yerr, fmt='o', color=self.colors[0], markersize=4)
        curve_x = np.linspace(x.min(), x.max(), CURVE_POINTS)
        ax.plot(curve_x, model(curve_x, data["params"]), color=self.colors[1], label=model.name)
        ax.set_xlabel("ADC")
        ax.set_ylabel("t peak (ns)")
        ax.set_title(describe(data["context"]))
        ax.legend()
        ax.grid(True, linestyle='--', alpha=0.5)
        return self._save(fig, self._filename(prefix, "run", result.combination.label))

    def plot_run_summary(self, table_key, results, prefix=""):
        """Mean fitted t peak of every run of a sector, bad runs marked at zero."""
        runs, means, bad_runs = [], [], []
        for result in results:
            if result.points:
                runs.append(result.combination["run"])
                means.append(np.mean([point.mean for point in result.points]))
            else:
                bad_runs.append(result.combination["run"])
        if not runs and not bad_runs:
            return None

        fig, ax = plt.subplots(figsize=(12, 7))
        ax.plot(runs, means, marker='o', linestyle='', color=self.colors[0], label='good runs')
        if bad_runs:
            ax.plot(bad_runs, np.zeros(len(bad_runs)), marker='x', linestyle='',
                    color=self.colors[3], label='bad runs')
        ax.set_xlabel("Run")
        ax.set_ylabel("<t peak> (ns)")
        ax.set_title(f"Run-by-run t offsets: {table_key}")
        ax.legend()
        ax.grid(True, linestyle='--', alpha=0.5)
        return self._save(fig, self._filename(prefix, "runs", table_key))
