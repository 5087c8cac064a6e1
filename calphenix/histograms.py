# histograms.py
"""
calphenix histograms

Description: Binned distributions read from ROOT files, the sources that
  serve them by name and the BinProjector that slices them into 1-D
  samples for fitting. A Histogram never changes after it is created:
  every projection returns a new object.
"""

import logging
from dataclasses import dataclass

import numpy as np
import uproot

from calphenix.errors import HistogramNotFoundError

logger = logging.getLogger(__name__)

# A bin counts as populated when its content exceeds this value.
POPULATED_CONTENT = 1e-7

INSUFFICIENT_STATISTICS = "insufficient_statistics"
MALFORMED_PROJECTION = "malformed_projection"

# Index range of a physical range that misses the axis entirely.
EMPTY_RANGE = (0, -1)


class Histogram:
    """
    An N-dimensional binned distribution: bin edges per axis, bin contents
    and bin variances (squared bin errors). Flow bins are not stored.
    """

    def __init__(self, values, edges, variances=None, name=""):
        values = np.array(values, dtype=float)
        edges = tuple(np.array(axis_edges, dtype=float) for axis_edges in edges)
        if values.ndim != len(edges):
            raise ValueError(f"Histogram '{name}' has {values.ndim} dimensions but {len(edges)} axes")
        for axis, axis_edges in enumerate(edges):
            if axis_edges.ndim != 1 or len(axis_edges) != values.shape[axis] + 1:
                raise ValueError(f"Histogram '{name}': axis {axis} edges do not match the contents")
            if np.any(np.diff(axis_edges) <= 0):
                raise ValueError(f"Histogram '{name}': axis {axis} edges are not increasing")

        if variances is None:
            variances = np.abs(values)
        variances = np.array(variances, dtype=float)
        if variances.shape != values.shape:
            raise ValueError(f"Histogram '{name}': variances do not match the contents")

        for array in (values, variances, *edges):
            array.setflags(write=False)

        self.name = name
        self.values = values
        self.variances = variances
        self.edges = edges

    @classmethod
    def from_samples(cls, samples, edges, weights=None, name=""):
        """Fills a histogram from per-axis sample arrays (np.histogramdd)."""
        samples = np.column_stack([np.asarray(s, dtype=float) for s in samples])
        values, _ = np.histogramdd(samples, bins=edges, weights=weights)
        if weights is None:
            variances = values
        else:
            variances, _ = np.histogramdd(samples, bins=edges, weights=np.square(weights))
        return cls(values, edges, variances, name=name)

    # --- Axes ---

    @property
    def ndim(self):
        return self.values.ndim

    @property
    def shape(self):
        return self.values.shape

    def nbins(self, axis=0):
        return self.values.shape[axis]

    def centers(self, axis=0):
        axis_edges = self.edges[axis]
        return 0.5 * (axis_edges[:-1] + axis_edges[1:])

    def widths(self, axis=0):
        return np.diff(self.edges[axis])

    def low_edge(self, axis, index):
        return float(self.edges[axis][index])

    def up_edge(self, axis, index):
        return float(self.edges[axis][index + 1])

    def find_bin(self, axis, x):
        """0-based bin containing x; -1 below the axis and nbins above it."""
        axis_edges = self.edges[axis]
        if x < axis_edges[0]:
            return -1
        if x >= axis_edges[-1]:
            return len(axis_edges) - 1
        return int(np.searchsorted(axis_edges, x, side="right") - 1)

    def bin_range(self, axis, low, high):
        """
        Inclusive (first, last) index range of the bins that contain low and
        high. A range partly outside the axis is clipped to it; one entirely
        outside gives EMPTY_RANGE.
        """
        axis_edges = self.edges[axis]
        if high <= axis_edges[0] or low >= axis_edges[-1]:
            return EMPTY_RANGE
        eps = 1e-6 * (axis_edges[-1] - axis_edges[0])
        last_bin = self.nbins(axis) - 1
        first = min(max(self.find_bin(axis, low + eps), 0), last_bin)
        last = min(max(self.find_bin(axis, high - eps), 0), last_bin)
        return first, last

    # --- Contents ---

    @property
    def errors(self):
        return np.sqrt(self.variances)

    def _selection(self, index_ranges):
        selection = [slice(None)] * self.ndim
        for axis, (first, last) in (index_ranges or {}).items():
            selection[axis] = slice(first, last + 1)
        return tuple(selection)

    def integral(self, index_ranges=None):
        """Double precision sum of the contents within inclusive bin ranges."""
        return float(np.sum(self.values[self._selection(index_ranges)], dtype=np.float64))

    def max_value(self):
        return float(np.max(self.values)) if self.values.size else 0.0

    def project(self, keep, index_ranges=None, name=None):
        """
        Sums out every axis not in keep, restricted to the inclusive bin
        index ranges given per axis. keep is an axis number or a tuple of
        them; the result has the kept axes in that order.
        """
        keep = (keep,) if np.isscalar(keep) else tuple(keep)
        index_ranges = dict(index_ranges or {})
        selection = self._selection(index_ranges)
        summed = tuple(axis for axis in range(self.ndim) if axis not in keep)

        values = np.sum(self.values[selection], axis=summed, dtype=np.float64)
        variances = np.sum(self.variances[selection], axis=summed, dtype=np.float64)
        edges = []
        for axis in keep:
            first, last = index_ranges.get(axis, (0, self.nbins(axis) - 1))
            edges.append(self.edges[axis][first:last + 2])

        # np.sum keeps the remaining axes in their original order
        order = [sorted(keep).index(axis) for axis in keep]
        values = np.transpose(values, order)
        variances = np.transpose(variances, order)
        return Histogram(values, edges, variances, name=name or self.name)

    # --- 1-D statistics ---

    def mean(self):
        weights = self.values
        total = np.sum(weights)
        if total == 0:
            return 0.0
        return float(np.sum(weights * self.centers()) / total)

    def std(self):
        weights = self.values
        total = np.sum(weights)
        if total == 0:
            return 0.0
        mean = np.sum(weights * self.centers()) / total
        return float(np.sqrt(max(np.sum(weights * (self.centers() - mean) ** 2) / total, 0.0)))

    def effective_entries(self):
        sum_variances = np.sum(self.variances)
        if sum_variances <= 0:
            return 0.0
        return float(np.sum(self.values) ** 2 / sum_variances)

    def mean_error(self):
        """Standard error of the mean: std / sqrt(effective entries)."""
        n_eff = self.effective_entries()
        if n_eff <= 0:
            return 0.0
        return self.std() / np.sqrt(n_eff)

    def __repr__(self):
        return f"Histogram({self.name!r}, shape={self.shape})"


def populated_range(histogram, threshold=POPULATED_CONTENT):
    """
    Low edge of the first and up edge of the last populated bin of a 1-D
    histogram. Returns (0, -1) when nothing is populated so the caller sees
    min > max.
    """
    populated = np.nonzero(histogram.values > threshold)[0]
    if populated.size == 0:
        return 0.0, -1.0
    return histogram.low_edge(0, populated[0]), histogram.up_edge(0, populated[-1])


# --- Sources ---

class HistogramSource:
    """Serves histograms by exact name."""
    path = ""

    def get(self, key):
        raise NotImplementedError

    def __contains__(self, key):
        try:
            self.get(key)
        except HistogramNotFoundError:
            return False
        return True


class MemoryHistogramSource(HistogramSource):
    """Histograms held in a plain mapping of name to Histogram."""

    def __init__(self, histograms=None, path="<memory>"):
        self.histograms = dict(histograms or {})
        self.path = path

    def get(self, key):
        if key not in self.histograms:
            raise HistogramNotFoundError(key, self.path)
        return self.histograms[key]


class RootHistogramSource(HistogramSource):
    """
    Histograms read from a ROOT file with uproot. Each histogram is read
    once and cached for the lifetime of the source.
    """

    def __init__(self, path):
        self.path = str(path)
        self._cache = {}

    def get(self, key):
        if key in self._cache:
            return self._cache[key]

        with uproot.open(self.path) as root_file:
            try:
                hist = root_file[key]
            except KeyError as err:
                raise HistogramNotFoundError(key, self.path) from err
            values, *edges = hist.to_numpy(flow=False)
            variances = hist.variances(flow=False)

        if variances is None or np.shape(variances) != np.shape(values):
            variances = np.abs(values)
        histogram = Histogram(values, edges, variances, name=key)
        self._cache[key] = histogram
        return histogram


# --- Projection ---

@dataclass(frozen=True)
class Rejected:
    """A projection that is not fitted, with the reason and a log message."""
    reason: str
    message: str
    integral: float = 0.0


@dataclass(frozen=True)
class MergedWindow:
    """A run of adjacent scan bins merged until the statistics gate passed."""
    first_bin: int
    last_bin: int
    x: float
    integral: float
    projection: Histogram


def describe(context):
    """Renders a combination context dict for log and error messages."""
    return ", ".join(f"{key}={value}" for key, value in (context or {}).items())


class BinProjector:
    """
    Extracts 1-D samples from multi-dimensional histograms and applies the
    minimum statistics gate. The gate is inclusive: a projection whose
    integral equals min_integral is accepted.
    """

    def __init__(self, min_integral):
        self.min_integral = float(min_integral)

    def index_ranges(self, histogram, ranges):
        """Physical {axis: (min, max)} ranges to inclusive bin index ranges."""
        return {
            axis: histogram.bin_range(axis, low, high)
            for axis, (low, high) in (ranges or {}).items()
        }

    def passes(self, integral):
        return integral >= self.min_integral

    def project(self, histogram, axis, ranges=None, context=None):
        """
        Projects onto axis within the physical ranges of the other axes.
        Returns the 1-D Histogram or Rejected when statistics are too low.
        """
        index_ranges = self.index_ranges(histogram, ranges)
        if EMPTY_RANGE in index_ranges.values():
            return Rejected(
                INSUFFICIENT_STATISTICS,
                f"Range outside the histogram axes for {describe(context)}: {ranges}",
            )
        projection = histogram.project(axis, index_ranges)
        integral = projection.integral()
        if not self.passes(integral):
            return Rejected(
                INSUFFICIENT_STATISTICS,
                f"Insufficient statistics for {describe(context)}: "
                f"integral {integral:g} < {self.min_integral:g}",
                integral,
            )
        return projection

    def merge_windows(self, histogram, scan_axis, value_axis, scan_range=None,
                      ranges=None, context=None):
        """
        Greedy left-to-right merge along scan_axis of a 2-D histogram. Bins
        are added to the current window until its integral (within ranges
        on the other axes) reaches min_integral; the window is then emitted
        and the next one starts at the following bin. Bins left over at the
        end without enough statistics are dropped.
        """
        index_ranges = self.index_ranges(histogram, ranges)
        if scan_range is None:
            first_scan, last_scan = 0, histogram.nbins(scan_axis) - 1
        else:
            first_scan, last_scan = histogram.bin_range(scan_axis, *scan_range)

        index_ranges.pop(scan_axis, None)
        strip = histogram.project(scan_axis, index_ranges).values
        centers = histogram.centers(scan_axis)

        windows = []
        first_valid_bin = first_scan
        for i in range(first_scan, last_scan + 1):
            integral = float(np.sum(strip[first_valid_bin:i + 1], dtype=np.float64))
            if not self.passes(integral):
                continue
            window_ranges = dict(index_ranges)
            window_ranges[scan_axis] = (first_valid_bin, i)
            windows.append(MergedWindow(
                first_bin=first_valid_bin,
                last_bin=i,
                x=0.5 * (centers[first_valid_bin] + centers[i]),
                integral=integral,
                projection=histogram.project(value_axis, window_ranges),
            ))
            first_valid_bin = i + 1

        if first_valid_bin <= last_scan:
            logger.info(
                f"Dropping bins {first_valid_bin}-{last_scan} without enough statistics "
                f"for {describe(context)}"
            )
        return windows
