"""
Tests for histograms, the histogram sources and the BinProjector.
"""

import numpy as np
import pytest
import uproot

from calphenix.errors import HistogramNotFoundError
from calphenix.histograms import (
    EMPTY_RANGE, INSUFFICIENT_STATISTICS, BinProjector, Histogram, MemoryHistogramSource, Rejected,
    RootHistogramSource, populated_range,
)


def strip_histogram(counts):
    """2-D histogram: x = scan axis with the given per-bin counts, y = one value bin."""
    counts = np.asarray(counts, dtype=float)
    edges = np.arange(len(counts) + 1, dtype=float) * 10.0
    return Histogram(counts[:, None], [edges, [-1.0, 1.0]], name="strip")


class TestHistogram:
    """Test axis helpers, integrals and projections."""

    def test_contents_are_read_only(self, peak_histogram):
        with pytest.raises(ValueError):
            peak_histogram.values[0] = 1.0

    def test_mismatching_edges_raise(self):
        with pytest.raises(ValueError):
            Histogram(np.ones(3), [[0.0, 1.0, 2.0]])

    def test_find_bin_outside_axis(self):
        h = Histogram(np.ones(4), [[0.0, 1.0, 2.0, 3.0, 4.0]])
        assert h.find_bin(0, -0.5) == -1
        assert h.find_bin(0, 4.0) == 4
        assert h.find_bin(0, 2.5) == 2

    def test_bin_range_on_edges(self):
        h = Histogram(np.ones(4), [[0.0, 1.0, 2.0, 3.0, 4.0]])
        # A range ending exactly on an edge does not include the next bin
        assert h.bin_range(0, 1.0, 3.0) == (1, 2)
        assert h.bin_range(0, -10.0, 10.0) == (0, 3)

    def test_bin_range_outside_axis(self):
        h = Histogram(np.ones(4), [[0.0, 1.0, 2.0, 3.0, 4.0]])
        assert h.bin_range(0, 5.0, 8.0) == EMPTY_RANGE
        assert h.bin_range(0, -3.0, 0.0) == EMPTY_RANGE
        assert h.bin_range(0, 3.5, 8.0) == (3, 3)

    def test_projection_keeps_axis_order(self):
        values = np.arange(24, dtype=float).reshape(2, 3, 4)
        h = Histogram(values, [[0, 1, 2], [0, 1, 2, 3], [0, 1, 2, 3, 4]])
        projected = h.project((1, 0), {2: (1, 2)})
        assert projected.shape == (3, 2)
        assert projected.values[2, 1] == pytest.approx(values[1, 2, 1] + values[1, 2, 2])
        assert len(projected.edges[0]) == 4

    def test_projection_restricts_edges(self):
        h = Histogram(np.ones((4, 2)), [[0, 1, 2, 3, 4], [0, 1, 2]])
        projected = h.project(0, {0: (1, 2)})
        assert list(projected.edges[0]) == [1.0, 2.0, 3.0]
        assert projected.integral() == pytest.approx(4.0)

    def test_statistics(self, peak_histogram):
        assert peak_histogram.mean() == pytest.approx(0.2, abs=0.01)
        assert peak_histogram.std() == pytest.approx(0.8, abs=0.02)
        assert peak_histogram.mean_error() > 0

    def test_from_samples(self):
        h = Histogram.from_samples([[0.5, 1.5, 1.5]], [[0.0, 1.0, 2.0]])
        assert list(h.values) == [1.0, 2.0]


class TestPopulatedRange:
    """Test edge trimming."""

    def test_trims_empty_edges(self):
        h = Histogram([0, 0, 3, 0, 5, 0], [np.arange(7, dtype=float)])
        assert populated_range(h) == (2.0, 5.0)

    def test_empty_histogram_is_malformed(self):
        h = Histogram(np.zeros(5), [np.arange(6, dtype=float)])
        low, high = populated_range(h)
        assert low > high


class TestStatisticsGate:
    """Test the minimum statistics threshold."""

    def test_integral_at_threshold_is_accepted(self):
        h = strip_histogram([40, 60])
        projection = BinProjector(100).project(h, 1)
        assert isinstance(projection, Histogram)
        assert projection.integral() == pytest.approx(100)

    def test_integral_below_threshold_is_rejected(self):
        h = strip_histogram([40, 59])
        projection = BinProjector(100).project(h, 1, context={"pT": "[1, 2]"})
        assert isinstance(projection, Rejected)
        assert projection.reason == INSUFFICIENT_STATISTICS
        assert "pT=[1, 2]" in projection.message

    def test_end_to_end_rejection(self):
        h = strip_histogram([50])
        assert isinstance(BinProjector(100).project(h, 1), Rejected)

    def test_range_outside_axis_is_rejected(self):
        h = Histogram(np.array([[200.0, 500.0], [300.0, 700.0]]), [[-1.0, 0.0, 1.0], [0.5, 1.0, 2.0]])
        projection = BinProjector(100).project(h, 0, {1: (4.0, 8.0)})
        assert isinstance(projection, Rejected)
        assert projection.reason == INSUFFICIENT_STATISTICS
        assert projection.integral == 0.0
        assert isinstance(BinProjector(100).project(h, 0, {1: (1.5, 8.0)}), Histogram)

    def test_merge_outside_scan_axis(self):
        h = strip_histogram([100, 100])
        assert BinProjector(50).merge_windows(h, 0, 1, scan_range=(30.0, 50.0)) == []


class TestMergeWindows:
    """Test the greedy merge of sparse scan bins."""

    def test_windows_advance(self):
        h = strip_histogram([30, 30, 50, 10, 100, 5])
        windows = BinProjector(60).merge_windows(h, 0, 1)
        assert [(w.first_bin, w.last_bin) for w in windows] == [(0, 1), (2, 3), (4, 4)]
        for previous, current in zip(windows, windows[1:]):
            assert current.first_bin > previous.last_bin

    def test_window_position_inside_window(self):
        h = strip_histogram([5, 5, 5, 80, 20, 70])
        centers = h.centers(0)
        for window in BinProjector(50).merge_windows(h, 0, 1):
            assert centers[window.first_bin] <= window.x <= centers[window.last_bin]
            assert window.projection.integral() == pytest.approx(window.integral)

    def test_scan_range(self):
        h = strip_histogram([100, 100, 100, 100])
        windows = BinProjector(50).merge_windows(h, 0, 1, scan_range=(10.0, 30.0))
        assert [w.first_bin for w in windows] == [1, 2]

    def test_leftover_bins_dropped(self):
        h = strip_histogram([10, 10, 10])
        assert BinProjector(50).merge_windows(h, 0, 1) == []


class TestSources:
    """Test the memory and ROOT file histogram sources."""

    def test_memory_source_missing_key(self):
        source = MemoryHistogramSource({}, path="test")
        with pytest.raises(HistogramNotFoundError) as err:
            source.get("t vs ADC: W0")
        assert err.value.key == "t vs ADC: W0"
        assert "t vs ADC: W0" not in source

    def test_root_file_round_trip(self, tmp_path):
        path = tmp_path / "histograms.root"
        rng = np.random.default_rng(1)
        x, y = rng.normal(size=1000), rng.normal(size=1000)
        counts, x_edges, y_edges = np.histogram2d(x, y, bins=[10, 8], range=[[-3, 3], [-2, 2]])
        with uproot.recreate(path) as root_file:
            root_file["h2"] = (counts, x_edges, y_edges)

        source = RootHistogramSource(path)
        h = source.get("h2")
        assert h.shape == (10, 8)
        assert np.allclose(h.values, counts)
        assert np.allclose(h.edges[0], x_edges)
        assert source.get("h2") is h

    def test_root_file_missing_key(self, tmp_path):
        path = tmp_path / "histograms.root"
        with uproot.recreate(path) as root_file:
            root_file["h1"] = np.histogram(np.arange(10), bins=5)

        with pytest.raises(HistogramNotFoundError) as err:
            RootHistogramSource(path).get("dphi vs pT vs centrality: PC2")
        assert err.value.key == "dphi vs pT vs centrality: PC2"
