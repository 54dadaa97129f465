"""
Approximate quantile scores from per-edge affinity histograms.

Every edge of the region graph accumulates the affinities observed along the
boundary it represents. Instead of storing the raw samples, each edge keeps a
fixed-size histogram over [0, 1], so memory does not depend on the number of
samples. When two parallel edges collapse into one, their histograms are
added bin-wise: the merged statistics are exactly those of the union of both
sample sets, up to the original binning.

Usage:
    provider = HistogramQuantileProvider(graph, quantile=50)
    provider.add_affinities(0, [0.1, 0.2, 0.7])
    provider.score(0)  # approximate median of edge 0
"""

import numpy as np

from bin_queue import DEFAULT_NUM_BINS
from statistics_provider import StatisticsProvider

DEFAULT_QUANTILE = 50


class EmptyHistogramError(ValueError):
    """Raised when a quantile is requested for an edge without samples."""


def discretize(value, bins):
    """
    Map a value in [0, 1] onto a bin index in [0, bins).

    Values above 1 are clamped into the last bin.

    Raises:
        ValueError: For negative or NaN values
    """
    if not value >= 0:
        raise ValueError(f"Affinity {value} not in [0, 1]")
    return min(int(min(value, 1.0) * bins), bins - 1)


def undiscretize(index, bins):
    """Representative value of a bin: its center."""
    return (index + 0.5) / bins


class HistogramQuantileProvider(StatisticsProvider):
    """
    Scores an edge with the Q-th percentile of its recorded affinities.

    Attributes:
        quantile (int): Percentile Q in [0, 100]
        bins (int): Number of histogram bins
        histograms (np.ndarray): (num_edges, bins) counts, one row per edge id

    Notes:
        - Affinities are assumed to lie in [0, 1]; larger values are clamped
          into the last bin
        - Scores are bin centers, so they stay inside (0, 1) and can be fed
          to a BinQueue directly
    """

    def __init__(self, region_graph, quantile=DEFAULT_QUANTILE, bins=DEFAULT_NUM_BINS):
        if not 0 <= quantile <= 100:
            raise ValueError(f"Quantile must be in [0, 100], got {quantile}")
        if bins < 2:
            raise ValueError(f"Expected at least two bins, got {bins}")

        self.quantile = quantile
        self.bins = bins
        self.histograms = np.zeros((region_graph.num_edges(), bins), dtype=np.int64)

    def add_affinity(self, edge, value):
        self.histograms[edge, discretize(value, self.bins)] += 1

    def add_affinities(self, edge, values):
        """
        Record many affinity samples for one edge at once.

        Args:
            edge (int): Edge id
            values (array-like): Affinities in [0, 1]
        """
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.size == 0:
            return
        invalid = ~(values >= 0)
        if invalid.any():
            raise ValueError(f"Affinity {values[invalid][0]} not in [0, 1]")
        indices = np.minimum((np.minimum(values, 1.0) * self.bins).astype(np.int64), self.bins - 1)
        self.histograms[edge] += np.bincount(indices, minlength=self.bins)

    def notify_edge_merge(self, from_edge, to_edge):
        self.histograms[to_edge] += self.histograms[from_edge]
        self.histograms[from_edge] = 0

    def count(self, edge):
        """Number of samples folded into the edge."""
        return int(self.histograms[edge].sum())

    def histogram(self, edge):
        return self.histograms[edge].copy()

    def score(self, edge):
        """
        Approximate Q-th percentile of the edge's affinities.

        The pivot is the 1-based rank floor(Q * n / 100) + 1; bins are
        accumulated in ascending order until the running count reaches it.

        Raises:
            EmptyHistogramError: If no affinity was recorded for the edge

        Time complexity: O(bins)
        """
        histogram = self.histograms[edge]
        total = int(histogram.sum())
        if total == 0:
            raise EmptyHistogramError(f"Edge {edge} has no affinity samples")

        # pivot element, 1-based index
        pivot = self.quantile * total // 100 + 1

        # Q = 100 puts the pivot one past the last sample
        pivot = min(pivot, total)

        cumulative = np.cumsum(histogram)
        index = int(np.searchsorted(cumulative, pivot))

        return undiscretize(index, self.bins)
