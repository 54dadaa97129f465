from histogram_quantile_provider import DEFAULT_QUANTILE, HistogramQuantileProvider
from iterative_region_merging import IterativeRegionMerging
from bin_queue import DEFAULT_NUM_BINS
from region_graph import RegionGraph
import numpy as np
from typing import Dict, Iterable, Iterator, List, Tuple, Any
import logging

logger = logging.getLogger(__name__)


class Agglomerator:
    def __init__(self, quantile: int = DEFAULT_QUANTILE, bins: int = DEFAULT_NUM_BINS, use_bin_queue: bool = False):
        self.quantile = quantile
        self.bins = bins
        self.use_bin_queue = use_bin_queue
        self.merging = None

    @property
    def merge_history(self) -> List[Dict[str, Any]]:
        """Merges performed by the last run, in merge order."""
        if self.merging is None:
            return []
        return self.merging.merge_history

    def build_provider(self, region_graph: RegionGraph, affinities: Dict[int, Iterable[float]]) -> HistogramQuantileProvider:
        """
        Create a quantile provider and record the affinity samples of every edge.

        Args:
            region_graph (RegionGraph): Initial region adjacency graph
            affinities (Dict): Edge id -> affinity samples in [0, 1]

        Returns:
            HistogramQuantileProvider ready to score edges
        """
        provider = HistogramQuantileProvider(region_graph, quantile=self.quantile, bins=self.bins)
        for edge, values in affinities.items():
            provider.add_affinities(edge, values)
        return provider

    def process(self, region_graph: RegionGraph, affinities: Dict[int, Iterable[float]],
                segmentation: np.ndarray, thresholds: Iterable[float]) -> Iterator[Tuple[float, np.ndarray]]:
        """
        Agglomerate a segmentation for a series of thresholds.

        Thresholds are processed in ascending order, each run resuming where
        the previous one stopped. The segmentation is updated in place; a copy
        is yielded after every threshold.

        Args:
            region_graph (RegionGraph): Initial region adjacency graph, modified in place
            affinities (Dict): Edge id -> affinity samples in [0, 1]
            segmentation (np.ndarray): Initial region ids
            thresholds (Iterable): Merge thresholds in [0, 1]

        Returns:
            Iterator of (threshold, segmentation) tuples
        """
        provider = self.build_provider(region_graph, affinities)
        self.merging = IterativeRegionMerging(region_graph, use_bin_queue=self.use_bin_queue, num_bins=self.bins)

        for threshold in sorted(thresholds):
            merges = self.merging.merge_until(provider, threshold)
            self.merging.extract_segmentation(segmentation)
            logger.info("threshold %s: %d merges, %d regions", threshold, merges, len(np.unique(segmentation)))
            yield threshold, segmentation.copy()

    def get_segmentations(self, region_graph: RegionGraph, affinities: Dict[int, Iterable[float]],
                          segmentation: np.ndarray, thresholds: Iterable[float]) -> List[np.ndarray]:
        """
        Same as process(), collected into a list of segmentations in ascending threshold order.
        """
        return [result for _, result in self.process(region_graph, affinities, segmentation, thresholds)]
