"""
Iterative Region Merging on a Region Adjacency Graph

This module implements greedy agglomeration of an over-segmentation (e.g.
supervoxels obtained from boundary or affinity predictions):

1. Score every edge of the region adjacency graph (RAG) once
2. Repeatedly merge the two regions joined by the cheapest edge
3. Stop as soon as the cheapest edge reaches a threshold

Key concepts:
- Lazy invalidation: scores are never updated inside the priority queue.
  Edges touching a merged region are flagged stale and rescored when they
  reach the top of the queue; edges folded into a parallel edge are flagged
  deleted and skipped when popped.
- Merge tree: merges are recorded in a union-find forest over the original
  region ids, so any segmentation seen before can be mapped to the current
  merge level without relabeling bulk data on every merge.
- Incremental thresholds: merge_until() can be called again with a higher
  threshold and resumes where the previous call stopped.

Usage:
    graph = RegionGraph.from_edges([(1, 2), (2, 3), (3, 4)])
    provider = HistogramQuantileProvider(graph)
    ...  # record affinities per edge
    merging = IterativeRegionMerging(graph)
    merging.merge_until(provider, 0.25)
    merging.extract_segmentation(segmentation)  # in place

Performance notes:
    - Heap backend: O(log E) per queue operation, exact ordering
    - Bin queue backend: O(1) amortized, ordering exact up to the bin width
    - Union-find lookups are amortized near-constant thanks to path
      compression on read
"""

import heapq
import logging

import numpy as np

from bin_queue import BinQueue, BinQueueOutOfBoundsError, DEFAULT_NUM_BINS

logger = logging.getLogger(__name__)


class RegionMergingConsistencyError(RuntimeError):
    """Raised when a stale edge is rescored lower than its cached score."""


class _HeapQueue:
    """Exact min-priority queue of edge ids, ties broken by the smaller id."""

    def __init__(self):
        self.heap = []

    def push(self, edge, score):
        # same score domain as the bin queue
        if not 0 <= score < 1:
            raise BinQueueOutOfBoundsError(score)
        heapq.heappush(self.heap, (score, edge))

    def top(self):
        return self.heap[0][1]

    def pop(self):
        return heapq.heappop(self.heap)[1]

    def __len__(self):
        return len(self.heap)


class IterativeRegionMerging:
    """
    Greedy, threshold-driven merging of adjacent regions.

    The engine owns the priority queue and the side tables; the region graph
    is modified in place (edges are moved onto surviving regions, parallel
    edges are removed). Nodes and edges are never split or re-created.

    Attributes:
        region_graph (RegionGraph): The RAG being contracted
        edge_scores (np.ndarray): Cached score per edge id
        stale (np.ndarray): Per edge, True if the cached score may be outdated
        deleted (np.ndarray): Per edge, True if the edge was folded away but
            may still sit in the queue
        root_paths (dict): Union-find forest, node id -> parent node id.
            Roots have no entry. Paths are compressed when read.
        merge_history (list): One record per merge, in merge order:
            {'a': survivor, 'b': absorbed, 'edge': edge id, 'score': float}

    Example:
        graph = RegionGraph.from_edges([(1, 2), (2, 3)])
        merging = IterativeRegionMerging(graph)
        merging.merge_until(provider, 0.5)
        merging.get_root(2)  # 1, if edge (1, 2) scored below 0.5
    """

    def __init__(self, region_graph, use_bin_queue=False, num_bins=DEFAULT_NUM_BINS):
        """
        Create a region merging for the given initial RAG.

        Args:
            region_graph (RegionGraph): Initial graph, with all edges in place
            use_bin_queue (bool): Use a bucketed queue (O(1) amortized,
                FIFO inside a bin) instead of an exact binary heap
            num_bins (int): Number of bins of the bucketed queue
        """
        self.region_graph = region_graph
        self.edge_scores = region_graph.edge_map(dtype=np.float64, fill_value=0)
        self.stale = region_graph.edge_map(dtype=bool, fill_value=False)
        self.deleted = region_graph.edge_map(dtype=bool, fill_value=False)
        self.root_paths = region_graph.node_map()
        self.merge_history = []

        if use_bin_queue:
            self.edge_queue = BinQueue(num_bins)
        else:
            self.edge_queue = _HeapQueue()

        self._merged_until = 0.0
        self._scored = False

    @property
    def merged_until(self):
        """Highest threshold fully processed so far."""
        return self._merged_until

    def merge_until(self, scoring_function, threshold):
        """
        Merge regions until the cheapest remaining edge reaches the threshold.

        Args:
            scoring_function: Callable edge id -> score in [0, 1), with
                notify_node_merge(from, to) and notify_edge_merge(from, to)
                (see StatisticsProvider)
            threshold (float): Merge every edge with a score below this value

        Returns:
            int: Number of merges performed by this call

        Raises:
            BinQueueOutOfBoundsError: If the scoring function returns a score
                outside [0, 1)
            RegionMergingConsistencyError: If a stale edge is rescored lower
                than its cached score

        Algorithm:
            1. On the first call, score and enqueue every edge
            2. While the queue is not empty:
               a. Look at the cheapest edge; stop if its cached score is at
                  least the threshold (left in the queue for later calls)
               b. Pop it; skip it if it was deleted
               c. If stale, rescore it and put it back; no merge this round
               d. Otherwise merge its two regions

        Notes:
            - Stopping on a stale or deleted edge is safe: its true score can
              only be larger than the cached one
            - Calls with a threshold not above the previous one are no-ops
        """
        if threshold <= self._merged_until:
            logger.info("already merged until %s, skipping", threshold)
            return 0

        # compute scores of each edge not scored so far
        if not self._scored:
            logger.info("computing initial scores")
            for e in range(self.region_graph.num_edges()):
                if self.region_graph.is_removed(e):
                    continue
                self._score_edge(e, scoring_function)
            self._scored = True

        logger.info("merging until %s", threshold)

        merges = 0
        while self.edge_queue:
            # get the next cheapest edge to merge
            next_edge = self.edge_queue.top()
            score = self.edge_scores[next_edge]

            if score >= threshold:
                logger.info("threshold exceeded")
                break

            self.edge_queue.pop()

            if self.deleted[next_edge]:
                continue

            if self.stale[next_edge]:
                new_score = self._score_edge(next_edge, scoring_function)
                self.stale[next_edge] = False
                logger.debug("rescored stale edge %d: %s -> %s", next_edge, score, new_score)

                if new_score < score:
                    raise RegionMergingConsistencyError(
                        f"Edge {next_edge} was rescored from {score} to {new_score}; "
                        "scores of stale edges must not decrease"
                    )
                continue

            self._merge_regions(next_edge, scoring_function)
            merges += 1

        self._merged_until = threshold
        return merges

    def extract_segmentation(self, segmentation):
        """
        Map a segmentation onto the current merge level, in place.

        The segmentation has to hold the initial region ids, or ids produced
        by earlier calls to extract_segmentation(). Applying it to already
        extracted data is a no-op.

        Args:
            segmentation (np.ndarray or list): Region ids, any shape for numpy
                arrays, a flat mutable sequence otherwise

        Returns:
            The same object, for chaining
        """
        if isinstance(segmentation, np.ndarray):
            ids, inverse = np.unique(segmentation, return_inverse=True)
            roots = np.array([self.get_root(int(i)) for i in ids], dtype=segmentation.dtype)
            segmentation[...] = roots[inverse].reshape(segmentation.shape)
        else:
            for i in range(len(segmentation)):
                segmentation[i] = self.get_root(segmentation[i])

        return segmentation

    def is_root(self, node):
        # if there is no root path, it is a root
        return node not in self.root_paths

    def get_root(self, node):
        """
        Get the root node of the merge tree containing the given node.

        Every node visited on the way up is linked directly to the root.

        Time complexity: amortized near O(1)
        """
        if self.is_root(node):
            return node

        # walk up to root
        root = self.root_paths[node]
        while not self.is_root(root):
            root = self.root_paths[root]

        # not compressed yet
        while node != root:
            next_node = self.root_paths[node]
            self.root_paths[node] = root
            node = next_node

        return root

    def _merge_regions(self, e, scoring_function):
        """
        Merge the two regions joined by edge e.

        The first endpoint a survives, the second endpoint b is absorbed.
        Every other edge of b is either moved onto a (b's exclusive
        neighbors) or collapsed with a's parallel edge (shared neighbors).
        """
        graph = self.region_graph
        a, b = graph.edge(e)

        logger.debug("merging %d into %d (edge %d, score %s)", b, a, e, self.edge_scores[e])

        # assign new node a = a + b
        scoring_function.notify_node_merge(b, a)

        self.root_paths[b] = a

        # mark all incident edges of a as stale...
        for neighbor_edge in graph.inc_edges(a):
            self.stale[neighbor_edge] = True

        # ...and update incident edges of b
        for neighbor_edge in graph.inc_edges(b):
            if neighbor_edge == e:
                continue

            neighbor = graph.get_opposite(b, neighbor_edge)
            a_neighbor_edge = graph.find_edge(a, neighbor)

            if a_neighbor_edge == graph.NO_EDGE:
                # exclusive neighbor of b
                graph.move_edge(neighbor_edge, a, neighbor)
                self.stale[neighbor_edge] = True
                continue

            # Shared neighbor: keep the cheaper edge, fold the other one into
            # it and mark the survivor stale, so that it is rescored before
            # its (larger) true score is trusted. Ties keep a's edge.
            if self.edge_scores[neighbor_edge] < self.edge_scores[a_neighbor_edge]:
                survivor, discarded = neighbor_edge, a_neighbor_edge
            else:
                survivor, discarded = a_neighbor_edge, neighbor_edge

            scoring_function.notify_edge_merge(discarded, survivor)
            graph.remove_edge(discarded)
            self.deleted[discarded] = True

            if survivor == neighbor_edge:
                graph.move_edge(survivor, a, neighbor)
            self.stale[survivor] = True

        # e now lies inside region a
        graph.remove_edge(e)

        self.merge_history.append({
            'a': a,
            'b': b,
            'edge': e,
            'score': float(self.edge_scores[e]),
        })

    def _score_edge(self, e, scoring_function):
        score = float(scoring_function(e))

        self.edge_scores[e] = score
        self.edge_queue.push(e, score)

        return score
