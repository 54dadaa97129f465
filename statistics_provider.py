"""
Edge-scoring capability used by the region merging engine.

The engine only needs three things from a scoring function:

    scoring_function(edge)                  -> score in [0, 1)
    scoring_function.notify_node_merge(b, a)   region b was merged into a
    scoring_function.notify_edge_merge(e, f)   edge e was folded into edge f

Subclass StatisticsProvider and implement score() to plug in a new strategy.
The cost of an edge must not decrease when its endpoints absorb more regions
or when another edge is folded into it, otherwise merging will fail with a
RegionMergingConsistencyError.
"""

from abc import ABC, abstractmethod


class StatisticsProvider(ABC):
    """Base class for pluggable edge-scoring strategies."""

    @abstractmethod
    def score(self, edge):
        """Current score of the given edge id, in [0, 1)."""

    def notify_node_merge(self, from_node, to_node):
        pass

    def notify_edge_merge(self, from_edge, to_edge):
        pass

    def __call__(self, edge):
        return self.score(edge)
