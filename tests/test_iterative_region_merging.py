import numpy as np
import pytest

from bin_queue import BinQueueOutOfBoundsError
from histogram_quantile_provider import HistogramQuantileProvider
from iterative_region_merging import IterativeRegionMerging, RegionMergingConsistencyError
from region_graph import RegionGraph
from statistics_provider import StatisticsProvider


class FixedScores(StatisticsProvider):
    """Scores from a table; a folded edge keeps the larger of both scores."""

    def __init__(self, scores):
        self.scores = dict(scores)
        self.calls = 0
        self.node_merges = []
        self.edge_merges = []

    def score(self, edge):
        self.calls += 1
        return self.scores[edge]

    def notify_node_merge(self, from_node, to_node):
        self.node_merges.append((from_node, to_node))

    def notify_edge_merge(self, from_edge, to_edge):
        self.edge_merges.append((from_edge, to_edge))
        self.scores[to_edge] = max(self.scores[to_edge], self.scores[from_edge])


class ShrinkingScores(FixedScores):
    """Breaks the scoring contract: every node merge halves all scores."""

    def notify_node_merge(self, from_node, to_node):
        super().notify_node_merge(from_node, to_node)
        self.scores = {e: s / 2 for e, s in self.scores.items()}


def chain():
    return RegionGraph.from_edges([(1, 2), (2, 3), (3, 4)])


CHAIN_SCORES = {0: 0.1, 1: 0.3, 2: 0.2}


@pytest.mark.parametrize('use_bin_queue', [False, True])
def test_chain_merges_below_threshold(use_bin_queue):
    merging = IterativeRegionMerging(chain(), use_bin_queue=use_bin_queue)
    scores = FixedScores(CHAIN_SCORES)

    assert merging.merge_until(scores, 0.25) == 2

    segmentation = np.array([1, 2, 3, 4])
    merging.extract_segmentation(segmentation)
    np.testing.assert_array_equal(segmentation, [1, 1, 3, 3])

    assert [(m['a'], m['b']) for m in merging.merge_history] == [(1, 2), (3, 4)]
    assert scores.node_merges == [(2, 1), (4, 3)]
    assert merging.merged_until == 0.25


def test_chain_with_histogram_scores():
    graph = chain()
    provider = HistogramQuantileProvider(graph)
    for edge, value in CHAIN_SCORES.items():
        provider.add_affinity(edge, value)

    merging = IterativeRegionMerging(graph)
    merging.merge_until(provider, 0.25)

    assert merging.get_root(2) == 1
    assert merging.get_root(4) == 3
    assert merging.get_root(3) != merging.get_root(1)


def test_merged_edges_are_relocated_and_stale():
    graph = chain()
    merging = IterativeRegionMerging(graph)
    merging.merge_until(FixedScores(CHAIN_SCORES), 0.15)

    # 2-3 now connects the merged region 1 with 3
    assert graph.edge(1) == (1, 3)
    assert graph.find_edge(1, 3) == 1
    assert merging.stale[1]
    assert graph.is_removed(0)
    assert graph.inc_edges(2) == []


def test_same_threshold_twice_is_a_no_op():
    graph = chain()
    merging = IterativeRegionMerging(graph)
    scores = FixedScores(CHAIN_SCORES)
    merging.merge_until(scores, 0.25)

    calls = scores.calls
    history = list(merging.merge_history)
    edges = [graph.edge(e) for e in range(graph.num_edges())]

    assert merging.merge_until(scores, 0.25) == 0
    assert merging.merge_until(scores, 0.2) == 0
    assert scores.calls == calls
    assert merging.merge_history == history
    assert [graph.edge(e) for e in range(graph.num_edges())] == edges


@pytest.mark.parametrize('use_bin_queue', [False, True])
def test_incremental_thresholds_match_a_single_call(use_bin_queue):
    stepwise = IterativeRegionMerging(chain(), use_bin_queue=use_bin_queue)
    stepwise_scores = FixedScores(CHAIN_SCORES)
    for threshold in (0.05, 0.15, 0.25, 0.5):
        stepwise.merge_until(stepwise_scores, threshold)

    direct = IterativeRegionMerging(chain(), use_bin_queue=use_bin_queue)
    direct.merge_until(FixedScores(CHAIN_SCORES), 0.5)

    assert stepwise.merge_history == direct.merge_history

    a = stepwise.extract_segmentation(np.arange(1, 5))
    b = direct.extract_segmentation(np.arange(1, 5))
    np.testing.assert_array_equal(a, b)
    np.testing.assert_array_equal(a, [1, 1, 1, 1])


def test_stale_edge_is_rescored_before_merging():
    merging = IterativeRegionMerging(chain())
    scores = FixedScores(CHAIN_SCORES)
    merging.merge_until(scores, 0.5)

    # three initial scores, then 2-3 rescored once after 1-2 and 3-4 merged
    assert scores.calls == 4
    assert merging.merge_history[-1] == {'a': 1, 'b': 3, 'edge': 1, 'score': 0.3}


def triangle():
    # 1-2, 1-3, 2-3
    return RegionGraph.from_edges([(1, 2), (1, 3), (2, 3)])


def test_shared_neighbor_keeps_cheaper_edge():
    graph = triangle()
    merging = IterativeRegionMerging(graph)
    scores = FixedScores({0: 0.1, 1: 0.4, 2: 0.3})
    merging.merge_until(scores, 0.2)

    # b's edge 2-3 is cheaper: it replaces a's edge 1-3
    assert scores.edge_merges == [(1, 2)]
    assert merging.deleted[1]
    assert not merging.deleted[2]
    assert merging.stale[2]
    assert graph.find_edge(1, 3) == 2
    assert graph.is_removed(1)


def test_shared_neighbor_tie_keeps_survivor_edge():
    graph = triangle()
    merging = IterativeRegionMerging(graph)
    scores = FixedScores({0: 0.1, 1: 0.3, 2: 0.3})
    merging.merge_until(scores, 0.2)

    assert scores.edge_merges == [(2, 1)]
    assert merging.deleted[2]
    assert merging.stale[1]
    assert graph.find_edge(1, 3) == 1


def test_shared_neighbor_collapse_then_merge():
    graph = triangle()
    merging = IterativeRegionMerging(graph)
    scores = FixedScores({0: 0.1, 1: 0.4, 2: 0.3})

    assert merging.merge_until(scores, 0.5) == 2
    segmentation = [1, 2, 3, 3, 2]
    merging.extract_segmentation(segmentation)
    assert segmentation == [1, 1, 1, 1, 1]

    # the folded edge carries the score of the more expensive one
    assert merging.merge_history[-1]['score'] == 0.4


def test_union_find_after_merges():
    graph = RegionGraph.from_edges([(1, 2), (3, 4), (5, 6), (2, 3)])
    merging = IterativeRegionMerging(graph)
    merging.merge_until(FixedScores({0: 0.1, 1: 0.2, 2: 0.3, 3: 0.4}), 0.15)
    assert merging.get_root(2) == merging.get_root(1)

    merging.merge_until(FixedScores({0: 0.1, 1: 0.2, 2: 0.3, 3: 0.4}), 0.35)
    assert merging.get_root(2) == merging.get_root(1)
    assert merging.get_root(4) == merging.get_root(3)
    assert merging.get_root(6) == merging.get_root(5)
    assert merging.get_root(1) != merging.get_root(3)

    for node in range(1, 7):
        root = merging.get_root(node)
        assert merging.get_root(root) == root
        assert merging.is_root(root)


def test_get_root_compresses_paths():
    merging = IterativeRegionMerging(RegionGraph())
    merging.root_paths.update({4: 3, 3: 2, 2: 1})

    assert merging.get_root(4) == 1
    assert merging.root_paths == {4: 1, 3: 1, 2: 1}
    assert merging.get_root(4) == 1
    assert merging.get_root(7) == 7


def test_extract_segmentation_is_idempotent():
    merging = IterativeRegionMerging(chain())
    merging.merge_until(FixedScores(CHAIN_SCORES), 0.25)

    segmentation = np.array([[1, 2, 2], [3, 4, 4]], dtype=np.uint64)
    once = merging.extract_segmentation(segmentation.copy())
    twice = merging.extract_segmentation(once.copy())

    np.testing.assert_array_equal(once, [[1, 1, 1], [3, 3, 3]])
    np.testing.assert_array_equal(once, twice)
    assert once.dtype == np.uint64


def test_extract_segmentation_edits_in_place():
    merging = IterativeRegionMerging(chain())
    merging.merge_until(FixedScores(CHAIN_SCORES), 0.25)

    segmentation = np.array([4, 3, 2, 1])
    result = merging.extract_segmentation(segmentation)
    assert result is segmentation
    np.testing.assert_array_equal(segmentation, [3, 3, 1, 1])


def test_decreasing_rescore_is_fatal():
    merging = IterativeRegionMerging(chain())
    with pytest.raises(RegionMergingConsistencyError):
        merging.merge_until(ShrinkingScores(CHAIN_SCORES), 0.5)


@pytest.mark.parametrize('use_bin_queue', [False, True])
@pytest.mark.parametrize('score', [1.2, -0.1, 1.0])
def test_out_of_domain_score_raises(use_bin_queue, score):
    merging = IterativeRegionMerging(chain(), use_bin_queue=use_bin_queue)
    with pytest.raises(BinQueueOutOfBoundsError):
        merging.merge_until(FixedScores({0: 0.1, 1: score, 2: 0.2}), 0.5)


def test_queue_exhaustion_updates_marker():
    merging = IterativeRegionMerging(chain())
    merging.merge_until(FixedScores(CHAIN_SCORES), 0.9)

    assert merging.merged_until == 0.9
    assert not merging.edge_queue
    assert merging.merge_until(FixedScores(CHAIN_SCORES), 0.95) == 0


def test_graph_without_edges():
    merging = IterativeRegionMerging(RegionGraph(num_nodes=3))
    assert merging.merge_until(FixedScores({}), 0.5) == 0
    assert merging.extract_segmentation([0, 1, 2]) == [0, 1, 2]


def test_histogram_counts_survive_parallel_edge_collapse():
    graph = triangle()
    provider = HistogramQuantileProvider(graph)
    provider.add_affinities(0, [0.1, 0.05])
    provider.add_affinities(1, [0.4, 0.45, 0.5])
    provider.add_affinities(2, [0.3, 0.35])

    merging = IterativeRegionMerging(graph)
    merging.merge_until(provider, 0.2)

    # 1-2 merged; 1-3 and 2-3 collapsed into the cheaper 2-3
    assert merging.deleted[1]
    assert graph.find_edge(1, 3) == 2
    assert provider.count(1) == 0
    assert provider.count(2) == 5
    assert provider.histograms.sum() == 7

    merging.merge_until(provider, 0.9)
    assert merging.get_root(3) == 1
    assert provider.histograms.sum() == 7
