"""
Region adjacency graph (RAG) used by the merging engine.

Nodes are integer region ids (e.g. supervoxel labels). Edges are undirected
adjacencies with dense, stable integer ids: an edge keeps its id when it is
moved to new endpoints, and a removed edge's id is never reused. This lets
side tables (scores, flags, histograms) be plain arrays indexed by edge id.

Example:
    graph = RegionGraph.from_edges([(1, 2), (2, 3), (3, 4)])
    graph.find_edge(3, 2)   # 1
    graph.find_edge(1, 4)   # RegionGraph.NO_EDGE
"""

import numpy as np


class RegionGraph:
    """
    Undirected graph over region ids with O(1) edge lookup between two nodes.

    Attributes:
        edges (list): Edge id -> [u, v] endpoint pair
        incidences (dict): Node id -> list of incident edge ids
        lookup (dict): (min(u, v), max(u, v)) -> edge id
        removed (set): Ids of edges removed from the graph
    """

    NO_EDGE = -1

    def __init__(self, num_nodes=0):
        self.edges = []
        self.incidences = {}
        self.lookup = {}
        self.removed = set()

        for n in range(num_nodes):
            self.add_node(n)

    @classmethod
    def from_edges(cls, pairs):
        """Build a graph from an iterable of (u, v) node pairs, in edge id order."""
        graph = cls()
        for u, v in pairs:
            graph.add_edge(u, v)
        return graph

    @staticmethod
    def _key(u, v):
        return (u, v) if u < v else (v, u)

    def add_node(self, n):
        self.incidences.setdefault(int(n), [])

    def add_edge(self, u, v):
        """
        Add an undirected edge between u and v.

        Args:
            u (int): First endpoint
            v (int): Second endpoint

        Returns:
            int: Id of the new edge (ids are handed out densely from 0)

        Raises:
            ValueError: For self loops or if u and v are already connected
        """
        u, v = int(u), int(v)
        if u == v:
            raise ValueError(f"Self loop on node {u} is not allowed")
        if self._key(u, v) in self.lookup:
            raise ValueError(f"Nodes {u} and {v} are already connected")

        self.add_node(u)
        self.add_node(v)

        e = len(self.edges)
        self.edges.append([u, v])
        self._attach(e, u, v)
        return e

    def num_edges(self):
        """Number of edge ids handed out so far, removed edges included."""
        return len(self.edges)

    def num_nodes(self):
        return len(self.incidences)

    def nodes(self):
        return list(self.incidences)

    def edge(self, e):
        u, v = self.edges[e]
        return u, v

    def inc_edges(self, n):
        # a copy, callers move and remove edges while iterating
        return list(self.incidences.get(n, ()))

    def get_opposite(self, n, e):
        u, v = self.edges[e]
        if n == u:
            return v
        if n == v:
            return u
        raise ValueError(f"Node {n} is not an endpoint of edge {e} ({u}, {v})")

    def find_edge(self, u, v):
        """Id of the edge between u and v, or NO_EDGE."""
        return self.lookup.get(self._key(u, v), self.NO_EDGE)

    def move_edge(self, e, u, v):
        """
        Relocate edge e so that it connects u and v, keeping its id.

        Raises:
            ValueError: If e was removed, or u and v are already connected by
                another edge
        """
        u, v = int(u), int(v)
        if e in self.removed:
            raise ValueError(f"Cannot move removed edge {e}")

        existing = self.find_edge(u, v)
        if existing != self.NO_EDGE and existing != e:
            raise ValueError(f"Nodes {u} and {v} are already connected by edge {existing}")

        self._detach(e)
        self.add_node(u)
        self.add_node(v)
        self.edges[e] = [u, v]
        self._attach(e, u, v)

    def remove_edge(self, e):
        """Remove edge e from incidence lists and the lookup. Its id stays reserved."""
        if e in self.removed:
            return
        self._detach(e)
        self.removed.add(e)

    def is_removed(self, e):
        return e in self.removed

    def edge_map(self, dtype=float, fill_value=0):
        """A numpy array with one entry per edge id."""
        return np.full(self.num_edges(), fill_value, dtype=dtype)

    def node_map(self):
        """An associative container keyed by node id."""
        return {}

    def _attach(self, e, u, v):
        self.incidences[u].append(e)
        self.incidences[v].append(e)
        self.lookup[self._key(u, v)] = e

    def _detach(self, e):
        u, v = self.edges[e]
        self.incidences[u].remove(e)
        self.incidences[v].remove(e)
        del self.lookup[self._key(u, v)]
