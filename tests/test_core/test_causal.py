"""Tests for causal network extraction from coupling weights."""

import networkx as nx
import numpy as np
import numpy.testing as npt
import pytest

from affect_dynamics.core.causal import (
    CausalNetwork,
    coupling_graph,
    edge_significance,
    eigenvector_centrality,
    extract_causal_network,
    find_feedback_loops,
)
from affect_dynamics.core.exceptions import InvalidDimensionError


@pytest.fixture
def coupling():
    """Five-dimensional coupling with two strong edges and one weak edge."""
    W = np.zeros((5, 5))
    W[1, 0] = 0.4    # valence -> arousal
    W[3, 2] = -0.3   # dominance -> risk
    W[0, 4] = 0.05   # resources -> valence, below threshold
    return W


class TestExtractCausalNetwork:
    """Test network construction."""

    def test_nodes_and_edges(self, coupling):
        """Test that every dimension is a node and edges follow the threshold."""
        network = extract_causal_network(np.full(5, 0.9), coupling)

        assert len(network.nodes) == 5
        assert [node.label for node in network.nodes] == ['valence', 'arousal', 'dominance', 'risk', 'resources']
        assert len(network.edges) == 2
        assert network.edge(0, 1).weight == pytest.approx(0.4)
        assert network.edge(2, 3).weight == pytest.approx(-0.3)
        assert network.edge(4, 0) is None

    def test_adjacency_matches_thresholded_weights(self, coupling):
        """Test that the adjacency reproduces the above-threshold couplings."""
        network = extract_causal_network(np.full(5, 0.9), coupling)
        expected = coupling.copy()
        expected[0, 4] = 0.0

        npt.assert_array_almost_equal(network.adjacency(), expected)

    def test_diagonal_never_an_edge(self):
        """Test that self-couplings are carried on nodes, not edges."""
        network = extract_causal_network(np.array([0.5, 0.7]), np.eye(2))

        assert network.edges == []
        assert network.nodes[1].self_weight == pytest.approx(0.7)

    def test_density_and_central_node(self, coupling):
        """Test edge density and the most connected node."""
        coupling[4, 0] = 0.6   # valence now drives two dimensions
        network = extract_causal_network(np.full(5, 0.9), coupling)

        assert network.density == pytest.approx(3 / 20)
        assert network.central_node == 'valence'
        assert max(node.centrality for node in network.nodes) == pytest.approx(1.0)

    def test_empty_network(self):
        """Test a network without edges."""
        network = extract_causal_network(np.zeros(3), np.zeros((3, 3)))

        assert network.density == 0.0
        assert network.central_node is None
        assert all(node.centrality == 0.0 for node in network.nodes)

    def test_edge_metadata(self, coupling):
        """Test lag, labels and significance of an edge."""
        network = extract_causal_network(np.full(5, 0.9), coupling, lag=2.0)
        edge = network.edge(0, 1)

        assert edge.lag == 2.0
        assert edge.source_label == 'valence'
        assert edge.target_label == 'arousal'
        assert 0.0 < edge.significance < 1.0

    def test_values_and_labels(self):
        """Test custom node values and labels."""
        network = extract_causal_network(np.zeros(2), np.zeros((2, 2)), values=np.array([0.1, 0.2]),
                                         labels=['a', 'b'])

        assert network.nodes[1].label == 'b'
        assert network.nodes[1].value == pytest.approx(0.2)

    def test_shape_mismatch(self):
        """Test that mismatched shapes raise InvalidDimensionError."""
        with pytest.raises(InvalidDimensionError):
            extract_causal_network(np.zeros(3), np.zeros((2, 2)))
        with pytest.raises(InvalidDimensionError):
            extract_causal_network(np.zeros(2), np.zeros((2, 2)), values=np.zeros(3))


class TestFeedbackLoops:
    """Test cycle detection."""

    def test_reinforcing_pair(self):
        """Test a two-node loop with positive gain."""
        W = np.zeros((3, 3))
        W[1, 0] = 0.5
        W[0, 1] = 0.4
        network = extract_causal_network(np.zeros(3), W)

        assert len(network.feedback_loops) == 1
        loop = network.feedback_loops[0]
        assert loop.nodes == ['valence', 'arousal']
        assert loop.gain == pytest.approx(0.2)
        assert loop.polarity == 'reinforcing'

    def test_balancing_triangle(self):
        """Test a three-node loop with one negative edge."""
        A = np.zeros((3, 3))
        A[1, 0] = 0.5
        A[2, 1] = 0.5
        A[0, 2] = -0.5
        loops = find_feedback_loops(A, ['a', 'b', 'c'])

        assert len(loops) == 1
        assert loops[0].indices == [0, 1, 2]
        assert loops[0].gain == pytest.approx(-0.125)
        assert loops[0].polarity == 'balancing'

    def test_acyclic_graph(self, coupling):
        """Test that a DAG has no loops."""
        assert extract_causal_network(np.zeros(5), coupling).feedback_loops == []

    def test_to_dict_includes_polarity(self):
        """Test that serialized loops carry their polarity."""
        W = np.zeros((2, 2))
        W[1, 0] = -0.5
        W[0, 1] = 0.5
        data = extract_causal_network(np.zeros(2), W).to_dict()

        assert data['feedback_loops'][0]['polarity'] == 'balancing'
        assert len(data['edges']) == 2


class TestScores:
    """Test significance and centrality scores."""

    def test_edge_significance_monotone(self):
        """Test that significance grows with weight magnitude."""
        low = edge_significance(0.1, 0.5)
        high = edge_significance(-1.0, 0.5)

        assert edge_significance(0.0, 0.5) == 0.0
        assert 0.0 < low < high < 1.0

    def test_edge_significance_zero_scale(self):
        """Test the degenerate zero prior scale."""
        assert edge_significance(0.2, 0.0) == 1.0
        assert edge_significance(0.0, 0.0) == 0.0

    def test_eigenvector_centrality(self):
        """Test that the hub of a star graph is most central."""
        M = np.zeros((4, 4))
        M[0, 1:] = 1.0
        M[1:, 0] = 1.0
        centrality = eigenvector_centrality(M)

        assert centrality[0] == pytest.approx(1.0)
        assert np.all(centrality[1:] < 1.0)
        npt.assert_allclose(centrality[1:], centrality[1])

    def test_eigenvector_centrality_empty(self):
        """Test that a graph without edges has zero centrality."""
        npt.assert_array_equal(eigenvector_centrality(np.zeros((3, 3))), np.zeros(3))
        assert isinstance(extract_causal_network(np.zeros(1), np.zeros((1, 1))), CausalNetwork)


class TestCouplingGraph:
    """Test the directed graph built from coupling weights."""

    def test_edges_run_source_to_target(self, coupling):
        """Test that W[i, j] becomes the edge j -> i with signed weight and magnitude."""
        graph = coupling_graph(coupling, ['valence', 'arousal', 'dominance', 'risk', 'resources'])

        assert isinstance(graph, nx.DiGraph)
        assert graph.number_of_nodes() == 5
        assert graph.has_edge(0, 1)
        assert not graph.has_edge(1, 0)
        assert graph[2][3]['weight'] == pytest.approx(-0.3)
        assert graph[2][3]['magnitude'] == pytest.approx(0.3)
        assert graph.nodes[4]['label'] == 'resources'

    def test_diagonal_ignored(self):
        """Test that self-couplings do not become self-loops."""
        graph = coupling_graph(np.eye(3))

        assert graph.number_of_edges() == 0
        assert nx.number_of_selfloops(graph) == 0

    def test_density_matches_graph(self, coupling):
        """Test that reported density agrees with the thresholded graph."""
        network = extract_causal_network(np.full(5, 0.9), coupling)

        assert network.density == pytest.approx(nx.density(coupling_graph(network.adjacency())))

    def test_loop_limit(self):
        """Test that cycle enumeration stops at max_loops."""
        A = np.ones((4, 4)) - np.eye(4)
        assert len(find_feedback_loops(A, list('abcd'))) == 20
        assert len(find_feedback_loops(A, list('abcd'), max_loops=5)) == 5

    def test_loops_ordered_by_length(self):
        """Test that shorter loops are listed first and start at their smallest index."""
        A = np.ones((3, 3)) - np.eye(3)
        loops = find_feedback_loops(A, list('abc'))

        assert [len(loop.indices) for loop in loops] == [2, 2, 2, 3, 3]
        assert all(loop.indices[0] == min(loop.indices) for loop in loops)
