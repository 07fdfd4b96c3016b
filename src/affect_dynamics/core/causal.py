"""Interpretable causal graph derived from learned coupling weights.

Nodes are latent dimensions, weighted by their autoregressive self-weight.
A directed edge j -> i carries the coupling W[i, j] with which dimension j
drives dimension i at the next step.
"""

import logging
from dataclasses import dataclass, field, asdict
from itertools import islice
from typing import Dict, List, Optional, Sequence

import networkx as nx
import numpy as np
from scipy import stats

from .exceptions import InvalidDimensionError
from .state import dimension_labels

logger = logging.getLogger(__name__)


@dataclass
class CausalNode:
    id: int
    label: str
    self_weight: float
    centrality: float
    value: float


@dataclass
class CausalEdge:
    source: int
    target: int
    source_label: str
    target_label: str
    weight: float
    lag: float
    significance: float


@dataclass
class FeedbackLoop:
    """A directed cycle; ``gain`` is the product of its edge weights."""
    nodes: List[str]
    indices: List[int]
    gain: float

    @property
    def polarity(self) -> str:
        return 'reinforcing' if self.gain > 0 else 'balancing'


@dataclass
class CausalNetwork:
    nodes: List[CausalNode]
    edges: List[CausalEdge]
    feedback_loops: List[FeedbackLoop] = field(default_factory=list)
    density: float = 0.0
    central_node: Optional[str] = None

    def adjacency(self) -> np.ndarray:
        """Matrix M with M[target, source] = edge weight, zero elsewhere."""
        n = len(self.nodes)
        M = np.zeros((n, n))
        for edge in self.edges:
            M[edge.target, edge.source] = edge.weight
        return M

    def edge(self, source: int, target: int) -> Optional[CausalEdge]:
        for candidate in self.edges:
            if candidate.source == source and candidate.target == target:
                return candidate
        return None

    def to_dict(self) -> Dict:
        data = asdict(self)
        for loop, raw in zip(self.feedback_loops, data['feedback_loops']):
            raw['polarity'] = loop.polarity
        return data


def edge_significance(weight: float, prior_scale: float) -> float:
    """Two-sided Gaussian significance of a weight against its prior scale.

    Returns 2*Phi(|w| / sigma0) - 1, which is 0 for a zero weight and
    approaches 1 as the weight grows large relative to the scale at which
    couplings were initialized.
    """
    if prior_scale <= 0:
        return 1.0 if weight != 0 else 0.0
    return float(2.0 * stats.norm.cdf(abs(weight) / prior_scale) - 1.0)


def coupling_graph(adjacency: np.ndarray, labels: Optional[Sequence[str]] = None) -> nx.DiGraph:
    """Directed graph of a ``adjacency[target, source]`` matrix.

    Each nonzero entry becomes an edge source -> target carrying the signed
    ``weight`` and its ``magnitude``. Diagonal entries are ignored.
    """
    n = adjacency.shape[0]
    graph = nx.DiGraph()
    for i in range(n):
        graph.add_node(i, label=labels[i] if labels is not None else str(i))
    for target, source in zip(*np.nonzero(adjacency)):
        if source == target:
            continue
        weight = float(adjacency[target, source])
        graph.add_edge(int(source), int(target), weight=weight, magnitude=abs(weight))
    return graph


def eigenvector_centrality(M: np.ndarray, max_iter: int = 1000) -> np.ndarray:
    """Eigenvector centrality of a non-negative symmetric matrix, scaled to max 1.

    Returns zeros for a graph without edges.
    """
    n = M.shape[0]
    if n == 0 or not np.any(M):
        return np.zeros(n)
    graph = nx.from_numpy_array(M)
    try:
        scores = nx.eigenvector_centrality(graph, max_iter=max_iter, weight='weight')
    except nx.PowerIterationFailedConvergence:
        logger.warning("Eigenvector centrality did not converge in %d iterations; using zeros", max_iter)
        return np.zeros(n)
    x = np.array([scores[i] for i in range(n)])
    return x / np.max(x)


def find_feedback_loops(adjacency: np.ndarray, labels: Sequence[str], max_loops: int = 100) -> List[FeedbackLoop]:
    """Enumerate simple directed cycles of length >= 2.

    Each cycle is reported once, rotated to start at its smallest node index,
    and loops are ordered by length and then by node indices.
    """
    graph = coupling_graph(adjacency)
    cycles = []
    for cycle in islice(nx.simple_cycles(graph), max_loops):
        start = cycle.index(min(cycle))
        cycles.append(cycle[start:] + cycle[:start])
    cycles.sort(key=lambda c: (len(c), c))

    loops = []
    for path in cycles:
        gain = 1.0
        for a, b in zip(path, path[1:] + path[:1]):
            gain *= graph[a][b]['weight']
        loops.append(FeedbackLoop(nodes=[labels[i] for i in path], indices=list(path), gain=float(gain)))
    return loops


def extract_causal_network(self_weights: np.ndarray,
                           coupling: np.ndarray,
                           values: Optional[np.ndarray] = None,
                           lag: float = 1.0,
                           threshold: float = 0.1,
                           prior_scale: Optional[float] = None,
                           labels: Optional[Sequence[str]] = None) -> CausalNetwork:
    """Build a causal network from a diagonal and a coupling matrix.

    Parameters
    ----------
    self_weights : np.ndarray, shape (n,)
        Autoregressive weights (diagonal of A)
    coupling : np.ndarray, shape (n, n)
        Interaction matrix W; only off-diagonal entries become edges
    values : Optional[np.ndarray], shape (n,)
        Current value per dimension, zeros if omitted
    lag : float
        Edge lag in hours (one engine step)
    threshold : float
        Minimum |W[i, j]| for an edge
    prior_scale : Optional[float]
        Scale for edge significance; defaults to the Xavier scale sqrt(1/n)
    labels : Optional[Sequence[str]]
        Node labels, defaults to the state dimension names

    Returns
    -------
    CausalNetwork
        Exactly n nodes and one edge per off-diagonal weight above threshold
    """
    self_weights = np.asarray(self_weights, dtype=float)
    coupling = np.asarray(coupling, dtype=float)
    n = self_weights.shape[0]
    if coupling.shape != (n, n):
        raise InvalidDimensionError('coupling', (n, n), coupling.shape)
    values = np.zeros(n) if values is None else np.asarray(values, dtype=float)
    if values.shape != (n,):
        raise InvalidDimensionError('values', n, values.shape)
    labels = list(labels) if labels is not None else dimension_labels(n)
    if prior_scale is None:
        prior_scale = np.sqrt(1.0 / n)

    adjacency = np.zeros((n, n))
    edges = []
    for target in range(n):
        for source in range(n):
            if source == target:
                continue
            weight = float(coupling[target, source])
            if abs(weight) <= threshold:
                continue
            adjacency[target, source] = weight
            edges.append(CausalEdge(source=source, target=target,
                                    source_label=labels[source], target_label=labels[target],
                                    weight=weight, lag=lag,
                                    significance=edge_significance(weight, prior_scale)))

    graph = coupling_graph(adjacency, labels)
    strength_by_node = dict(graph.degree(weight='magnitude'))
    strength = np.array([strength_by_node[i] for i in range(n)], dtype=float)
    degree = strength / strength.max() if strength.max() > 0 else np.zeros(n)
    magnitude = np.abs(adjacency)
    centrality = 0.5 * (degree + eigenvector_centrality(magnitude + magnitude.T))

    nodes = [CausalNode(id=i, label=labels[i], self_weight=float(self_weights[i]),
                        centrality=float(centrality[i]), value=float(values[i]))
             for i in range(n)]

    central_node = labels[int(np.argmax(centrality))] if edges else None

    return CausalNetwork(nodes=nodes,
                         edges=edges,
                         feedback_loops=find_feedback_loops(adjacency, labels),
                         density=float(nx.density(graph)),
                         central_node=central_node)
