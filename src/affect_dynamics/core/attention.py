"""Multi-head self-attention encoder over a window of timed observations.

The encoder is a stack of post-norm Transformer blocks
``h = LN(x + MHA(x)); y = LN(h + FFN(h))`` applied to embedded
observations. Embeddings are the sum of a linear projection of the
observation, a sinusoidal position code and a time code derived from the
hours elapsed since each observation.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np

from .exceptions import InvalidDimensionError
from .linalg import relu, softmax
from .state import TimeEmbedding


def xavier_uniform(rng: np.random.Generator, fan_in: int, fan_out: int) -> np.ndarray:
    limit = np.sqrt(6.0 / (fan_in + fan_out))
    return rng.uniform(-limit, limit, size=(fan_in, fan_out))


def sinusoidal_encoding(positions: np.ndarray, dim: int) -> np.ndarray:
    """Standard sine/cosine code for (possibly fractional) positions.

    Parameters
    ----------
    positions : np.ndarray, shape (L,)
        Positions or elapsed times
    dim : int
        Embedding width

    Returns
    -------
    np.ndarray, shape (L, dim)
    """
    positions = np.asarray(positions, dtype=float)[:, None]
    i = np.arange(dim)[None, :]
    angle_rates = 1.0 / np.power(10000.0, (2 * (i // 2)) / dim)
    angles = positions * angle_rates
    return np.where(i % 2 == 0, np.sin(angles), np.cos(angles))


def layer_norm(x: np.ndarray, gamma: np.ndarray, beta: np.ndarray, eps: float = 1e-5) -> np.ndarray:
    mean = x.mean(axis=-1, keepdims=True)
    var = x.var(axis=-1, keepdims=True)
    return gamma * (x - mean) / np.sqrt(var + eps) + beta


class AttentionEncoder:
    """Stack of self-attention blocks with numpy parameters.

    Parameters
    ----------
    input_dim : int
        Observation width
    embed_dim : int
        Model width, divisible by ``num_heads``
    num_heads : int
        Number of attention heads
    num_layers : int
        Number of Transformer blocks
    ffn_dim : int
        Hidden width of the feed-forward sublayer
    time_embedding : TimeEmbedding
        How elapsed time is encoded
    temperature : float, default=1.0
        Softmax temperature on attention scores
    rng : Optional[np.random.Generator]
        Generator for parameter initialization
    """

    def __init__(self,
                 input_dim: int,
                 embed_dim: int,
                 num_heads: int,
                 num_layers: int,
                 ffn_dim: int,
                 time_embedding: TimeEmbedding = TimeEmbedding.SINUSOIDAL,
                 temperature: float = 1.0,
                 rng: Optional[np.random.Generator] = None):
        if embed_dim % num_heads != 0:
            raise ValueError(f"embed_dim ({embed_dim}) must be divisible by num_heads ({num_heads})")
        self.input_dim = input_dim
        self.embed_dim = embed_dim
        self.num_heads = num_heads
        self.num_layers = num_layers
        self.ffn_dim = ffn_dim
        self.time_embedding = TimeEmbedding(time_embedding)
        self.temperature = temperature
        self.head_dim = embed_dim // num_heads

        rng = rng if rng is not None else np.random.default_rng()
        self.params = self._init_params(rng)

    def _init_params(self, rng: np.random.Generator) -> Dict[str, np.ndarray]:
        d, f = self.embed_dim, self.ffn_dim
        params = {
            'input_proj': xavier_uniform(rng, self.input_dim, d),
            'input_bias': np.zeros(d),
        }
        if self.time_embedding is TimeEmbedding.LEARNED:
            params['time_weight'] = rng.normal(0.0, 0.1, size=d)
            params['time_bias'] = rng.uniform(0.0, 2 * np.pi, size=d)

        for layer in range(self.num_layers):
            prefix = f'layer{layer}.'
            for name in ('query', 'key', 'value', 'output'):
                params[prefix + name] = xavier_uniform(rng, d, d)
                params[prefix + name + '_bias'] = np.zeros(d)
            params[prefix + 'ffn_in'] = xavier_uniform(rng, d, f)
            params[prefix + 'ffn_in_bias'] = np.zeros(f)
            params[prefix + 'ffn_out'] = xavier_uniform(rng, f, d)
            params[prefix + 'ffn_out_bias'] = np.zeros(d)
            for norm in ('norm1', 'norm2'):
                params[prefix + norm + '_gain'] = np.ones(d)
                params[prefix + norm + '_bias'] = np.zeros(d)
        return params

    @property
    def parameter_count(self) -> int:
        return int(sum(p.size for p in self.params.values()))

    def get_params(self) -> Dict[str, np.ndarray]:
        return {name: value.copy() for name, value in self.params.items()}

    def set_params(self, params: Dict[str, np.ndarray]) -> None:
        missing = set(self.params) - set(params)
        if missing:
            raise ValueError(f"Missing encoder parameters: {sorted(missing)}")
        for name, value in params.items():
            value = np.asarray(value, dtype=float)
            if name not in self.params:
                raise ValueError(f"Unknown encoder parameter '{name}'")
            if value.shape != self.params[name].shape:
                raise InvalidDimensionError(name, self.params[name].shape, value.shape)
            self.params[name] = value.copy()

    def project(self, observation: np.ndarray) -> np.ndarray:
        """Linear projection of one observation into model width."""
        observation = np.asarray(observation, dtype=float)
        if observation.shape[-1] != self.input_dim:
            raise InvalidDimensionError('observation', self.input_dim, observation.shape[-1])
        return observation @ self.params['input_proj'] + self.params['input_bias']

    def embed(self, projections: np.ndarray, hours_ago: np.ndarray) -> np.ndarray:
        """Add position and elapsed-time codes to projected observations.

        Parameters
        ----------
        projections : np.ndarray, shape (L, embed_dim)
            Outputs of ``project`` in chronological order
        hours_ago : np.ndarray, shape (L,)
            Hours between each observation and the newest one

        Returns
        -------
        np.ndarray, shape (L, embed_dim)
        """
        length = projections.shape[0]
        x = projections + sinusoidal_encoding(np.arange(length), self.embed_dim)
        if self.time_embedding is TimeEmbedding.SINUSOIDAL:
            x = x + sinusoidal_encoding(hours_ago, self.embed_dim)
        elif self.time_embedding is TimeEmbedding.LEARNED:
            x = x + np.sin(np.outer(hours_ago, self.params['time_weight']) + self.params['time_bias'])
        elif self.time_embedding is not TimeEmbedding.NONE:
            raise ValueError(f"Unhandled time embedding {self.time_embedding!r}")
        return x

    def _attention(self,
                   x: np.ndarray,
                   prefix: str,
                   dropout: float,
                   rng: Optional[np.random.Generator]) -> Tuple[np.ndarray, np.ndarray]:
        p = self.params
        length = x.shape[0]

        def split(m: np.ndarray) -> np.ndarray:
            return m.reshape(length, self.num_heads, self.head_dim).transpose(1, 0, 2)

        q = split(x @ p[prefix + 'query'] + p[prefix + 'query_bias'])
        k = split(x @ p[prefix + 'key'] + p[prefix + 'key_bias'])
        v = split(x @ p[prefix + 'value'] + p[prefix + 'value_bias'])

        scores = q @ k.transpose(0, 2, 1) / (np.sqrt(self.head_dim) * self.temperature)
        weights = softmax(scores, axis=-1)

        context = weights @ v
        if dropout > 0.0 and rng is not None:
            keep = rng.random(context.shape) >= dropout
            context = context * keep / (1.0 - dropout)

        merged = context.transpose(1, 0, 2).reshape(length, self.embed_dim)
        return merged @ p[prefix + 'output'] + p[prefix + 'output_bias'], weights

    def encode(self,
               embeddings: np.ndarray,
               dropout: float = 0.0,
               rng: Optional[np.random.Generator] = None) -> Tuple[np.ndarray, List[np.ndarray]]:
        """Run all Transformer blocks.

        Dropout is only applied when both ``dropout > 0`` and ``rng`` are
        given, so inference calls stay deterministic.

        Returns
        -------
        Tuple[np.ndarray, List[np.ndarray]]
            Encoded sequence (L, embed_dim) and one attention tensor
            (num_heads, L, L) per layer
        """
        if embeddings.ndim != 2 or embeddings.shape[1] != self.embed_dim:
            raise InvalidDimensionError('embeddings', f'(L, {self.embed_dim})', embeddings.shape)

        p = self.params
        x = embeddings
        attentions = []
        for layer in range(self.num_layers):
            prefix = f'layer{layer}.'
            attended, weights = self._attention(x, prefix, dropout, rng)
            attentions.append(weights)
            h = layer_norm(x + attended, p[prefix + 'norm1_gain'], p[prefix + 'norm1_bias'])
            ff = relu(h @ p[prefix + 'ffn_in'] + p[prefix + 'ffn_in_bias']) @ p[prefix + 'ffn_out'] \
                + p[prefix + 'ffn_out_bias']
            x = layer_norm(h + ff, p[prefix + 'norm2_gain'], p[prefix + 'norm2_bias'])
        return x, attentions
