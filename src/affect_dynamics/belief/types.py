"""Boundary model of the Bayesian belief state produced by the belief-update engine.

Only the fields the forecasting core reads are modelled. Every dimension is
a Gaussian posterior; the adapter maps five of them (one aggregated) onto
the engines' latent space.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Tuple, Union

import numpy as np
from scipy import stats

from ..core.state import utc_now


@dataclass(frozen=True)
class Posterior:
    """Gaussian posterior over one dimension."""
    mean: float
    variance: float
    updated_at: Optional[datetime] = None
    based_on_observations: int = 0

    def __post_init__(self):
        if self.variance < 0:
            raise ValueError(f"Posterior variance must be non-negative, got {self.variance}")

    def credible_interval(self, level: float = 0.95) -> Tuple[float, float]:
        z = stats.norm.ppf(0.5 + level / 2.0)
        half = z * np.sqrt(self.variance)
        return self.mean - half, self.mean + half


@dataclass(frozen=True)
class DimensionBelief:
    dimension: str
    posterior: Posterior
    prior: Optional[Posterior] = None
    belief_shift: float = 0.0
    information_gain: float = 0.0
    stability: float = 1.0

    @classmethod
    def from_moments(cls, dimension: str, mean: float, variance: float = 0.1) -> 'DimensionBelief':
        return cls(dimension=dimension, posterior=Posterior(mean=float(mean), variance=float(variance)))


@dataclass(frozen=True)
class EmotionalBeliefs:
    valence: DimensionBelief
    arousal: DimensionBelief
    dominance: DimensionBelief


@dataclass(frozen=True)
class RiskBeliefs:
    overall_risk: DimensionBelief
    category_risks: Mapping[str, DimensionBelief] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceBeliefs:
    energy: DimensionBelief
    coping_capacity: DimensionBelief
    social_support: DimensionBelief


@dataclass(frozen=True)
class BeliefMeta:
    """Beliefs about the beliefs."""
    overall_confidence: float = 0.5
    total_observations: int = 0
    average_information_gain: float = 0.0
    belief_consistency: float = 1.0
    prediction_accuracy: float = 0.5


@dataclass(frozen=True)
class BeliefState:
    """Bayesian belief state of one user at one point in time."""
    user_id: Union[str, int]
    timestamp: datetime
    emotional: EmotionalBeliefs
    risk: RiskBeliefs
    resources: ResourceBeliefs
    meta: BeliefMeta = field(default_factory=BeliefMeta)

    @classmethod
    def from_means(cls,
                   user_id: Union[str, int],
                   means: Mapping[str, float],
                   variances: Optional[Mapping[str, float]] = None,
                   timestamp: Optional[datetime] = None,
                   meta: Optional[BeliefMeta] = None) -> 'BeliefState':
        """Build a belief state from flat posterior means and variances.

        Parameters
        ----------
        user_id : Union[str, int]
            Owner of the belief
        means : Mapping[str, float]
            Posterior means keyed by ``valence``, ``arousal``, ``dominance``,
            ``overall_risk``, ``energy``, ``coping_capacity`` and
            ``social_support``; missing keys default to 0.5 (0.1 for risk)
        variances : Optional[Mapping[str, float]]
            Posterior variances with the same keys, 0.1 by default

        Examples
        --------
        >>> belief = BeliefState.from_means("u1", {"valence": 0.2})
        >>> belief.emotional.valence.posterior.mean
        0.2
        """
        variances = variances or {}

        def belief(name: str, default: float) -> DimensionBelief:
            return DimensionBelief.from_moments(name, means.get(name, default), variances.get(name, 0.1))

        return cls(user_id=user_id,
                   timestamp=timestamp if timestamp is not None else utc_now(),
                   emotional=EmotionalBeliefs(valence=belief('valence', 0.5),
                                              arousal=belief('arousal', 0.5),
                                              dominance=belief('dominance', 0.5)),
                   risk=RiskBeliefs(overall_risk=belief('overall_risk', 0.1)),
                   resources=ResourceBeliefs(energy=belief('energy', 0.5),
                                             coping_capacity=belief('coping_capacity', 0.5),
                                             social_support=belief('social_support', 0.5)),
                   meta=meta if meta is not None else BeliefMeta())


@dataclass(frozen=True)
class BeliefUpdate:
    """Mean and variance proposed for one belief dimension."""
    mean: float
    variance: float


BeliefUpdates = Dict[str, BeliefUpdate]
