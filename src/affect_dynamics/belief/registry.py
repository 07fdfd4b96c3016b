"""Caller-owned registry of per-user engine instances."""

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional

from ..config.random_state import make_rng, seed_for_user
from ..config.settings import Settings
from ..core.kalmanformer import KalmanFormerEngine
from ..core.plrnn import PLRNNEngine
from .adapter import BeliefStateAdapter

logger = logging.getLogger(__name__)


@dataclass
class UserEngines:
    """The engines and adapter serving one user or session."""
    user_id: str
    plrnn: PLRNNEngine
    kalman_former: KalmanFormerEngine
    adapter: BeliefStateAdapter


class EngineRegistry:
    """Mapping from user id to that user's engines.

    Each user gets independent engines seeded from ``seed_for_user`` so the
    same user id always yields the same initial weights for a given
    ``settings.random_seed``. The registry is not thread-safe; callers
    serialize access per user.

    Parameters
    ----------
    settings : Optional[Settings]
        Engine configurations and base seed
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings if settings is not None else Settings()
        self._engines: Dict[str, UserEngines] = {}

    def _create(self, user_id: str) -> UserEngines:
        s = self.settings
        rng = make_rng(seed_for_user(user_id, s.random_seed))
        plrnn = PLRNNEngine(s.plrnn, s.early_warning, rng=rng)
        kalman_former = KalmanFormerEngine(s.kalman_former, rng=rng)
        plrnn.initialize()
        kalman_former.initialize()
        plrnn.pair_with(kalman_former)
        adapter = BeliefStateAdapter(plrnn=plrnn, kalman_former=kalman_former, config=s.adapter)
        logger.info("Created engines for user %s", user_id)
        return UserEngines(user_id=user_id, plrnn=plrnn, kalman_former=kalman_former, adapter=adapter)

    def get_or_create(self, user_id) -> UserEngines:
        key = str(user_id)
        if key not in self._engines:
            self._engines[key] = self._create(key)
        return self._engines[key]

    def get(self, user_id) -> Optional[UserEngines]:
        return self._engines.get(str(user_id))

    def remove(self, user_id) -> bool:
        """Drop a user's engines; returns whether they existed."""
        return self._engines.pop(str(user_id), None) is not None

    def user_ids(self) -> List[str]:
        return list(self._engines)

    def __contains__(self, user_id) -> bool:
        return str(user_id) in self._engines

    def __len__(self) -> int:
        return len(self._engines)
