"""Random generator construction for reproducible per-user engines.

Engines never touch the global NumPy random state. Each engine owns a
``numpy.random.Generator`` built from an explicit seed, so two users'
engines can be trained in any order without affecting each other.
"""

import hashlib
import os
from typing import Optional

import numpy as np

ENV_SEED_VARIABLE = 'AFFECT_DYNAMICS_SEED'


def make_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Create an independent random generator.

    Parameters
    ----------
    seed : Optional[int]
        Seed value. ``None`` draws fresh entropy from the OS.

    Returns
    -------
    np.random.Generator
        Generator backed by PCG64

    Examples
    --------
    >>> rng = make_rng(42)
    >>> rng.standard_normal(3).shape
    (3,)
    """
    return np.random.default_rng(seed)


def create_deterministic_seed(base_string: str) -> int:
    """Create a deterministic seed from a string.

    Useful for creating reproducible seeds from user ids, session ids or
    configuration hashes.

    Parameters
    ----------
    base_string : str
        String to hash for seed generation

    Returns
    -------
    int
        Deterministic seed value

    Examples
    --------
    >>> create_deterministic_seed("user-17") == create_deterministic_seed("user-17")
    True
    """
    # Use SHA-256 hash for deterministic seed generation
    hash_hex = hashlib.sha256(base_string.encode()).hexdigest()

    # Ensure seed is within valid range for most RNGs
    return int(hash_hex[:8], 16) % (2**31 - 1)


def seed_for_user(user_id: str, base_seed: Optional[int] = None) -> int:
    """Seed for one user's engines, optionally namespaced by a deployment seed."""
    if base_seed is None:
        return create_deterministic_seed(user_id)
    return create_deterministic_seed(f"{base_seed}:{user_id}")


def get_environment_seed(default: int = 42) -> int:
    """Get seed from environment variable if available.

    Checks for the AFFECT_DYNAMICS_SEED environment variable.

    Returns
    -------
    int
        Seed from environment, or ``default`` if not set
    """
    env_seed = os.environ.get(ENV_SEED_VARIABLE)

    if env_seed:
        try:
            return int(env_seed)
        except ValueError:
            # Not an integer: hash the string value
            return create_deterministic_seed(env_seed)

    return default
