"""Adam optimization with global-norm gradient clipping and learning rate schedules."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from .state import LearningRateSchedule

Arrays = Dict[str, np.ndarray]


@dataclass
class AdamState:
    """First/second moment accumulators, one pair per trainable parameter."""
    first_moment: Arrays = field(default_factory=dict)
    second_moment: Arrays = field(default_factory=dict)
    step: int = 0

    @classmethod
    def zeros_like(cls, params: Arrays) -> 'AdamState':
        return cls(first_moment={k: np.zeros_like(v) for k, v in params.items()},
                   second_moment={k: np.zeros_like(v) for k, v in params.items()},
                   step=0)

    def copy(self) -> 'AdamState':
        return AdamState(first_moment={k: v.copy() for k, v in self.first_moment.items()},
                         second_moment={k: v.copy() for k, v in self.second_moment.items()},
                         step=self.step)

    def to_dict(self) -> dict:
        return {
            'first_moment': {k: v.tolist() for k, v in self.first_moment.items()},
            'second_moment': {k: v.tolist() for k, v in self.second_moment.items()},
            'step': self.step,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AdamState':
        return cls(first_moment={k: np.asarray(v, dtype=float) for k, v in data['first_moment'].items()},
                   second_moment={k: np.asarray(v, dtype=float) for k, v in data['second_moment'].items()},
                   step=int(data['step']))


def all_finite(grads: Arrays) -> bool:
    return all(np.all(np.isfinite(g)) for g in grads.values())


def global_norm(grads: Arrays) -> float:
    return float(np.sqrt(sum(float(np.sum(g * g)) for g in grads.values())))


def clip_by_global_norm(grads: Arrays, max_norm: float) -> Tuple[Arrays, float]:
    """Rescale gradients so their joint L2 norm is at most ``max_norm``.

    A non-positive ``max_norm`` disables clipping. Returns the (possibly
    rescaled) gradients and the norm before clipping.
    """
    norm = global_norm(grads)
    if max_norm <= 0 or norm <= max_norm:
        return grads, norm
    scale = max_norm / norm
    return {k: g * scale for k, g in grads.items()}, norm


class AdamOptimizer:
    """Adam (Kingma & Ba, 2015) with bias-corrected moments.

    Parameters
    ----------
    learning_rate : float
        Default step size
    beta1, beta2 : float
        Exponential decay rates of the first and second moments
    epsilon : float
        Denominator stabilizer
    """

    def __init__(self, learning_rate: float = 0.001, beta1: float = 0.9,
                 beta2: float = 0.999, epsilon: float = 1e-8):
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon

    def step(self,
             params: Arrays,
             grads: Arrays,
             state: AdamState,
             learning_rate: Optional[float] = None,
             masks: Optional[Arrays] = None) -> None:
        """Apply one update in place to ``params`` and ``state``.

        Parameters without a gradient entry are left untouched. ``masks``
        zero the update of structurally absent entries (e.g. pruned
        couplings).
        """
        lr = self.learning_rate if learning_rate is None else learning_rate
        state.step += 1
        t = state.step
        for name, grad in grads.items():
            if name not in state.first_moment:
                state.first_moment[name] = np.zeros_like(params[name])
                state.second_moment[name] = np.zeros_like(params[name])
            m = self.beta1 * state.first_moment[name] + (1.0 - self.beta1) * grad
            v = self.beta2 * state.second_moment[name] + (1.0 - self.beta2) * grad * grad
            state.first_moment[name] = m
            state.second_moment[name] = v

            m_hat = m / (1.0 - self.beta1 ** t)
            v_hat = v / (1.0 - self.beta2 ** t)
            update = lr * m_hat / (np.sqrt(v_hat) + self.epsilon)
            if masks is not None and name in masks:
                update = update * masks[name]
            params[name] = params[name] - update


def scheduled_learning_rate(epoch: int,
                            epochs: int,
                            learning_rate: float,
                            schedule: LearningRateSchedule = LearningRateSchedule.CONSTANT,
                            decay_factor: float = 0.5,
                            decay_steps: int = 30,
                            lr_min: float = 0.0,
                            warmup_epochs: int = 0) -> float:
    """Learning rate for ``epoch`` (0-based) of an ``epochs``-long run.

    The first ``min(warmup_epochs, epochs // 4)`` epochs ramp linearly up
    to the scheduled rate. Cosine annealing starts after the warmup and
    reaches ``lr_min`` at the last epoch.

    Examples
    --------
    >>> scheduled_learning_rate(35, 100, 0.01, LearningRateSchedule.STEP, decay_factor=0.5, decay_steps=30)
    0.005
    """
    schedule = LearningRateSchedule(schedule)
    warmup = min(warmup_epochs, epochs // 4)
    warmup_factor = (epoch + 1) / warmup if warmup > 0 and epoch < warmup else 1.0

    if schedule is LearningRateSchedule.CONSTANT:
        base = learning_rate
    elif schedule is LearningRateSchedule.STEP:
        base = max(lr_min, learning_rate * decay_factor ** (epoch // decay_steps))
    elif schedule is LearningRateSchedule.EXPONENTIAL:
        base = max(lr_min, learning_rate * decay_factor ** (epoch / decay_steps))
    elif schedule is LearningRateSchedule.COSINE:
        progress = max(0, epoch - warmup) / max(1, epochs - warmup - 1)
        base = lr_min + (learning_rate - lr_min) * 0.5 * (1.0 + np.cos(np.pi * min(1.0, progress)))
    else:
        raise ValueError(f"Unknown learning rate schedule: {schedule}")

    rate = float(base * warmup_factor)
    return rate if np.isfinite(rate) and rate >= 0 else lr_min
