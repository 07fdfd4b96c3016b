"""Dense linear-algebra primitives with dimension checking.

Thin wrappers over numpy/scipy that raise ``InvalidDimensionError`` on shape
mismatch and fall back to a ridge-regularized inverse when a covariance
matrix is singular or badly conditioned.
"""

import warnings
from typing import Optional

import numpy as np
from scipy import linalg

from .exceptions import InvalidDimensionError


# Condition number beyond which an inverse is considered unreliable
MAX_CONDITION = 1e12


def _as_matrix(M: np.ndarray, name: str) -> np.ndarray:
    M = np.asarray(M, dtype=float)
    if M.ndim != 2:
        raise InvalidDimensionError(name, '2-D matrix', f'{M.ndim}-D array')
    return M


def mat_vec(M: np.ndarray, v: np.ndarray) -> np.ndarray:
    M = _as_matrix(M, 'matrix')
    v = np.asarray(v, dtype=float)
    if v.shape != (M.shape[1],):
        raise InvalidDimensionError('vector', M.shape[1], v.shape)
    return M @ v


def mat_mul(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    A = _as_matrix(A, 'left matrix')
    B = _as_matrix(B, 'right matrix')
    if A.shape[1] != B.shape[0]:
        raise InvalidDimensionError('right matrix rows', A.shape[1], B.shape[0])
    return A @ B


def transpose(M: np.ndarray) -> np.ndarray:
    return _as_matrix(M, 'matrix').T.copy()


def mat_add(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    if A.shape != B.shape:
        raise InvalidDimensionError('addend', A.shape, B.shape)
    return A + B


def mat_sub(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    if A.shape != B.shape:
        raise InvalidDimensionError('subtrahend', A.shape, B.shape)
    return A - B


def symmetrize(M: np.ndarray) -> np.ndarray:
    M = _as_matrix(M, 'matrix')
    return 0.5 * (M + M.T)


def is_psd(M: np.ndarray, tol: float = 1e-10) -> bool:
    """Check whether a symmetric matrix is positive semi-definite."""
    M = symmetrize(M)
    try:
        linalg.cholesky(M + tol * np.eye(M.shape[0]), lower=True)
        return True
    except linalg.LinAlgError:
        return False


def nearest_psd(M: np.ndarray, min_eigenvalue: float = 0.0) -> np.ndarray:
    """Project a matrix onto the PSD cone by clipping its eigenvalues.

    Parameters
    ----------
    M : np.ndarray, shape (n, n)
        Matrix to project; it is symmetrized first
    min_eigenvalue : float, default=0.0
        Floor applied to every eigenvalue

    Returns
    -------
    np.ndarray, shape (n, n)
        Symmetric matrix with eigenvalues >= min_eigenvalue
    """
    S = symmetrize(M)
    eigvals, eigvecs = linalg.eigh(S)
    eigvals = np.maximum(eigvals, min_eigenvalue)
    return symmetrize((eigvecs * eigvals) @ eigvecs.T)


def ridge_inverse(M: np.ndarray, ridge: float = 1e-6) -> np.ndarray:
    """Inverse of (M + ridge*I), used when M itself is singular."""
    M = _as_matrix(M, 'matrix')
    if M.shape[0] != M.shape[1]:
        raise InvalidDimensionError('matrix', 'square', M.shape)
    n = M.shape[0]
    try:
        return linalg.inv(M + ridge * np.eye(n))
    except linalg.LinAlgError:
        return linalg.pinv(M + ridge * np.eye(n))


def mat_inverse(M: np.ndarray, ridge: Optional[float] = 1e-6) -> np.ndarray:
    """Invert a square matrix, regularizing when it is singular.

    Parameters
    ----------
    M : np.ndarray, shape (n, n)
        Matrix to invert
    ridge : Optional[float], default=1e-6
        Diagonal load used when M is singular or its condition number exceeds
        ``MAX_CONDITION``. ``None`` disables regularization and lets
        ``LinAlgError`` propagate.

    Returns
    -------
    np.ndarray, shape (n, n)
        (Regularized) inverse of M
    """
    M = _as_matrix(M, 'matrix')
    if M.shape[0] != M.shape[1]:
        raise InvalidDimensionError('matrix', 'square', M.shape)
    if ridge is None:
        return linalg.inv(M)

    with np.errstate(divide='ignore', invalid='ignore'):
        well_conditioned = np.all(np.isfinite(M)) and np.linalg.cond(M) < MAX_CONDITION
    if well_conditioned:
        try:
            return linalg.inv(M)
        except linalg.LinAlgError:
            pass
    warnings.warn(f"Singular or ill-conditioned matrix of shape {M.shape}, using ridge inverse "
                  f"(ridge={ridge:g})")
    return ridge_inverse(M, ridge)


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


def relu_grad(x: np.ndarray) -> np.ndarray:
    return (x > 0.0).astype(float)


def sigmoid(x: np.ndarray) -> np.ndarray:
    return 0.5 * (1.0 + np.tanh(0.5 * x))


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    shifted = x - np.max(x, axis=axis, keepdims=True)
    e = np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def spectral_radius(M: np.ndarray) -> float:
    M = _as_matrix(M, 'matrix')
    return float(np.max(np.abs(np.linalg.eigvals(M)))) if M.size else 0.0
