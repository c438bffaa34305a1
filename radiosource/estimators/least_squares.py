"""
Linear least squares solvers used by the radio source estimators.

Functions:
    - weighted_least_squares: Weighted LS with per-equation weights or sigmas
    - homogeneous_least_squares: Unit-norm minimizer of ||A v|| via SVD

Both solvers report degenerate systems with ``numpy.linalg.LinAlgError``
(a ``ValueError`` subclass), so callers can discard a degenerate subset
without catching unrelated argument errors.

Mathematical Formulation:
    Weighted LS:
        x_hat = argmin (Ax - b)' W (Ax - b) = (A'WA)^(-1) A'Wb

    Homogeneous LS:
        v_hat = argmin ||A v||  subject to ||v|| = 1
    which is the right singular vector of A for its smallest singular value.
"""

from typing import Optional, Tuple

import numpy as np

# Relative singular value tolerance below which a system is degenerate
RANK_TOLERANCE = 1e-12


def weighted_least_squares(
    A: np.ndarray,
    b: np.ndarray,
    weights: Optional[np.ndarray] = None,
    is_sigma: bool = False,
    return_covariance: bool = True,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Weighted least squares estimation with diagonal weights.

    Solves: x_hat = argmin (Ax - b)' W (Ax - b), W = diag(weights)
    Solution: x_hat = (A'WA)^(-1) A'Wb

    Setting w_i = 1/sigma_i^2 (inverse noise variance) yields the best linear
    unbiased estimate, with covariance (A'WA)^(-1).

    Args:
        A: Design matrix (m x n), where m >= n.
        b: Observation vector (m,).
        weights: Diagonal weights (m,), or standard deviations when
            ``is_sigma`` is True. None means unit weights.
        is_sigma: If True, interpret ``weights`` as sigma_i and use 1/sigma_i^2.
        return_covariance: If True, compute (A'WA)^(-1).

    Returns:
        Tuple of:
            - x_hat: Estimated vector (n,).
            - P: Covariance matrix (n x n), or None if not requested.

    Raises:
        ValueError: If dimensions don't match or weights are invalid.
        numpy.linalg.LinAlgError: If A'WA is rank deficient.

    Example:
        >>> A = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        >>> b = np.array([1.0, 2.0, 3.2])
        >>> sigma = np.array([0.1, 0.1, 0.5])  # third equation less accurate
        >>> x_hat, P = weighted_least_squares(A, b, sigma, is_sigma=True)
    """
    A = np.asarray(A, dtype=float)
    b = np.asarray(b, dtype=float)
    if A.ndim != 2 or b.ndim != 1:
        raise ValueError(
            f"Invalid dimensions: A must be 2D, b must be 1D. "
            f"Got A={A.shape}, b={b.shape}"
        )

    m, n = A.shape
    if len(b) != m:
        raise ValueError(f"Dimension mismatch: A has {m} rows, b has {len(b)} elements")
    if m < n:
        raise np.linalg.LinAlgError(f"Underdetermined system: m={m} < n={n}")

    if weights is None:
        w = np.ones(m)
    else:
        w = np.asarray(weights, dtype=float)
        if w.ndim != 1 or len(w) != m:
            raise ValueError(f"weights length mismatch: expected {m}, got {w.shape}")
        if is_sigma:
            if np.any(w <= 0):
                raise ValueError("Sigma values must be positive")
            w = 1.0 / w**2
        elif np.any(w < 0):
            raise ValueError("Weights must be non-negative")

    # Weighted normal equations: A'WA x = A'Wb
    AtW = A.T * w
    AtWA = AtW @ A
    AtWb = AtW @ b

    singular_values = np.linalg.svd(AtWA, compute_uv=False)
    if singular_values[-1] <= RANK_TOLERANCE * max(singular_values[0], 1e-300):
        raise np.linalg.LinAlgError("A'WA is rank deficient")

    x_hat = np.linalg.solve(AtWA, AtWb)

    P = None
    if return_covariance:
        P = np.linalg.inv(AtWA)

    return x_hat, P


def homogeneous_least_squares(A: np.ndarray) -> np.ndarray:
    """
    Solve a homogeneous linear system A v = 0 in the least squares sense.

    The solution is the right singular vector associated with the smallest
    singular value of A, normalized to unit length.

    Args:
        A: Design matrix (m x n), where m >= n - 1.

    Returns:
        v_hat: Unit-norm solution (n,), defined up to sign.

    Raises:
        numpy.linalg.LinAlgError: If the null space is not one-dimensional
            (the solution would not be unique).
    """
    A = np.asarray(A, dtype=float)
    if A.ndim != 2:
        raise ValueError(f"A must be 2D, got shape {A.shape}")

    m, n = A.shape
    if m < n - 1:
        raise np.linalg.LinAlgError(f"Underdetermined homogeneous system: m={m} < n-1={n - 1}")

    if m < n:
        # Pad with zero rows so that the SVD returns a full V
        A = np.vstack([A, np.zeros((n - m, n))])

    _, s, Vt = np.linalg.svd(A)

    # The second smallest singular value must be clearly non-zero
    if s[-2] <= RANK_TOLERANCE * max(s[0], 1e-300):
        raise np.linalg.LinAlgError("Homogeneous system has a degenerate null space")

    return Vt[-1]
