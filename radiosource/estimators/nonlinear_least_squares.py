"""
Levenberg-Marquardt solver for the radio source estimators.

Mathematical Formulation:
    Given observations y with standard deviations sigma and a measurement
    model h(x), we seek:
        x_hat = argmin 1/2 ||r(x)||^2_W,  W = diag(1 / sigma^2)
    where r(x) = y - h(x) is the residual vector.

    Levenberg-Marquardt update:
        (J'WJ + mu I) dx = J'W r
    where mu is an adaptive damping parameter.

    At convergence the estimate covariance is (J'WJ)^(-1) and the
    chi-square is r'Wr. The covariance is not rescaled by the residual
    variance: standard deviations are taken as given.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated parameter vector.
        covariance: Covariance matrix (n x n), or None if not requested or
            singular at convergence.
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x_hat).
        chi_sq: Final weighted sum of squared residuals r'Wr.
        converged: Whether the solver converged within tolerance.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    chi_sq: float
    converged: bool


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    sigmas: Optional[np.ndarray] = None,
    max_iter: int = 100,
    tol: float = 1e-10,
    mu0: float = 1e-3,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for weighted nonlinear least squares.

    LM combines Gauss-Newton (fast near the solution) with gradient descent
    (robust far from it) by adaptively adjusting mu with the gain ratio:
        - Small mu: Gauss-Newton behavior (quadratic convergence)
        - Large mu: Gradient descent behavior (global convergence)

    Args:
        h: Measurement model h: R^n -> R^m.
        jacobian: Function returning the Jacobian J = dh/dx (m x n).
        y: Observation vector (m,).
        x0: Initial estimate (n,).
        sigmas: Standard deviation of each observation (m,). None means
            unit standard deviations.
        max_iter: Maximum number of accepted-step iterations.
        tol: Convergence tolerance on the relative step ||dx|| / (||x|| + tol).
        mu0: Initial damping parameter.
        return_covariance: If True, compute (J'WJ)^(-1) at the final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance and chi-square.

    Raises:
        ValueError: If inputs have inconsistent shapes.
        numpy.linalg.LinAlgError: If the model produces non-finite values.

    Example:
        >>> anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        >>> def h(x):
        ...     return np.linalg.norm(anchors - x, axis=1)
        >>> def jac(x):
        ...     diff = x - anchors
        ...     return diff / np.linalg.norm(diff, axis=1, keepdims=True)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> np.allclose(result.x, [3.0, 4.0])
        True
    """
    y = np.asarray(y, dtype=float)
    x = np.array(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x.shape}")

    m = len(y)
    n = len(x)

    if sigmas is None:
        w = np.ones(m)
    else:
        sigmas = np.asarray(sigmas, dtype=float)
        if sigmas.shape != (m,):
            raise ValueError(f"sigmas must be 1D array of length {m}")
        if np.any(sigmas <= 0):
            raise ValueError("sigmas must be positive")
        w = 1.0 / sigmas**2

    def weighted_cost(residuals: np.ndarray) -> float:
        return float(residuals @ (w * residuals))

    r = y - h(x)
    if not np.all(np.isfinite(r)):
        raise np.linalg.LinAlgError("Measurement model is not finite at the initial estimate")
    cost = weighted_cost(r)

    mu = mu0
    nu = 2.0
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        J = jacobian(x)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        # Weighted normal equations
        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        if np.max(np.abs(JtWr)) <= tol * max(1.0, cost):
            converged = True
            break

        accepted = False
        while mu <= 1e16:
            damped = JtWJ + mu * np.diag(np.maximum(np.diag(JtWJ), 1e-12))
            try:
                delta_x = np.linalg.solve(damped, JtWr)
            except np.linalg.LinAlgError:
                delta_x = np.linalg.lstsq(damped, JtWr, rcond=None)[0]

            x_new = x + delta_x
            r_new = y - h(x_new)
            if not np.all(np.isfinite(r_new)):
                mu *= nu
                nu *= 2.0
                continue
            cost_new = weighted_cost(r_new)

            # Gain ratio: actual over predicted decrease of 1/2 r'Wr
            predicted_decrease = delta_x @ (mu * np.maximum(np.diag(JtWJ), 1e-12) * delta_x + JtWr)
            actual_decrease = cost - cost_new

            if predicted_decrease > 0 and actual_decrease > 0:
                gain_ratio = actual_decrease / predicted_decrease
                x = x_new
                r = r_new
                cost = cost_new
                mu *= max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break

            mu *= nu
            nu *= 2.0

        if not accepted:
            # No descent direction left: stationary point reached
            converged = True
            break

        step_norm = np.linalg.norm(delta_x)
        if step_norm <= tol * (np.linalg.norm(x) + tol):
            converged = True
            break

    if not converged:
        logger.debug("Levenberg-Marquardt stopped after %d iterations without converging", iteration)

    P = None
    if return_covariance:
        J = jacobian(x)
        JtWJ = (J.T * w) @ J
        if np.linalg.matrix_rank(JtWJ) < n:
            warnings.warn(
                "Information matrix is singular at convergence; covariance is not available",
                RuntimeWarning,
            )
        else:
            P = np.linalg.inv(JtWJ)
            P = 0.5 * (P + P.T)

    return NonlinearLSResult(
        x=x,
        covariance=P,
        iterations=iteration,
        residuals=r,
        chi_sq=cost,
        converged=converged,
    )
