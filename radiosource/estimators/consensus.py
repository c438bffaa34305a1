"""
Generic sample-consensus engine.

One engine drives every robust method; methods differ only in how subsets
are drawn (sampler) and how a candidate model is scored (scorer):

    | Method  | Sampler                 | Scorer                          |
    |---------|-------------------------|---------------------------------|
    | RANSAC  | UniformSampler          | ThresholdScorer (inlier count)  |
    | LMedS   | UniformSampler          | MedianScorer (median residual)  |
    | MSAC    | UniformSampler          | MsacScorer (truncated cost)     |
    | PROSAC  | ProsacSampler/Weighted  | ThresholdScorer                 |
    | PROMedS | ProsacSampler/Weighted  | MedianScorer                    |

Iteration bound:
    After each improvement the number of iterations needed to draw at least
    one outlier-free subset with the requested confidence is
        T = log(1 - confidence) / log(1 - w^s)
    where w is the inlier ratio of the best candidate and s the subset size.
    Median scorers cap w at 0.5 since their inliers are derived from the
    candidate's own residuals.
    The loop stops at min(T, max_iterations).

A subset whose fit fails with ``numpy.linalg.LinAlgError`` (degenerate
geometry) is discarded but still counts as an iteration.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import numpy as np

from radiosource.exceptions import RobustEstimatorError
from radiosource.types import RobustMethod

logger = logging.getLogger(__name__)

# Consistency constant of the median absolute deviation for Gaussian data
MAD_CONSISTENCY = 1.4826

# Multiple of the robust scale below which a residual is an inlier
DEFAULT_INLIER_FACTOR = 1.5

# Smallest threshold derived by median scorers
MIN_MEDIAN_THRESHOLD = 1e-6


def iteration_bound(inlier_ratio: float, subset_size: int, confidence: float) -> float:
    """
    Number of subsets to draw to hit an all-inlier one with ``confidence``.

    Args:
        inlier_ratio: Fraction of inliers in [0, 1].
        subset_size: Number of readings per subset.
        confidence: Desired probability in (0, 1).

    Returns:
        Required number of iterations (may be infinite).

    Example:
        >>> round(iteration_bound(0.5, 3, 0.99))
        35
    """
    p_good = inlier_ratio**subset_size
    if p_good >= 1.0:
        return 1.0
    if p_good <= 0.0:
        return np.inf
    return float(np.ceil(np.log(1.0 - confidence) / np.log(1.0 - p_good)))


# ============================================================================
# Samplers
# ============================================================================


class UniformSampler:
    """Draws subsets uniformly at random without replacement."""

    def __init__(self, n_samples: int, subset_size: int, rng: np.random.Generator):
        self.n_samples = n_samples
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(self.n_samples, self.subset_size, replace=False)


class ProsacSampler:
    """
    Progressive sampling (PROSAC) over readings ordered by quality.

    Subsets are drawn from a window of the best readings that grows on the
    standard T_n schedule, so early subsets are built from the highest
    quality readings and sampling degrades gracefully to uniform sampling
    over all readings. Ties in quality keep the original reading order.

    Args:
        quality_scores: One score per reading, larger is better.
        subset_size: Number of readings per subset.
        max_iterations: Iteration cap T_N used by the growth schedule.
        rng: Random generator.
    """

    def __init__(
        self,
        quality_scores: np.ndarray,
        subset_size: int,
        max_iterations: int,
        rng: np.random.Generator,
    ):
        self.order = np.argsort(-np.asarray(quality_scores, dtype=float), kind="stable")
        self.n_samples = len(self.order)
        self.subset_size = subset_size
        self.rng = rng

        s = subset_size
        self._t = 0
        self._n = s
        # T_n for n = s: average number of draws containing only the top s
        t_n = float(max_iterations)
        for i in range(s):
            t_n *= (s - i) / (self.n_samples - i)
        self._t_n = t_n
        self._t_n_prime = 1

    @property
    def window(self) -> int:
        """Size of the current sampling window."""
        return self._n

    def sample(self) -> np.ndarray:
        s = self.subset_size
        self._t += 1
        if self._t > self._t_n_prime and self._n < self.n_samples:
            self._n += 1
            t_n_next = self._t_n * self._n / (self._n - s)
            self._t_n_prime += int(np.ceil(t_n_next - self._t_n))
            self._t_n = t_n_next

        n = self._n
        if self._t_n_prime < self._t:
            picks = self.rng.choice(n, s, replace=False)
        else:
            # Always include the newest reading of the window
            picks = np.append(self.rng.choice(n - 1, s - 1, replace=False), n - 1)
        return self.order[picks]


class WeightedSampler:
    """Draws subsets without replacement with probability increasing with quality."""

    def __init__(self, quality_scores: np.ndarray, subset_size: int, rng: np.random.Generator):
        q = np.asarray(quality_scores, dtype=float)
        p = q - q.min()
        p = p + max(p.max(), 1.0) * 1e-6
        self.probabilities = p / p.sum()
        self.n_samples = len(q)
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(
            self.n_samples, self.subset_size, replace=False, p=self.probabilities
        )


# ============================================================================
# Scorers
# ============================================================================
#
# score(residuals) -> (score, inliers, threshold); lower scores are better.


class ThresholdScorer:
    """Inlier count over a fixed threshold; ties broken by the inlier residual sum."""

    max_inlier_ratio = 1.0

    def __init__(self, threshold: float):
        self.threshold = threshold

    def score(self, residuals: np.ndarray) -> Tuple[Tuple[float, ...], np.ndarray, float]:
        inliers = residuals <= self.threshold
        return (-float(np.sum(inliers)), float(np.sum(residuals[inliers]))), inliers, self.threshold


class MsacScorer:
    """Truncated quadratic cost sum(min(r^2, threshold^2))."""

    max_inlier_ratio = 1.0

    def __init__(self, threshold: float):
        self.threshold = threshold

    def score(self, residuals: np.ndarray) -> Tuple[Tuple[float, ...], np.ndarray, float]:
        cost = float(np.sum(np.minimum(residuals**2, self.threshold**2)))
        return (cost,), residuals <= self.threshold, self.threshold


class MedianScorer:
    """
    Least median of squared residuals.

    Inliers are the readings within ``inlier_factor`` robust standard
    deviations, with the scale estimated from the median:
        sigma = 1.4826 * (1 + 5 / (N - s)) * sqrt(median(r^2))

    The threshold comes from the candidate itself, so a poor candidate with a
    large median can accept every reading. The inlier ratio it reports to the
    iteration bound is therefore capped at the 50% breakdown point.
    """

    max_inlier_ratio = 0.5

    def __init__(self, subset_size: int, inlier_factor: float = DEFAULT_INLIER_FACTOR):
        self.subset_size = subset_size
        self.inlier_factor = inlier_factor

    def score(self, residuals: np.ndarray) -> Tuple[Tuple[float, ...], np.ndarray, float]:
        median = float(np.median(residuals**2))
        dof = max(len(residuals) - self.subset_size, 1)
        scale = MAD_CONSISTENCY * (1.0 + 5.0 / dof) * np.sqrt(median)
        threshold = max(self.inlier_factor * scale, MIN_MEDIAN_THRESHOLD)
        return (median,), residuals <= threshold, float(threshold)


def create_sampler(
    method: RobustMethod,
    n_samples: int,
    subset_size: int,
    rng: np.random.Generator,
    quality_scores: Optional[np.ndarray] = None,
    max_iterations: int = 5000,
    weighted: bool = False,
):
    """Sampler used by ``method``; quality methods need ``quality_scores``."""
    if method.uses_quality_scores:
        if quality_scores is None or len(quality_scores) != n_samples:
            raise ValueError("quality scores must have one entry per reading")
        if weighted:
            return WeightedSampler(quality_scores, subset_size, rng)
        return ProsacSampler(quality_scores, subset_size, max_iterations, rng)
    return UniformSampler(n_samples, subset_size, rng)


def create_scorer(method: RobustMethod, threshold: float, subset_size: int):
    """Scorer used by ``method``."""
    if method in (RobustMethod.LMEDS, RobustMethod.PROMEDS):
        return MedianScorer(subset_size)
    if method == RobustMethod.MSAC:
        return MsacScorer(threshold)
    return ThresholdScorer(threshold)


# ============================================================================
# Engine
# ============================================================================


@dataclass
class ConsensusResult:
    """Best candidate found by a consensus run.

    Attributes:
        model: Best candidate model.
        inliers: Boolean mask of the readings consistent with the model.
        residuals: Residual of every reading against the model.
        threshold: Threshold used to classify inliers.
        iterations: Number of subsets drawn.
    """

    model: Any
    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float
    iterations: int

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inliers))


class ConsensusEngine:
    """
    Sample-consensus loop with an adaptive iteration bound.

    Args:
        n_samples: Number of readings.
        subset_size: Number of readings per preliminary subset.
        fit: Fits a candidate model to the readings at the given indices;
             raises ``numpy.linalg.LinAlgError`` for degenerate subsets.
        residuals: Absolute residual of every reading for a candidate model.
        sampler: Object with ``sample() -> indices``.
        scorer: Object with ``score(residuals) -> (score, inliers, threshold)``
                and a ``max_inlier_ratio`` attribute capping the ratio used by
                the iteration bound.
        confidence: Desired confidence in (0, 1).
        max_iterations: Hard iteration cap (>= 1).
        progress_delta: Minimum progress advance between notifications.
        on_iteration: Called with the 1-based iteration number.
        on_progress: Called with the progress in [0, 1].
    """

    def __init__(
        self,
        n_samples: int,
        subset_size: int,
        fit: Callable[[np.ndarray], Any],
        residuals: Callable[[Any], np.ndarray],
        sampler,
        scorer,
        confidence: float,
        max_iterations: int,
        progress_delta: float = 0.05,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        if subset_size > n_samples:
            raise ValueError(f"subset_size={subset_size} exceeds n_samples={n_samples}")
        self.n_samples = n_samples
        self.subset_size = subset_size
        self.fit = fit
        self.residuals = residuals
        self.sampler = sampler
        self.scorer = scorer
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.on_iteration = on_iteration
        self.on_progress = on_progress

    def run(self) -> ConsensusResult:
        """
        Draw subsets until the iteration bound is met.

        Returns:
            The best candidate and its consensus set.

        Raises:
            RobustEstimatorError: If no subset produced a usable candidate.
        """
        best = None
        best_score = None
        bound = float(self.max_iterations)
        iteration = 0
        progress = 0.0
        notified_progress = 0.0

        while iteration < min(bound, self.max_iterations):
            subset = self.sampler.sample()
            iteration += 1

            try:
                model = self.fit(subset)
                residuals = np.abs(self.residuals(model))
            except np.linalg.LinAlgError as e:
                logger.debug("Iteration %d: discarded degenerate subset %s (%s)", iteration, subset, e)
                model = None

            if model is not None and np.all(np.isfinite(residuals)):
                score, inliers, threshold = self.scorer.score(residuals)
                if best_score is None or score < best_score:
                    best_score = score
                    best = ConsensusResult(model, inliers, residuals, threshold, iteration)
                    ratio = min(best.num_inliers / self.n_samples, self.scorer.max_inlier_ratio)
                    bound = min(
                        float(self.max_iterations),
                        iteration_bound(ratio, self.subset_size, self.confidence),
                    )
                    logger.debug(
                        "Iteration %d: %d inliers (ratio %.3f), bound updated to %s",
                        iteration,
                        best.num_inliers,
                        ratio,
                        bound,
                    )

            if self.on_iteration is not None:
                self.on_iteration(iteration)

            progress = max(progress, min(1.0, iteration / min(bound, self.max_iterations)))
            if self.on_progress is not None and (
                progress - notified_progress >= self.progress_delta and progress > notified_progress
            ):
                notified_progress = progress
                self.on_progress(progress)

        if best is None:
            raise RobustEstimatorError(
                f"no usable candidate found in {iteration} iterations"
            )

        best.iterations = iteration
        return best
