"""
Barnes-Hut t-SNE.

Projects a collection's feature vectors to 2-D so that images that are close
under the distance metric end up close on the layout. Input affinities come
from a sparse k-nearest-neighbour graph; repulsion between all pairs is
approximated with a quadtree, so one iteration costs O(n log n).

Runs are deterministic: inputs are ordered by image id and the only random
draw is the initial layout from ``numpy.random.default_rng(seed)``.
"""
import logging
import math
from typing import Callable, Hashable, Mapping, Optional, Union

import numpy as np
from scipy.sparse import csr_matrix
from sklearn.neighbors import NearestNeighbors

from megallery.core.exceptions import Cancelled, InsufficientData, MegalleryException
from megallery.embedding.metrics import BaseMetric, get_metric
from megallery.embedding.quadtree import QuadTree
from megallery.models.domain import EmbeddingResult, FeatureVector, TsneParams

logger = logging.getLogger(__name__)

MACHINE_EPSILON = np.finfo(np.double).eps

EARLY_EXAGGERATION = 12.0
EXAGGERATION_ITERATIONS = 250
INITIAL_MOMENTUM = 0.5
FINAL_MOMENTUM = 0.8
MIN_GAIN = 0.01
INIT_SCALE = 1e-4

PROGRESS_INTERVAL = 50

PERPLEXITY_TOLERANCE = 1e-5
PERPLEXITY_STEPS = 100

StopFn = Callable[[], bool]
ProgressFn = Callable[[int, int], None]


def effective_perplexity(perplexity: float, n: int) -> float:
    """Perplexity clamped to what n points can support."""
    return max(1.0, min(perplexity, (n - 1) / 3.0))


def neighbor_count(perplexity: float, n: int) -> int:
    """Neighbours per point used for the input affinities."""
    return max(1, min(n - 1, int(3 * perplexity)))


def binary_search_bandwidth(distances: np.ndarray, perplexity: float) -> np.ndarray:
    """
    Conditional probabilities whose entropy matches the target perplexity.

    Args:
        distances: Squared distances to each point's neighbours, shape (n, k)
        perplexity: Target perplexity

    Returns:
        Row-normalized conditional probabilities, shape (n, k)
    """
    # Shift by the nearest distance; the row normalization cancels it out
    shifted = distances - distances[:, :1]
    n = len(distances)
    target = math.log(perplexity)

    beta = np.ones(n)
    beta_min = np.full(n, -np.inf)
    beta_max = np.full(n, np.inf)
    active = np.ones(n, dtype=bool)

    for _ in range(PERPLEXITY_STEPS):
        rows = np.flatnonzero(active)
        if rows.size == 0:
            break

        weights = np.exp(-shifted[rows] * beta[rows, None])
        total = weights.sum(axis=1)
        entropy = np.log(total) + beta[rows] * (shifted[rows] * weights).sum(axis=1) / total
        error = entropy - target

        done = np.abs(error) <= PERPLEXITY_TOLERANCE
        active[rows[done]] = False

        # Entropy too high: sharpen the kernel
        grow = rows[~done & (error > 0)]
        beta_min[grow] = beta[grow]
        beta[grow] = np.where(
            np.isinf(beta_max[grow]), beta[grow] * 2.0, (beta[grow] + beta_max[grow]) / 2.0
        )

        shrink = rows[~done & (error < 0)]
        beta_max[shrink] = beta[shrink]
        beta[shrink] = np.where(
            np.isinf(beta_min[shrink]), beta[shrink] / 2.0, (beta[shrink] + beta_min[shrink]) / 2.0
        )

    weights = np.exp(-shifted * beta[:, None])
    return weights / weights.sum(axis=1, keepdims=True)


def joint_probabilities(X: np.ndarray, perplexity: float) -> csr_matrix:
    """
    Symmetric sparse input affinities P from the k-NN graph.

    Args:
        X: Points in the metric space, shape (n, d)
        perplexity: Requested perplexity (clamped to what n supports)

    Returns:
        Sparse (n, n) matrix summing to 1
    """
    n = len(X)
    perplexity = effective_perplexity(perplexity, n)
    k = neighbor_count(perplexity, n)

    knn = NearestNeighbors(n_neighbors=k, metric="euclidean", n_jobs=1)
    knn.fit(X)
    distances, indices = knn.kneighbors(None, n_neighbors=k)

    conditional = binary_search_bandwidth(distances ** 2, perplexity)

    P = csr_matrix(
        (conditional.ravel(), indices.ravel(), np.arange(0, n * k + 1, k)),
        shape=(n, n),
    )
    P = (P + P.T).tocsr()
    return P / max(P.sum(), MACHINE_EPSILON)


def kl_gradient(
    Y: np.ndarray,
    P,
    exaggeration: float,
    theta: float
) -> np.ndarray:
    """Gradient of KL(P || Q) with Barnes-Hut repulsion."""
    P = P.tocoo()
    diff = Y[P.row] - Y[P.col]
    weight = P.data / (1.0 + np.einsum("ij,ij->i", diff, diff))

    n = len(Y)
    attraction = np.stack([
        np.bincount(P.row, weights=weight * diff[:, 0], minlength=n),
        np.bincount(P.row, weights=weight * diff[:, 1], minlength=n),
    ], axis=1)

    repulsion, kernel_total = QuadTree(Y).repulsion(theta)
    return 4.0 * (exaggeration * attraction - repulsion / max(kernel_total, MACHINE_EPSILON))


def optimize(
    P: csr_matrix,
    seed: int,
    params: TsneParams,
    should_stop: Optional[StopFn] = None,
    on_progress: Optional[ProgressFn] = None
) -> np.ndarray:
    """
    Gradient descent with momentum, gains and early exaggeration.

    Raises:
        Cancelled: should_stop returned True at an iteration boundary
    """
    n = P.shape[0]
    rng = np.random.default_rng(seed)
    Y = INIT_SCALE * rng.standard_normal((n, 2))

    update = np.zeros_like(Y)
    gains = np.ones_like(Y)
    exaggeration_iterations = min(EXAGGERATION_ITERATIONS, params.iterations // 4)
    P_coo = P.tocoo()

    for iteration in range(params.iterations):
        if should_stop is not None and should_stop():
            logger.info(f"t-SNE cancelled at iteration {iteration}/{params.iterations}")
            raise Cancelled(f"embedding cancelled at iteration {iteration}")

        exploring = iteration < exaggeration_iterations
        exaggeration = EARLY_EXAGGERATION if exploring else 1.0
        momentum = INITIAL_MOMENTUM if exploring else FINAL_MOMENTUM

        gradient = kl_gradient(Y, P_coo, exaggeration, params.theta)

        flipped = update * gradient < 0.0
        gains = np.where(flipped, gains + 0.2, gains * 0.8)
        np.clip(gains, MIN_GAIN, np.inf, out=gains)

        update = momentum * update - params.learning_rate * gains * gradient
        Y = Y + update
        Y -= Y.mean(axis=0)

        if on_progress is not None and (iteration + 1) % PROGRESS_INTERVAL == 0:
            on_progress(iteration + 1, params.iterations)

    return Y


def normalize(Y: np.ndarray) -> np.ndarray:
    """Min-max rescale each axis to [0, 1]; a collapsed axis maps to 0.5."""
    low = Y.min(axis=0)
    span = Y.max(axis=0) - low
    safe = np.where(span > 0, span, 1.0)
    scaled = np.where(span > 0, (Y - low) / safe, 0.5)
    return np.clip(scaled, 0.0, 1.0)


def embed(
    features: Mapping[Hashable, Optional[FeatureVector]],
    seed: int,
    params: Optional[TsneParams] = None,
    metric: Union[str, BaseMetric] = "palette_aspect",
    should_stop: Optional[StopFn] = None,
    on_progress: Optional[ProgressFn] = None
) -> EmbeddingResult:
    """
    Compute normalized 2-D coordinates for a set of images.

    Args:
        features: Image id to feature vector; None marks a failed extraction
        seed: Seed of the initial layout
        params: t-SNE parameters (defaults if None)
        metric: Distance metric name or instance
        should_stop: Polled at each iteration boundary
        on_progress: Called with (iteration, total) every 50 iterations

    Returns:
        EmbeddingResult with coordinates in [0, 1]^2 and the excluded ids

    Raises:
        InsufficientData: Fewer than 2 images can be placed
        Cancelled: should_stop requested a stop
    """
    params = params or TsneParams()
    if isinstance(metric, str):
        metric = get_metric(metric)

    ids = []
    vectors = []
    excluded = []
    for image_id in sorted(features, key=str):
        feature_vector = features[image_id]
        vector = metric.vectorize(feature_vector) if feature_vector is not None else None
        if vector is None:
            excluded.append(image_id)
        else:
            ids.append(image_id)
            vectors.append(vector)

    if len(ids) < 2:
        raise InsufficientData(len(ids))

    X = metric.prepare(np.vstack(vectors).astype(np.float64))
    logger.info(
        f"Embedding {len(ids)} images ({len(excluded)} excluded) with "
        f"metric={metric.metric_name} seed={seed} params={params.to_dict()}"
    )

    P = joint_probabilities(X, params.perplexity)
    Y = normalize(optimize(P, seed, params, should_stop, on_progress))

    if not np.all(np.isfinite(Y)):
        raise MegalleryException("t-SNE produced non-finite coordinates")

    coordinates: dict = {}
    for image_id, (x, y) in zip(ids, Y.tolist()):
        coordinates[image_id] = (x, y)

    return EmbeddingResult(coordinates=coordinates, excluded=excluded)
