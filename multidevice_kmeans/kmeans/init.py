import enum
import math

import numpy as np

from multidevice_kmeans.device.buffers import populate
from multidevice_kmeans.exceptions import InvalidArgumentsError, KMeansRuntimeError

from .kernels import distance_sampling_step

# Below this approximate rank, the prefix sum is accumulated from the first sample.
_LINEAR_SCAN_MAX_RANK = 100
_SCAN_BLOCK_SIZE = 1024


class InitMethod(enum.IntEnum):
    Import = 0
    Random = 1
    PlusPlus = 2


_INIT_METHOD_NAMES = {
    "import": InitMethod.Import,
    "random": InitMethod.Random,
    "k-means++": InitMethod.PlusPlus,
}


def check_init_method(init):
    if isinstance(init, InitMethod):
        return init
    if isinstance(init, str) and init in _INIT_METHOD_NAMES:
        return _INIT_METHOD_NAMES[init]
    raise InvalidArgumentsError(
        f"Expected init in {sorted(_INIT_METHOD_NAMES)} or an InitMethod, got {init}."
    )


def init_centroids(
    ctx,
    method,
    rng,
    metric,
    fp16x2,
    host_centroids,
    samples,
    centroids,
    dists,
    dev_sums,
    distance_step=distance_sampling_step,
):
    """Write the initial centroids in every replica of `centroids`.

    Parameters
    ----------
    ctx : KernelContext
        As returned by `multidevice_kmeans.kmeans.kernels.setup`.

    method : InitMethod

    rng : Xoroshiro128pp
        The random state of the run.

    metric : DistanceMetric

    fp16x2 : bool

    host_centroids : array
        The centroids to import, in host memory or on the designated device. Only
        read with `InitMethod.Import`.

    samples, centroids : DistributedBuffer

    dists, dev_sums : DistributedBuffer
        Float buffers of size `samples_size` used by k-means++ for the distances of
        the samples to their nearest centroid and for their per-device sums.

    distance_step : callable
        The k-means++ distance kernel, see `kernels.distance_sampling_step`.
    """
    if method == InitMethod.Import:
        populate(centroids, host_centroids, ctx.clusters_size * ctx.features_size)

    elif method == InitMethod.Random:
        if ctx.verbosity > 0:
            print("randomly picking initial centroids...")
        chosen = random_sample_indices(rng, ctx.samples_size, ctx.clusters_size)
        _copy_samples_to_centroids(ctx, samples, centroids, chosen)

    elif method == InitMethod.PlusPlus:
        if ctx.verbosity > 0:
            print("performing kmeans++...")
        kmeans_plusplus(
            ctx, rng, metric, fp16x2, samples, centroids, dists, dev_sums, distance_step
        )

    else:
        raise InvalidArgumentsError(f"Unknown init method {method}.")

    if ctx.verbosity > 0:
        print("done")


def random_sample_indices(rng, samples_size, clusters_size):
    """Returns the first `clusters_size` indices of a Fisher-Yates shuffle of
    `range(samples_size)`.

    The shuffle swaps from the front, so its remaining steps can't change the first
    `clusters_size` slots and are skipped."""
    chosen = np.arange(samples_size, dtype=np.int64)
    for i in range(min(clusters_size, samples_size - 1)):
        j = i + rng.randint(samples_size - i)
        chosen[i], chosen[j] = chosen[j], chosen[i]
    return chosen[:clusters_size]


def _copy_samples_to_centroids(ctx, samples, centroids, sample_indices, first=0):
    """Copy the samples `sample_indices` into the centroid slots starting at `first`,
    on every device."""
    runtime = ctx.pool.runtime
    n_features = ctx.features_size

    def _copy(devi, device):
        for slot, sample_idx in enumerate(sample_indices, first):
            runtime.memcpy_d2d_async(
                centroids[devi],
                slot * n_features,
                samples[devi],
                int(sample_idx) * n_features,
                n_features,
            )

    ctx.pool.for_each_device(_copy)


def kmeans_plusplus(
    ctx, rng, metric, fp16x2, samples, centroids, dists, dev_sums, distance_step
):
    pool = ctx.pool
    runtime = pool.runtime
    n_samples, n_features, n_clusters = (
        ctx.samples_size,
        ctx.features_size,
        ctx.clusters_size,
    )

    # The first centroid is drawn uniformly, among the samples that are not NaN.
    runtime.set_device(pool.devices[0])
    for _ in range(n_samples):
        first = rng.randint(n_samples)
        if not math.isnan(runtime.read_scalar(samples[0], first * n_features)):
            break
    else:
        first = _first_valid_sample(runtime, samples[0], n_samples, n_features)
    _copy_samples_to_centroids(ctx, samples, centroids, [first])

    host_dists = np.empty(n_samples, dtype=np.float32)
    for i in range(1, n_clusters):
        if ctx.verbosity > 1 or (
            ctx.verbosity > 0
            and (n_clusters < 100 or i % (n_clusters // 100) == 0)
        ):
            print(f"kmeans++ step {i}")

        dist_sum = distance_step(
            ctx,
            i,
            metric,
            fp16x2,
            samples,
            centroids,
            dists,
            dev_sums,
            host_dists,
        )
        if math.isnan(dist_sum):
            raise KMeansRuntimeError(
                f"Internal error in kmeans++ at step {i}: the sum of the distances is"
                " NaN."
            )

        choice = rng.uniform()
        j = find_weighted_index(host_dists, choice, dist_sum)
        if not 0 <= j < n_samples:
            raise KMeansRuntimeError(
                f"Internal error in kmeans++ at step {i}: sampled index {j} is out of"
                f" [0, {n_samples})."
            )
        _copy_samples_to_centroids(ctx, samples, centroids, [j], first=i)


def _first_valid_sample(runtime, samples, n_samples, n_features):
    """Index of the first sample whose first feature is not NaN."""
    host_samples = np.empty(n_samples * n_features, dtype=np.float32)
    runtime.memcpy_d2h(host_samples, samples, 0)
    (valid,) = np.nonzero(~np.isnan(host_samples[::n_features]))
    if valid.shape[0] == 0:
        raise KMeansRuntimeError("All the samples are NaN.")
    return int(valid[0])


def find_weighted_index(weights, choice, weights_sum):
    """Returns the smallest index j such that `weights[:j + 1].sum()` reaches
    `choice * weights_sum`, with `choice` in [0, 1).

    The prefix sum is not always accumulated from the first weight: when the target
    is expected to be far from the origin, the sum of the weights up to the
    approximate rank `choice * len(weights)` is computed first, then the scan walks
    forward or backward from there depending on which side of the target it landed.

    A zero target is reached by the first positive weight. If rounding errors
    between `weights_sum` and the prefix sums make the target unreachable, the last
    index with a positive weight is returned. If all the weights are zero, the
    approximate rank is returned.
    """
    n_weights = weights.shape[0]
    target = choice * weights_sum
    approx_rank = min(int(choice * n_weights), n_weights - 1)

    (positive,) = np.nonzero(weights > 0)
    if positive.shape[0] == 0:
        return approx_rank
    if target <= 0:
        return int(positive[0])

    if approx_rank < _LINEAR_SCAN_MAX_RANK:
        j = _scan_forward(weights, 0, 0.0, target)
    else:
        cumulative = float(np.sum(weights[:approx_rank], dtype=np.float64))
        if cumulative < target:
            j = _scan_forward(weights, approx_rank, cumulative, target)
        else:
            j = _scan_backward(weights, approx_rank, cumulative, target)

    if j < n_weights:
        return j
    return int(positive[-1])


def _scan_forward(weights, start, cumulative, target):
    """Returns the smallest j >= start such that
    `cumulative + weights[start:j + 1].sum() >= target`, or len(weights)."""
    n_weights = weights.shape[0]
    block_size = _SCAN_BLOCK_SIZE
    while start < n_weights:
        stop = min(start + block_size, n_weights)
        prefix = cumulative + np.cumsum(weights[start:stop], dtype=np.float64)
        offset = int(np.searchsorted(prefix, target, side="left"))
        if offset < stop - start:
            return start + offset
        cumulative = float(prefix[-1])
        start = stop
        block_size *= 2
    return n_weights


def _scan_backward(weights, stop, cumulative, target):
    """`cumulative` is `weights[:stop].sum()` and reaches the positive `target`.
    Returns the largest j < stop such that `weights[:j].sum() < target`."""
    block_size = _SCAN_BLOCK_SIZE
    while stop > 0:
        start = max(stop - block_size, 0)
        suffix = np.cumsum(weights[start:stop][::-1], dtype=np.float64)[::-1]
        # prefix[i] is weights[:start + i].sum()
        prefix = cumulative - suffix
        offset = int(np.searchsorted(prefix, target, side="left")) - 1
        if offset >= 0:
            return start + offset
        cumulative = float(prefix[0])
        stop = start
        block_size *= 2
    return 0
