import enum
import warnings

import numpy as np

from multidevice_kmeans.common._utils import distribute, max_distribute_length
from multidevice_kmeans.device.buffers import DistributedBuffer

# The functions of this module compute on the arrays of `runtime.xp` with operations
# that are common to numpy and dpctl.tensor (array API), such that the same code runs
# on host memory or on device memory.

# Every device holds all the samples but only computes on its own partition (see
# `multidevice_kmeans.common._utils.distribute`). Partial results are reduced on the
# last device of the pool, the canonical device, and broadcasted back with peer copies.

_MAX_ITERATIONS = 1000
_GROUPING_MAX_ITERATIONS = 10


class DistanceMetric(enum.IntEnum):
    L2 = 0
    Cosine = 1


class KernelContext:
    """Device resident state shared by the k-means++ and refinement kernels.

    Returned by `setup`, it must be freed once the run is over, which the context
    manager protocol takes care of."""

    def __init__(
        self, pool, samples_size, features_size, clusters_size, group_count, verbosity
    ):
        self.pool = pool
        self.samples_size = samples_size
        self.features_size = features_size
        self.clusters_size = clusters_size
        self.group_count = group_count
        self.verbosity = verbosity

        self.partitions = distribute(samples_size, len(pool))
        self.max_length = max_distribute_length(samples_size, len(pool))

        # Per device partial sums of the samples of each cluster, followed by the
        # partial sizes of the clusters.
        self.reduction_size = clusters_size * features_size + clusters_size
        self.partials = DistributedBuffer.allocate(
            pool, self.reduction_size, np.float32, "partials"
        )
        # The partials of all devices are gathered on the canonical device.
        self.gathered = None
        if len(pool) > 1:
            runtime = pool.runtime
            runtime.set_device(pool.canonical_device)
            try:
                self.gathered = runtime.malloc(
                    self.reduction_size * len(pool), np.float32
                )
            except Exception:
                self.partials.free()
                raise

    def free(self):
        self.partials.free()
        if self.gathered is not None:
            self.pool.runtime.free(self.gathered)
            self.gathered = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.free()


def setup(pool, samples_size, features_size, clusters_size, group_count, verbosity):
    """Prepare the device resident state, must be called once before any refinement
    or k-means++ step."""
    if verbosity > 1:
        print(
            f"kernels setup: {samples_size} samples, {features_size} features, "
            f"{clusters_size} clusters, {group_count} yinyang groups, devices "
            f"{pool.devices}"
        )
    return KernelContext(
        pool, samples_size, features_size, clusters_size, group_count, verbosity
    )


def _pairwise_distances(xp, X, C, metric, fp16x2):
    """Distances between every row of X and every row of C, shape (len(X), len(C))"""
    if fp16x2:
        X = xp.astype(X, xp.float16)
        C = xp.astype(C, xp.float16)

    dots = xp.matmul(X, C.T)
    if metric == DistanceMetric.Cosine:
        # NB: samples and centroids are expected to be normalized.
        distances = xp.acos(xp.clip(dots, -1, 1))
    else:
        # NB: distances can be slightly negative because of rounding errors
        sq_distances = (
            xp.sum(X * X, axis=1)[:, None] - 2 * dots + xp.sum(C * C, axis=1)[None, :]
        )
        distances = xp.sqrt(xp.maximum(sq_distances, 0))

    return xp.astype(distances, xp.float32)


def _sq_distances_to(xp, X, c, metric, fp16x2):
    """Squared distances between every row of X and the vector c"""
    if fp16x2:
        X = xp.astype(X, xp.float16)
        c = xp.astype(c, xp.float16)

    if metric == DistanceMetric.Cosine:
        distances = xp.acos(xp.clip(xp.matmul(X, c), -1, 1))
        sq_distances = distances * distances
    else:
        diff = X - c[None, :]
        sq_distances = xp.sum(diff * diff, axis=1)

    return xp.astype(sq_distances, xp.float32)


def _vector_distances(xp, A, B, metric):
    """Row-wise distances between A and B, shape (len(A),)"""
    if metric == DistanceMetric.Cosine:
        return xp.acos(xp.clip(xp.sum(A * B, axis=1), -1, 1))
    diff = A - B
    return xp.sqrt(xp.sum(diff * diff, axis=1))


def _one_hot(xp, labels, n_labels):
    label_range = xp.arange(n_labels, dtype=labels.dtype, device=labels.device)
    return labels[:, None] == label_range[None, :]


def _read_counts(counts):
    """Blocking read and sum of per device counts, only called once every device
    has been issued its work."""
    return sum(int(count) for count in counts)


def distance_sampling_step(
    ctx,
    centroids_count,
    metric,
    fp16x2,
    samples,
    centroids,
    dists,
    dev_sums,
    host_dists,
):
    """One k-means++ step.

    Updates `dists` with the squared distance of every sample to the nearest of the
    first `centroids_count` centroids, copies it into the host array `host_dists`,
    and returns the sum of those distances.

    NB: the distances to the first `centroids_count - 1` centroids are expected to be
    in `dists` already, such that only the distances to the newest centroid are
    computed.
    """
    pool = ctx.pool
    runtime = pool.runtime
    xp = runtime.xp
    n_samples, n_features = ctx.samples_size, ctx.features_size
    newest = (centroids_count - 1) * n_features

    def _step(devi, device):
        start, stop = ctx.partitions[devi]
        if start == stop:
            dev_sums[devi][0:1] = xp.zeros(
                1, dtype=xp.float32, device=dev_sums[devi].device
            )
            return
        X = xp.reshape(samples[devi], (n_samples, n_features))[start:stop]
        centroid = centroids[devi][newest : newest + n_features]
        sq_distances = _sq_distances_to(xp, X, centroid, metric, fp16x2)
        if centroids_count > 1:
            sq_distances = xp.minimum(sq_distances, dists[devi][start:stop])
        dists[devi][start:stop] = sq_distances
        dev_sums[devi][0:1] = xp.reshape(xp.sum(sq_distances), (1,))

    pool.for_each_device(_step)

    partial_sum = np.empty(1, dtype=np.float32)
    dist_sum = 0.0

    def _gather(devi, device):
        nonlocal dist_sum
        start, stop = ctx.partitions[devi]
        if start == stop:
            return
        runtime.memcpy_d2h(host_dists[start:stop], dists[devi], start)
        runtime.memcpy_d2h(partial_sum, dev_sums[devi], 0)
        dist_sum += float(partial_sum[0])

    pool.for_each_device(_gather)
    return dist_sum


def _form_groups(ctx, centroids, group_assignments, group_centroids):
    """Cluster the centroids in `ctx.group_count` groups with a few Lloyd iterations,
    starting from the first centroids.

    Any partition of the centroids keeps the yinyang filter exact, the groups only
    need to be tight for the filter to be efficient."""
    pool = ctx.pool
    xp = pool.runtime.xp
    n_clusters, n_features, n_groups = (
        ctx.clusters_size,
        ctx.features_size,
        ctx.group_count,
    )

    def _views(devi):
        C = xp.reshape(centroids[devi], (n_clusters, n_features))
        G = xp.reshape(
            group_centroids[devi][: n_groups * n_features], (n_groups, n_features)
        )
        return C, G

    def _seed(devi, device):
        C, G = _views(devi)
        G[...] = C[:n_groups]

    pool.for_each_device(_seed)

    # Every device runs the same iterations on the same centroids. The convergence
    # test is read back once per iteration, after all the devices got their work.
    labels = [None] * len(pool)
    for iteration in range(_GROUPING_MAX_ITERATIONS):
        changes = []

        def _group(devi, device):
            C, G = _views(devi)
            new_labels = xp.astype(
                xp.argmin(
                    _pairwise_distances(xp, C, G, DistanceMetric.L2, False), axis=1
                ),
                xp.uint32,
            )
            if labels[devi] is not None:
                changes.append(
                    xp.sum(xp.astype(new_labels != labels[devi], xp.int64))
                )
            labels[devi] = new_labels
            one_hot = xp.astype(_one_hot(xp, new_labels, n_groups), xp.float32)
            sizes = xp.sum(one_hot, axis=0)
            sums = xp.matmul(one_hot.T, C)
            G[...] = xp.where(
                sizes[:, None] > 0, sums / xp.maximum(sizes, 1)[:, None], G
            )

        pool.for_each_device(_group)
        if iteration > 0 and _read_counts(changes) == 0:
            break

    def _store(devi, device):
        group_assignments[devi][:] = labels[devi]

    pool.for_each_device(_store)


def _group_masks(xp, group_labels, n_groups):
    return [group_labels == group for group in range(n_groups)]


def _assign_all(xp, ctx, X, C, metric, fp16x2, bounds, group_masks, length):
    """Assign every sample of X and, with yinyang, reset its bounds."""
    distances = _pairwise_distances(xp, X, C, metric, fp16x2)
    labels = xp.astype(xp.argmin(distances, axis=1), xp.uint32)

    if group_masks is not None:
        upper, lower = _bounds_views(xp, ctx, bounds, length)
        upper[...] = xp.min(distances, axis=1)
        others = xp.where(_one_hot(xp, labels, ctx.clusters_size), xp.inf, distances)
        for group, mask in enumerate(group_masks):
            lower[group, :] = xp.min(xp.where(mask[None, :], others, xp.inf), axis=1)

    return labels


def _bounds_views(xp, ctx, bounds, length):
    """Views on the upper bounds, shape (length,), and on the lower bounds of each
    group, shape (group_count, length), of the local partition.

    The bounds buffer holds `max_length` upper bounds followed by `max_length` lower
    bounds per group."""
    max_length = ctx.max_length
    upper = bounds[:length]
    lower = xp.reshape(
        bounds[max_length : max_length * (ctx.group_count + 1)],
        (ctx.group_count, max_length),
    )[:, :length]
    return upper, lower


def _yinyang_filter(xp, ctx, bounds, length, passed):
    """Flag the samples of the local partition whose upper bound does not exceed
    their smallest group lower bound: they keep their centroid."""
    upper, lower = _bounds_views(xp, ctx, bounds, length)
    is_passed = upper <= xp.min(lower, axis=0)
    passed[:length] = xp.astype(is_passed, xp.uint32)
    return is_passed


def _assign_filtered(
    xp, ctx, X, C, metric, fp16x2, bounds, group_masks, previous, is_passed
):
    """Assign the samples of X, recomputing distances only for the samples that the
    yinyang global filter can't prove to be still assigned to `previous`."""
    length = X.shape[0]
    upper, lower = _bounds_views(xp, ctx, bounds, length)

    labels = xp.asarray(previous, copy=True)
    # NB: the size of the result is read back, this waits for the filter of this
    # device only.
    (unpassed,) = xp.nonzero(xp.logical_not(is_passed))
    if unpassed.shape[0] == 0:
        return labels

    X_unpassed = xp.take(X, unpassed, axis=0)
    distances = _pairwise_distances(xp, X_unpassed, C, metric, fp16x2)
    new_labels = xp.astype(xp.argmin(distances, axis=1), xp.uint32)
    labels[unpassed] = new_labels
    upper[unpassed] = xp.min(distances, axis=1)
    others = xp.where(_one_hot(xp, new_labels, ctx.clusters_size), xp.inf, distances)
    for group, mask in enumerate(group_masks):
        lower[group, :][unpassed] = xp.min(
            xp.where(mask[None, :], others, xp.inf), axis=1
        )

    return labels


def _update_centroids(ctx, metric, samples, centroids, counts, assignments):
    """Move every centroid to the mean of its samples, on the canonical device, and
    replicate the result on every device. Empty clusters keep their centroid."""
    pool = ctx.pool
    runtime = pool.runtime
    xp = runtime.xp
    n_samples, n_features, n_clusters = (
        ctx.samples_size,
        ctx.features_size,
        ctx.clusters_size,
    )
    centroids_size = n_clusters * n_features
    reduction_size = ctx.reduction_size
    canonical_devi = pool.canonical_devi

    def _partial(devi, device):
        partial = ctx.partials[devi]
        start, stop = ctx.partitions[devi]
        if start == stop:
            partial[:] = xp.zeros(
                reduction_size, dtype=xp.float32, device=partial.device
            )
        else:
            X = xp.reshape(samples[devi], (n_samples, n_features))[start:stop]
            one_hot = xp.astype(
                _one_hot(xp, assignments[devi][start:stop], n_clusters), xp.float32
            )
            partial[:centroids_size] = xp.reshape(xp.matmul(one_hot.T, X), (-1,))
            partial[centroids_size:] = xp.sum(one_hot, axis=0)

        if ctx.gathered is None:
            return
        if devi == canonical_devi:
            runtime.memcpy_d2d_async(
                ctx.gathered, devi * reduction_size, partial, 0, reduction_size
            )
        else:
            runtime.memcpy_peer_async(
                ctx.gathered,
                devi * reduction_size,
                pool.canonical_device,
                partial,
                0,
                device,
                reduction_size,
            )

    pool.for_each_device(_partial)

    runtime.set_device(pool.canonical_device)
    if ctx.gathered is None:
        total = ctx.partials[canonical_devi]
    else:
        total = xp.sum(xp.reshape(ctx.gathered, (len(pool), reduction_size)), axis=0)
    sums = xp.reshape(total[:centroids_size], (n_clusters, n_features))
    sizes = total[centroids_size:]
    old_centroids = xp.reshape(centroids[canonical_devi], (n_clusters, n_features))
    new_centroids = xp.where(
        sizes[:, None] > 0, sums / xp.maximum(sizes, 1)[:, None], old_centroids
    )
    if metric == DistanceMetric.Cosine:
        norms = xp.sqrt(xp.sum(new_centroids * new_centroids, axis=1))
        new_centroids = new_centroids / xp.where(norms > 0, norms, 1)[:, None]
    centroids[canonical_devi][:] = xp.reshape(new_centroids, (-1,))
    counts[canonical_devi][:] = xp.astype(sizes, xp.uint32)

    pool.broadcast_from(canonical_devi, centroids, 0, centroids_size)
    pool.broadcast_from(canonical_devi, counts, 0, n_clusters)


def grouped_refine(
    ctx,
    tolerance,
    metric,
    fp16x2,
    samples,
    centroids,
    counts,
    assignments_prev,
    assignments,
    assignments_yy=None,
    centroids_yy=None,
    bounds_yy=None,
    drifts_yy=None,
    passed_yy=None,
):
    """Run Lloyd iterations until at most `tolerance * samples_size` samples change
    of cluster in one iteration.

    If `ctx.group_count` is at least 1, the centroids are clustered in groups and the
    yinyang global filter skips the samples whose upper bound to their centroid does
    not exceed the smallest lower bound to the centroids of each group. The yinyang
    buffers are then all required:

    - `assignments_yy` (clusters_size,): the group of each centroid,
    - `centroids_yy` (group_count * features_size,): the group centroids, only used
      while the groups are formed,
    - `bounds_yy` (max_length * (group_count + 1),): see `_bounds_views`,
    - `drifts_yy` (centroids_size + clusters_size,): the centroids before the update,
      then the maximum drift of each group, followed by the drift of each centroid,
    - `passed_yy` (max_length,): which samples passed the filter at the last iteration.

    `centroids`, `counts` and `assignments` are updated in place on every device.
    Returns the number of iterations.
    """
    pool = ctx.pool
    runtime = pool.runtime
    xp = runtime.xp
    n_samples, n_features, n_clusters, n_groups = (
        ctx.samples_size,
        ctx.features_size,
        ctx.clusters_size,
        ctx.group_count,
    )
    centroids_size = n_clusters * n_features
    yinyang = n_groups >= 1
    reassignments_threshold = int(tolerance * n_samples)

    if yinyang:
        _form_groups(ctx, centroids, assignments_yy, centroids_yy)

    iteration = 0
    while True:
        iteration += 1
        filtered = yinyang and iteration > 1
        # Device arrays, only read back once every device has been issued its work.
        reassignment_counts = []
        passed_counts = []
        is_passed = [None] * len(pool)

        if filtered:

            def _filter(devi, device):
                start, stop = ctx.partitions[devi]
                if start == stop:
                    return
                is_passed[devi] = _yinyang_filter(
                    xp, ctx, bounds_yy[devi], stop - start, passed_yy[devi]
                )
                passed_counts.append(xp.sum(xp.astype(is_passed[devi], xp.int64)))

            pool.for_each_device(_filter)

        def _assign(devi, device):
            start, stop = ctx.partitions[devi]
            if start == stop:
                return
            X = xp.reshape(samples[devi], (n_samples, n_features))[start:stop]
            C = xp.reshape(centroids[devi], (n_clusters, n_features))
            previous = assignments_prev[devi][start:stop]
            group_masks = (
                _group_masks(xp, assignments_yy[devi], n_groups) if yinyang else None
            )
            if filtered:
                labels = _assign_filtered(
                    xp,
                    ctx,
                    X,
                    C,
                    metric,
                    fp16x2,
                    bounds_yy[devi],
                    group_masks,
                    previous,
                    is_passed[devi],
                )
            else:
                labels = _assign_all(
                    xp,
                    ctx,
                    X,
                    C,
                    metric,
                    fp16x2,
                    bounds_yy[devi] if yinyang else None,
                    group_masks,
                    stop - start,
                )
            if iteration > 1:
                reassignment_counts.append(
                    xp.sum(xp.astype(labels != previous, xp.int64))
                )
            assignments[devi][start:stop] = labels
            assignments_prev[devi][start:stop] = labels

        pool.for_each_device(_assign)

        # The first iteration counts every sample as reassigned.
        if iteration > 1:
            reassignments = _read_counts(reassignment_counts)
        else:
            reassignments = n_samples

        if ctx.verbosity > 0:
            message = f"iteration {iteration}: {reassignments} reassignments"
            if filtered:
                message += (
                    f", {_read_counts(passed_counts)} samples passed the yinyang"
                    " filter"
                )
            print(message)

        if reassignments <= reassignments_threshold:
            break

        if iteration >= _MAX_ITERATIONS:
            warnings.warn(
                f"Stopped after {iteration} iterations with {reassignments}"
                f" reassignments, above the threshold of {reassignments_threshold}.",
                RuntimeWarning,
            )
            break

        if yinyang:
            pool.for_each_device(
                lambda devi, device: runtime.memcpy_d2d_async(
                    drifts_yy[devi], 0, centroids[devi], 0, centroids_size
                )
            )

        _update_centroids(ctx, metric, samples, centroids, counts, assignments)

        if yinyang:
            _update_bounds(
                ctx,
                metric,
                centroids,
                assignments,
                assignments_yy,
                drifts_yy,
                bounds_yy,
            )

    # Every device computed its own partition of the assignments, replicate them.
    for devi, (start, stop) in enumerate(ctx.partitions):
        if start != stop:
            pool.broadcast_from(devi, assignments, start, stop - start)

    return iteration


def _update_bounds(ctx, metric, centroids, assignments, group_labels, drifts, bounds):
    """Loosen the bounds by how much the centroids moved in the last update."""
    pool = ctx.pool
    xp = pool.runtime.xp
    n_features, n_clusters, n_groups = (
        ctx.features_size,
        ctx.clusters_size,
        ctx.group_count,
    )
    centroids_size = n_clusters * n_features

    def _drift(devi, device):
        old_centroids = xp.reshape(
            drifts[devi][:centroids_size], (n_clusters, n_features)
        )
        new_centroids = xp.reshape(centroids[devi], (n_clusters, n_features))
        centroid_drifts = xp.astype(
            _vector_distances(xp, old_centroids, new_centroids, metric), xp.float32
        )
        drifts[devi][centroids_size:] = centroid_drifts

        # The previous centroids are not needed anymore, their room is reused for the
        # drift of the groups.
        group_masks = _group_masks(xp, group_labels[devi], n_groups)
        for group, mask in enumerate(group_masks):
            drifts[devi][group : group + 1] = xp.reshape(
                xp.max(xp.where(mask, centroid_drifts, 0)), (1,)
            )

        start, stop = ctx.partitions[devi]
        if start == stop:
            return
        upper, lower = _bounds_views(xp, ctx, bounds[devi], stop - start)
        labels = assignments[devi][start:stop]
        upper[...] = upper + xp.take(centroid_drifts, labels)
        lower[...] = lower - drifts[devi][:n_groups][:, None]

    pool.for_each_device(_drift)
