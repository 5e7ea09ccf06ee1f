import contextlib

import numpy as np
from sklearn.utils import check_array, check_random_state

from multidevice_kmeans.common._utils import max_distribute_length
from multidevice_kmeans.common.random import Xoroshiro128pp
from multidevice_kmeans.device import (
    DevicePool,
    DistributedBuffer,
    get_runtime,
    populate,
    setup_devices,
)
from multidevice_kmeans.exceptions import (
    InvalidArgumentsError,
    KMeansError,
    NoSuchDeviceError,
    Result,
)

from . import kernels
from .init import InitMethod, check_init_method, init_centroids
from .kernels import DistanceMetric
from .validation import check_args


def kmeans_multidevice(
    init,
    tolerance,
    yinyang_t,
    metric,
    samples_size,
    features_size,
    clusters_size,
    seed,
    device,
    device_ptrs,
    fp16x2,
    verbosity,
    samples,
    centroids,
    assignments,
    runtime=None,
):
    """Run k-means on every device of the mask `device` and return a `Result`.

    Parameters
    ----------
    init : InitMethod or str
        "import", "random" or "k-means++".

    tolerance : float
        The run stops when at most `tolerance * samples_size` samples change of
        cluster in one iteration.

    yinyang_t : float
        The number of yinyang groups is `int(yinyang_t * clusters_size)`, 0 disables
        the yinyang filter.

    metric : DistanceMetric

    samples_size, features_size, clusters_size : int

    seed : int
        Seed of the random state used by the "random" and "k-means++" init.

    device : int
        Bitmask of the devices to compute on, 0 means all the installed devices.

    device_ptrs : int
        If -1, `samples`, `centroids` and `assignments` are flat host arrays.
        Otherwise they are flat arrays that live on the device `device_ptrs` of the
        runtime, and the results are written there without a round trip to the host.

    fp16x2 : bool
        Compute the distances in half precision.

    verbosity : int

    samples : array of shape (samples_size * features_size,) and type float32

    centroids : array of shape (clusters_size * features_size,) and type float32
        Read with the "import" init, and receives the final centroids.

    assignments : array of shape (samples_size,) and type uint32
        Receives the cluster of each sample.

    runtime : Runtime, str or None
        See `multidevice_kmeans.device.get_runtime`.

    Errors are not raised but converted to the matching `Result` code.
    """
    try:
        _kmeans_multidevice(
            init,
            tolerance,
            yinyang_t,
            metric,
            samples_size,
            features_size,
            clusters_size,
            seed,
            device,
            device_ptrs,
            fp16x2,
            verbosity,
            samples,
            centroids,
            assignments,
            runtime,
        )
    except KMeansError as exc:
        if verbosity > 0:
            print(f"{type(exc).__name__}: {exc}")
        return exc.result
    return Result.Success


def _kmeans_multidevice(
    init,
    tolerance,
    yinyang_t,
    metric,
    samples_size,
    features_size,
    clusters_size,
    seed,
    device,
    device_ptrs,
    fp16x2,
    verbosity,
    samples,
    centroids,
    assignments,
    runtime,
):
    runtime = get_runtime(runtime)
    init = check_init_method(init)
    metric = _check_metric(metric)

    if verbosity > 1:
        print(
            f"arguments: init={init.name} tolerance={tolerance:.3f}"
            f" yinyang_t={yinyang_t:.2f} metric={metric.name}"
            f" samples_size={samples_size} features_size={features_size}"
            f" clusters_size={clusters_size} seed={seed} device={device}"
            f" device_ptrs={device_ptrs} fp16x2={fp16x2} verbosity={verbosity}"
        )

    check_args(
        runtime,
        tolerance,
        yinyang_t,
        samples_size,
        features_size,
        clusters_size,
        device,
        device_ptrs,
        fp16x2,
        samples,
        centroids,
        assignments,
    )

    devices = setup_devices(runtime, device, device_ptrs, verbosity)
    if not devices:
        raise NoSuchDeviceError(
            f"None of the devices of the mask {device:#b} is usable."
        )
    pool = DevicePool(runtime, devices, device_ptrs)

    reassignments_threshold = int(tolerance * samples_size)
    if verbosity > 0:
        print(f"reassignments threshold: {reassignments_threshold}")

    centroids_size = clusters_size * features_size
    group_count = int(yinyang_t * clusters_size)

    with contextlib.ExitStack() as stack:

        def _allocate(size, dtype, name, borrowed=None):
            buffer = DistributedBuffer.allocate(pool, size, dtype, name, borrowed)
            return stack.enter_context(buffer)

        borrow = device_ptrs >= 0
        samples_buffer = _allocate(
            samples_size * features_size,
            np.float32,
            "samples",
            samples if borrow else None,
        )
        centroids_buffer = _allocate(
            centroids_size, np.float32, "centroids", centroids if borrow else None
        )
        assignments_buffer = _allocate(
            samples_size, np.uint32, "assignments", assignments if borrow else None
        )
        assignments_prev = _allocate(samples_size, np.uint32, "assignments_prev")
        counts = _allocate(clusters_size, np.uint32, "ccounts")

        populate(samples_buffer, samples, samples_size * features_size)

        yinyang_buffers = dict()
        if group_count >= 1:
            yinyang_buffers = _allocate_yinyang(
                pool,
                _allocate,
                samples_size,
                features_size,
                clusters_size,
                group_count,
                verbosity,
            )
        elif verbosity > 0:
            print("too few clusters for this yinyang_t => Lloyd")

        if verbosity > 1:
            pool.print_memory_stats()

        ctx = stack.enter_context(
            kernels.setup(
                pool,
                samples_size,
                features_size,
                clusters_size,
                group_count,
                verbosity,
            )
        )

        # The k-means++ buffers are only used before the first assignment, they
        # reuse the memory of the assignments.
        dists = assignments_buffer.alias(np.float32, samples_size, "dists")
        dev_sums = assignments_prev.alias(np.float32, 1, "dev_sums")

        init_centroids(
            ctx,
            init,
            Xoroshiro128pp(seed),
            metric,
            fp16x2,
            centroids,
            samples_buffer,
            centroids_buffer,
            dists,
            dev_sums,
        )

        iterations = kernels.grouped_refine(
            ctx,
            tolerance,
            metric,
            fp16x2,
            samples_buffer,
            centroids_buffer,
            counts,
            assignments_prev,
            assignments_buffer,
            **yinyang_buffers,
        )
        if verbosity > 0:
            print(f"converged after {iterations} iterations")

        _collect_results(
            pool,
            centroids_buffer,
            assignments_buffer,
            centroids,
            assignments,
            centroids_size,
            samples_size,
        )


def _allocate_yinyang(
    pool,
    allocate,
    samples_size,
    features_size,
    clusters_size,
    group_count,
    verbosity,
):
    max_length = max_distribute_length(samples_size, len(pool))
    if verbosity > 1:
        print(f"max sample length: {max_length}, yinyang groups: {group_count}")

    bounds_size = max_length * (group_count + 1)
    drifts_size = clusters_size * features_size + clusters_size
    passed_size = max(max_length, clusters_size + group_count)

    assignments_yy = allocate(clusters_size, np.uint32, "assignments_yy")
    bounds_yy = allocate(bounds_size, np.float32, "bounds_yy")
    drifts_yy = allocate(drifts_size, np.float32, "drifts_yy")
    passed_yy = allocate(passed_size, np.uint32, "passed_yy")

    # The group centroids are only used while the groups are formed, before the
    # first filtered assignment writes `passed_yy`.
    centroids_yy_size = group_count * features_size
    if centroids_yy_size <= passed_size:
        if verbosity > 1:
            print("reusing passed_yy for centroids_yy")
        centroids_yy = passed_yy.alias(np.float32, centroids_yy_size, "centroids_yy")
    else:
        centroids_yy = allocate(centroids_yy_size, np.float32, "centroids_yy")

    return dict(
        assignments_yy=assignments_yy,
        centroids_yy=centroids_yy,
        bounds_yy=bounds_yy,
        drifts_yy=drifts_yy,
        passed_yy=passed_yy,
    )


def _collect_results(
    pool,
    centroids_buffer,
    assignments_buffer,
    centroids,
    assignments,
    centroids_size,
    samples_size,
):
    """Write the centroids and the assignments of the canonical device in the arrays
    of the caller."""
    runtime = pool.runtime
    canonical_devi = pool.canonical_devi
    canonical_device = pool.canonical_device

    if pool.origin_devi < 0:
        if pool.device_ptrs < 0:
            runtime.set_device(canonical_device)
            runtime.memcpy_d2h(
                centroids[:centroids_size], centroids_buffer[canonical_devi], 0
            )
            runtime.memcpy_d2h(
                assignments[:samples_size], assignments_buffer[canonical_devi], 0
            )
        else:
            runtime.set_device(pool.device_ptrs)
            runtime.memcpy_peer_async(
                centroids,
                0,
                pool.device_ptrs,
                centroids_buffer[canonical_devi],
                0,
                canonical_device,
                centroids_size,
            )
            runtime.memcpy_peer_async(
                assignments,
                0,
                pool.device_ptrs,
                assignments_buffer[canonical_devi],
                0,
                canonical_device,
                samples_size,
            )
            runtime.synchronize()

    # Otherwise the replicas of the caller's device are the caller's arrays.

    pool.synchronize()


def _check_metric(metric):
    if isinstance(metric, DistanceMetric):
        return metric
    try:
        return DistanceMetric[metric]
    except KeyError:
        raise InvalidArgumentsError(
            f"Expected metric in {[m.name for m in DistanceMetric]}, got {metric}."
        ) from None


def kmeans(
    samples,
    clusters,
    tolerance=0.01,
    init="k-means++",
    yinyang_t=0.1,
    metric="L2",
    seed=None,
    device=0,
    device_ptrs=-1,
    fp16x2=False,
    verbosity=0,
    runtime=None,
):
    """Cluster `samples` in `clusters` clusters on one or several devices.

    Parameters
    ----------
    samples : array-like of shape (n_samples, n_features)
        Host data, or, if `device_ptrs` is not -1, a flat array that lives on the
        device `device_ptrs` (see `Runtime.device_array`).

    clusters : int

    tolerance : float, default=0.01

    init : {"k-means++", "random", "import"}, InitMethod or array-like of shape \
            (clusters, n_features), default="k-means++"
        An array means that the initial centroids are imported.

    yinyang_t : float, default=0.1

    metric : {"L2", "Cosine"} or DistanceMetric, default="L2"

    seed : int or None, default=None
        None draws a seed from numpy's global random state.

    device : int, default=0
        Bitmask of the devices to compute on, 0 means all the installed devices.

    device_ptrs : int, default=-1

    fp16x2 : bool, default=False

    verbosity : int, default=0

    runtime : Runtime, str or None, default=None

    Returns
    -------
    centroids : array of shape (clusters, n_features) and type float32
        Lives on the device `device_ptrs` if it is not -1, flat in this case.

    assignments : array of shape (n_samples,) and type uint32
        Lives on the device `device_ptrs` if it is not -1.

    Raises a `multidevice_kmeans.exceptions.KMeansError` if the run fails.
    """
    runtime = get_runtime(runtime)

    if seed is None:
        seed = int(check_random_state(None).randint(np.iinfo(np.int32).max))

    if device_ptrs < 0:
        samples = check_array(samples, dtype=np.float32, order="C")
    elif len(samples.shape) != 2:
        raise InvalidArgumentsError(
            f"Expected samples of shape (n_samples, n_features), got {samples.shape}."
        )
    samples_size, features_size = samples.shape
    xp = runtime.xp if device_ptrs >= 0 else np

    if isinstance(init, (str, InitMethod)):
        init = check_init_method(init)
        host_centroids = None
        if init == InitMethod.Import:
            raise InvalidArgumentsError(
                "The initial centroids must be passed as init to be imported."
            )
    else:
        host_centroids = check_array(init, dtype=np.float32, order="C")
        init = InitMethod.Import
        if host_centroids.shape != (clusters, features_size):
            raise InvalidArgumentsError(
                f"Expected initial centroids of shape {(clusters, features_size)}, got"
                f" {host_centroids.shape}."
            )

    if host_centroids is None:
        host_centroids = np.zeros(clusters * features_size, dtype=np.float32)

    if device_ptrs < 0:
        centroids = np.array(np.reshape(host_centroids, -1), copy=True)
        assignments = np.empty(samples_size, dtype=np.uint32)
    else:
        centroids = runtime.device_array(device_ptrs, host_centroids)
        assignments = runtime.device_array(
            device_ptrs, np.zeros(samples_size, dtype=np.uint32)
        )

    _kmeans_multidevice(
        init,
        tolerance,
        yinyang_t,
        metric,
        samples_size,
        features_size,
        clusters,
        seed,
        device,
        device_ptrs,
        fp16x2,
        verbosity,
        xp.reshape(samples, (-1,)),
        centroids,
        assignments,
        runtime,
    )

    return xp.reshape(centroids, (clusters, features_size)), assignments
