import numpy as np
import pytest
from numpy.testing import assert_array_equal
from sklearn.datasets import make_blobs
from sklearn.utils._testing import assert_allclose

from multidevice_kmeans.device import (
    DevicePool,
    DistributedBuffer,
    populate,
    setup_devices,
)
from multidevice_kmeans.device.host import HostRuntime
from multidevice_kmeans.kmeans import kernels
from multidevice_kmeans.kmeans.drivers import _allocate_yinyang
from multidevice_kmeans.kmeans.kernels import DistanceMetric


def _lloyd_reference(X, centroids, tolerance):
    """Plain numpy Lloyd iterations with the same stopping rule as
    `kernels.grouped_refine`."""
    centroids = centroids.copy()
    labels = None
    threshold = int(tolerance * X.shape[0])
    while True:
        sq_distances = ((X[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
        new_labels = sq_distances.argmin(axis=1)
        if labels is None:
            reassignments = X.shape[0]
        else:
            reassignments = int((new_labels != labels).sum())
        labels = new_labels
        if reassignments <= threshold:
            return centroids, labels
        for cluster in range(centroids.shape[0]):
            if (labels == cluster).any():
                centroids[cluster] = X[labels == cluster].mean(axis=0)


class _Refinement:
    """Device buffers for `kernels.grouped_refine`."""

    def __init__(self, X, centroids, n_devices=1, yinyang_t=0.0, runtime=None):
        if runtime is None:
            runtime = HostRuntime(n_devices=n_devices)
        self.runtime = runtime
        self.pool = DevicePool(runtime, setup_devices(runtime, 0))
        n_samples, n_features = X.shape
        n_clusters = centroids.shape[0]
        self.shape = n_samples, n_features, n_clusters
        group_count = int(yinyang_t * n_clusters)

        def _allocate(size, dtype, name):
            return DistributedBuffer.allocate(self.pool, size, dtype, name)

        self.samples = _allocate(n_samples * n_features, np.float32, "samples")
        populate(self.samples, np.ravel(X), n_samples * n_features)
        self.centroids = _allocate(n_clusters * n_features, np.float32, "centroids")
        populate(self.centroids, np.ravel(centroids), n_clusters * n_features)
        self.counts = _allocate(n_clusters, np.uint32, "counts")
        self.assignments_prev = _allocate(n_samples, np.uint32, "assignments_prev")
        self.assignments = _allocate(n_samples, np.uint32, "assignments")
        self.yinyang_buffers = dict()
        if group_count >= 1:
            self.yinyang_buffers = _allocate_yinyang(
                self.pool, _allocate, n_samples, n_features, n_clusters, group_count, 0
            )
        self.ctx = kernels.setup(
            self.pool, n_samples, n_features, n_clusters, group_count, 0
        )

    def refine(self, tolerance=0.0, metric=DistanceMetric.L2):
        return kernels.grouped_refine(
            self.ctx,
            tolerance,
            metric,
            False,
            self.samples,
            self.centroids,
            self.counts,
            self.assignments_prev,
            self.assignments,
            **self.yinyang_buffers,
        )

    def results(self, devi=0):
        n_samples, n_features, n_clusters = self.shape
        return (
            np.reshape(self.centroids[devi], (n_clusters, n_features)).copy(),
            self.assignments[devi].astype(np.int64),
            self.counts[devi].copy(),
        )


def _blobs(n_samples=600, n_features=4, centers=6, random_state=0):
    X, _ = make_blobs(
        n_samples=n_samples,
        n_features=n_features,
        centers=centers,
        cluster_std=1.0,
        random_state=random_state,
    )
    return X.astype(np.float32)


def test_distance_sampling_step():
    X = _blobs(n_samples=100)
    runtime = HostRuntime(n_devices=3)
    pool = DevicePool(runtime, setup_devices(runtime, 0))
    samples = DistributedBuffer.allocate(pool, X.size, np.float32, "samples")
    populate(samples, np.ravel(X), X.size)
    centroids = DistributedBuffer.allocate(pool, 3 * 4, np.float32, "centroids")
    populate(centroids, np.ravel(X[[3, 50, 77]]), 3 * 4)
    dists = DistributedBuffer.allocate(pool, 100, np.float32, "dists")
    dev_sums = DistributedBuffer.allocate(pool, 1, np.float32, "dev_sums")
    ctx = kernels.setup(pool, 100, 4, 3, 0, 0)
    host_dists = np.empty(100, dtype=np.float32)

    for centroids_count in (1, 2, 3):
        dist_sum = kernels.distance_sampling_step(
            ctx,
            centroids_count,
            DistanceMetric.L2,
            False,
            samples,
            centroids,
            dists,
            dev_sums,
            host_dists,
        )

        chosen = X[[3, 50, 77][:centroids_count]]
        expected = ((X[:, None, :] - chosen[None, :, :]) ** 2).sum(axis=2).min(axis=1)
        assert_allclose(host_dists, expected, rtol=1e-5, atol=1e-4)
        assert_allclose(dist_sum, expected.sum(), rtol=1e-5)

    assert host_dists[3] == 0
    assert host_dists[50] == 0
    assert host_dists[77] == 0


@pytest.mark.parametrize("n_devices", [1, 2, 3])
def test_grouped_refine_lloyd(n_devices):
    X = _blobs()
    init = X[:6].copy()
    expected_centroids, expected_labels = _lloyd_reference(X, init, tolerance=0.0)

    refinement = _Refinement(X, init, n_devices=n_devices)
    iterations = refinement.refine()

    assert iterations > 1
    for devi in range(n_devices):
        centroids, labels, counts = refinement.results(devi)
        assert_array_equal(labels, expected_labels)
        assert_allclose(centroids, expected_centroids, rtol=1e-5, atol=1e-5)
        assert_array_equal(counts.sum(), len(X))


@pytest.mark.parametrize("n_devices", [1, 2])
@pytest.mark.parametrize("yinyang_t", [0.2, 0.35, 0.5])
def test_grouped_refine_yinyang_same_as_lloyd(n_devices, yinyang_t):
    X = _blobs(n_samples=1000, centers=10, random_state=1)
    init = X[:10].copy()

    lloyd = _Refinement(X, init, n_devices=n_devices)
    lloyd_iterations = lloyd.refine()
    yinyang = _Refinement(X, init, n_devices=n_devices, yinyang_t=yinyang_t)
    yinyang_iterations = yinyang.refine()

    assert yinyang_iterations == lloyd_iterations
    lloyd_centroids, lloyd_labels, _ = lloyd.results()
    yinyang_centroids, yinyang_labels, _ = yinyang.results()
    assert_array_equal(yinyang_labels, lloyd_labels)
    assert_allclose(yinyang_centroids, lloyd_centroids, rtol=1e-5, atol=1e-5)


def test_grouped_refine_yinyang_filter_skips_samples(capsys):
    X = _blobs(n_samples=1000, centers=10, random_state=1)
    refinement = _Refinement(X, X[:10].copy(), yinyang_t=0.3)
    refinement.ctx.verbosity = 1

    refinement.refine()

    out = capsys.readouterr().out
    passed_counts = [
        int(line.split(", ")[1].split()[0])
        for line in out.splitlines()
        if "passed the yinyang filter" in line
    ]
    assert passed_counts
    assert max(passed_counts) > 0


def test_grouped_refine_tolerance():
    X = _blobs(n_samples=1000, centers=10, random_state=1)
    init = X[:10].copy()

    strict = _Refinement(X, init)
    strict_iterations = strict.refine(tolerance=0.0)
    loose = _Refinement(X, init)
    loose_iterations = loose.refine(tolerance=0.2)

    assert loose_iterations < strict_iterations
    # Every sample was reassigned at the first iteration.
    assert loose_iterations > 1


def test_grouped_refine_empty_cluster_keeps_its_centroid():
    X = _blobs(n_samples=200, centers=2)
    far_away = np.full((1, X.shape[1]), 1e4, dtype=np.float32)
    init = np.concatenate([X[:2], far_away])

    refinement = _Refinement(X, init, n_devices=2)
    refinement.refine()

    centroids, labels, counts = refinement.results()
    assert_array_equal(centroids[2], far_away[0])
    assert counts[2] == 0
    assert not (labels == 2).any()


def test_grouped_refine_cosine():
    X = _blobs(n_samples=400, n_features=3, centers=4)
    X /= np.linalg.norm(X, axis=1)[:, None]
    init = X[:4].copy()

    refinement = _Refinement(X, init, n_devices=2, yinyang_t=0.5)
    refinement.refine(metric=DistanceMetric.Cosine)

    centroids, labels, _ = refinement.results()
    assert_allclose(np.linalg.norm(centroids, axis=1), 1, rtol=1e-5)
    assert_array_equal(labels, (X @ centroids.T).argmax(axis=1))


def test_grouped_refine_iteration_cap(monkeypatch):
    X = _blobs(n_samples=600)
    refinement = _Refinement(X, X[:6].copy())
    monkeypatch.setattr(kernels, "_MAX_ITERATIONS", 2)

    with pytest.warns(RuntimeWarning, match="Stopped after 2 iterations"):
        iterations = refinement.refine()

    assert iterations == 2


def test_grouped_refine_replicates_assignments():
    X = _blobs(n_samples=301)
    refinement = _Refinement(X, X[:6].copy(), n_devices=3)

    refinement.refine()

    _, labels_0, _ = refinement.results(0)
    for devi in (1, 2):
        _, labels, _ = refinement.results(devi)
        assert_array_equal(labels, labels_0)
    assert ("peer", 2, 0) in refinement.runtime.operations


def test_grouped_refine_reads_counts_once_every_device_is_issued(monkeypatch):
    X = _blobs(n_samples=1000, centers=10, random_state=1)
    refinement = _Refinement(X, X[:10].copy(), n_devices=3, yinyang_t=0.3)
    refinement.ctx.verbosity = 1
    pool = refinement.pool

    issuing = []
    reads = []
    for_each_device = pool.for_each_device
    read_counts = kernels._read_counts

    def _for_each_device(func):
        issuing.append(func)
        try:
            for_each_device(func)
        finally:
            issuing.pop()

    def _read_counts(counts):
        counts = list(counts)
        reads.append((len(issuing), len(counts)))
        return read_counts(counts)

    monkeypatch.setattr(pool, "for_each_device", _for_each_device)
    monkeypatch.setattr(kernels, "_read_counts", _read_counts)

    iterations = refinement.refine()

    assert iterations > 1
    assert reads
    # Never from inside a per device loop, and with one count per device.
    assert all(depth == 0 for depth, _ in reads)
    assert all(n_counts == 3 for _, n_counts in reads)
