import dpctl.tensor as dpt
import numpy as np
import pytest
from numpy.testing import assert_array_equal
from sklearn.base import clone
from sklearn.datasets import make_blobs
from sklearn.exceptions import NotFittedError
from sklearn.metrics import adjusted_rand_score
from sklearn.utils._testing import assert_allclose

import multidevice_kmeans
from multidevice_kmeans.device.host import HostRuntime
from multidevice_kmeans.device.runtime import _RuntimeConfig
from multidevice_kmeans.exceptions import InvalidArgumentsError
from multidevice_kmeans.kmeans import KMeans as ExportedKMeans
from multidevice_kmeans.kmeans.engine import KMeans
from multidevice_kmeans.testing import override_attr_context
from multidevice_kmeans.testing.config import _SYCL_DEVICE_COUNT


def _blobs(random_state=0):
    X, y = make_blobs(
        n_samples=600,
        centers=3,
        n_features=5,
        cluster_std=0.5,
        random_state=random_state,
    )
    return X, y


@pytest.mark.parametrize("yinyang_t", [0, 0.5])
def test_kmeans_fit_predict(yinyang_t):
    X, y = _blobs()

    estimator = KMeans(
        n_clusters=3, yinyang_t=yinyang_t, random_state=0, runtime=HostRuntime()
    )
    labels = estimator.fit_predict(X)

    assert estimator.cluster_centers_.shape == (3, 5)
    assert estimator.n_features_in_ == 5
    assert_array_equal(labels, estimator.labels_)
    assert adjusted_rand_score(y, labels) == pytest.approx(1.0)
    assert_array_equal(estimator.predict(X), estimator.labels_)


def test_kmeans_random_state():
    X, _ = _blobs()
    estimator = KMeans(n_clusters=3, init="random", random_state=1)

    # The runtime is read from the global configuration.
    with override_attr_context(_RuntimeConfig, _CONFIG=dict(runtime="host")):
        centers_1 = estimator.fit(X).cluster_centers_
        centers_2 = clone(estimator).fit(X).cluster_centers_

    assert_array_equal(centers_1, centers_2)


def test_kmeans_init_array():
    X, _ = _blobs()
    init = X[[0, 1, 2]]

    estimator = KMeans(n_clusters=3, init=init, tol=1.0, runtime=HostRuntime())
    estimator.fit(X)

    assert_allclose(estimator.cluster_centers_, init)


def test_kmeans_cosine():
    X, _ = _blobs()
    X /= np.linalg.norm(X, axis=1)[:, None]

    estimator = KMeans(
        n_clusters=3, metric="Cosine", random_state=0, runtime=HostRuntime()
    ).fit(X)

    assert_allclose(np.linalg.norm(estimator.cluster_centers_, axis=1), 1, rtol=1e-5)
    assert_array_equal(estimator.predict(X), estimator.labels_)


def test_kmeans_multiple_devices():
    X, y = _blobs()

    estimator = KMeans(
        n_clusters=3, random_state=0, device=0b101, runtime=HostRuntime(n_devices=3)
    ).fit(X)

    assert adjusted_rand_score(y, estimator.labels_) == pytest.approx(1.0)


def test_kmeans_errors():
    X, _ = _blobs()

    with pytest.raises(NotFittedError):
        KMeans(runtime=HostRuntime()).predict(X)

    with pytest.raises(InvalidArgumentsError):
        KMeans(n_clusters=1, runtime=HostRuntime()).fit(X)

    estimator = KMeans(n_clusters=3, runtime=HostRuntime()).fit(X)
    with pytest.raises(ValueError, match="features"):
        estimator.predict(X[:, :4])


@pytest.mark.skipif(_SYCL_DEVICE_COUNT == 0, reason="No sycl gpu device is available.")
def test_kmeans_device_input():
    X, y = _blobs()

    estimator = KMeans(n_clusters=3, random_state=0, runtime=HostRuntime())
    estimator.fit(dpt.asarray(X))

    assert adjusted_rand_score(y, estimator.labels_) == pytest.approx(1.0)
    assert_array_equal(estimator.predict(dpt.asarray(X)), estimator.labels_)


def test_estimator_is_exported():
    assert multidevice_kmeans.KMeans is KMeans
    assert ExportedKMeans is KMeans
    assert "KMeans" in multidevice_kmeans.__all__
