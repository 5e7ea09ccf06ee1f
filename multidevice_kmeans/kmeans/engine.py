import dpctl.tensor as dpt
import dpnp
import numpy as np
from sklearn.base import BaseEstimator, ClusterMixin
from sklearn.metrics import pairwise_distances_argmin
from sklearn.utils import check_array, check_random_state
from sklearn.utils.validation import check_is_fitted

from .drivers import kmeans
from .kernels import DistanceMetric

_SKLEARN_METRICS = {DistanceMetric.L2: "euclidean", DistanceMetric.Cosine: "cosine"}


def _to_host(X):
    # Arrays that live on a sycl device are first brought back to the host: the
    # estimator distributes the data itself.
    if isinstance(X, dpnp.ndarray):
        return dpnp.asnumpy(X)
    if isinstance(X, dpt.usm_ndarray):
        return dpt.asnumpy(X)
    return X


class KMeans(ClusterMixin, BaseEstimator):
    """K-means clustering distributed over several accelerators.

    The centroids are refined with Lloyd iterations accelerated by the yinyang
    filter, until at most `tol * n_samples` samples change of cluster in one
    iteration.

    Parameters
    ----------
    n_clusters : int, default=8

    init : {"k-means++", "random"} or array-like of shape (n_clusters, n_features), \
            default="k-means++"

    tol : float, default=0.01
        Fraction of the samples that can still change of cluster once the algorithm
        has converged.

    yinyang_t : float, default=0.1
        The number of yinyang groups is `int(yinyang_t * n_clusters)`. 0 runs the
        plain Lloyd algorithm.

    metric : {"L2", "Cosine"}, default="L2"
        With "Cosine", the samples are expected to be normalized.

    random_state : int, RandomState instance or None, default=None

    device : int, default=0
        Bitmask of the devices to compute on, 0 means all the installed devices.

    fp16x2 : bool, default=False
        Compute the distances in half precision.

    verbose : int, default=0

    runtime : {"sycl", "host"}, Runtime or None, default=None
        See `multidevice_kmeans.device.get_runtime`.

    Attributes
    ----------
    cluster_centers_ : ndarray of shape (n_clusters, n_features)

    labels_ : ndarray of shape (n_samples,)

    n_features_in_ : int
    """

    def __init__(
        self,
        n_clusters=8,
        *,
        init="k-means++",
        tol=0.01,
        yinyang_t=0.1,
        metric="L2",
        random_state=None,
        device=0,
        fp16x2=False,
        verbose=0,
        runtime=None,
    ):
        self.n_clusters = n_clusters
        self.init = init
        self.tol = tol
        self.yinyang_t = yinyang_t
        self.metric = metric
        self.random_state = random_state
        self.device = device
        self.fp16x2 = fp16x2
        self.verbose = verbose
        self.runtime = runtime

    def fit(self, X, y=None):
        X = check_array(_to_host(X), dtype=np.float32, order="C")
        init = self.init
        if not isinstance(init, str):
            init = check_array(_to_host(init), dtype=np.float32, order="C")

        random_state = check_random_state(self.random_state)
        seed = int(random_state.randint(np.iinfo(np.int32).max))

        centroids, assignments = kmeans(
            X,
            self.n_clusters,
            tolerance=self.tol,
            init=init,
            yinyang_t=self.yinyang_t,
            metric=self.metric,
            seed=seed,
            device=self.device,
            fp16x2=self.fp16x2,
            verbosity=self.verbose,
            runtime=self.runtime,
        )

        self.cluster_centers_ = centroids
        self.labels_ = assignments.astype(np.intp)
        self.n_features_in_ = X.shape[1]
        return self

    def predict(self, X):
        check_is_fitted(self)
        X = check_array(_to_host(X), dtype=np.float32, order="C")
        if X.shape[1] != self.n_features_in_:
            raise ValueError(
                f"X has {X.shape[1]} features, but KMeans is expecting"
                f" {self.n_features_in_} features as input."
            )
        metric = self.metric
        if isinstance(metric, str):
            metric = DistanceMetric[metric]
        return pairwise_distances_argmin(
            X, self.cluster_centers_, metric=_SKLEARN_METRICS[metric]
        )
