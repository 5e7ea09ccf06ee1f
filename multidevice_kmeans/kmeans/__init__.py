from .drivers import kmeans, kmeans_multidevice
from .engine import KMeans
from .init import InitMethod
from .kernels import DistanceMetric

__all__ = ["DistanceMetric", "InitMethod", "KMeans", "kmeans", "kmeans_multidevice"]
