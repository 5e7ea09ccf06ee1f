from .exceptions import Result
from .kmeans import DistanceMetric, InitMethod, KMeans, kmeans, kmeans_multidevice

__version__ = "0.1.0"

__all__ = [
    "DistanceMetric",
    "InitMethod",
    "KMeans",
    "Result",
    "kmeans",
    "kmeans_multidevice",
]
