import enum


class Result(enum.IntEnum):
    """Status codes returned by `multidevice_kmeans.kmeans.drivers.kmeans_multidevice`.

    The numeric values follow the order of the historical C interface so that they
    can be forwarded as-is to foreign callers."""

    Success = 0
    InvalidArguments = 1
    NoSuchDevice = 2
    MemoryAllocationError = 3
    RuntimeError = 4
    MemoryCopyError = 5


class KMeansError(Exception):
    """Base class of the errors that abort a run. `result` is the status code the
    low-level entry point returns when the error reaches it."""

    result = Result.RuntimeError


class InvalidArgumentsError(KMeansError, ValueError):
    result = Result.InvalidArguments


class NoSuchDeviceError(KMeansError):
    result = Result.NoSuchDevice


class MemoryAllocationError(KMeansError, MemoryError):
    result = Result.MemoryAllocationError


class MemoryCopyError(KMeansError):
    result = Result.MemoryCopyError


class KMeansRuntimeError(KMeansError, RuntimeError):
    result = Result.RuntimeError


# The following are raised by the runtimes and are absorbed by the device pool: they
# never abort a run by themselves.


class DeviceSelectionError(Exception):
    pass


class PeerAccessError(Exception):
    pass


class PeerAccessAlreadyEnabled(PeerAccessError):
    pass
