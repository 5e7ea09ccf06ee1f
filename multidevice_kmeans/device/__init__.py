from .buffers import BorrowedHandle, DistributedBuffer, OwnedHandle, populate
from .pool import DevicePool, setup_devices
from .runtime import Runtime, get_runtime

__all__ = [
    "BorrowedHandle",
    "DevicePool",
    "DistributedBuffer",
    "OwnedHandle",
    "Runtime",
    "get_runtime",
    "populate",
    "setup_devices",
]
