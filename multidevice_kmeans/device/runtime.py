import os
from typing import Any, Dict

import numpy as np


class Runtime:
    """Accelerator primitives the orchestration layer is written against.

    Devices are identified by integers. Like with the CUDA runtime, most operations
    are issued against the *current* device, that is selected with `set_device`
    right before use. Copies suffixed with `_async` are enqueued on the command
    stream of the current device and only complete at the next `synchronize` of
    that device, or at any later blocking operation on it. Operations enqueued on the
    same device run in issue order.

    Buffers are flat arrays of the namespace `xp` (numpy or dpctl.tensor), and all
    offsets and sizes are expressed in elements.

    Failures to copy raise `MemoryCopyError`, failures to allocate raise
    `MemoryAllocationError`, both are fatal for a run. `set_device` raises
    `DeviceSelectionError`, and `enable_peer_access` raises `PeerAccessError` or
    `PeerAccessAlreadyEnabled`: those are absorbed as warnings by the device pool.
    """

    name = None
    xp = None

    def device_count(self):
        raise NotImplementedError

    def set_device(self, device):
        raise NotImplementedError

    def get_device(self):
        raise NotImplementedError

    def supports_fp16(self, device):
        raise NotImplementedError

    def can_access_peer(self, device, peer):
        raise NotImplementedError

    def enable_peer_access(self, peer):
        raise NotImplementedError

    def malloc(self, size, dtype):
        raise NotImplementedError

    def free(self, array):
        raise NotImplementedError

    def memcpy_h2d_async(self, dst, dst_offset, src):
        raise NotImplementedError

    def memcpy_d2h(self, dst, src, src_offset):
        raise NotImplementedError

    def memcpy_d2d_async(self, dst, dst_offset, src, src_offset, size):
        raise NotImplementedError

    def memcpy_peer_async(
        self, dst, dst_offset, dst_device, src, src_offset, src_device, size
    ):
        raise NotImplementedError

    def synchronize(self):
        raise NotImplementedError

    def mem_info(self):
        raise NotImplementedError

    def reinterpret(self, array, dtype, size):
        raise NotImplementedError

    def device_array(self, device, data):
        raise NotImplementedError

    def read_scalar(self, array, offset):
        """Blocking read of one element of a device buffer."""
        host = np.empty(1, dtype=array.dtype)
        self.memcpy_d2h(host, array[offset : offset + 1], 0)
        return host[0]


class _RuntimeConfig:
    # This class attribute can alter globally which runtime `get_runtime` returns. It
    # is only used for testing purposes, using
    # `multidevice_kmeans.testing.override_attr_context`.
    _CONFIG: Dict[str, Any] = dict()


_RUNTIME_NAMES = {"sycl", "host"}


def get_runtime(name=None):
    """Returns a new instance of the runtime named `name`.

    If `name` is None, it is read from the global test configuration, then from the
    environment variable MULTIDEVICE_KMEANS_RUNTIME, and defaults to "sycl"."""
    if name is None:
        name = _RuntimeConfig._CONFIG.get("runtime")

    if name is None:
        name = os.getenv("MULTIDEVICE_KMEANS_RUNTIME", "sycl")
        if name not in _RUNTIME_NAMES:
            raise ValueError(
                "If the environment variable MULTIDEVICE_KMEANS_RUNTIME is set, it is"
                f" expected to take values in {sorted(_RUNTIME_NAMES)}, but got"
                f" {name} instead."
            )

    if isinstance(name, Runtime):
        return name

    if name == "sycl":
        from .sycl import SyclRuntime

        device_type = os.getenv("MULTIDEVICE_KMEANS_DEVICE_TYPE", "gpu")
        return SyclRuntime(device_type=device_type)

    if name == "host":
        from .host import HostRuntime

        n_devices = os.getenv("MULTIDEVICE_KMEANS_HOST_DEVICES", "1")
        if not n_devices.isdigit() or int(n_devices) < 1:
            raise ValueError(
                "If the environment variable MULTIDEVICE_KMEANS_HOST_DEVICES is set, it"
                " is expected to be a positive integer, but got"
                f" {n_devices} instead."
            )
        return HostRuntime(n_devices=int(n_devices))

    raise ValueError(f"Expected a runtime in {sorted(_RUNTIME_NAMES)}, got {name}")
