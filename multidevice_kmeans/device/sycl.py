import dpctl
import dpctl.memory
import dpctl.tensor as dpt
import dpctl.utils
import numpy as np

from multidevice_kmeans.exceptions import (
    DeviceSelectionError,
    MemoryAllocationError,
    MemoryCopyError,
    PeerAccessAlreadyEnabled,
    PeerAccessError,
)

from .runtime import Runtime

_COPY_ERRORS = (dpctl.utils.ExecutionPlacementError, RuntimeError, ValueError)


class SyclRuntime(Runtime):
    """Runtime backed by dpctl.

    Each device gets its own in-order `dpctl.SyclQueue`, that plays the role of the
    device command stream, and buffers are `dpctl.tensor.usm_ndarray` with "device"
    USM allocations. Copies between arrays bound to different queues are left to
    dpctl, that stages them through the host when the two devices can't share memory.

    Parameters
    ----------
    device_type : str
        The dpctl device filter used to enumerate the devices, e.g "gpu", "cpu" or
        "all".
    """

    name = "sycl"
    xp = dpt

    def __init__(self, device_type="gpu"):
        self.device_type = device_type
        self._devices = dpctl.get_devices(device_type=device_type)
        self._queues = dict()
        self._current = None
        self._enabled_peers = set()

    def device_count(self):
        return len(self._devices)

    def set_device(self, device):
        if not 0 <= device < len(self._devices):
            raise DeviceSelectionError(
                f"Device #{device} does not exist, only {len(self._devices)} devices"
                f" of type {self.device_type} are installed."
            )
        if device not in self._queues:
            try:
                self._queues[device] = dpctl.SyclQueue(
                    self._devices[device], property="in_order"
                )
            except dpctl.SyclQueueCreationError as exc:
                raise DeviceSelectionError(
                    f"Failed to create a queue for device #{device}"
                    f" {self._devices[device].name}."
                ) from exc
        self._current = device

    def get_device(self):
        return self._current

    def supports_fp16(self, device):
        return self._devices[device].has_aspect_fp16

    def can_access_peer(self, device, peer):
        # NB: peer access queries are only exposed by recent versions of dpctl.
        can_access_peer = getattr(self._devices[device], "can_access_peer", None)
        if can_access_peer is None:
            return False
        return bool(can_access_peer(self._devices[peer]))

    def enable_peer_access(self, peer):
        device = self._current
        if (device, peer) in self._enabled_peers:
            raise PeerAccessAlreadyEnabled(
                f"Peer access from device #{device} to device #{peer} is already"
                " enabled."
            )
        enable_peer_access = getattr(self._devices[device], "enable_peer_access", None)
        if enable_peer_access is None:
            raise PeerAccessError(
                f"This version of dpctl ({dpctl.__version__}) can't enable peer access."
            )
        try:
            enable_peer_access(self._devices[peer])
        except (ValueError, RuntimeError) as exc:
            raise PeerAccessError(str(exc)) from exc
        self._enabled_peers.add((device, peer))

    def malloc(self, size, dtype):
        try:
            return dpt.empty(
                size, dtype=dtype, usm_type="device", sycl_queue=self._queue()
            )
        except dpctl.memory.USMAllocationError as exc:
            raise MemoryAllocationError(
                f"Failed to allocate {size} elements of type {np.dtype(dtype).name} on"
                f" device #{self._current}."
            ) from exc

    def free(self, array):
        # USM allocations are released by dpctl when the last reference to the array
        # is dropped.
        pass

    def device_array(self, device, data):
        self.set_device(device)
        return dpt.asarray(np.reshape(data, -1), sycl_queue=self._queue())

    def memcpy_h2d_async(self, dst, dst_offset, src):
        src = np.reshape(src, -1)
        try:
            dst[dst_offset : dst_offset + src.shape[0]] = dpt.asarray(
                src, sycl_queue=dst.sycl_queue
            )
        except _COPY_ERRORS as exc:
            raise MemoryCopyError(str(exc)) from exc

    def memcpy_d2h(self, dst, src, src_offset):
        dst = dst.reshape(-1)
        try:
            dst[:] = dpt.asnumpy(src[src_offset : src_offset + dst.shape[0]])
        except _COPY_ERRORS as exc:
            raise MemoryCopyError(str(exc)) from exc

    def memcpy_d2d_async(self, dst, dst_offset, src, src_offset, size):
        try:
            dst[dst_offset : dst_offset + size] = src[src_offset : src_offset + size]
        except _COPY_ERRORS as exc:
            raise MemoryCopyError(str(exc)) from exc

    def memcpy_peer_async(
        self, dst, dst_offset, dst_device, src, src_offset, src_device, size
    ):
        try:
            dst[dst_offset : dst_offset + size] = dpt.asarray(
                src[src_offset : src_offset + size], sycl_queue=dst.sycl_queue
            )
        except _COPY_ERRORS as exc:
            raise MemoryCopyError(str(exc)) from exc

    def synchronize(self):
        self._queue().wait()

    def mem_info(self):
        device = self._devices[self._current]
        free_memory = dpctl.utils.intel_device_info(device).get("free_memory")
        return free_memory, device.global_mem_size

    def reinterpret(self, array, dtype, size):
        # The offset of the array into its allocation is counted in elements.
        offset = array.__sycl_usm_array_interface__["offset"] * array.dtype.itemsize
        return dpt.usm_ndarray(
            (size,),
            dtype=dtype,
            buffer=array.usm_data,
            offset=offset // np.dtype(dtype).itemsize,
        )

    def _queue(self):
        if self._current is None:
            raise DeviceSelectionError("No device has been selected.")
        return self._queues[self._current]
