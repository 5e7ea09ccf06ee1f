import numpy as np

from multidevice_kmeans.exceptions import (
    DeviceSelectionError,
    MemoryAllocationError,
    MemoryCopyError,
    PeerAccessAlreadyEnabled,
    PeerAccessError,
)

from .runtime import Runtime


def _root(array):
    while isinstance(array.base, np.ndarray):
        array = array.base
    return array


class HostRuntime(Runtime):
    """Runtime that emulates `n_devices` accelerators in host memory.

    Buffers are numpy arrays and every operation executes as soon as it is issued,
    which is a valid schedule for in-order command streams. It is meant for machines
    without accelerators and for testing the orchestration layer: the capabilities of
    the emulated devices can be tuned and every operation is recorded in
    `operations`.

    Parameters
    ----------
    n_devices : int
        Number of emulated devices.

    peer_access : bool or set of (int, int)
        If True every pair of devices is capable of peer access, if False no pair is.
        A set lists the ordered `(device, peer)` pairs such that `device` can access
        the memory of `peer`.

    fp16 : bool or set of int
        Whether the devices support half precision, or the set of devices that do.

    unavailable : iterable of int
        Devices that exist but can't be selected.

    memory_size : int or None
        Number of bytes that can be allocated on each device. None means unbounded.

    The runtime enforces the contracts that real accelerators would enforce more
    loosely: copies into a buffer must be issued while its device is the current
    device, and a peer copy between two devices that did not enable peer access with
    one another fails.
    """

    name = "host"
    xp = np

    def __init__(
        self,
        n_devices=1,
        peer_access=True,
        fp16=True,
        unavailable=(),
        memory_size=None,
    ):
        self.n_devices = n_devices
        self.peer_access = peer_access
        self.fp16 = fp16
        self.unavailable = set(unavailable)
        self.memory_size = memory_size

        self.operations = []
        self.enabled_peers = set()

        self._current = None
        # id of the root array -> (device, root array, owned by this runtime)
        self._placements = dict()
        self._used_bytes = [0] * n_devices

    @property
    def live_allocations(self):
        return sum(owned for _, _, owned in self._placements.values())

    def device_count(self):
        return self.n_devices

    def set_device(self, device):
        if not (0 <= device < self.n_devices) or device in self.unavailable:
            raise DeviceSelectionError(f"Device #{device} can't be selected.")
        self._current = device

    def get_device(self):
        return self._current

    def supports_fp16(self, device):
        if isinstance(self.fp16, bool):
            return self.fp16
        return device in self.fp16

    def can_access_peer(self, device, peer):
        if isinstance(self.peer_access, bool):
            return self.peer_access
        return (device, peer) in self.peer_access

    def enable_peer_access(self, peer):
        device = self._check_current()
        if (device, peer) in self.enabled_peers:
            raise PeerAccessAlreadyEnabled(
                f"Peer access from device #{device} to device #{peer} is already"
                " enabled."
            )
        if not self.can_access_peer(device, peer):
            raise PeerAccessError(
                f"Device #{device} is not capable of accessing device #{peer}."
            )
        self.enabled_peers.add((device, peer))

    def device_of(self, array):
        placement = self._placements.get(id(_root(array)))
        if placement is None:
            return None
        return placement[0]

    def malloc(self, size, dtype):
        device = self._check_current()
        nbytes = size * np.dtype(dtype).itemsize
        if (
            self.memory_size is not None
            and self._used_bytes[device] + nbytes > self.memory_size
        ):
            raise MemoryAllocationError(
                f"Failed to allocate {nbytes} bytes on device #{device}."
            )
        array = np.empty(size, dtype=dtype)
        self._used_bytes[device] += nbytes
        self._placements[id(array)] = (device, array, True)
        return array

    def free(self, array):
        device, array, owned = self._placements.pop(id(_root(array)))
        if owned:
            self._used_bytes[device] -= array.nbytes

    def device_array(self, device, data):
        """Returns a copy of `data` placed on `device`, that the caller owns."""
        array = np.array(np.reshape(data, -1), copy=True)
        self._placements[id(array)] = (device, array, False)
        return array

    def memcpy_h2d_async(self, dst, dst_offset, src):
        device = self._check_destination(dst)
        src = np.asarray(src).reshape(-1)
        dst[dst_offset : dst_offset + src.shape[0]] = src
        self.operations.append(("h2d", device))

    def memcpy_d2h(self, dst, src, src_offset):
        device = self._check_placed(src)
        dst = dst.reshape(-1)
        dst[:] = src[src_offset : src_offset + dst.shape[0]]
        self.operations.append(("d2h", device))

    def memcpy_d2d_async(self, dst, dst_offset, src, src_offset, size):
        device = self._check_destination(dst)
        if self._check_placed(src) != device:
            raise MemoryCopyError(
                f"Device to device copy on device #{device} from a buffer that lives on"
                f" device #{self.device_of(src)}."
            )
        dst[dst_offset : dst_offset + size] = src[src_offset : src_offset + size]
        self.operations.append(("d2d", device))

    def memcpy_peer_async(
        self, dst, dst_offset, dst_device, src, src_offset, src_device, size
    ):
        if self._check_placed(dst) != dst_device:
            raise MemoryCopyError(f"Destination does not live on device #{dst_device}.")
        if self._check_placed(src) != src_device:
            raise MemoryCopyError(f"Source does not live on device #{src_device}.")
        if (
            dst_device != src_device
            and (dst_device, src_device) not in self.enabled_peers
            and (src_device, dst_device) not in self.enabled_peers
        ):
            raise MemoryCopyError(
                f"Peer access between device #{src_device} and device #{dst_device}"
                " is not enabled."
            )
        dst[dst_offset : dst_offset + size] = src[src_offset : src_offset + size]
        self.operations.append(("peer", src_device, dst_device))

    def synchronize(self):
        self.operations.append(("sync", self._check_current()))

    def mem_info(self):
        device = self._check_current()
        if self.memory_size is None:
            return None, None
        return self.memory_size - self._used_bytes[device], self.memory_size

    def reinterpret(self, array, dtype, size):
        return array.view(dtype)[:size]

    def _check_current(self):
        if self._current is None:
            raise DeviceSelectionError("No device has been selected.")
        return self._current

    def _check_placed(self, array):
        device = self.device_of(array)
        if device is None:
            raise MemoryCopyError("The buffer does not live on any device.")
        return device

    def _check_destination(self, dst):
        device = self._check_current()
        if self._check_placed(dst) != device:
            raise MemoryCopyError(
                f"Copy issued on device #{device} into a buffer that lives on device"
                f" #{self.device_of(dst)}."
            )
        return device
