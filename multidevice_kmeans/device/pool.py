import warnings

from multidevice_kmeans.common._utils import expand_device_mask
from multidevice_kmeans.exceptions import (
    DeviceSelectionError,
    PeerAccessAlreadyEnabled,
    PeerAccessError,
)


def setup_devices(runtime, device_mask, device_ptrs=-1, verbosity=0):
    """Returns the list of devices that take part in the computation.

    Parameters
    ----------
    runtime : Runtime

    device_mask : int
        Bitmask of the requested devices, 0 means all the installed devices.

    device_ptrs : int
        The device the caller's buffers live on, or -1 if they live in host memory.
        This device only becomes a compute participant if it is in `device_mask`, but
        peer access is enabled between it and every participant.

    verbosity : int

    Devices that can't be selected are dropped with a warning. Failures to enable
    peer access are only reported as warnings too: a later peer copy between two
    such devices will fail. An empty list is returned if no device is usable.
    """
    devices = []
    for device in expand_device_mask(device_mask, runtime.device_count()):
        try:
            runtime.set_device(device)
        except DeviceSelectionError as exc:
            warnings.warn(
                f"Failed to validate device #{device}, it is dropped: {exc}",
                RuntimeWarning,
            )
            continue
        devices.append(device)

    if not devices:
        return devices

    p2p_devices = list(devices)
    if device_ptrs >= 0 and device_ptrs not in devices:
        p2p_devices.append(device_ptrs)

    if len(p2p_devices) > 1:
        _enable_peer_access(runtime, p2p_devices, verbosity)

    return devices


def _enable_peer_access(runtime, devices, verbosity):
    for device in devices:
        for peer in devices:
            if device <= peer:
                continue
            if not (
                runtime.can_access_peer(device, peer)
                and runtime.can_access_peer(peer, device)
            ):
                warnings.warn(
                    f"P2P between device #{device} and device #{peer} is impossible.",
                    RuntimeWarning,
                )

    for device in devices:
        try:
            runtime.set_device(device)
        except DeviceSelectionError as exc:
            warnings.warn(
                f"Failed to enable P2P on device #{device}: {exc}", RuntimeWarning
            )
            continue
        for peer in devices:
            if device == peer:
                continue
            try:
                runtime.enable_peer_access(peer)
            except PeerAccessAlreadyEnabled:
                if verbosity > 0:
                    print(f"P2P is already enabled on device #{device}")
            except PeerAccessError as exc:
                warnings.warn(
                    f"Failed to enable P2P on device #{device}: {exc}", RuntimeWarning
                )


class DevicePool:
    """The ordered list of devices a run computes on.

    Index `devi` in `devices` is the position of a device in every
    `DistributedBuffer` built with this pool. The last device holds the canonical
    copy of the results.

    Parameters
    ----------
    runtime : Runtime

    devices : list of int
        As returned by `setup_devices`.

    device_ptrs : int
        The device the caller's buffers live on, or -1.
    """

    def __init__(self, runtime, devices, device_ptrs=-1):
        self.runtime = runtime
        self.devices = list(devices)
        self.device_ptrs = device_ptrs

    def __len__(self):
        return len(self.devices)

    @property
    def canonical_devi(self):
        return len(self.devices) - 1

    @property
    def canonical_device(self):
        return self.devices[-1]

    @property
    def origin_devi(self):
        """Index of the caller's device in `devices`, or -1 if it does not compute."""
        if self.device_ptrs >= 0 and self.device_ptrs in self.devices:
            return self.devices.index(self.device_ptrs)
        return -1

    def for_each_device(self, func):
        """Call `func(devi, device)` for every device, in order, with `device` set as
        the current device beforehand.

        The host does not wait between two calls: whatever `func` enqueues runs
        asynchronously on the command stream of its device."""
        for devi, device in enumerate(self.devices):
            self.runtime.set_device(device)
            func(devi, device)

    def synchronize(self):
        """Block until every command enqueued on the devices has completed."""
        self.for_each_device(lambda devi, device: self.runtime.synchronize())

    def broadcast_from(self, src_devi, buffer, offset, size):
        """Peer-copy `buffer[src_devi][offset:offset + size]` to the same range of the
        other replicas of `buffer`."""
        src_device = self.devices[src_devi]

        def _copy(devi, device):
            if devi == src_devi:
                return
            self.runtime.memcpy_peer_async(
                buffer[devi], offset, device, buffer[src_devi], offset, src_device, size
            )

        self.for_each_device(_copy)

    def print_memory_stats(self):
        def _print(devi, device):
            free_bytes, total_bytes = self.runtime.mem_info()
            if total_bytes is None:
                print(f"device #{device} memory: unbounded")
            elif free_bytes is None:
                print(f"device #{device} memory: total {total_bytes} bytes")
            else:
                used_bytes = total_bytes - free_bytes
                print(
                    f"device #{device} memory: used {used_bytes} bytes"
                    f" ({used_bytes * 100.0 / total_bytes:.1f}%), free {free_bytes}"
                    f" bytes, total {total_bytes} bytes"
                )

        self.for_each_device(_print)
