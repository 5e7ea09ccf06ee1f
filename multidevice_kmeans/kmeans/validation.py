import numpy as np

from multidevice_kmeans.common._utils import expand_device_mask
from multidevice_kmeans.exceptions import InvalidArgumentsError, NoSuchDeviceError

# The largest count is reserved as an invalid value.
_MAX_CLUSTERS_SIZE = np.iinfo(np.uint32).max


def check_args(
    runtime,
    tolerance,
    yinyang_t,
    samples_size,
    features_size,
    clusters_size,
    device,
    device_ptrs,
    fp16x2,
    samples,
    centroids,
    assignments,
):
    """Reject malformed configurations before any device work begins.

    Raises `InvalidArgumentsError` or `NoSuchDeviceError`. The only side effects are
    queries of the number of devices and of their capabilities."""
    if clusters_size < 2 or clusters_size >= _MAX_CLUSTERS_SIZE:
        raise InvalidArgumentsError(
            f"Expected 2 <= clusters_size < {_MAX_CLUSTERS_SIZE}, got {clusters_size}."
        )
    if features_size <= 0:
        raise InvalidArgumentsError(
            f"Expected features_size > 0, got {features_size}."
        )
    if samples_size < clusters_size:
        raise InvalidArgumentsError(
            f"Expected at least as many samples as clusters, got"
            f" samples_size={samples_size} and clusters_size={clusters_size}."
        )

    if device < 0:
        raise NoSuchDeviceError(f"Expected a non-negative device mask, got {device}.")
    device_count = runtime.device_count()
    if device_count == 0:
        raise NoSuchDeviceError(f"No device is available with runtime {runtime.name}.")
    devices = [
        dev for dev in expand_device_mask(device, device_count) if dev < device_count
    ]
    if not devices:
        raise NoSuchDeviceError(
            f"The device mask {device:#b} does not select any of the {device_count}"
            " installed devices."
        )
    if device_ptrs >= device_count:
        raise NoSuchDeviceError(
            f"The buffers are said to live on device #{device_ptrs}, but only"
            f" {device_count} devices are installed."
        )

    if samples is None or centroids is None or assignments is None:
        raise InvalidArgumentsError(
            "samples, centroids and assignments must all be provided."
        )

    if not 0 <= tolerance <= 1:
        raise InvalidArgumentsError(
            f"Expected tolerance in [0, 1], got {tolerance}."
        )
    if not 0 <= yinyang_t <= 0.5:
        raise InvalidArgumentsError(
            f"Expected yinyang_t in [0, 0.5], got {yinyang_t}."
        )

    if fp16x2:
        for dev in devices:
            if not runtime.supports_fp16(dev):
                raise InvalidArgumentsError(
                    f"Device #{dev} does not support half precision (fp16x2)."
                )
