import math


def distribute(samples_size, n_devices):
    """Split the range of sample indices in `n_devices` contiguous partitions.

    Every device holds the full sample set, but each one only computes over its own
    partition. The partitions are returned as a list of `(start, stop)` pairs, one
    per device, in device order. Trailing partitions can be empty when there are
    more devices than samples."""
    if n_devices < 1:
        raise ValueError(f"Expected at least one device, got {n_devices}")

    length = math.ceil(samples_size / n_devices)
    return [
        (min(devi * length, samples_size), min((devi + 1) * length, samples_size))
        for devi in range(n_devices)
    ]


def max_distribute_length(samples_size, n_devices):
    """Returns the length of the largest partition produced by `distribute`."""
    return max(stop - start for start, stop in distribute(samples_size, n_devices))


def expand_device_mask(device_mask, device_count):
    """Returns the list of device indices denoted by the bitmask `device_mask`.

    A mask equal to 0 selects every installed device."""
    if device_mask == 0:
        device_mask = (1 << device_count) - 1

    devices = []
    device = 0
    while device_mask:
        if device_mask & 1:
            devices.append(device)
        device_mask >>= 1
        device += 1
    return devices
