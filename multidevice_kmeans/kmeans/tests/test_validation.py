import numpy as np
import pytest

from multidevice_kmeans.device.host import HostRuntime
from multidevice_kmeans.exceptions import (
    InvalidArgumentsError,
    NoSuchDeviceError,
    Result,
)
from multidevice_kmeans.kmeans.validation import check_args

_SAMPLES = np.zeros(100 * 4, dtype=np.float32)
_CENTROIDS = np.zeros(5 * 4, dtype=np.float32)
_ASSIGNMENTS = np.zeros(100, dtype=np.uint32)

_VALID_ARGS = dict(
    tolerance=0.01,
    yinyang_t=0.1,
    samples_size=100,
    features_size=4,
    clusters_size=5,
    device=0,
    device_ptrs=-1,
    fp16x2=False,
    samples=_SAMPLES,
    centroids=_CENTROIDS,
    assignments=_ASSIGNMENTS,
)


def _check_args(runtime=None, **kwargs):
    if runtime is None:
        runtime = HostRuntime(n_devices=2)
    check_args(runtime, **dict(_VALID_ARGS, **kwargs))


def test_valid_args():
    _check_args()
    _check_args(clusters_size=100)
    _check_args(tolerance=0, yinyang_t=0)
    _check_args(tolerance=1, yinyang_t=0.5)
    _check_args(device=0b10, device_ptrs=0, fp16x2=True)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(clusters_size=1),
        dict(clusters_size=0),
        dict(clusters_size=np.iinfo(np.uint32).max),
        dict(features_size=0),
        dict(samples_size=4),
        dict(tolerance=-0.01),
        dict(tolerance=1.01),
        dict(yinyang_t=-0.1),
        dict(yinyang_t=0.51),
        dict(samples=None),
        dict(centroids=None),
        dict(assignments=None),
    ],
)
def test_invalid_args(kwargs):
    with pytest.raises(InvalidArgumentsError) as exc_info:
        _check_args(**kwargs)

    assert exc_info.value.result == Result.InvalidArguments


def test_clusters_size_one_is_always_invalid():
    # Even with other invalid arguments, or without any device.
    with pytest.raises(InvalidArgumentsError):
        _check_args(
            runtime=HostRuntime(n_devices=0), clusters_size=1, tolerance=2, device=-1
        )


@pytest.mark.parametrize(
    "runtime, kwargs",
    [
        (HostRuntime(n_devices=0), dict()),
        (HostRuntime(n_devices=2), dict(device=-1)),
        (HostRuntime(n_devices=2), dict(device=0b100)),
        (HostRuntime(n_devices=2), dict(device_ptrs=2)),
    ],
)
def test_no_such_device(runtime, kwargs):
    with pytest.raises(NoSuchDeviceError) as exc_info:
        _check_args(runtime=runtime, **kwargs)

    assert exc_info.value.result == Result.NoSuchDevice


def test_fp16x2_requires_device_support():
    runtime = HostRuntime(n_devices=2, fp16={0})

    _check_args(runtime=runtime, device=0b01, fp16x2=True)
    _check_args(runtime=runtime, device=0b10, fp16x2=False)

    with pytest.raises(InvalidArgumentsError, match="half precision"):
        _check_args(runtime=runtime, device=0b11, fp16x2=True)
