import numpy as np
import pytest
from numpy.testing import assert_array_equal

from multidevice_kmeans.testing.config import runtime_params


def _to_host(runtime, array):
    host = np.empty(array.shape[0], dtype=array.dtype)
    runtime.memcpy_d2h(host, array, 0)
    return host


@pytest.mark.parametrize("make_runtime", runtime_params)
def test_reinterpret_keeps_the_offset_of_the_array(make_runtime):
    runtime = make_runtime()
    whole = runtime.device_array(0, np.arange(10, dtype=np.uint32))
    # A buffer that starts in the middle of the allocation of the caller.
    array = whole[4:8]

    view = runtime.reinterpret(array, np.float32, 4)
    assert view.shape == (4,)
    assert view.dtype == np.float32

    view[:] = runtime.xp.full(4, 1.5, dtype=runtime.xp.float32, device=view.device)

    host_whole = _to_host(runtime, whole)
    assert_array_equal(host_whole[:4], np.arange(4))
    assert_array_equal(host_whole[8:], [8, 9])
    assert_array_equal(
        host_whole[4:8], np.full(4, 1.5, dtype=np.float32).view(np.uint32)
    )
