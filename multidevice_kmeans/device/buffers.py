from typing import Any, NamedTuple


class OwnedHandle(NamedTuple):
    """A buffer allocated by the run, released with the `DistributedBuffer`."""

    array: Any
    device: int


class BorrowedHandle(NamedTuple):
    """A buffer that aliases memory the run does not own (caller memory, or a view of
    another buffer). It is never released by the `DistributedBuffer`."""

    array: Any
    device: int


class DistributedBuffer:
    """One flat buffer per device of a `DevicePool`, each either owned or borrowed.

    `buffer[devi]` is the array that lives on `pool.devices[devi]`. The buffer is a
    context manager that releases the owned entries on exit.
    """

    def __init__(self, pool, handles, size, dtype, name):
        if len(handles) != len(pool):
            raise ValueError(
                f"Expected one handle per device ({len(pool)}), got {len(handles)}."
            )
        self.pool = pool
        self.handles = list(handles)
        self.size = size
        self.dtype = dtype
        self.name = name

    @classmethod
    def allocate(cls, pool, size, dtype, name, borrowed=None):
        """Allocate `size` elements on every device of `pool`.

        If `borrowed` is not None, it is a flat array that lives on
        `pool.device_ptrs` and it is used as the entry of that device, if that device
        is in the pool, rather than allocating new memory."""
        runtime = pool.runtime
        handles = []

        def _allocate(devi, device):
            if borrowed is not None and device == pool.device_ptrs:
                handles.append(BorrowedHandle(borrowed, device))
            else:
                handles.append(OwnedHandle(runtime.malloc(size, dtype), device))

        try:
            pool.for_each_device(_allocate)
        except Exception:
            for handle in handles:
                if isinstance(handle, OwnedHandle):
                    runtime.free(handle.array)
            raise

        return cls(pool, handles, size, dtype, name)

    def alias(self, dtype, size, name):
        """Returns a new `DistributedBuffer` that views the first `size` elements of
        this one as elements of type `dtype`, that must have the same item size.

        The two buffers share memory, they must not be used at the same time."""
        if size > self.size:
            raise ValueError(
                f"Can't alias {size} elements onto {self.name} of size {self.size}."
            )
        runtime = self.pool.runtime
        handles = [
            BorrowedHandle(
                runtime.reinterpret(handle.array, dtype, size), handle.device
            )
            for handle in self.handles
        ]
        return DistributedBuffer(self.pool, handles, size, dtype, name)

    def __len__(self):
        return len(self.handles)

    def __getitem__(self, devi):
        return self.handles[devi].array

    def __iter__(self):
        return (handle.array for handle in self.handles)

    def free(self):
        """Release the owned entries. Calling it several times is allowed."""
        runtime = self.pool.runtime
        handles, self.handles = self.handles, []
        for handle in handles:
            if isinstance(handle, OwnedHandle):
                runtime.free(handle.array)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.free()

    def __repr__(self):
        kinds = ",".join(
            "owned" if isinstance(handle, OwnedHandle) else "borrowed"
            for handle in self.handles
        )
        return f"DistributedBuffer({self.name}, size={self.size}, [{kinds}])"


def populate(buffer, src, size, offset=0):
    """Copy `size` elements of `src` in every replica of `buffer`, starting at
    `offset`.

    If the pool has no designated device, `src` is a host array and it is copied to
    every device. Otherwise `src` lives on the designated device and it is peer-copied
    to every other device: the replica of the designated device, if any, is `src`
    itself."""
    pool = buffer.pool
    runtime = pool.runtime

    if pool.device_ptrs < 0:

        def _copy(devi, device):
            runtime.memcpy_h2d_async(buffer[devi], offset, src[:size])

    else:

        def _copy(devi, device):
            if device == pool.device_ptrs:
                return
            runtime.memcpy_peer_async(
                buffer[devi], offset, device, src, 0, pool.device_ptrs, size
            )

    pool.for_each_device(_copy)
