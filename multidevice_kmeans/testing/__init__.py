from contextlib import contextmanager


@contextmanager
def override_attr_context(obj, **attrs):
    """Temporarily set the attributes `attrs` of `obj`, e.g. the `_CONFIG` of
    `multidevice_kmeans.device.runtime._RuntimeConfig`.

    The previous values are restored on exit. The attributes must already exist,
    else an AttributeError is raised."""
    attrs_before = dict()
    try:
        for attr_name, attr_value in attrs.items():
            attrs_before[attr_name] = getattr(obj, attr_name)
            setattr(obj, attr_name, attr_value)

        yield

    finally:
        for attr_name, attr_value in attrs_before.items():
            setattr(obj, attr_name, attr_value)
